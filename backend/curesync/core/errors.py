"""Failure taxonomy of the reminder scheduling engine.

Alarm services raise these; ``ReminderScheduler`` catches them at the
operation boundary and reports ``code`` in a ``SchedulingResult``.
"""


class SchedulingError(Exception):
    code = "scheduling_error"


class PermissionDenied(SchedulingError):
    """The host declined notification capability."""

    code = "permission_denied"


class MalformedRule(SchedulingError):
    """A stored recurrence rule could not be parsed."""

    code = "malformed_rule"


class RegistrationFailed(SchedulingError):
    """The alarm service rejected or errored on a registration request."""

    code = "registration_failed"


class CancellationFailed(SchedulingError):
    """Cancelling one alarm failed. Never blocks ledger cleanup."""

    code = "cancellation_failed"


class LedgerInconsistent(SchedulingError):
    """Ledger rows point at a medication that no longer exists."""

    code = "ledger_inconsistent"
