"""
Reminder scheduling orchestrator.

Keeps the alarms registered with the alarm service, and the ledger rows that
track them, equal to what a medication's current recurrence rule compiles
to. Every public operation returns a ``SchedulingResult``; nothing raised by
the alarm service or the ledger escapes, so medication CRUD keeps working
when reminders are fully degraded.

Calls for one medication must be serialized by the caller.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type

from fastapi import Request

from ..config import settings
from .alarms import AlarmContent, AlarmService, build_alarm_service
from .errors import (
    CancellationFailed,
    LedgerInconsistent,
    PermissionDenied,
    RegistrationFailed,
    SchedulingError,
)
from .ledger import ScheduleLedger
from .permissions import PermissionGate
from .recurrence import parse_rule
from .triggers import TriggerSpec, compile_rule

logger = logging.getLogger(__name__)


class ScheduleState(str, Enum):
    UNSCHEDULED = "unscheduled"
    SCHEDULED = "scheduled"


@dataclass
class SchedulingResult:
    ok: bool
    count: int = 0
    error: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def success(cls, count: int, detail: Optional[str] = None) -> "SchedulingResult":
        return cls(ok=True, count=count, detail=detail)

    @classmethod
    def failure(cls, exc: SchedulingError) -> "SchedulingResult":
        return cls(ok=False, count=0, error=exc.code, detail=str(exc) or None)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReconcileReport:
    orphans_dropped: int = 0
    rescheduled: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


class ReminderScheduler:
    def __init__(
        self,
        alarm_service: AlarmService,
        ledger: ScheduleLedger,
        gate: Optional[PermissionGate] = None,
        category: str = "medication",
    ):
        self.alarms = alarm_service
        self.ledger = ledger
        self.gate = gate or PermissionGate(alarm_service)
        self.category = category

    # ---------- Public operations ----------

    async def schedule(self, medication) -> SchedulingResult:
        return await self._guard("schedule", medication.id, RegistrationFailed, self._schedule(medication))

    async def reschedule(self, medication) -> SchedulingResult:
        return await self._guard("reschedule", medication.id, RegistrationFailed, self._reschedule(medication))

    async def cancel(self, medication_id: int) -> SchedulingResult:
        return await self._guard("cancel", medication_id, CancellationFailed, self._cancel(medication_id))

    async def state_of(self, medication_id: int) -> ScheduleState:
        if await self.ledger.entries_for(medication_id):
            return ScheduleState.SCHEDULED
        return ScheduleState.UNSCHEDULED

    # ---------- Collaborator hooks ----------

    async def on_medication_created(self, medication) -> SchedulingResult:
        return await self.schedule(medication)

    async def on_medication_updated(self, old_medication, new_medication) -> SchedulingResult:
        if parse_rule(old_medication.frequency) == parse_rule(new_medication.frequency):
            try:
                live = len(await self.ledger.entries_for(new_medication.id))
            except Exception:
                logger.exception("could not read ledger for medication %s", new_medication.id)
                live = 0
            return SchedulingResult.success(live, detail="recurrence unchanged")
        return await self.reschedule(new_medication)

    async def on_medication_deleted(self, medication_id: int) -> SchedulingResult:
        return await self.cancel(medication_id)

    async def reconcile(self, medications: Iterable[Any]) -> ReconcileReport:
        """
        Startup repair: drop ledger rows for medications that no longer exist
        and re-derive alarms for medications whose ledger does not match their rule.
        """
        report = ReconcileReport()

        orphans = await self.ledger.find_orphans()
        if orphans:
            by_med: Dict[int, List[str]] = {}
            for entry in orphans:
                by_med.setdefault(entry.med_id, []).append(entry.id)
            for med_id, ids in by_med.items():
                logger.warning(
                    "%s: %s ledger entries reference missing medication %s, dropping",
                    LedgerInconsistent.code,
                    len(ids),
                    med_id,
                )
                await self._cancel_all(ids)
            report.orphans_dropped = await self.ledger.drop_entries(e.id for e in orphans)

        if not await self.gate.ensure_granted():
            return report

        for med in medications:
            expected = len(compile_rule(parse_rule(med.frequency)))
            live = len(await self.ledger.entries_for(med.id))
            if live == expected:
                continue
            result = await self.reschedule(med)
            if result.ok:
                report.rescheduled.append(med.id)
            else:
                report.failed.append(med.id)

        return report

    # ---------- Internals ----------

    async def _guard(
        self,
        operation: str,
        medication_id: int,
        fallback: Type[SchedulingError],
        work,
    ) -> SchedulingResult:
        try:
            result = await work
        except SchedulingError as exc:
            logger.warning("%s for medication %s failed: %s (%s)", operation, medication_id, exc.code, exc)
            return SchedulingResult.failure(exc)
        except Exception as exc:
            logger.exception("%s for medication %s failed unexpectedly", operation, medication_id)
            return SchedulingResult.failure(fallback(str(exc)))
        logger.info(
            "%s for medication %s: %s alarm(s)%s",
            operation,
            medication_id,
            result.count,
            f" ({result.detail})" if result.detail else "",
        )
        return result

    async def _check_gate(self) -> Optional[SchedulingResult]:
        """None when alarms may be registered, a no-op result on a headless host."""
        if await self.gate.ensure_granted():
            return None
        if not self.gate.capable:
            return SchedulingResult.success(0, detail="host has no notification capability")
        raise PermissionDenied("notification permission not granted")

    async def _schedule(self, medication) -> SchedulingResult:
        # a refusal here leaves any live alarms and their ledger rows alone
        blocked = await self._check_gate()
        if blocked is not None:
            return blocked

        if await self.ledger.entries_for(medication.id):
            # already scheduled; replace rather than stack a second set
            return await self._reschedule(medication)

        specs = compile_rule(parse_rule(medication.frequency))
        if not specs:
            return SchedulingResult.success(0)

        identifiers = await self._register_all(medication, specs)
        try:
            await self.ledger.record_triggers(medication.id, identifiers)
        except Exception as exc:
            await self._cancel_all(identifiers)
            raise RegistrationFailed(f"could not record alarms: {exc}") from exc
        return SchedulingResult.success(len(identifiers))

    async def _reschedule(self, medication) -> SchedulingResult:
        old_ids = await self.ledger.entries_for(medication.id)

        try:
            blocked = await self._check_gate()
        except PermissionDenied:
            await self._clear(medication.id, old_ids)
            raise
        if blocked is not None:
            await self._clear(medication.id, old_ids)
            return blocked

        specs = compile_rule(parse_rule(medication.frequency))
        try:
            new_ids = await self._register_all(medication, specs)
        except SchedulingError:
            await self._clear(medication.id, old_ids)
            raise

        try:
            await self.ledger.replace_entries(medication.id, new_ids)
        except Exception as exc:
            # ledger still lists the old alarms, which are still live
            await self._cancel_all(new_ids)
            raise RegistrationFailed(f"could not record alarms: {exc}") from exc

        await self._cancel_all(old_ids)
        return SchedulingResult.success(len(new_ids))

    async def _cancel(self, medication_id: int) -> SchedulingResult:
        identifiers = await self.ledger.entries_for(medication_id)
        failures = await self._cancel_all(identifiers)
        await self.ledger.remove_entries(medication_id)
        detail = f"{failures} cancellation(s) failed" if failures else None
        return SchedulingResult.success(len(identifiers), detail=detail)

    async def _clear(self, medication_id: int, identifiers: Sequence[str]) -> None:
        await self._cancel_all(identifiers)
        await self.ledger.remove_entries(medication_id)

    async def _register_all(self, medication, specs: Sequence[TriggerSpec]) -> List[str]:
        """Register every spec in order. On the first failure, cancel what went through."""
        content = AlarmContent.for_medication(medication, self.category)
        registered: List[str] = []
        for spec in specs:
            try:
                identifier = await self.alarms.register(spec, content)
            except Exception as exc:
                await self._cancel_all(registered)
                if isinstance(exc, SchedulingError):
                    raise
                raise RegistrationFailed(
                    f"alarm {len(registered) + 1}/{len(specs)} rejected: {exc}"
                ) from exc
            registered.append(identifier)
        return registered

    async def _cancel_all(self, identifiers: Iterable[str]) -> int:
        failures = 0
        for identifier in identifiers:
            try:
                await self.alarms.cancel(identifier)
            except Exception as exc:
                failures += 1
                logger.warning("%s: alarm %s: %s", CancellationFailed.code, identifier, exc)
        return failures


def build_scheduler(alarm_service: Optional[AlarmService] = None) -> ReminderScheduler:
    service = alarm_service or build_alarm_service()
    return ReminderScheduler(
        alarm_service=service,
        ledger=ScheduleLedger(),
        category=settings.reminder_category,
    )


# FastAPI dependency
def get_scheduler(request: Request) -> ReminderScheduler:
    return request.app.state.scheduler
