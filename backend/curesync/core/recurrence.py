"""Recurrence rules for medication reminders.

A medication stores its schedule as a JSON string in ``medications.frequency``::

    {"type": "daily", "times": ["08:00", "20:00"]}
    {"type": "weekly", "times": ["09:00"], "daysOfWeek": [0, 2, 4]}
    {"type": "interval", "times": ["08:00"], "intervalHours": 8}

``parse_rule`` is the only way the rest of the app reads that string. It
fails closed: anything that does not validate is treated as "no rule" and
logged, never raised to the caller.
"""
import json
import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import MalformedRule

logger = logging.getLogger(__name__)

# weekday indexes as stored by the mobile client: 0=Sun .. 6=Sat
DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


def normalize_time(value: Any) -> str:
    """Return ``value`` as a zero-padded ``HH:MM`` string or raise ValueError."""
    if not isinstance(value, str):
        raise ValueError("time must be a string in HH:MM format")
    try:
        hour_str, minute_str = value.strip().split(":")
        hour = int(hour_str)
        minute = int(minute_str)
    except ValueError:
        raise ValueError(f"time must be in HH:MM format, got {value!r}")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"time out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}"


def split_time(value: str) -> tuple[int, int]:
    hour_str, minute_str = value.split(":")
    return int(hour_str), int(minute_str)


def python_weekday(day: int) -> int:
    """Stored weekday (0=Sun) to ``date.weekday()`` numbering (0=Mon)."""
    return (day - 1) % 7


class _RuleBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    times: tuple[str, ...]

    @field_validator("times")
    @classmethod
    def validate_times(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        normalized = sorted({normalize_time(t) for t in v})
        if not normalized:
            raise ValueError("at least one time is required")
        return tuple(normalized)


class DailyRule(_RuleBase):
    type: Literal["daily"] = "daily"


class WeeklyRule(_RuleBase):
    type: Literal["weekly"] = "weekly"
    days_of_week: tuple[int, ...] = Field(
        validation_alias=AliasChoices("daysOfWeek", "days_of_week"),
        serialization_alias="daysOfWeek",
    )

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        for d in v:
            if d < 0 or d > 6:
                raise ValueError("daysOfWeek entries must be between 0 and 6")
        days = sorted(set(v))
        if not days:
            raise ValueError("daysOfWeek is required for weekly rules")
        return tuple(days)


class IntervalRule(_RuleBase):
    type: Literal["interval"] = "interval"
    every_hours: int = Field(
        ge=1,
        validation_alias=AliasChoices("everyHours", "intervalHours", "every_hours"),
        serialization_alias="intervalHours",
    )

    @model_validator(mode="before")
    @classmethod
    def accept_single_anchor(cls, data: Any) -> Any:
        # {"anchorTime": "08:00"} is shorthand for {"times": ["08:00"]}
        if isinstance(data, dict) and "times" not in data:
            anchor = data.get("anchorTime", data.get("anchor_time"))
            if anchor is not None:
                data = {**data, "times": [anchor]}
        return data

    @property
    def anchor_time(self) -> str:
        return self.times[0]


RecurrenceRule = Annotated[
    Union[DailyRule, WeeklyRule, IntervalRule],
    Field(discriminator="type"),
]

_RULE_TYPES = (DailyRule, WeeklyRule, IntervalRule)
_rule_adapter = TypeAdapter(RecurrenceRule)

# Shown by presentation layers for medications without a rule. Never persisted.
DEFAULT_RULE = DailyRule(times=("08:00", "14:00", "20:00"))


def load_rule(raw: Any) -> Optional[RecurrenceRule]:
    """Strict variant of ``parse_rule``: raises MalformedRule instead of logging.

    ``None`` and empty strings mean "no rule" and return None.
    """
    if raw is None or raw == "" or raw == b"":
        return None
    if isinstance(raw, _RULE_TYPES):
        if not validate_rule(raw):
            raise MalformedRule(f"{raw.type} rule violates its invariants")
        return raw

    data = raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise MalformedRule(f"rule is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedRule(f"rule must be a JSON object, got {type(data).__name__}")

    kind = data.get("type")
    if isinstance(kind, str):
        data = {**data, "type": kind.strip().lower()}

    try:
        return _rule_adapter.validate_python(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise MalformedRule(problems) from exc


def parse_rule(raw: Any) -> Optional[RecurrenceRule]:
    """Parse a stored rule; malformed input is logged and treated as absent."""
    try:
        return load_rule(raw)
    except MalformedRule as exc:
        logger.warning("ignoring malformed recurrence rule %.120r: %s", raw, exc)
        return None


def validate_rule(rule: Any) -> bool:
    """Check every rule invariant, including on instances built with model_construct."""
    if not isinstance(rule, _RULE_TYPES):
        return False
    try:
        type(rule).model_validate(dict(rule))
    except (ValidationError, TypeError, ValueError):
        return False
    return True


def dump_rule(rule: RecurrenceRule) -> str:
    """Canonical stored form, readable by ``parse_rule`` and the mobile client."""
    return rule.model_dump_json(by_alias=True)


def describe_rule(rule: Optional[RecurrenceRule]) -> str:
    if rule is None:
        return "no reminders"
    times = ", ".join(rule.times)
    if isinstance(rule, WeeklyRule):
        days = ", ".join(DAY_NAMES[d] for d in rule.days_of_week)
        return f"weekly on {days} at {times}"
    if isinstance(rule, IntervalRule):
        return f"every {rule.every_hours}h from {times}"
    return f"daily at {times}"
