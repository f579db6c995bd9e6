from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from .recurrence import (
    DailyRule,
    IntervalRule,
    RecurrenceRule,
    WeeklyRule,
    python_weekday,
    split_time,
)


class TriggerKind(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    INTERVAL = "interval"


@dataclass(frozen=True)
class TriggerSpec:
    """One alarm to register. Carries no identifier until the alarm service confirms it."""

    kind: TriggerKind
    hour: int
    minute: int
    weekday: Optional[int] = None           # 0=Sun .. 6=Sat, weekly only
    interval_seconds: Optional[int] = None  # interval only
    repeats: bool = True

    @property
    def time_of_day(self) -> time:
        return time(hour=self.hour, minute=self.minute)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


def compile_rule(rule: Optional[RecurrenceRule]) -> List[TriggerSpec]:
    """
    Expand a recurrence rule into trigger specs.
    Ordered by time of day, then weekday. A missing rule compiles to nothing.
    """
    if rule is None:
        return []

    specs: List[TriggerSpec] = []

    for time_str in rule.times:
        hour, minute = split_time(time_str)

        if isinstance(rule, DailyRule):
            specs.append(TriggerSpec(TriggerKind.DAILY, hour, minute))

        elif isinstance(rule, WeeklyRule):
            for weekday in rule.days_of_week:
                specs.append(
                    TriggerSpec(TriggerKind.WEEKLY, hour, minute, weekday=weekday)
                )

        elif isinstance(rule, IntervalRule):
            specs.append(
                TriggerSpec(
                    TriggerKind.INTERVAL,
                    hour,
                    minute,
                    interval_seconds=rule.every_hours * 3600,
                )
            )

    return specs


def _next_at_time(spec: TriggerSpec, after: datetime) -> datetime:
    candidate = datetime.combine(after.date(), spec.time_of_day)
    if candidate <= after:
        candidate += timedelta(days=1)
    return candidate


def next_fire_time(spec: TriggerSpec, after: datetime) -> datetime:
    """First instant strictly after ``after`` at which ``spec`` fires, for a freshly registered alarm."""
    if spec.kind == TriggerKind.WEEKLY:
        candidate = datetime.combine(after.date(), spec.time_of_day)
        candidate += timedelta(days=(python_weekday(spec.weekday) - after.weekday()) % 7)
        if candidate <= after:
            candidate += timedelta(days=7)
        return candidate

    # daily, and the anchor occurrence of an interval alarm
    return _next_at_time(spec, after)


def following_fire_time(spec: TriggerSpec, fired_at: datetime, now: datetime) -> datetime:
    """Next fire after an alarm that was due at ``fired_at``, skipping anything already past ``now``."""
    if spec.kind == TriggerKind.INTERVAL:
        step = timedelta(seconds=spec.interval_seconds or 3600)
        nxt = fired_at + step
        if nxt <= now:
            missed = (now - nxt) // step + 1
            nxt += step * missed
        return nxt
    return next_fire_time(spec, max(fired_at, now))
