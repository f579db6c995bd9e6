from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from .recurrence import (
    DEFAULT_RULE,
    IntervalRule,
    RecurrenceRule,
    WeeklyRule,
    parse_rule,
    python_weekday,
    split_time,
)


@dataclass
class TimeSlot:
    id: str
    time: str
    medication_id: int
    name: str
    dosage: Optional[str]
    color: Optional[str]
    is_past: bool
    status: Optional[str] = None  # taken | skipped


@dataclass
class TodaySummary:
    total: int
    taken: int
    skipped: int
    progress: float
    next: Optional[TimeSlot]


def slot_times_for_day(rule: RecurrenceRule, day: date) -> List[str]:
    """Wall-clock times at which ``rule`` is due on ``day``."""
    if isinstance(rule, WeeklyRule):
        due_days = {python_weekday(d) for d in rule.days_of_week}
        return list(rule.times) if day.weekday() in due_days else []

    if isinstance(rule, IntervalRule):
        step = timedelta(hours=rule.every_hours)
        day_end = datetime.combine(day, time.max)
        times = set()
        for anchor in rule.times:
            hour, minute = split_time(anchor)
            at = datetime.combine(day, time(hour=hour, minute=minute))
            while at <= day_end:
                times.add(at.strftime("%H:%M"))
                at += step
        return sorted(times)

    return list(rule.times)


def build_timeline(
    medications: Iterable,
    records: Sequence,
    now: Optional[datetime] = None,
) -> List[TimeSlot]:
    """
    One slot per medication per due time today, sorted by time.
    Medications without a usable rule show the default schedule.
    Today's dose records fill a medication's slots in time order.
    """
    now = now or datetime.now()
    current = now.strftime("%H:%M")

    by_med: Dict[int, List] = {}
    for rec in sorted(records, key=lambda r: r.taken_at or now):
        by_med.setdefault(rec.med_id, []).append(rec)

    slots: List[TimeSlot] = []
    for med in medications:
        rule = parse_rule(med.frequency) or DEFAULT_RULE
        taken_log = list(by_med.get(med.id, []))
        for t in slot_times_for_day(rule, now.date()):
            status = taken_log.pop(0).status if taken_log else None
            slots.append(
                TimeSlot(
                    id=f"{med.id}-{t}",
                    time=t,
                    medication_id=med.id,
                    name=med.name,
                    dosage=med.dosage,
                    color=med.color,
                    is_past=t <= current,
                    status=status,
                )
            )

    slots.sort(key=lambda s: (s.time, s.medication_id))
    return slots


def summarize(timeline: Sequence[TimeSlot]) -> TodaySummary:
    total = len(timeline)
    taken = sum(1 for s in timeline if s.status == "taken")
    skipped = sum(1 for s in timeline if s.status == "skipped")
    upcoming = [s for s in timeline if s.status is None and not s.is_past]
    return TodaySummary(
        total=total,
        taken=taken,
        skipped=skipped,
        progress=taken / total if total else 0.0,
        next=upcoming[0] if upcoming else None,
    )


def adherence_rate(taken: int, skipped: int) -> int:
    if taken + skipped == 0:
        return 0
    return round(taken / (taken + skipped) * 100)
