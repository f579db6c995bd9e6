from datetime import datetime, date, time
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..core.dashboard import adherence_rate, build_timeline, summarize
from ..core.database import get_db
from ..models import DoseRecord, Medication

router = APIRouter(tags=["today"])


class TimeSlotItem(BaseModel):
    id: str
    time: str
    medication_id: int
    name: str
    dosage: Optional[str]
    color: Optional[str]
    is_past: bool
    status: Optional[str]


class TodayResponse(BaseModel):
    date: str
    now: datetime
    total: int
    taken: int
    skipped: int
    progress: float
    next: Optional[TimeSlotItem]
    timeline: List[TimeSlotItem]


class StatsResponse(BaseModel):
    active_medications: int
    taken_today: int
    skipped_today: int
    adherence_rate: int


def _today_records(db: Session, today: date) -> List[DoseRecord]:
    start = datetime.combine(today, time.min)
    end = datetime.combine(today, time.max)
    return (
        db.query(DoseRecord)
        .filter(
            DoseRecord.taken_at >= start,
            DoseRecord.taken_at <= end,
        )
        .all()
    )


@router.get("/health")
def health():
    return {"status": "ok", "time": datetime.utcnow().isoformat() + "Z"}


@router.get("/today", response_model=TodayResponse)
def today_overview(db: Session = Depends(get_db)):
    now = datetime.now()
    medications = db.query(Medication).order_by(Medication.id).all()
    records = _today_records(db, now.date())

    timeline = build_timeline(medications, records, now=now)
    summary = summarize(timeline)

    def _item(slot) -> TimeSlotItem:
        return TimeSlotItem(**slot.__dict__)

    return TodayResponse(
        date=now.date().isoformat(),
        now=now,
        total=summary.total,
        taken=summary.taken,
        skipped=summary.skipped,
        progress=summary.progress,
        next=_item(summary.next) if summary.next else None,
        timeline=[_item(s) for s in timeline],
    )


@router.get("/stats", response_model=StatsResponse)
def stats(db: Session = Depends(get_db)):
    records = _today_records(db, date.today())
    taken = sum(1 for r in records if r.status == "taken")
    skipped = sum(1 for r in records if r.status == "skipped")

    return StatsResponse(
        active_medications=db.query(Medication).count(),
        taken_today=taken,
        skipped_today=skipped,
        adherence_rate=adherence_rate(taken, skipped),
    )
