from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.notifications import claim_pending, decode_payload, mark_failed, mark_sent
from ..models import NotificationEvent

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationOut(BaseModel):
    id: int
    channel: str
    category: Optional[str]
    medication_id: Optional[int]
    payload: dict
    status: str
    attempt_count: int
    last_error: Optional[str]
    locked_at: Optional[datetime]
    locked_by: Optional[str]
    created_at: datetime


class FailRequest(BaseModel):
    error_message: str


class AckResponse(BaseModel):
    ok: bool
    id: int
    status: str
    attempt_count: int
    last_error: Optional[str] = None


def _get_or_404(db: Session, event_id: int) -> NotificationEvent:
    evt = db.query(NotificationEvent).filter(NotificationEvent.id == event_id).first()
    if not evt:
        raise HTTPException(status_code=404, detail="Notification not found")
    return evt


def _ack_response(evt: NotificationEvent) -> AckResponse:
    return AckResponse(
        ok=True,
        id=evt.id,
        status=evt.status,
        attempt_count=evt.attempt_count,
        last_error=evt.last_error,
    )


@router.get("/pending", response_model=List[NotificationOut])
def pending_notifications(
    limit: int = Query(50, ge=1, le=100),
    consumer_id: str = Query("telegram-bot", min_length=1, max_length=128),
    lock_seconds: int = Query(60, ge=1, le=3600),
    db: Session = Depends(get_db),
):
    claimed = claim_pending(db, consumer_id, limit=limit, lock_seconds=lock_seconds)
    return [
        NotificationOut(
            id=evt.id,
            channel=evt.channel,
            category=evt.category,
            medication_id=evt.medication_id,
            payload=decode_payload(evt),
            status=evt.status,
            attempt_count=evt.attempt_count,
            last_error=evt.last_error,
            locked_at=evt.locked_at,
            locked_by=evt.locked_by,
            created_at=evt.created_at,
        )
        for evt in claimed
    ]


@router.post("/{event_id}/ack", response_model=AckResponse)
def ack_notification(event_id: int, db: Session = Depends(get_db)):
    return _ack_response(mark_sent(db, _get_or_404(db, event_id)))


@router.post("/{event_id}/fail", response_model=AckResponse)
def fail_notification(
    event_id: int,
    payload: FailRequest,
    db: Session = Depends(get_db),
):
    return _ack_response(mark_failed(db, _get_or_404(db, event_id), payload.error_message))
