from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models import NotificationEvent
from .database import SessionLocal

logger = logging.getLogger(__name__)

Notification = Dict[str, Any]
NotificationHandler = Callable[[Notification], Awaitable[None]]

MAX_ATTEMPTS = 5

_handler: Optional[NotificationHandler] = None


def register_notification_handler(handler: Optional[NotificationHandler]) -> None:
    """
    Register an async handler to receive notifications.
    Backend remains functional if no handler is registered.
    """
    global _handler
    _handler = handler


async def emit_notification(
    notification: Notification,
    session_factory: Callable[[], Session] = SessionLocal,
) -> None:
    """
    Persist a notification for durable delivery, then hand it to the
    registered handler if present.
    """
    db = session_factory()
    try:
        evt = NotificationEvent(
            channel=notification.get("channel", "default"),
            category=notification.get("category"),
            medication_id=notification.get("medication_id"),
            payload_json=json.dumps(notification, default=str),
            status="PENDING",
        )
        db.add(evt)
        db.commit()
    finally:
        db.close()

    handler = _handler
    if handler:
        try:
            await handler(notification)
        except Exception:
            logger.exception("notification handler failed")


# ---------- Outbox consumers ----------


def claim_pending(
    db: Session,
    consumer_id: str,
    limit: int = 50,
    lock_seconds: int = 60,
    now: Optional[datetime] = None,
) -> List[NotificationEvent]:
    """Lock up to ``limit`` deliverable events for ``consumer_id``, oldest first."""
    now = now or datetime.utcnow()
    lock_threshold = now - timedelta(seconds=lock_seconds)

    candidates = (
        db.query(NotificationEvent)
        .filter(
            NotificationEvent.sent_at.is_(None),
            NotificationEvent.attempt_count < MAX_ATTEMPTS,
            NotificationEvent.status.in_(("PENDING", "FAILED", "SENDING")),
            or_(
                NotificationEvent.locked_at.is_(None),
                NotificationEvent.locked_at < lock_threshold,
            ),
        )
        .order_by(NotificationEvent.created_at.asc(), NotificationEvent.id.asc())
        .limit(limit)
        .all()
    )

    for evt in candidates:
        evt.locked_at = now
        evt.locked_by = consumer_id
        evt.status = "SENDING"
        evt.updated_at = now

    if candidates:
        db.commit()
        for evt in candidates:
            db.refresh(evt)

    return candidates


def mark_sent(db: Session, evt: NotificationEvent) -> NotificationEvent:
    now = datetime.utcnow()
    evt.status = "SENT"
    evt.sent_at = now
    evt.locked_at = None
    evt.locked_by = None
    evt.updated_at = now
    db.commit()
    db.refresh(evt)
    return evt


def mark_failed(db: Session, evt: NotificationEvent, error_message: str) -> NotificationEvent:
    evt.attempt_count = (evt.attempt_count or 0) + 1
    evt.last_error = error_message
    evt.status = "FAILED"
    evt.locked_at = None
    evt.locked_by = None
    evt.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(evt)
    if evt.attempt_count >= MAX_ATTEMPTS:
        logger.warning(
            "notification %s gave up after %s attempts: %s",
            evt.id,
            evt.attempt_count,
            error_message,
        )
    return evt


def decode_payload(evt: NotificationEvent) -> Notification:
    try:
        payload = json.loads(evt.payload_json)
    except ValueError:
        logger.warning("notification %s has an unreadable payload", evt.id)
        return {}
    return payload if isinstance(payload, dict) else {}
