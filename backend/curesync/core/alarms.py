from __future__ import annotations

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models import DeviceAlarm, Medication, TelegramChat
from .database import SessionLocal
from .errors import CancellationFailed, PermissionDenied, RegistrationFailed
from .notifications import emit_notification
from .triggers import TriggerKind, TriggerSpec, following_fire_time, next_fire_time

logger = logging.getLogger(__name__)


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


@dataclass(frozen=True)
class AlarmContent:
    medication_id: int
    name: str
    dosage: Optional[str] = None
    category: str = "medication"

    @property
    def title(self) -> str:
        return "💊 Time for your medication"

    @property
    def body(self) -> str:
        return f"{self.name}: {self.dosage or 'Take as prescribed'}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["title"] = self.title
        data["body"] = self.body
        return data

    @classmethod
    def for_medication(cls, medication, category: Optional[str] = None) -> "AlarmContent":
        return cls(
            medication_id=medication.id,
            name=medication.name,
            dosage=medication.dosage,
            category=category or settings.reminder_category,
        )


class AlarmService(ABC):
    """
    Host notification service. Registers repeating alarms and hands back an
    opaque identifier per alarm; it cannot list alarms by medication.
    """

    capable: bool = True

    @abstractmethod
    async def permission_status(self) -> PermissionStatus:
        ...

    @abstractmethod
    async def request_permission(self) -> PermissionStatus:
        ...

    @abstractmethod
    async def register(self, spec: TriggerSpec, content: AlarmContent) -> str:
        """Raise RegistrationFailed (or PermissionDenied) when the alarm is not accepted."""

    @abstractmethod
    async def cancel(self, identifier: str) -> None:
        """Best-effort. Unknown or expired identifiers are not an error."""


class HeadlessAlarmService(AlarmService):
    """A host with no way to show notifications."""

    capable = False

    async def permission_status(self) -> PermissionStatus:
        return PermissionStatus.DENIED

    async def request_permission(self) -> PermissionStatus:
        return PermissionStatus.DENIED

    async def register(self, spec: TriggerSpec, content: AlarmContent) -> str:
        raise PermissionDenied("host has no notification capability")

    async def cancel(self, identifier: str) -> None:
        return None


class LocalAlarmService(AlarmService):
    """
    Alarms kept in the ``device_alarms`` table and fired by
    ``alarm_dispatch_loop`` into the notification outbox.
    Times are local wall-clock times.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        permission_answer: str = "granted",
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._session_factory = session_factory
        self._answer = PermissionStatus(permission_answer)
        self._status = PermissionStatus.UNDETERMINED
        self._clock = clock

    async def permission_status(self) -> PermissionStatus:
        return self._status

    async def request_permission(self) -> PermissionStatus:
        self._status = self._answer
        logger.info("notification permission requested: %s", self._status.value)
        return self._status

    async def register(self, spec: TriggerSpec, content: AlarmContent) -> str:
        if self._status != PermissionStatus.GRANTED:
            raise PermissionDenied("notification permission not granted")

        identifier = uuid.uuid4().hex
        db = self._session_factory()
        try:
            db.add(
                DeviceAlarm(
                    id=identifier,
                    kind=spec.kind.value,
                    hour=spec.hour,
                    minute=spec.minute,
                    weekday=spec.weekday,
                    interval_seconds=spec.interval_seconds,
                    repeats=spec.repeats,
                    content_json=json.dumps(content.to_dict()),
                    next_fire_at=next_fire_time(spec, self._clock()),
                )
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise RegistrationFailed(f"could not store alarm: {exc}") from exc
        finally:
            db.close()
        return identifier

    async def cancel(self, identifier: str) -> None:
        db = self._session_factory()
        try:
            db.query(DeviceAlarm).filter(DeviceAlarm.id == identifier).delete(
                synchronize_session=False
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise CancellationFailed(f"could not cancel alarm {identifier}: {exc}") from exc
        finally:
            db.close()

    async def fire_due(self, now: Optional[datetime] = None) -> int:
        """Emit a reminder for every alarm that is due and move it to its next slot."""
        now = now or self._clock()
        outgoing: list[Dict[str, Any]] = []

        db = self._session_factory()
        try:
            due = (
                db.query(DeviceAlarm)
                .filter(
                    DeviceAlarm.next_fire_at.is_not(None),
                    DeviceAlarm.next_fire_at <= now,
                )
                .order_by(DeviceAlarm.next_fire_at.asc())
                .all()
            )
            if not due:
                return 0

            chat_ids = [
                chat.chat_id
                for chat in db.query(TelegramChat).filter(TelegramChat.enabled == True).all()  # noqa: E712
            ]

            saved = {alarm.id: json.loads(alarm.content_json) for alarm in due}
            med_ids = {c.get("medication_id") for c in saved.values()} - {None}
            current = {
                med.id: med
                for med in db.query(Medication).filter(Medication.id.in_(list(med_ids))).all()
            }

            for alarm in due:
                due_at = alarm.next_fire_at
                content = _current_content(saved[alarm.id], current)
                base = {
                    "category": content.category,
                    "medication_id": content.medication_id,
                    "name": content.name,
                    "dosage": content.dosage,
                    "alarm_id": alarm.id,
                    "text": f"⏰ {content.title}\n{content.body} ({due_at.strftime('%H:%M')})",
                    "due_at": due_at.isoformat(),
                }
                if chat_ids:
                    outgoing.extend(
                        {**base, "channel": "telegram", "chat_id": chat_id} for chat_id in chat_ids
                    )
                else:
                    outgoing.append({**base, "channel": "app"})

                alarm.last_fired_at = due_at
                alarm.fire_count = (alarm.fire_count or 0) + 1
                if alarm.repeats:
                    alarm.next_fire_at = following_fire_time(spec_from_alarm(alarm), due_at, now)
                else:
                    db.delete(alarm)

            fired = len(due)
            db.commit()
        finally:
            db.close()

        # alarms are advanced before delivery; a crash here drops this round, never repeats it
        for notification in outgoing:
            await emit_notification(notification, session_factory=self._session_factory)

        return fired


def _current_content(saved: Dict[str, Any], medications: Dict[int, Medication]) -> AlarmContent:
    """Alarm text from the medication as it is now; the copy taken at registration if it is gone."""
    med = medications.get(saved.get("medication_id"))
    return AlarmContent(
        medication_id=saved.get("medication_id"),
        name=med.name if med else saved.get("name"),
        dosage=med.dosage if med else saved.get("dosage"),
        category=saved.get("category") or settings.reminder_category,
    )


def spec_from_alarm(alarm: DeviceAlarm) -> TriggerSpec:
    return TriggerSpec(
        kind=TriggerKind(alarm.kind),
        hour=alarm.hour,
        minute=alarm.minute,
        weekday=alarm.weekday,
        interval_seconds=alarm.interval_seconds,
        repeats=bool(alarm.repeats),
    )


def build_alarm_service() -> AlarmService:
    if not settings.notifications_capable:
        return HeadlessAlarmService()
    return LocalAlarmService(permission_answer=settings.notifications_permission)


# ---------- Background dispatcher ----------


async def alarm_dispatch_loop(service: LocalAlarmService, interval_seconds: int = 30) -> None:
    """
    Background loop that periodically fires due alarms.
    """
    while True:
        try:
            fired = await service.fire_due()
            if fired:
                logger.info("fired %s medication reminder(s)", fired)
        except Exception:
            logger.exception("alarm dispatch failed")

        await asyncio.sleep(interval_seconds)
