from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from ..core.database import Base


class DeviceAlarm(Base):
    """Alarm held by the local alarm service until it is cancelled."""

    __tablename__ = "device_alarms"

    id = Column(String(64), primary_key=True)

    kind = Column(String, nullable=False)   # daily | weekly | interval
    hour = Column(Integer, nullable=False)
    minute = Column(Integer, nullable=False)
    weekday = Column(Integer, nullable=True)           # 0=Sun .. 6=Sat, weekly only
    interval_seconds = Column(Integer, nullable=True)  # interval only
    repeats = Column(Boolean, default=True)

    content_json = Column(Text, nullable=False)

    next_fire_at = Column(DateTime, nullable=True)
    last_fired_at = Column(DateTime, nullable=True)
    fire_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
