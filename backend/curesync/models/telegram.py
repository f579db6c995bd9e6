from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


class TelegramChat(Base):
    """Chat that receives medication reminders."""

    __tablename__ = "telegram_chats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    chat_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    chat_type: Mapped[str] = mapped_column(String(32), default="private")
    username: Mapped[str | None] = mapped_column(String(128), nullable=True)
    title: Mapped[str | None] = mapped_column(String(256), nullable=True)

    # muted chats keep their registration but get no reminders
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    registered_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
