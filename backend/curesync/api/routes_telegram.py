from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..models import TelegramChat

router = APIRouter(prefix="/integrations/telegram", tags=["telegram"])


class TelegramRegisterRequest(BaseModel):
    chat_id: int
    chat_type: str | None = "private"
    username: str | None = None
    title: str | None = None


class TelegramChatResponse(BaseModel):
    ok: bool
    chat_id: int
    enabled: bool


@router.post("/register", response_model=TelegramChatResponse)
def register_chat(payload: TelegramRegisterRequest, db: Session = Depends(get_db)):
    chat = db.query(TelegramChat).filter(TelegramChat.chat_id == payload.chat_id).first()
    now = datetime.utcnow()

    if chat is None:
        chat = TelegramChat(
            chat_id=payload.chat_id,
            chat_type=payload.chat_type or "private",
            username=payload.username,
            title=payload.title,
            enabled=True,
            registered_at=now,
            last_seen_at=now,
        )
        db.add(chat)
    else:
        # re-registering un-mutes
        chat.chat_type = payload.chat_type or chat.chat_type
        chat.username = payload.username
        chat.title = payload.title
        chat.enabled = True
        chat.last_seen_at = now

    db.commit()
    db.refresh(chat)
    return TelegramChatResponse(ok=True, chat_id=chat.chat_id, enabled=chat.enabled)


@router.post("/{chat_id}/mute", response_model=TelegramChatResponse)
def mute_chat(chat_id: int, db: Session = Depends(get_db)):
    chat = db.query(TelegramChat).filter(TelegramChat.chat_id == chat_id).first()
    if not chat:
        raise HTTPException(status_code=404, detail="Chat not registered")

    chat.enabled = False
    chat.last_seen_at = datetime.utcnow()
    db.commit()
    db.refresh(chat)
    return TelegramChatResponse(ok=True, chat_id=chat.chat_id, enabled=chat.enabled)
