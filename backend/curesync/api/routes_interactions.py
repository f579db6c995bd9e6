from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.interactions import InteractionResult, check_drug_interaction
from ..models import Medication

router = APIRouter(prefix="/interactions", tags=["interactions"])


class InteractionCheckRequest(BaseModel):
    name: str
    # defaults to every saved medication
    existing: Optional[List[str]] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("name must have at least 2 characters")
        return v


@router.post("/check", response_model=List[InteractionResult])
async def check_interactions(payload: InteractionCheckRequest, db: Session = Depends(get_db)):
    existing = payload.existing
    if existing is None:
        existing = [
            m.name
            for m in db.query(Medication).all()
            if m.name.strip().lower() != payload.name.lower()
        ]
    return await check_drug_interaction(payload.name, existing)
