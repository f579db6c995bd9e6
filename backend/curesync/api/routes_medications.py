import json
import logging
from datetime import datetime
from typing import Any, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.recurrence import describe_rule, parse_rule
from ..core.scheduler import ReminderScheduler, get_scheduler
from ..core.triggers import compile_rule
from ..models import DoseRecord, Medication

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/medications", tags=["medications"])


# ---------- Pydantic schemas ----------

class MedicationBase(BaseModel):
    name: str
    dosage: Optional[str] = None
    # recurrence rule, either the stored JSON string or the decoded object
    frequency: Optional[Union[str, dict]] = None
    inventory_count: int = Field(0, ge=0)
    color: Optional[str] = None
    icon: Optional[str] = "pill"

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v


class MedicationCreate(MedicationBase):
    pass


class MedicationUpdate(BaseModel):
    name: Optional[str] = None
    dosage: Optional[str] = None
    frequency: Optional[Union[str, dict]] = None
    inventory_count: Optional[int] = Field(None, ge=0)
    color: Optional[str] = None
    icon: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v


class MedicationOut(BaseModel):
    id: int
    name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    inventory_count: int
    color: Optional[str] = None
    icon: Optional[str] = None
    schedule: Optional[dict] = None
    schedule_description: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ReminderStatus(BaseModel):
    ok: bool
    count: int
    error: Optional[str] = None
    detail: Optional[str] = None


class MedicationWriteResponse(BaseModel):
    medication: MedicationOut
    reminders: ReminderStatus


class LedgerOut(BaseModel):
    medication_id: int
    state: str
    expected: int
    identifiers: List[str]


class DoseCreate(BaseModel):
    status: str  # taken | skipped

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        v_low = v.lower()
        if v_low not in ("taken", "skipped"):
            raise ValueError("status must be 'taken' or 'skipped'")
        return v_low


class DoseOut(BaseModel):
    id: int
    medication_id: int
    status: str
    taken_at: datetime
    inventory_count: int


# ---------- Helper functions ----------

def _frequency_to_str(frequency: Any) -> Optional[str]:
    if frequency is None or isinstance(frequency, str):
        return frequency
    return json.dumps(frequency)


def _medication_out(m: Medication) -> MedicationOut:
    rule = parse_rule(m.frequency)
    return MedicationOut(
        id=m.id,
        name=m.name,
        dosage=m.dosage,
        frequency=m.frequency,
        inventory_count=m.inventory_count or 0,
        color=m.color,
        icon=m.icon,
        schedule=rule.model_dump(by_alias=True) if rule else None,
        schedule_description=describe_rule(rule),
        created_at=m.created_at,
        updated_at=m.updated_at,
    )


def _get_or_404(db: Session, medication_id: int) -> Medication:
    m = db.query(Medication).filter(Medication.id == medication_id).first()
    if not m:
        raise HTTPException(status_code=404, detail="Medication not found")
    return m


# ---------- CRUD endpoints ----------


@router.get("", response_model=List[MedicationOut])
def list_medications(db: Session = Depends(get_db)):
    return [_medication_out(m) for m in db.query(Medication).order_by(Medication.id).all()]


@router.post("", response_model=MedicationWriteResponse, status_code=status.HTTP_201_CREATED)
async def create_medication(
    payload: MedicationCreate,
    db: Session = Depends(get_db),
    scheduler: ReminderScheduler = Depends(get_scheduler),
):
    m = Medication(
        name=payload.name,
        dosage=payload.dosage or None,
        frequency=_frequency_to_str(payload.frequency),
        inventory_count=payload.inventory_count,
        color=payload.color,
        icon=payload.icon,
    )
    db.add(m)
    db.commit()
    db.refresh(m)

    # the medication is saved whatever happens to its reminders
    result = await scheduler.on_medication_created(m)

    return MedicationWriteResponse(
        medication=_medication_out(m),
        reminders=ReminderStatus(**result.to_dict()),
    )


@router.get("/{medication_id}", response_model=MedicationOut)
def get_medication(medication_id: int, db: Session = Depends(get_db)):
    return _medication_out(_get_or_404(db, medication_id))


@router.patch("/{medication_id}", response_model=MedicationWriteResponse)
async def update_medication(
    medication_id: int,
    payload: MedicationUpdate,
    db: Session = Depends(get_db),
    scheduler: ReminderScheduler = Depends(get_scheduler),
):
    m = _get_or_404(db, medication_id)
    before = _medication_out(m)

    data = payload.model_dump(exclude_unset=True)

    if "name" in data and data["name"] is not None:
        m.name = data["name"]
    if "dosage" in data:
        m.dosage = data["dosage"] or None
    if "frequency" in data:
        m.frequency = _frequency_to_str(data["frequency"])
    if "inventory_count" in data and data["inventory_count"] is not None:
        m.inventory_count = data["inventory_count"]
    if "color" in data:
        m.color = data["color"]
    if "icon" in data:
        m.icon = data["icon"]

    m.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(m)

    result = await scheduler.on_medication_updated(before, m)

    return MedicationWriteResponse(
        medication=_medication_out(m),
        reminders=ReminderStatus(**result.to_dict()),
    )


@router.delete("/{medication_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_medication(
    medication_id: int,
    db: Session = Depends(get_db),
    scheduler: ReminderScheduler = Depends(get_scheduler),
):
    m = _get_or_404(db, medication_id)

    # cancel live alarms while the ledger still knows them
    result = await scheduler.on_medication_deleted(medication_id)
    if not result.ok:
        logger.warning("deleting medication %s with reminder cleanup error: %s", medication_id, result.detail)

    db.delete(m)
    db.commit()
    return


# ---------- Reminders & doses ----------


@router.get("/{medication_id}/reminders", response_model=LedgerOut)
async def get_medication_reminders(
    medication_id: int,
    db: Session = Depends(get_db),
    scheduler: ReminderScheduler = Depends(get_scheduler),
):
    m = _get_or_404(db, medication_id)
    identifiers = await scheduler.ledger.entries_for(medication_id)
    state = await scheduler.state_of(medication_id)
    return LedgerOut(
        medication_id=medication_id,
        state=state.value,
        expected=len(compile_rule(parse_rule(m.frequency))),
        identifiers=identifiers,
    )


@router.post("/{medication_id}/doses", response_model=DoseOut, status_code=status.HTTP_201_CREATED)
def record_dose(medication_id: int, payload: DoseCreate, db: Session = Depends(get_db)):
    m = _get_or_404(db, medication_id)

    rec = DoseRecord(med_id=m.id, status=payload.status, taken_at=datetime.now())
    db.add(rec)

    if payload.status == "taken" and (m.inventory_count or 0) > 0:
        m.inventory_count = m.inventory_count - 1

    db.commit()
    db.refresh(rec)
    db.refresh(m)

    return DoseOut(
        id=rec.id,
        medication_id=m.id,
        status=rec.status,
        taken_at=rec.taken_at,
        inventory_count=m.inventory_count or 0,
    )


@router.get("/{medication_id}/doses", response_model=List[DoseOut])
def list_doses(
    medication_id: int,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    m = _get_or_404(db, medication_id)
    records = (
        db.query(DoseRecord)
        .filter(DoseRecord.med_id == medication_id)
        .order_by(DoseRecord.taken_at.desc(), DoseRecord.id.desc())
        .limit(limit)
        .all()
    )
    return [
        DoseOut(
            id=r.id,
            medication_id=m.id,
            status=r.status,
            taken_at=r.taken_at,
            inventory_count=m.inventory_count or 0,
        )
        for r in records
    ]
