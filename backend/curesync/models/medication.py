from datetime import datetime
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from ..core.database import Base



class Medication(Base):
    __tablename__ = "medications"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    dosage = Column(String, nullable=True)           # e.g. "50mg"

    frequency = Column(Text, nullable=True)          # JSON recurrence rule
    inventory_count = Column(Integer, default=0)

    color = Column(String, nullable=True)            # hex code for UI
    icon = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    doses = relationship(
        "DoseRecord",
        back_populates="medication",
        cascade="all, delete-orphan",
    )
    ledger_entries = relationship(
        "LedgerEntry",
        back_populates="medication",
        cascade="all, delete-orphan",
    )


class DoseRecord(Base):
    __tablename__ = "history"
    __table_args__ = (
        CheckConstraint("status IN ('taken', 'skipped')", name="ck_history_status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    med_id = Column(Integer, ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(String, nullable=False)  # taken | skipped
    taken_at = Column(DateTime, default=datetime.utcnow)

    medication = relationship("Medication", back_populates="doses")
