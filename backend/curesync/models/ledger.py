from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base


class LedgerEntry(Base):
    """One live alarm registered for a medication."""

    __tablename__ = "notifications"

    # identifier handed back by the alarm service
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    med_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("medications.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0)  # compiled trigger order
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    medication = relationship("Medication", back_populates="ledger_entries")
