"""
Schedule ledger: the only durable record of which alarm identifiers are live
for each medication.

The alarm service cannot be queried by medication, so an identifier that is
dropped from here before it is cancelled keeps firing as an orphan. All
writes for one operation therefore happen in a single transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Sequence

from sqlalchemy.orm import Session

from ..models import LedgerEntry, Medication
from .database import SessionLocal

logger = logging.getLogger(__name__)


class ScheduleLedger:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    async def record_triggers(self, medication_id: int, identifiers: Sequence[str]) -> None:
        if not identifiers:
            return
        db = self._session_factory()
        try:
            self._append(db, medication_id, identifiers)
            db.commit()
        finally:
            db.close()

    async def entries_for(self, medication_id: int) -> List[str]:
        db = self._session_factory()
        try:
            rows = (
                db.query(LedgerEntry.id)
                .filter(LedgerEntry.med_id == medication_id)
                .order_by(LedgerEntry.position.asc(), LedgerEntry.scheduled_at.asc())
                .all()
            )
            return [row.id for row in rows]
        finally:
            db.close()

    async def remove_entries(self, medication_id: int) -> int:
        db = self._session_factory()
        try:
            removed = (
                db.query(LedgerEntry)
                .filter(LedgerEntry.med_id == medication_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return removed
        finally:
            db.close()

    async def replace_entries(self, medication_id: int, identifiers: Sequence[str]) -> None:
        """Swap a medication's whole entry set in one transaction."""
        db = self._session_factory()
        try:
            db.query(LedgerEntry).filter(LedgerEntry.med_id == medication_id).delete(
                synchronize_session=False
            )
            self._append(db, medication_id, identifiers)
            db.commit()
        finally:
            db.close()

    async def find_orphans(self) -> List[LedgerEntry]:
        """Entries whose medication row is gone."""
        db = self._session_factory()
        try:
            orphans = (
                db.query(LedgerEntry)
                .outerjoin(Medication, Medication.id == LedgerEntry.med_id)
                .filter(Medication.id.is_(None))
                .order_by(LedgerEntry.med_id, LedgerEntry.position)
                .all()
            )
            db.expunge_all()
            return orphans
        finally:
            db.close()

    async def drop_entries(self, identifiers: Iterable[str]) -> int:
        ids = list(identifiers)
        if not ids:
            return 0
        db = self._session_factory()
        try:
            removed = (
                db.query(LedgerEntry)
                .filter(LedgerEntry.id.in_(ids))
                .delete(synchronize_session=False)
            )
            db.commit()
            return removed
        finally:
            db.close()

    @staticmethod
    def _append(db: Session, medication_id: int, identifiers: Sequence[str]) -> None:
        start = (
            db.query(LedgerEntry)
            .filter(LedgerEntry.med_id == medication_id)
            .count()
        )
        now = datetime.utcnow()
        for offset, identifier in enumerate(identifiers):
            db.add(
                LedgerEntry(
                    id=identifier,
                    med_id=medication_id,
                    position=start + offset,
                    scheduled_at=now,
                )
            )
