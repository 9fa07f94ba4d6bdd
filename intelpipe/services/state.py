"""Processing state store: the durable hand-off between collection and processing.

Every mutation is a single conditional statement on one row, so concurrent
workers (threads, tasks or processes sharing the database) agree on who owns
an item without multi-record transactions.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import sessionmaker

from intelpipe.core.config import settings
from intelpipe.core.db import dialect_insert, utcnow
from intelpipe.core.logging import get_logger
from intelpipe.models.processing import (
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_PROCESSING,
    TERMINAL_STATUSES,
    ProcessingRecord,
)
from intelpipe.models.raw import RawItem
from intelpipe.schemas.items import CollectedItem

log = get_logger("processing_state")


class ProcessingStateStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        lease_seconds: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.lease = timedelta(
            seconds=lease_seconds if lease_seconds is not None else settings.PROCESSING_LEASE_SECONDS
        )
        self.max_attempts = max_attempts if max_attempts is not None else settings.ITEM_MAX_ATTEMPTS

    def _claimable(self, now):
        return or_(
            ProcessingRecord.status == STATUS_PENDING,
            and_(
                ProcessingRecord.status == STATUS_PROCESSING,
                ProcessingRecord.lease_expires_at.is_not(None),
                ProcessingRecord.lease_expires_at <= now,
            ),
        )

    # -------------------------------------------------------------------------
    # Intake
    # -------------------------------------------------------------------------
    def record_pending(self, item: CollectedItem) -> bool:
        """Store the raw payload and a pending record; False when the item is already known."""
        with self.session_factory() as db:
            raw = dialect_insert(db, RawItem).values(
                item_id=item.id,
                source=item.source,
                payload=item.to_transport(),
                collected_at=item.collected_at,
            )
            db.execute(raw.on_conflict_do_nothing(index_elements=["item_id"]))

            record = dialect_insert(db, ProcessingRecord).values(
                item_id=item.id,
                source=item.source,
                status=STATUS_PENDING,
                attempts=0,
                collected_at=item.collected_at,
            )
            result = db.execute(record.on_conflict_do_nothing(index_elements=["item_id"]))
            db.commit()
        return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Claim / complete / release
    # -------------------------------------------------------------------------
    def claim(self, item_id: str, worker_id: str) -> bool:
        """Atomically move an item to ``processing``; exactly one concurrent caller wins."""
        now = utcnow()
        stmt = (
            update(ProcessingRecord)
            .where(ProcessingRecord.item_id == item_id, self._claimable(now))
            .values(
                status=STATUS_PROCESSING,
                worker_id=worker_id,
                claimed_at=now,
                lease_expires_at=now + self.lease,
                attempts=ProcessingRecord.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as db:
            result = db.execute(stmt)
            db.commit()
        return result.rowcount == 1

    def complete(self, item_id: str, worker_id: str, status: str, error: Optional[str] = None) -> bool:
        """Move a claimed item to a terminal status. False if the claim was lost."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status}")

        now = utcnow()
        stmt = (
            update(ProcessingRecord)
            .where(
                ProcessingRecord.item_id == item_id,
                ProcessingRecord.status == STATUS_PROCESSING,
                ProcessingRecord.worker_id == worker_id,
            )
            .values(status=status, error=error, processed_at=now, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as db:
            result = db.execute(stmt)
            db.commit()

        if result.rowcount != 1:
            log.warning(f"Item {item_id}: claim by {worker_id} lost before completion")
            return False
        return True

    def release(self, item_id: str, worker_id: str, error: str) -> Optional[str]:
        """Give back a claim after a retryable failure.

        The lease is expired immediately so the next claim succeeds. Once the
        attempt budget is spent the item ends in ``error``. Returns the new
        status, or None when the caller no longer held the claim.
        """
        now = utcnow()
        owned = and_(
            ProcessingRecord.item_id == item_id,
            ProcessingRecord.status == STATUS_PROCESSING,
            ProcessingRecord.worker_id == worker_id,
        )
        exhausted = (
            update(ProcessingRecord)
            .where(owned, ProcessingRecord.attempts >= self.max_attempts)
            .values(status=STATUS_ERROR, error=error, processed_at=now, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        retry = (
            update(ProcessingRecord)
            .where(owned)
            .values(error=error, worker_id=None, lease_expires_at=now - timedelta(seconds=1))
            .execution_options(synchronize_session=False)
        )

        with self.session_factory() as db:
            if db.execute(exhausted).rowcount == 1:
                db.commit()
                log.error(f"Item {item_id} failed after {self.max_attempts} attempts: {error}")
                return STATUS_ERROR
            released = db.execute(retry).rowcount == 1
            db.commit()

        if not released:
            return None
        log.warning(f"Item {item_id} released for retry: {error}")
        return STATUS_PROCESSING

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------
    def claimable_ids(self, limit: int = 500, source: Optional[str] = None) -> List[str]:
        now = utcnow()
        stmt = select(ProcessingRecord.item_id).where(self._claimable(now))
        if source:
            stmt = stmt.where(ProcessingRecord.source == source)
        stmt = stmt.order_by(ProcessingRecord.collected_at.asc()).limit(limit)
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    def recover_stale(self) -> int:
        """Sweep items left in ``processing`` by a crashed run.

        Items whose attempt budget is spent become ``error``; the rest stay
        claimable and are counted.
        """
        now = utcnow()
        expired = and_(
            ProcessingRecord.status == STATUS_PROCESSING,
            ProcessingRecord.lease_expires_at.is_not(None),
            ProcessingRecord.lease_expires_at <= now,
        )
        give_up = (
            update(ProcessingRecord)
            .where(expired, ProcessingRecord.attempts >= self.max_attempts)
            .values(
                status=STATUS_ERROR,
                error="abandoned: lease expired after final attempt",
                processed_at=now,
                lease_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as db:
            abandoned = db.execute(give_up).rowcount
            db.commit()
            stale = db.execute(select(func.count()).select_from(ProcessingRecord).where(expired)).scalar() or 0

        if abandoned or stale:
            log.warning(f"Recovery sweep: {stale} stale items reclaimable, {abandoned} marked error")
        return stale

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------
    def get(self, item_id: str) -> Optional[ProcessingRecord]:
        with self.session_factory() as db:
            return db.get(ProcessingRecord, item_id)

    def load_item(self, item_id: str) -> Optional[CollectedItem]:
        with self.session_factory() as db:
            raw = db.get(RawItem, item_id)
            if raw is None:
                return None
            return CollectedItem.from_transport(raw.payload)

    def status_counts(self, source: Optional[str] = None) -> Dict[str, int]:
        stmt = select(ProcessingRecord.status, func.count()).group_by(ProcessingRecord.status)
        if source:
            stmt = stmt.where(ProcessingRecord.source == source)
        with self.session_factory() as db:
            return {status: count for status, count in db.execute(stmt).all()}
