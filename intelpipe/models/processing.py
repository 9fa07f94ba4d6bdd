"""Per-item pipeline state.

Status only moves forward: pending -> processing -> processed | error | duplicate.
An expired lease lets another worker re-claim a ``processing`` row left
behind by a crashed run.
"""

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from intelpipe.models.base import Base

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"
STATUS_ERROR = "error"
STATUS_DUPLICATE = "duplicate"

TERMINAL_STATUSES = (STATUS_PROCESSED, STATUS_ERROR, STATUS_DUPLICATE)


class ProcessingRecord(Base):
    __tablename__ = "processing_records"

    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    source: Mapped[str] = mapped_column(String(200), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=STATUS_PENDING,
        index=True,
    )

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    worker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    lease_expires_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    error: Mapped[str | None] = mapped_column(String, nullable=True)

    collected_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    claimed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    processed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
