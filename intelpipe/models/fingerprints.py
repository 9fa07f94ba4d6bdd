"""Shared dedup window: every fingerprint any worker has seen, in arrival order."""

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from intelpipe.models.base import Base, SequenceType


class SeenFingerprint(Base):
    __tablename__ = "seen_fingerprints"

    seq: Mapped[int] = mapped_column(SequenceType, primary_key=True, autoincrement=True)

    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    # SimHash signature as fixed-width hex
    signature: Mapped[str] = mapped_column(String(32), nullable=False)

    item_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    source: Mapped[str] = mapped_column(String(200), nullable=False)

    seen_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
