"""Per-source scheduling state: powers interval scheduling and failure back-off."""

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from intelpipe.models.base import Base


class SourceState(Base):
    __tablename__ = "source_state"

    source_name: Mapped[str] = mapped_column(
        String(200),
        primary_key=True,
    )

    last_collected_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_success_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    last_error: Mapped[str | None] = mapped_column(String, nullable=True)

    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    items_collected_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
