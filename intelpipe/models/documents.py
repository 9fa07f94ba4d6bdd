"""Processed intelligence: stored items and their extracted entities."""

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from intelpipe.models.base import Base, JSONType


class IntelItem(Base):
    """Processed item document, upserted by id."""

    __tablename__ = "intel_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    source: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    source_url: Mapped[str] = mapped_column(String, nullable=False, default="")

    title: Mapped[str] = mapped_column(String, nullable=False, default="")
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # dict for structured items, str for text items
    content: Mapped[dict | str | None] = mapped_column(JSONType, nullable=True)
    content_type: Mapped[str] = mapped_column(String(30), nullable=False)

    # "metadata" is reserved by SQLAlchemy; keep the column name with a safe attribute.
    meta: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)

    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    entity_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    collected_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    processed_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_intel_items_source_collected", "source", "collected_at"),)


class ExtractedEntityRecord(Base):
    """Entity occurrence in one item; (entity_type, value) across items forms the co-occurrence graph."""

    __tablename__ = "entities"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    item_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    value: Mapped[str] = mapped_column(String(500), nullable=False, index=True)

    context: Mapped[str] = mapped_column(Text, nullable=False, default="")

    enrichment: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    enrichment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="not_applicable")
    enrichment_provider: Mapped[str | None] = mapped_column(String(100), nullable=True)
    enrichment_error: Mapped[str | None] = mapped_column(String, nullable=True)
    enrichment_expires_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Copied from the item so time-window entity queries stay on one index
    collected_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    created_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_entities_type_value_collected", "entity_type", "value", "collected_at"),)
