"""Enrichment lookups cached per (entity type, value) with a provider-specific TTL."""

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from intelpipe.models.base import Base, JSONType


class EnrichmentCacheEntry(Base):
    __tablename__ = "enrichment_cache"

    entity_type: Mapped[str] = mapped_column(String(30), primary_key=True)
    value: Mapped[str] = mapped_column(String(500), primary_key=True)

    provider: Mapped[str] = mapped_column(String(100), nullable=False)

    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    fetched_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    expires_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
