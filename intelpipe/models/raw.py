"""Raw item store: collected payloads kept as-is for processing and replay."""

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from intelpipe.models.base import Base, JSONType


class RawItem(Base):
    __tablename__ = "raw_items"

    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    source: Mapped[str] = mapped_column(String(200), nullable=False, index=True)

    # CollectedItem transport dict
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    collected_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    ingested_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
