"""Fired alerts. The composite key makes each (item, condition) fire once."""

from sqlalchemy import Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from intelpipe.models.base import Base, JSONType


class NotificationRecord(Base):
    __tablename__ = "notifications"

    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    alert_name: Mapped[str] = mapped_column(String(200), primary_key=True)

    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    subject: Mapped[str] = mapped_column(String(200), nullable=False, default="")

    matched_condition: Mapped[dict] = mapped_column(JSONType, nullable=False)
    evidence: Mapped[str] = mapped_column(Text, nullable=False, default="")

    fired_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delivery_error: Mapped[str | None] = mapped_column(String, nullable=True)
