"""Data Service - read-only queries behind the stats, health and alert endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from intelpipe.core.logging import get_logger
from intelpipe.models.alerts import NotificationRecord
from intelpipe.models.documents import IntelItem
from intelpipe.models.processing import ProcessingRecord
from intelpipe.models.runs import PipelineRun
from intelpipe.models.source_state import SourceState
from intelpipe.schemas.config import SourceConfig

log = get_logger("data_service")


class DataService:
    """Handles query operations for the API - reads from DB only, no writes."""

    def __init__(self, db: Session):
        self.db = db

    # -------------------------------------------------------------------------
    # Pipeline runs
    # -------------------------------------------------------------------------
    def get_runs(self, status: Optional[str] = None, limit: int = 10) -> List[PipelineRun]:
        stmt = select(PipelineRun)
        if status:
            stmt = stmt.where(PipelineRun.status == status)
        stmt = stmt.order_by(PipelineRun.started_at.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def get_latest_run(self) -> Optional[PipelineRun]:
        stmt = select(PipelineRun).order_by(PipelineRun.started_at.desc()).limit(1)
        return self.db.execute(stmt).scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Sources
    # -------------------------------------------------------------------------
    def get_sources_summary(self, configs: List[SourceConfig]) -> List[Dict[str, Any]]:
        """Scheduling state per configured source, plus sources only seen in the past."""
        states = {s.source_name: s for s in self.db.execute(select(SourceState)).scalars().all()}
        stored = dict(
            self.db.execute(select(IntelItem.source, func.count()).group_by(IntelItem.source)).all()
        )

        names = [c.name for c in configs] + sorted(set(states) - {c.name for c in configs})
        enabled = {c.name: c.enabled for c in configs}

        summary = []
        for name in names:
            state = states.get(name)
            summary.append({
                "source_name": name,
                "enabled": enabled.get(name, False),
                "last_collected_at": state.last_collected_at if state else None,
                "last_success_at": state.last_success_at if state else None,
                "last_status": state.last_status if state else None,
                "last_error": state.last_error if state else None,
                "consecutive_failures": state.consecutive_failures if state else 0,
                "items_collected_total": state.items_collected_total if state else 0,
                "stored_items": stored.get(name, 0),
            })
        return summary

    # -------------------------------------------------------------------------
    # Processing state
    # -------------------------------------------------------------------------
    def get_processing_counts(self) -> Dict[str, int]:
        stmt = select(ProcessingRecord.status, func.count()).group_by(ProcessingRecord.status)
        return {status: count for status, count in self.db.execute(stmt).all()}

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------
    def get_notifications(
        self,
        alert_name: Optional[str] = None,
        item_id: Optional[str] = None,
        delivered: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[NotificationRecord]:
        stmt = select(NotificationRecord)
        if alert_name:
            stmt = stmt.where(NotificationRecord.alert_name == alert_name)
        if item_id:
            stmt = stmt.where(NotificationRecord.item_id == item_id)
        if delivered is not None:
            stmt = stmt.where(NotificationRecord.delivered.is_(delivered))
        stmt = stmt.order_by(NotificationRecord.fired_at.desc()).limit(limit).offset(offset)
        return list(self.db.execute(stmt).scalars().all())

    def get_notification_count(self) -> int:
        return self.db.execute(select(func.count()).select_from(NotificationRecord)).scalar() or 0
