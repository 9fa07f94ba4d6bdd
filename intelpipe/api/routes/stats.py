"""Stats routes - pipeline observability and collection overview."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from intelpipe.api.deps import get_db, get_source_configs, get_store
from intelpipe.models.runs import PipelineRun
from intelpipe.schemas.api import RunOut, SourceStateOut, StatsResponse
from intelpipe.schemas.config import SourceConfig
from intelpipe.services.data_service import DataService
from intelpipe.services.storage import IntelStore

router = APIRouter(prefix="/stats", tags=["stats"])


def _run_out(run: PipelineRun) -> RunOut:
    return RunOut(
        run_id=str(run.run_id),
        status=run.status,
        sources=run.sources,
        items_collected=run.items_collected,
        items_processed=run.items_processed,
        items_failed=run.items_failed,
        error_message=run.error_message,
        summary=run.meta,
        started_at=run.started_at,
        ended_at=run.ended_at,
    )


@router.get("", response_model=StatsResponse)
def get_stats(
    start: Optional[datetime] = Query(None, description="Window start (ISO-8601)"),
    end: Optional[datetime] = Query(None, description="Window end (ISO-8601)"),
    db: Session = Depends(get_db),
    store: IntelStore = Depends(get_store),
):
    """
    Aggregate counts by source and by entity type over a time window,
    plus the processing backlog and the latest run.
    """
    service = DataService(db)
    last_run = service.get_latest_run()

    return StatsResponse(
        items_by_source=store.count_by_source(start, end),
        entities_by_type=store.count_by_entity_type(start, end),
        processing=service.get_processing_counts(),
        notifications=service.get_notification_count(),
        last_run=_run_out(last_run) if last_run else None,
    )


@router.get("/runs", response_model=list[RunOut])
def get_runs(
    status: Optional[str] = Query(None, description="Filter by status (running, success, partial, failure, cancelled)"),
    limit: int = Query(10, ge=1, le=50, description="Number of runs to return"),
    db: Session = Depends(get_db),
):
    """
    Recent pipeline cycles with their full summaries.

    Use this for monitoring source health and quality metrics.
    """
    service = DataService(db)
    return [_run_out(run) for run in service.get_runs(status=status, limit=limit)]


@router.get("/sources", response_model=list[SourceStateOut])
def get_sources_summary(
    db: Session = Depends(get_db),
    configs: List[SourceConfig] = Depends(get_source_configs),
):
    """
    Per-source scheduling state: last collection, failures, totals.
    """
    service = DataService(db)
    return service.get_sources_summary(configs)
