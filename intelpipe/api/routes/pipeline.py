"""Pipeline routes - Trigger collection cycles."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import sessionmaker

from intelpipe.api.deps import get_alert_conditions, get_session_factory, get_source_configs
from intelpipe.core.logging import get_logger
from intelpipe.schemas.api import PipelineRunResponse
from intelpipe.schemas.config import AlertCondition, SourceConfig
from intelpipe.services.pipeline_service import PipelineService

router = APIRouter(prefix="/pipeline", tags=["pipeline"])
log = get_logger("pipeline_routes")


@router.post("/run", response_model=PipelineRunResponse)
async def trigger_cycle(
    source: Optional[str] = Query(None, description="Run a single configured source"),
    factory: sessionmaker = Depends(get_session_factory),
    configs: List[SourceConfig] = Depends(get_source_configs),
    conditions: List[AlertCondition] = Depends(get_alert_conditions),
):
    """
    Run one pipeline cycle now.

    Collects every enabled source (or only `source`), then gates, extracts,
    enriches, stores and evaluates alerts for the new items. Per-source
    failures are reported in `sources` and never abort the cycle.
    """
    if source:
        configs = [c for c in configs if c.name == source]
        if not configs:
            raise HTTPException(status_code=404, detail=f"Unknown source: {source}")
        configs = [c.model_copy(update={"enabled": True}) for c in configs]

    log.info(f"Pipeline cycle triggered for {source or 'all sources'}")
    service = PipelineService(factory, alert_conditions=conditions)
    try:
        summary = await service.run_cycle(configs)
    finally:
        await service.aclose()

    return PipelineRunResponse(
        success=summary.status == "success",
        run_id=summary.run_id,
        status=summary.status,
        collected=summary.collected,
        deduplicated=summary.deduplicated,
        malformed=summary.malformed,
        processed=summary.processed,
        errors=summary.errors,
        notifications=summary.notifications,
        sources={name: s.model_dump() for name, s in summary.sources.items()},
    )
