from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, Field


class EntityOut(BaseModel):
    id: str
    item_id: str
    entity_type: str
    value: str
    context: str
    enrichment: Optional[Dict[str, Any]] = None
    enrichment_status: str
    enrichment_provider: Optional[str] = None
    enrichment_error: Optional[str] = None
    enrichment_expires_at: Optional[datetime] = None
    collected_at: datetime

    class Config:
        from_attributes = True


class IntelItemOut(BaseModel):
    """Stored item document."""

    id: str
    source: str
    source_url: str
    title: str
    text: str
    content_type: str
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias=AliasChoices("meta", "metadata"))
    fingerprint: str
    entity_count: int
    collected_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class IntelItemDetail(IntelItemOut):
    content: Any = None
    entities: list[EntityOut] = []


class ItemsResponse(BaseModel):
    request_id: str
    api_latency_ms: int
    count: int
    data: list[IntelItemOut]


class RelatedEntityOut(BaseModel):
    entity_type: str
    value: str
    shared_items: int
    depth: int


class RelatedEntitiesResponse(BaseModel):
    entity_type: str
    value: str
    related: list[RelatedEntityOut]


class HealthResponse(BaseModel):
    database: str
    last_run_status: str | None
    processing: Dict[str, int] = {}


class RunOut(BaseModel):
    run_id: str
    status: str
    sources: str
    items_collected: int
    items_processed: int
    items_failed: int
    error_message: str | None = None
    summary: Optional[Dict[str, Any]] = None
    started_at: datetime
    ended_at: datetime | None


class SourceStateOut(BaseModel):
    source_name: str
    enabled: bool = True
    last_collected_at: datetime | None = None
    last_success_at: datetime | None = None
    last_status: str | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    items_collected_total: int = 0
    stored_items: int = 0


class StatsResponse(BaseModel):
    items_by_source: Dict[str, int]
    entities_by_type: Dict[str, int]
    processing: Dict[str, int]
    notifications: int
    last_run: Optional[RunOut] = None


class NotificationOut(BaseModel):
    item_id: str
    alert_name: str
    severity: str
    subject: str
    evidence: str
    matched_condition: Dict[str, Any]
    fired_at: datetime
    delivered: bool
    delivery_error: str | None = None

    class Config:
        from_attributes = True


class PipelineRunResponse(BaseModel):
    success: bool
    run_id: str | None
    status: str
    collected: int
    deduplicated: int
    malformed: int
    processed: int
    errors: int
    notifications: int
    sources: Dict[str, Any]
