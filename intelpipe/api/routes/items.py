"""Item routes - stored intelligence by source, by entity and by id."""

import time
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from intelpipe.api.deps import get_store
from intelpipe.schemas.api import EntityOut, IntelItemDetail, IntelItemOut, ItemsResponse
from intelpipe.schemas.entities import EntityType
from intelpipe.services.storage import IntelStore

router = APIRouter(prefix="/items", tags=["items"])


@router.get("", response_model=ItemsResponse)
def list_items(
    source: Optional[str] = Query(None, description="Items collected from this source"),
    entity_type: Optional[EntityType] = Query(None, description="Entity type (with value)"),
    value: Optional[str] = Query(None, description="Entity value (with entity_type)"),
    start: Optional[datetime] = Query(None, description="Collected at or after (ISO-8601)"),
    end: Optional[datetime] = Query(None, description="Collected before (ISO-8601)"),
    limit: int = Query(50, ge=1, le=500, description="Number of records to return (max 500)"),
    offset: int = Query(0, ge=0, description="Number of records to skip"),
    store: IntelStore = Depends(get_store),
):
    """
    Query stored items.

    Either `source` or `entity_type` + `value` is required; both can be
    restricted to a collection time window. Includes request metadata.
    """
    started = time.perf_counter()
    request_id = str(uuid.uuid4())

    if entity_type is not None and value:
        items = store.items_by_entity(entity_type.value, value, start, end, limit=limit, offset=offset)
    elif source:
        items = store.items_by_source(source, start, end, limit=limit, offset=offset)
    else:
        raise HTTPException(status_code=400, detail="Provide 'source' or 'entity_type' and 'value'")

    latency_ms = int((time.perf_counter() - started) * 1000)
    return ItemsResponse(
        request_id=request_id,
        api_latency_ms=latency_ms,
        count=len(items),
        data=[IntelItemOut.model_validate(i) for i in items],
    )


@router.get("/{item_id}", response_model=IntelItemDetail)
def get_item(item_id: str, store: IntelStore = Depends(get_store)):
    """Get a stored item with its extracted entities."""
    item = store.get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")

    detail = IntelItemDetail.model_validate(item)
    detail.entities = [EntityOut.model_validate(e) for e in store.entities_for_item(item_id)]
    return detail
