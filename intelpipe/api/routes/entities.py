"""Entity routes - co-occurrence traversal."""

from fastapi import APIRouter, Depends, Query

from intelpipe.api.deps import get_store
from intelpipe.schemas.api import RelatedEntitiesResponse, RelatedEntityOut
from intelpipe.schemas.entities import EntityType, normalize_value
from intelpipe.services.storage import IntelStore

router = APIRouter(prefix="/entities", tags=["entities"])


@router.get("/related", response_model=RelatedEntitiesResponse)
def related_entities(
    entity_type: EntityType = Query(..., description="Entity type"),
    value: str = Query(..., min_length=1, description="Entity value"),
    depth: int = Query(1, ge=1, le=3, description="Co-occurrence hops"),
    limit: int = Query(50, ge=1, le=500),
    store: IntelStore = Depends(get_store),
):
    """
    Entities that appear in the same items as the given entity.

    `shared_items` counts the items linking each entity to the previous hop.
    """
    related = store.related_entities(entity_type.value, value, depth=depth, limit=limit)
    return RelatedEntitiesResponse(
        entity_type=entity_type.value,
        value=normalize_value(entity_type.value, value),
        related=[RelatedEntityOut(**r) for r in related],
    )
