"""Alert routes - configured conditions and fired notifications."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from intelpipe.api.deps import get_alert_conditions, get_db
from intelpipe.schemas.api import NotificationOut
from intelpipe.schemas.config import AlertCondition
from intelpipe.services.data_service import DataService

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("/conditions", response_model=list[AlertCondition])
def list_conditions(conditions: List[AlertCondition] = Depends(get_alert_conditions)):
    """Standing alert conditions as loaded from configuration."""
    return conditions


@router.get("/notifications", response_model=list[NotificationOut])
def list_notifications(
    alert_name: Optional[str] = Query(None, description="Filter by alert condition name"),
    item_id: Optional[str] = Query(None, description="Filter by matched item"),
    delivered: Optional[bool] = Query(None, description="Filter by delivery state"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Fired notifications, newest first."""
    service = DataService(db)
    records = service.get_notifications(
        alert_name=alert_name, item_id=item_id, delivered=delivered, limit=limit, offset=offset
    )
    return [NotificationOut.model_validate(r) for r in records]
