from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel


class Notification(BaseModel):
    """Alert event produced once per (item, condition) pair."""

    alert_name: str
    severity: str
    subject: str = ""
    matched_item_id: str
    matched_condition: Dict[str, Any]
    evidence: str
    timestamp: datetime

    class Config:
        from_attributes = True
