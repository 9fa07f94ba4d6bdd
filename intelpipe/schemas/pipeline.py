"""Gate decisions, quality metrics and cycle summaries."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class GateOutcome(str, Enum):
    OK = "ok"
    MALFORMED = "malformed"
    EMPTY = "empty"
    EXACT_DUPLICATE = "exact_duplicate"
    NEAR_DUPLICATE = "near_duplicate"
    ACCEPTED = "accepted"


class GateDecision(BaseModel):
    outcome: GateOutcome
    reason: str = ""
    matched_item_id: Optional[str] = None
    distance: Optional[int] = None

    @property
    def is_duplicate(self) -> bool:
        return self.outcome in (GateOutcome.EXACT_DUPLICATE, GateOutcome.NEAR_DUPLICATE)


class QualityMetrics(BaseModel):
    total: int = 0
    accepted: int = 0
    duplicates: int = 0
    near_duplicates: int = 0
    malformed: int = 0
    empty: int = 0

    def record(self, decision: GateDecision) -> None:
        outcome = decision.outcome
        if outcome == GateOutcome.OK:
            # passed validation; counted once classified
            return
        self.total += 1
        if outcome == GateOutcome.ACCEPTED:
            self.accepted += 1
        elif outcome == GateOutcome.EXACT_DUPLICATE:
            self.duplicates += 1
        elif outcome == GateOutcome.NEAR_DUPLICATE:
            self.duplicates += 1
            self.near_duplicates += 1
        elif outcome == GateOutcome.MALFORMED:
            self.malformed += 1
        elif outcome == GateOutcome.EMPTY:
            self.empty += 1


class SourceSummary(BaseModel):
    status: str = "ok"  # ok | error | skipped | disabled | cancelled
    collected: int = 0
    duplicates: int = 0
    malformed: int = 0
    processed: int = 0
    errors: int = 0
    skipped_records: int = 0
    error: Optional[str] = None


class CycleSummary(BaseModel):
    run_id: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    collected: int = 0
    deduplicated: int = 0
    malformed: int = 0
    processed: int = 0
    errors: int = 0
    notifications: int = 0
    degraded_enrichments: int = 0
    cancelled: bool = False
    sources: Dict[str, SourceSummary] = Field(default_factory=dict)
    quality: QualityMetrics = Field(default_factory=QualityMetrics)

    def source(self, name: str) -> SourceSummary:
        if name not in self.sources:
            self.sources[name] = SourceSummary()
        return self.sources[name]

    @property
    def status(self) -> str:
        if any(s.status == "error" for s in self.sources.values()) or self.errors:
            return "partial" if self.processed or self.collected else "failure"
        return "success"
