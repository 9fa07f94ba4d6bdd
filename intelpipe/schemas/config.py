"""Human-edited configuration: sources and alert conditions."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from intelpipe.schemas.entities import EntityType

Severity = Literal["low", "medium", "high", "critical"]


class SourceConfig(BaseModel):
    """One collection source; ``type`` selects the collector implementation."""

    name: str = Field(min_length=1)
    type: str = Field(min_length=1)
    endpoint: str = ""
    query: Optional[str] = None
    credentials_ref: Optional[str] = Field(
        default=None, description="Name of the environment variable holding the credential"
    )
    rate_limit: float = Field(default=1.0, ge=0, description="Max requests per second (0 = unlimited)")
    enabled: bool = True
    interval_seconds: Optional[int] = Field(default=None, ge=1)
    options: Dict[str, Any] = Field(default_factory=dict)

    @property
    def min_interval(self) -> float:
        return 1.0 / self.rate_limit if self.rate_limit > 0 else 0.0


class AlertCondition(BaseModel):
    """A standing subscription matched against every processed item."""

    name: str = Field(min_length=1)
    subject: str = ""
    entity_filters: Dict[EntityType, List[str]] = Field(default_factory=dict)
    keyword_filters: List[str] = Field(default_factory=list)
    severity: Severity = "medium"
    enabled: bool = True

    class Config:
        use_enum_values = True

    @field_validator("entity_filters")
    @classmethod
    def _lowercase_patterns(cls, value: Dict[Any, List[str]]) -> Dict[Any, List[str]]:
        return {key: [p.strip().lower() for p in patterns if p.strip()] for key, patterns in value.items()}

    @field_validator("keyword_filters")
    @classmethod
    def _strip_keywords(cls, value: List[str]) -> List[str]:
        return [k.strip() for k in value if k.strip()]
