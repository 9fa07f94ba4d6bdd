"""Collected item transport model."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from intelpipe.core.fingerprint import canonical_text, content_fingerprint


class ContentType(str, Enum):
    STRUCTURED = "structured"
    TEXT = "text"
    BINARY_REFERENCE = "binary_reference"


def make_item_id(source: str, natural_key: str, fingerprint: str) -> str:
    """Stable identifier: same source, key and content always give the same id."""
    raw = f"{source}\x1f{natural_key}\x1f{fingerprint}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


class CollectedItem(BaseModel):
    """A raw unit of intelligence retrieved from one source.

    Items are immutable. When an upstream entry changes, its fingerprint
    changes and so does its id, so the new version supersedes the old one
    instead of mutating it.
    """

    id: str
    source: str
    source_url: str = ""
    collected_at: datetime
    content: Any
    content_type: ContentType = ContentType.STRUCTURED
    metadata: Dict[str, Any] = Field(default_factory=dict)
    fingerprint: str

    class Config:
        frozen = True
        use_enum_values = True

    @classmethod
    def create(
        cls,
        source: str,
        natural_key: str,
        content: Any,
        content_type: ContentType | str = ContentType.STRUCTURED,
        source_url: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        collected_at: Optional[datetime] = None,
    ) -> "CollectedItem":
        content_type = ContentType(content_type)
        metadata = dict(metadata or {})
        fingerprint = content_fingerprint(canonical_text(content, content_type.value, metadata))
        return cls(
            id=make_item_id(source, natural_key, fingerprint),
            source=source,
            source_url=source_url,
            collected_at=collected_at or datetime.now(timezone.utc),
            content=content,
            content_type=content_type,
            metadata=metadata,
            fingerprint=fingerprint,
        )

    @property
    def text(self) -> str:
        return canonical_text(self.content, self.content_type, self.metadata)

    @property
    def title(self) -> str:
        source = self.content if isinstance(self.content, dict) else self.metadata
        title = source.get("title") if isinstance(source, dict) else None
        return title if isinstance(title, str) else ""

    def to_transport(self) -> Dict[str, Any]:
        """JSON-safe dict used for queueing and the raw item store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_transport(cls, payload: Dict[str, Any]) -> "CollectedItem":
        return cls.model_validate(payload)
