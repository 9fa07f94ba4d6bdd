"""Extracted entity schemas."""

from __future__ import annotations

import hashlib
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel


class EntityType(str, Enum):
    IP = "ip"
    DOMAIN = "domain"
    URL = "url"
    EMAIL = "email"
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    CVE = "cve"
    ORGANIZATION = "organization"
    PERSON = "person"


class EnrichmentStatus(str, Enum):
    ENRICHED = "enriched"
    CACHED = "cached"
    STALE = "stale"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"


DEGRADED_STATUSES = {EnrichmentStatus.STALE.value, EnrichmentStatus.FAILED.value}


def make_entity_id(item_id: str, entity_type: str, value: str) -> str:
    raw = f"{item_id}\x1f{entity_type}\x1f{value}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


class ExtractedEntity(BaseModel):
    type: EntityType
    value: str
    item_id: str
    context: str = ""
    enrichment: Optional[Dict[str, Any]] = None
    enrichment_status: EnrichmentStatus = EnrichmentStatus.NOT_APPLICABLE
    enrichment_provider: Optional[str] = None
    enrichment_error: Optional[str] = None
    enrichment_expires_at: Optional[datetime] = None

    class Config:
        use_enum_values = True

    @property
    def id(self) -> str:
        return make_entity_id(self.item_id, self.type, self.value)

    @property
    def key(self) -> tuple[str, str]:
        return (self.type, self.value)

    @property
    def degraded(self) -> bool:
        return self.enrichment_status in DEGRADED_STATUSES


def normalize_value(entity_type: str, value: str) -> str:
    """Normalise a query value the same way extraction does."""
    value = value.strip()
    entity_type = EntityType(entity_type).value
    if entity_type == EntityType.CVE.value:
        return value.upper()
    if entity_type in (EntityType.ORGANIZATION.value, EntityType.PERSON.value):
        return " ".join(value.split())
    if entity_type == EntityType.DOMAIN.value:
        return value.strip(".").lower()
    if entity_type == EntityType.URL.value:
        parts = urlsplit(value)
        return parts._replace(scheme=parts.scheme.lower(), netloc=parts.netloc.lower()).geturl()
    return value.lower()
