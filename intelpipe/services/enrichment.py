"""Entity enrichment with a shared TTL cache.

A fresh cache entry short-circuits the provider. When a provider fails the
entity keeps the stale cached payload if there is one, otherwise it is
stored without enrichment and the error is recorded on the entity.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

import httpx
from sqlalchemy.orm import sessionmaker

from intelpipe.core.config import settings
from intelpipe.core.db import as_utc, dialect_insert, utcnow
from intelpipe.core.errors import EnrichmentError
from intelpipe.core.logging import get_logger
from intelpipe.models.enrichment import EnrichmentCacheEntry
from intelpipe.schemas.entities import EnrichmentStatus, EntityType, ExtractedEntity

log = get_logger("enrichment")

RDAP_BASE_URL = "https://rdap.org"


class Enricher(ABC):
    """One enrichment provider for one or more entity types."""

    name: str
    entity_types: tuple[str, ...]
    ttl: timedelta

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.ENRICHMENT_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = False

    @abstractmethod
    async def lookup(self, value: str) -> Dict[str, Any]:
        """Return the provider payload for ``value``; raise EnrichmentError on failure."""

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": settings.USER_AGENT, "Accept": "application/rdap+json"},
            )
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class _RdapEnricher(Enricher):
    path: str

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        base_url: str = RDAP_BASE_URL,
    ):
        super().__init__(client, timeout)
        self.base_url = base_url.rstrip("/")

    async def lookup(self, value: str) -> Dict[str, Any]:
        url = f"{self.base_url}/{self.path}/{value}"
        try:
            resp = await self._get_client().get(url, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise EnrichmentError(self.name, f"{type(exc).__name__}: {exc}") from exc

        if resp.status_code == 404:
            return {"found": False}
        if resp.status_code >= 400:
            raise EnrichmentError(self.name, f"HTTP {resp.status_code} for {value}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise EnrichmentError(self.name, f"invalid JSON for {value}") from exc
        try:
            summary = self.summarize(data)
        except (AttributeError, TypeError, KeyError, ValueError) as exc:
            raise EnrichmentError(self.name, f"unexpected response shape for {value}: {exc}") from exc
        return {"found": True, **summary}

    @abstractmethod
    def summarize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Reduce an RDAP response to the fields stored on the entity."""


def _events(data: Dict[str, Any]) -> Dict[str, str]:
    return {
        e["eventAction"]: e["eventDate"]
        for e in data.get("events", [])
        if isinstance(e, dict) and e.get("eventAction") and e.get("eventDate")
    }


def _entity_name(entity: Dict[str, Any]) -> Optional[str]:
    # vCard: ["vcard", [["version", {}, "text", "4.0"], ["fn", {}, "text", "Example Inc"], ...]]
    vcard = entity.get("vcardArray")
    if isinstance(vcard, list) and len(vcard) == 2 and isinstance(vcard[1], list):
        for prop in vcard[1]:
            if isinstance(prop, list) and len(prop) >= 4 and prop[0] in ("fn", "org") and prop[3]:
                return str(prop[3])
    return entity.get("handle")


def _entities_by_role(data: Dict[str, Any]) -> Dict[str, str]:
    found: Dict[str, str] = {}
    for entity in data.get("entities", []):
        if not isinstance(entity, dict):
            continue
        name = _entity_name(entity)
        for role in entity.get("roles", []):
            if name and role not in found:
                found[role] = name
    return found


class RdapDomainEnricher(_RdapEnricher):
    """Registration data for domains; changes rarely."""

    name = "rdap-domain"
    entity_types = (EntityType.DOMAIN.value,)
    ttl = timedelta(days=7)
    path = "domain"

    def summarize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        events = _events(data)
        roles = _entities_by_role(data)
        return {
            "registrar": roles.get("registrar"),
            "registrant": roles.get("registrant"),
            "registered_at": events.get("registration"),
            "expires_at": events.get("expiration"),
            "last_changed_at": events.get("last changed"),
            "nameservers": sorted(
                ns["ldhName"].lower() for ns in data.get("nameservers", []) if isinstance(ns, dict) and ns.get("ldhName")
            ),
            "status": data.get("status", []),
        }


class RdapIpEnricher(_RdapEnricher):
    """Network ownership for IP addresses; reassigned more often than domains."""

    name = "rdap-ip"
    entity_types = (EntityType.IP.value,)
    ttl = timedelta(hours=12)
    path = "ip"

    def summarize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        roles = _entities_by_role(data)
        return {
            "network_name": data.get("name"),
            "handle": data.get("handle"),
            "country": data.get("country"),
            "start_address": data.get("startAddress"),
            "end_address": data.get("endAddress"),
            "type": data.get("type"),
            "organization": roles.get("registrant") or roles.get("administrative"),
            "abuse_contact": roles.get("abuse"),
        }


class EnrichmentCache:
    """Single-row reads and upserts on ``enrichment_cache``."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, entity_type: str, value: str) -> Optional[EnrichmentCacheEntry]:
        with self.session_factory() as db:
            return db.get(EnrichmentCacheEntry, (entity_type, value))

    def put(self, entity_type: str, value: str, provider: str, payload: Dict[str, Any], ttl: timedelta):
        now = utcnow()
        expires_at = now + ttl
        with self.session_factory() as db:
            stmt = dialect_insert(db, EnrichmentCacheEntry).values(
                entity_type=entity_type,
                value=value,
                provider=provider,
                payload=payload,
                fetched_at=now,
                expires_at=expires_at,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["entity_type", "value"],
                set_={
                    "provider": stmt.excluded.provider,
                    "payload": stmt.excluded.payload,
                    "fetched_at": stmt.excluded.fetched_at,
                    "expires_at": stmt.excluded.expires_at,
                    "updated_at": now,
                },
            )
            db.execute(stmt)
            db.commit()
        return expires_at


class EnrichmentService:
    def __init__(
        self,
        session_factory: sessionmaker,
        enrichers: Optional[Iterable[Enricher]] = None,
        *,
        enabled: Optional[bool] = None,
        timeout: Optional[float] = None,
    ):
        self.cache = EnrichmentCache(session_factory)
        self.enabled = enabled if enabled is not None else settings.ENRICHMENT_ENABLED
        self.timeout = timeout if timeout is not None else settings.ENRICHMENT_TIMEOUT_SECONDS
        if enrichers is None:
            enrichers = [RdapDomainEnricher(), RdapIpEnricher()]
        self.enrichers: Dict[str, Enricher] = {}
        for enricher in enrichers:
            for entity_type in enricher.entity_types:
                self.enrichers[entity_type] = enricher
        self.degraded_count = 0

    async def enrich(self, entities: List[ExtractedEntity]) -> List[ExtractedEntity]:
        return [await self.enrich_one(entity) for entity in entities]

    async def enrich_one(self, entity: ExtractedEntity) -> ExtractedEntity:
        enricher = self.enrichers.get(entity.type) if self.enabled else None
        if enricher is None:
            return entity.model_copy(update={"enrichment_status": EnrichmentStatus.NOT_APPLICABLE.value})

        now = utcnow()
        cached = self.cache.get(entity.type, entity.value)
        if cached is not None and as_utc(cached.expires_at) > now:
            return entity.model_copy(
                update={
                    "enrichment": cached.payload,
                    "enrichment_status": EnrichmentStatus.CACHED.value,
                    "enrichment_provider": cached.provider,
                    "enrichment_expires_at": as_utc(cached.expires_at),
                }
            )

        try:
            payload = await asyncio.wait_for(enricher.lookup(entity.value), timeout=self.timeout)
        except (EnrichmentError, asyncio.TimeoutError) as exc:
            error = str(exc) or f"{enricher.name}: timed out after {self.timeout}s"
            self.degraded_count += 1
            if cached is not None:
                log.warning(f"Enrichment of {entity.type}={entity.value} failed, using stale cache: {error}")
                return entity.model_copy(
                    update={
                        "enrichment": cached.payload,
                        "enrichment_status": EnrichmentStatus.STALE.value,
                        "enrichment_provider": cached.provider,
                        "enrichment_error": error,
                        "enrichment_expires_at": as_utc(cached.expires_at),
                    }
                )
            log.warning(f"Enrichment of {entity.type}={entity.value} failed: {error}")
            return entity.model_copy(
                update={
                    "enrichment": None,
                    "enrichment_status": EnrichmentStatus.FAILED.value,
                    "enrichment_provider": enricher.name,
                    "enrichment_error": error,
                }
            )

        expires_at = self.cache.put(entity.type, entity.value, enricher.name, payload, enricher.ttl)
        return entity.model_copy(
            update={
                "enrichment": payload,
                "enrichment_status": EnrichmentStatus.ENRICHED.value,
                "enrichment_provider": enricher.name,
                "enrichment_expires_at": expires_at,
            }
        )

    async def aclose(self) -> None:
        for enricher in set(self.enrichers.values()):
            await enricher.aclose()
