"""Generic JSON API collector."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from intelpipe.core.errors import SourceError
from intelpipe.core.logging import get_logger
from intelpipe.schemas.config import SourceConfig
from intelpipe.schemas.items import CollectedItem, ContentType
from .base import BaseCollector

log = get_logger("ingestion.api")


def _dig(payload: Any, path: Optional[str]) -> Any:
    """Follow a dotted path (``data.items``) into a JSON document."""
    if not path:
        return payload
    for part in path.split("."):
        if not isinstance(payload, dict):
            return None
        payload = payload.get(part)
    return payload


class ApiCollector(BaseCollector):
    """Fetches a JSON list of records from an HTTP API.

    Options:
      items_path: dotted path to the record list in the response (default: the response itself)
      id_field:   record field holding the natural key (default ``id``)
      url_field:  record field holding the canonical link (default ``url``)
      params:     extra query parameters
    """

    type = "api"

    async def collect(self, source_config: SourceConfig) -> List[CollectedItem]:
        options = source_config.options
        params: Dict[str, Any] = dict(options.get("params") or {})
        if source_config.query:
            params.setdefault("q", source_config.query)

        payload = await self._get_json(source_config.endpoint, params=params)
        records = _dig(payload, options.get("items_path"))
        if not isinstance(records, list):
            raise SourceError(
                source_config.name,
                f"expected a list at '{options.get('items_path') or '<root>'}', got {type(records).__name__}",
            )

        id_field = options.get("id_field", "id")
        url_field = options.get("url_field", "url")

        items: List[CollectedItem] = []
        skipped = 0
        for record in records:
            if not isinstance(record, dict):
                skipped += 1
                continue
            natural_key = record.get(id_field) or record.get(url_field)
            if natural_key in (None, ""):
                skipped += 1
                continue
            items.append(
                CollectedItem.create(
                    source=source_config.name,
                    natural_key=str(natural_key),
                    content=record,
                    content_type=ContentType.STRUCTURED,
                    source_url=str(record.get(url_field) or ""),
                    metadata={"endpoint": source_config.endpoint},
                )
            )

        if skipped:
            log.warning(f"{source_config.name}: skipped {skipped} malformed records")
        self.last_skipped = skipped
        log.info(f"Fetched {len(items)} records from API {source_config.name}")
        return items
