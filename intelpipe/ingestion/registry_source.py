"""Certificate transparency collector backed by crt.sh."""

from __future__ import annotations

from typing import Any, Dict, List

from intelpipe.core.errors import ConfigError, SourceError
from intelpipe.core.logging import get_logger
from intelpipe.schemas.config import SourceConfig
from intelpipe.schemas.items import CollectedItem, ContentType
from .base import BaseCollector

log = get_logger("ingestion.crtsh")

CRTSH_URL = "https://crt.sh/"


class CrtShCollector(BaseCollector):
    """Lists certificates issued for a domain and its subdomains.

    Each certificate log entry becomes one item whose text is the set of
    names on the certificate, so lookalike hostnames reach extraction.
    """

    type = "crtsh"

    async def collect(self, source_config: SourceConfig) -> List[CollectedItem]:
        domain = (source_config.query or "").strip().lower()
        if not domain:
            raise ConfigError(f"source '{source_config.name}': crtsh requires a domain in 'query'")

        endpoint = source_config.endpoint or CRTSH_URL
        pattern = domain if domain.startswith("%") else f"%.{domain}"
        rows = await self._get_json(endpoint, params={"q": pattern, "output": "json"})
        if not isinstance(rows, list):
            raise SourceError(source_config.name, f"unexpected crt.sh response type {type(rows).__name__}")

        items: List[CollectedItem] = []
        skipped = 0
        for row in rows:
            item = self._to_item(source_config, domain, row)
            if item is None:
                skipped += 1
                continue
            items.append(item)

        self.last_skipped = skipped
        log.info(f"Fetched {len(items)} certificate entries for {domain} (skipped={skipped})")
        return items

    def _to_item(self, config: SourceConfig, domain: str, row: Any) -> CollectedItem | None:
        if not isinstance(row, dict) or row.get("id") is None:
            return None

        names = sorted({n.strip().lower() for n in str(row.get("name_value") or "").splitlines() if n.strip()})
        common_name = str(row.get("common_name") or "").strip().lower()
        if common_name and common_name not in names:
            names.insert(0, common_name)
        if not names:
            return None

        content: Dict[str, Any] = {
            "title": f"Certificate issued for {common_name or names[0]}",
            "description": " ".join(names),
            "names": names,
            "issuer": row.get("issuer_name"),
            "not_before": row.get("not_before"),
            "not_after": row.get("not_after"),
            "serial_number": row.get("serial_number"),
        }
        return CollectedItem.create(
            source=config.name,
            natural_key=str(row["id"]),
            content=content,
            content_type=ContentType.STRUCTURED,
            source_url=f"https://crt.sh/?id={row['id']}",
            metadata={"query": domain, "entry_timestamp": row.get("entry_timestamp")},
        )
