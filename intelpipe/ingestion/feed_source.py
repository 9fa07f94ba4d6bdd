"""RSS/Atom feed collector."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import feedparser

from intelpipe.core.errors import SourceError
from intelpipe.core.logging import get_logger
from intelpipe.schemas.config import SourceConfig
from intelpipe.schemas.items import CollectedItem, ContentType
from .base import BaseCollector

log = get_logger("ingestion.feed")


class FeedCollector(BaseCollector):
    """Polls an RSS or Atom feed; each entry becomes one structured item."""

    type = "feed"

    async def collect(self, source_config: SourceConfig) -> List[CollectedItem]:
        body = await self._get_text(source_config.endpoint)
        parsed = feedparser.parse(body)

        if parsed.bozo and not parsed.entries:
            raise SourceError(source_config.name, f"unparseable feed: {parsed.get('bozo_exception')}")

        feed_title = parsed.feed.get("title", "")
        items: List[CollectedItem] = []
        skipped = 0
        for entry in parsed.entries:
            item = self._to_item(source_config, entry, feed_title)
            if item is None:
                skipped += 1
                continue
            items.append(item)

        self.last_skipped = skipped
        log.info(f"Fetched {len(items)} entries from feed {source_config.name} (skipped={skipped})")
        return items

    def _to_item(self, config: SourceConfig, entry: Any, feed_title: str) -> Optional[CollectedItem]:
        link = entry.get("link") or ""
        natural_key = entry.get("id") or link
        if not natural_key:
            log.warning(f"Skipping feed entry without id or link in {config.name}")
            return None

        content: Dict[str, Any] = {
            "title": entry.get("title", ""),
            "summary": entry.get("summary", ""),
            "link": link,
            "published": entry.get("published") or entry.get("updated"),
            "author": entry.get("author"),
        }
        metadata = {
            "feed_title": feed_title,
            "tags": [t.get("term") for t in entry.get("tags", []) if t.get("term")],
        }
        return CollectedItem.create(
            source=config.name,
            natural_key=natural_key,
            content=content,
            content_type=ContentType.STRUCTURED,
            source_url=link,
            metadata=metadata,
        )
