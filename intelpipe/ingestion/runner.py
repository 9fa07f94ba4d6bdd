"""Orchestration logic for source collection."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from intelpipe.core.config import settings
from intelpipe.core.errors import TransientSourceError
from intelpipe.core.logging import get_logger
from intelpipe.schemas.items import CollectedItem
from .base import BaseCollector

log = get_logger("ingestion.runner")


@dataclass
class CollectionResult:
    source: str
    status: str = "success"  # success | failure | skipped | cancelled
    items: List[CollectedItem] = field(default_factory=list)
    skipped_records: int = 0
    error: Optional[str] = None


class IngestionRunner:
    """Runs collectors concurrently; one failing source never affects the others."""

    def __init__(
        self,
        collectors: List[BaseCollector],
        *,
        source_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_delay: float = 1.0,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.collectors = collectors
        self.source_timeout = source_timeout if source_timeout is not None else settings.SOURCE_TIMEOUT_SECONDS
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.SOURCE_MAX_ATTEMPTS)
        self.retry_delay = retry_delay
        self.stop_event = stop_event or asyncio.Event()

    async def run(self) -> Dict[str, CollectionResult]:
        results = await asyncio.gather(*(self._run_one(c) for c in self.collectors))
        return {result.source: result for result in results}

    async def _run_one(self, collector: BaseCollector) -> CollectionResult:
        result = CollectionResult(source=collector.name)
        if self.stop_event.is_set():
            result.status = "cancelled"
            return result

        try:
            if not await collector.health_check():
                result.status = "skipped"
                result.error = "health check failed"
                log.warning(f"Source={collector.name} skipped: health check failed")
                return result

            for attempt in range(1, self.max_attempts + 1):
                try:
                    result.items = await asyncio.wait_for(
                        collector.collect(collector.config), timeout=self.source_timeout
                    )
                    result.skipped_records = collector.last_skipped
                    break
                except (TransientSourceError, asyncio.TimeoutError) as exc:
                    message = str(exc) or f"timed out after {self.source_timeout}s"
                    if attempt == self.max_attempts or self.stop_event.is_set():
                        if isinstance(exc, TransientSourceError):
                            raise
                        raise TransientSourceError(collector.name, message) from exc
                    log.warning(f"Source={collector.name} attempt {attempt} failed, retrying: {message}")
                    await asyncio.sleep(self.retry_delay * attempt)
        except Exception as exc:  # noqa: BLE001
            result.status = "failure"
            result.error = f"{type(exc).__name__}: {exc}"
            log.error(f"Source={collector.name} failed: {result.error}")
            return result
        finally:
            await collector.aclose()

        log.info(f"Source={collector.name} collected={len(result.items)} skipped={result.skipped_records}")
        return result
