"""End-to-end pipeline cycle: collect, gate, extract, enrich, store, alert."""

from __future__ import annotations

import asyncio
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from intelpipe.core.config import settings
from intelpipe.core.db import SessionLocal, as_utc, utcnow
from intelpipe.core.errors import ConfigError, StorageError
from intelpipe.core.loader import load_alert_conditions
from intelpipe.core.logging import get_logger
from intelpipe.ingestion import build_collector
from intelpipe.ingestion.base import BaseCollector
from intelpipe.ingestion.runner import CollectionResult, IngestionRunner
from intelpipe.models.processing import (
    STATUS_DUPLICATE,
    STATUS_ERROR,
    STATUS_PROCESSED,
)
from intelpipe.models.runs import PipelineRun
from intelpipe.models.source_state import SourceState
from intelpipe.schemas.config import AlertCondition, SourceConfig
from intelpipe.schemas.pipeline import CycleSummary, GateOutcome
from intelpipe.services.alerting import AlertEvaluator, NotificationSink
from intelpipe.services.enrichment import EnrichmentService
from intelpipe.services.extraction import EntityExtractor
from intelpipe.services.quality import QualityGate
from intelpipe.services.state import ProcessingStateStore
from intelpipe.services.storage import IntelStore

log = get_logger("pipeline_service")

MAX_BACKOFF_MULTIPLIER = 32

_RESULT_STATUS = {"success": "ok", "failure": "error", "skipped": "skipped", "cancelled": "cancelled"}


class PipelineService:
    """Runs pipeline cycles against a shared database.

    Collected items are handed to processing only through the raw item and
    processing-record tables, so a failed stage is retried from the store
    and never forces the source to be polled again.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        *,
        gate: Optional[QualityGate] = None,
        state: Optional[ProcessingStateStore] = None,
        extractor: Optional[EntityExtractor] = None,
        enrichment: Optional[EnrichmentService] = None,
        store: Optional[IntelStore] = None,
        alert_conditions: Optional[List[AlertCondition]] = None,
        sinks: Optional[List[NotificationSink]] = None,
        collector_factory: Callable[..., BaseCollector] = build_collector,
        client: Optional[httpx.AsyncClient] = None,
        collector_options: Optional[Dict] = None,
        concurrency: Optional[int] = None,
        batch_limit: Optional[int] = None,
        item_retry_delay: float = 0.5,
        source_retry_delay: float = 1.0,
    ):
        self.session_factory = session_factory or SessionLocal
        self.gate = gate or QualityGate(self.session_factory)
        self.state = state or ProcessingStateStore(self.session_factory)
        self.extractor = extractor or EntityExtractor()
        self.enrichment = enrichment or EnrichmentService(self.session_factory)
        self.store = store or IntelStore(self.session_factory)
        if alert_conditions is None:
            alert_conditions = load_alert_conditions(settings.ALERTS_FILE)
        self.alerts = AlertEvaluator(self.session_factory, alert_conditions, sinks)
        self.collector_factory = collector_factory
        self.client = client
        self.collector_options = collector_options or {}
        self.concurrency = concurrency or settings.PROCESSING_CONCURRENCY
        self.batch_limit = batch_limit or settings.PROCESSING_BATCH_LIMIT
        self.item_retry_delay = item_retry_delay
        self.source_retry_delay = source_retry_delay
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._stop = asyncio.Event()

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------
    def request_stop(self) -> None:
        """Stop launching new work; in-flight items finish."""
        log.info("Stop requested; finishing in-flight work")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def sleep_until_stopped(self, seconds: float) -> None:
        """Sleep, waking early when a stop is requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def due_sources(self, configs: List[SourceConfig], now: Optional[datetime] = None) -> List[SourceConfig]:
        """Enabled sources whose interval (stretched after failures) has elapsed."""
        now = now or utcnow()
        with self.session_factory() as db:
            states = {s.source_name: s for s in db.execute(select(SourceState)).scalars().all()}

        due: List[SourceConfig] = []
        for config in configs:
            if not config.enabled:
                continue
            state = states.get(config.name)
            if state is None or state.last_collected_at is None:
                due.append(config)
                continue
            interval = config.interval_seconds or settings.PIPELINE_INTERVAL_SECONDS
            multiplier = min(2 ** state.consecutive_failures, MAX_BACKOFF_MULTIPLIER)
            if now - as_utc(state.last_collected_at) >= timedelta(seconds=interval * multiplier):
                due.append(config)
        return due

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------
    async def run_cycle(self, source_configs: List[SourceConfig]) -> CycleSummary:
        summary = CycleSummary(started_at=utcnow())
        run = self._start_run(source_configs)
        summary.run_id = str(run.run_id)
        log.info(f"Cycle {summary.run_id} started for {len(source_configs)} sources")

        error: Optional[str] = None
        try:
            self.state.recover_stale()
            self.gate.prune()

            new_ids = await self._collect(source_configs, summary)
            await self._process(new_ids, summary)
            await self.alerts.redeliver_pending()
        except Exception as exc:  # noqa: BLE001
            log.exception(f"Cycle {summary.run_id} aborted: {exc}")
            summary.errors += 1
            error = f"{type(exc).__name__}: {exc}"

        summary.finished_at = utcnow()
        summary.cancelled = self.stopping
        self._finish_run(run.run_id, summary, error)
        log.info(
            f"Cycle {summary.run_id} finished: status={summary.status} collected={summary.collected} "
            f"deduplicated={summary.deduplicated} malformed={summary.malformed} processed={summary.processed} "
            f"errors={summary.errors} notifications={summary.notifications} "
            f"degraded_enrichments={summary.degraded_enrichments}"
        )
        return summary

    async def _collect(self, configs: List[SourceConfig], summary: CycleSummary) -> List[str]:
        collectors: List[BaseCollector] = []
        for config in configs:
            source = summary.source(config.name)
            if not config.enabled:
                source.status = "disabled"
                continue
            try:
                collectors.append(self.collector_factory(config, self.client, **self.collector_options))
            except ConfigError as exc:
                source.status = "error"
                source.error = str(exc)
                source.errors += 1
                summary.errors += 1
                log.error(f"Source={config.name} not started: {exc}")

        runner = IngestionRunner(collectors, retry_delay=self.source_retry_delay, stop_event=self._stop)
        results = await runner.run()

        new_ids: List[str] = []
        for collector in collectors:
            result = results[collector.name]
            new_ids.extend(self._intake(result, summary))
            self._update_source_state(result, summary.source(collector.name).collected)
        return new_ids

    def _intake(self, result: CollectionResult, summary: CycleSummary) -> List[str]:
        """Validate collected items and record the new ones as pending."""
        source = summary.source(result.source)
        source.status = _RESULT_STATUS[result.status]
        source.error = result.error
        source.skipped_records = result.skipped_records
        source.malformed += result.skipped_records
        summary.malformed += result.skipped_records
        if result.status == "failure":
            source.errors += 1
            summary.errors += 1

        new_ids: List[str] = []
        for item in result.items:
            decision = self.gate.validate(item)
            if decision.outcome != GateOutcome.OK:
                summary.quality.record(decision)
                source.malformed += 1
                summary.malformed += 1
                log.warning(f"Discarded item from {item.source}: {decision.outcome} ({decision.reason})")
                continue

            if self.state.record_pending(item):
                new_ids.append(item.id)
                source.collected += 1
                summary.collected += 1
            else:
                source.duplicates += 1
                summary.deduplicated += 1
        return new_ids

    async def _process(self, new_ids: List[str], summary: CycleSummary) -> None:
        seen = set(new_ids)
        backlog = [i for i in self.state.claimable_ids(limit=self.batch_limit) if i not in seen]
        if backlog:
            log.info(f"Picking up {len(backlog)} backlog items")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def worker(item_id: str) -> None:
            async with semaphore:
                if self.stopping:
                    return
                await self.process_item(item_id, summary)

        item_ids = new_ids + backlog
        results = await asyncio.gather(*(worker(item_id) for item_id in item_ids), return_exceptions=True)
        for item_id, result in zip(item_ids, results):
            if isinstance(result, Exception):
                log.opt(exception=result).error(f"Item {item_id} failed outside its retry loop: {result}")
                summary.errors += 1

    async def process_item(self, item_id: str, summary: Optional[CycleSummary] = None) -> Optional[str]:
        """Claim and process one item; returns its terminal status, or None if not ours."""
        summary = summary or CycleSummary(started_at=utcnow())
        classified = False
        attempt = 0

        while True:
            if not self.state.claim(item_id, self.worker_id):
                return None
            attempt += 1

            item = self.state.load_item(item_id)
            if item is None:
                self.state.complete(item_id, self.worker_id, STATUS_ERROR, "raw payload missing")
                summary.errors += 1
                return STATUS_ERROR
            source = summary.source(item.source)

            try:
                decision = self.gate.classify(item)
                if not classified:
                    summary.quality.record(decision)
                    classified = True
                if decision.is_duplicate:
                    self.state.complete(item_id, self.worker_id, STATUS_DUPLICATE, decision.reason)
                    source.duplicates += 1
                    summary.deduplicated += 1
                    log.info(f"Item {item_id} is a {decision.outcome} of {decision.matched_item_id}")
                    return STATUS_DUPLICATE

                entities = self.extractor.extract(item)
                entities = await self.enrichment.enrich(entities)
                self.store.save(item, entities)
                notifications = await self.alerts.evaluate(item, entities)
            except Exception as exc:  # noqa: BLE001
                if not isinstance(exc, StorageError):
                    log.exception(f"Processing item {item_id} failed: {exc}")
                status = self.state.release(item_id, self.worker_id, f"{type(exc).__name__}: {exc}")
                if status == STATUS_ERROR:
                    source.errors += 1
                    summary.errors += 1
                    return STATUS_ERROR
                if status is None or self.stopping:
                    return None
                await asyncio.sleep(self.item_retry_delay * 2 ** (attempt - 1))
                continue

            summary.degraded_enrichments += sum(1 for e in entities if e.degraded)
            summary.notifications += len(notifications)

            self.state.complete(item_id, self.worker_id, STATUS_PROCESSED)
            source.processed += 1
            summary.processed += 1
            return STATUS_PROCESSED

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------
    def _start_run(self, configs: List[SourceConfig]) -> PipelineRun:
        with self.session_factory() as db:
            run = PipelineRun(status="running", sources=",".join(c.name for c in configs))
            db.add(run)
            db.commit()
            db.refresh(run)
        return run

    def _finish_run(self, run_id: uuid.UUID, summary: CycleSummary, error: Optional[str] = None) -> None:
        with self.session_factory() as db:
            run = db.get(PipelineRun, run_id)
            if run is None:
                return
            if error:
                run.status = "failure"
            elif summary.cancelled:
                run.status = "cancelled"
            else:
                run.status = summary.status
            run.items_collected = summary.collected
            run.items_processed = summary.processed
            run.items_failed = summary.errors
            errors = [f"{name}: {s.error}" for name, s in summary.sources.items() if s.error]
            run.error_message = error or ("; ".join(errors) or None)
            run.meta = summary.model_dump(mode="json")
            run.ended_at = utcnow()
            db.commit()

    def _update_source_state(self, result: CollectionResult, collected: int) -> None:
        if result.status == "cancelled":
            return
        now = utcnow()
        with self.session_factory() as db:
            state = db.get(SourceState, result.source)
            if state is None:
                state = SourceState(source_name=result.source, consecutive_failures=0, items_collected_total=0)
                db.add(state)

            state.last_collected_at = now
            state.last_status = _RESULT_STATUS[result.status]
            state.last_error = result.error
            if result.status == "success":
                state.last_success_at = now
                state.consecutive_failures = 0
                state.items_collected_total = (state.items_collected_total or 0) + collected
            else:
                state.consecutive_failures = (state.consecutive_failures or 0) + 1
            db.commit()

    async def aclose(self) -> None:
        await self.enrichment.aclose()
        await self.alerts.aclose()
