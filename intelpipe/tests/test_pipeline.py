"""End-to-end pipeline cycle tests"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from intelpipe.core.db import utcnow
from intelpipe.core.errors import SourceError, StorageError
from intelpipe.ingestion.base import BaseCollector
from intelpipe.models.documents import IntelItem
from intelpipe.models.processing import ProcessingRecord
from intelpipe.models.runs import PipelineRun
from intelpipe.models.source_state import SourceState
from intelpipe.schemas.config import AlertCondition, SourceConfig
from intelpipe.services.enrichment import EnrichmentService
from intelpipe.services.extraction import EntityExtractor
from intelpipe.services.pipeline_service import PipelineService
from intelpipe.services.quality import QualityGate
from intelpipe.services.state import ProcessingStateStore
from intelpipe.services.storage import IntelStore
from intelpipe.tests.conftest import REPORT, UNRELATED

FUNDING_TITLE = "Acme Corp raises funding"
FUNDING_BODY = "Acme Corp closed a Series B round led by Example Ventures to expand its fraud detection platform"


class CannedCollector(BaseCollector):
    """Returns whatever the test queued for its source name"""

    type = "canned"

    def __init__(self, config, outputs):
        super().__init__(config)
        self.outputs = outputs

    async def health_check(self):
        return True

    async def collect(self, source_config):
        outcome = self.outputs.get(self.name, [])
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)


class CountingExtractor(EntityExtractor):
    def __init__(self):
        super().__init__()
        self.seen = []

    def extract(self, item):
        self.seen.append(item.id)
        return super().extract(item)


class FlakyStore(IntelStore):
    """Fails the first ``failures`` saves"""

    def __init__(self, session_factory, failures):
        super().__init__(session_factory)
        self.failures = failures

    def save(self, item, entities):
        if self.failures:
            self.failures -= 1
            raise StorageError(f"saving item {item.id} failed: database is locked")
        super().save(item, entities)


def sources(*names):
    return [SourceConfig(name=name, type="canned", rate_limit=0) for name in names]


class TestPipelineCycle:
    """Test a full collect, gate, extract, enrich, store and alert cycle"""

    @pytest.fixture
    def outputs(self):
        return {}

    @pytest.fixture
    def extractor(self):
        return CountingExtractor()

    @pytest.fixture
    def build(self, session_factory, outputs, extractor):
        def _build(**overrides):
            options = dict(
                gate=QualityGate(session_factory, exact_window=1000, near_window=1000, threshold=3),
                state=ProcessingStateStore(session_factory, lease_seconds=300, max_attempts=3),
                extractor=extractor,
                enrichment=EnrichmentService(session_factory, [], enabled=False),
                alert_conditions=[AlertCondition(name="acme", keyword_filters=["Acme Corp"], severity="high")],
                sinks=[],
                collector_factory=lambda config, client=None, **kwargs: CannedCollector(config, outputs),
                item_retry_delay=0,
                source_retry_delay=0,
            )
            options.update(overrides)
            return PipelineService(session_factory, **options)

        return _build

    @pytest.mark.asyncio
    async def test_cycle_with_failing_source(self, build, outputs, extractor, make_item, session_factory):
        """Test a repeated entry is stored once and a broken source does not stop the others"""
        funding = make_item(FUNDING_TITLE, FUNDING_BODY, source="feed-a")
        council = make_item("", UNRELATED, source="feed-b", key="council")
        outputs.update({
            "feed-a": [funding, funding],
            "feed-b": [council],
            "broken": SourceError("broken", "HTTP 404 from https://broken.test"),
        })
        service = build()

        summary = await service.run_cycle(sources("feed-a", "feed-b", "broken"))

        assert summary.collected == 2
        assert summary.deduplicated == 1
        assert summary.processed == 2
        assert summary.errors == 1
        assert summary.notifications == 1
        assert summary.status == "partial"
        assert summary.sources["feed-a"].collected == 1
        assert summary.sources["feed-a"].duplicates == 1
        assert summary.sources["broken"].status == "error"
        assert "HTTP 404" in summary.sources["broken"].error
        assert sorted(extractor.seen) == sorted([funding.id, council.id])
        assert summary.quality.accepted == 2

        stored = service.store.get_item(funding.id)
        assert stored.title == FUNDING_TITLE
        entities = {(e.entity_type, e.value) for e in service.store.entities_for_item(funding.id)}
        assert ("organization", "Acme Corp") in entities

    @pytest.mark.asyncio
    async def test_cross_source_exact_duplicate(self, build, outputs, make_item, session_factory):
        """Test the same story from two sources is stored once"""
        outputs.update({
            "feed-a": [make_item(FUNDING_TITLE, FUNDING_BODY, source="feed-a")],
            "feed-b": [make_item(FUNDING_TITLE, FUNDING_BODY, source="feed-b")],
        })
        service = build()

        summary = await service.run_cycle(sources("feed-a", "feed-b"))

        assert summary.collected == 2
        assert summary.processed == 1
        assert summary.deduplicated == 1
        assert summary.quality.duplicates == 1
        assert service.state.status_counts() == {"processed": 1, "duplicate": 1}
        with session_factory() as db:
            assert db.execute(select(func.count()).select_from(IntelItem)).scalar() == 1

    @pytest.mark.asyncio
    async def test_second_poll_is_idempotent(self, build, outputs, extractor, make_item):
        """Test polling unchanged sources again stores nothing new"""
        outputs["feed-a"] = [make_item(FUNDING_TITLE, FUNDING_BODY, source="feed-a")]
        service = build()

        first = await service.run_cycle(sources("feed-a"))
        second = await service.run_cycle(sources("feed-a"))

        assert first.processed == 1
        assert second.collected == 0
        assert second.deduplicated == 1
        assert second.processed == 0
        assert second.notifications == 0
        assert len(extractor.seen) == 1

    @pytest.mark.asyncio
    async def test_storage_failure_retried(self, build, outputs, make_item, session_factory):
        """Test a transient storage failure is retried from the stored payload"""
        item = make_item("", REPORT, source="feed-a", key="report")
        outputs["feed-a"] = [item]
        service = build(store=FlakyStore(session_factory, failures=1))

        summary = await service.run_cycle(sources("feed-a"))

        assert summary.processed == 1
        assert summary.errors == 0
        record = service.state.get(item.id)
        assert record.status == "processed"
        assert record.attempts == 2
        assert service.store.get_item(item.id) is not None

    @pytest.mark.asyncio
    async def test_storage_failure_exhausts_attempts(self, build, outputs, make_item, session_factory):
        """Test an item that keeps failing ends in error and is not retried forever"""
        item = make_item("", REPORT, source="feed-a", key="report")
        outputs["feed-a"] = [item]
        service = build(store=FlakyStore(session_factory, failures=10))

        summary = await service.run_cycle(sources("feed-a"))

        assert summary.processed == 0
        assert summary.errors == 1
        assert summary.status == "partial"
        record = service.state.get(item.id)
        assert record.status == "error"
        assert record.attempts == 3
        assert "database is locked" in record.error

    @pytest.mark.asyncio
    async def test_alert_recording_failure_retried(self, build, outputs, make_item, monkeypatch):
        """Test a database error while recording an alert retries that item and spares the others"""
        funding = make_item(FUNDING_TITLE, FUNDING_BODY, source="feed-a")
        council = make_item("", UNRELATED, source="feed-b", key="council")
        outputs.update({"feed-a": [funding], "feed-b": [council]})
        service = build()
        record = service.alerts._record
        failures = [OperationalError("INSERT INTO notifications", {}, Exception("database is locked"))]

        def flaky_record(*args, **kwargs):
            if failures:
                raise failures.pop()
            return record(*args, **kwargs)

        monkeypatch.setattr(service.alerts, "_record", flaky_record)
        summary = await service.run_cycle(sources("feed-a", "feed-b"))

        assert summary.processed == 2
        assert summary.errors == 0
        assert summary.notifications == 1
        assert summary.status == "success"
        assert service.state.get(funding.id).attempts == 2
        assert service.state.status_counts() == {"processed": 2}

    @pytest.mark.asyncio
    async def test_item_failure_outside_retry_does_not_abort_cycle(self, build, outputs, make_item, monkeypatch):
        """Test an unexpected error in one item is counted against it while the rest finish"""
        funding = make_item(FUNDING_TITLE, FUNDING_BODY, source="feed-a")
        council = make_item("", UNRELATED, source="feed-b", key="council")
        outputs.update({"feed-a": [funding], "feed-b": [council]})
        service = build()
        load_item = service.state.load_item

        def failing_load(item_id):
            if item_id == council.id:
                raise OperationalError("SELECT raw_items", {}, Exception("disk I/O error"))
            return load_item(item_id)

        monkeypatch.setattr(service.state, "load_item", failing_load)
        summary = await service.run_cycle(sources("feed-a", "feed-b"))

        assert summary.processed == 1
        assert summary.errors == 1
        assert summary.status == "partial"
        assert service.state.get(funding.id).status == "processed"

    @pytest.mark.asyncio
    async def test_recovers_abandoned_items(self, build, outputs, make_item, session_factory):
        """Test items left mid-flight by a crashed worker are finished by the next cycle"""
        item = make_item("", REPORT, source="feed-a", key="report")
        crashed = build()
        crashed.state.record_pending(item)
        crashed.state.claim(item.id, "crashed-worker")
        with session_factory() as db:
            db.execute(
                update(ProcessingRecord)
                .where(ProcessingRecord.item_id == item.id)
                .values(lease_expires_at=utcnow() - timedelta(seconds=1))
            )
            db.commit()

        service = build()
        summary = await service.run_cycle([])

        assert summary.processed == 1
        assert service.state.get(item.id).status == "processed"

    @pytest.mark.asyncio
    async def test_process_item_is_single_owner(self, build, make_item):
        """Test two services processing the same item produce one result"""
        item = make_item(FUNDING_TITLE, FUNDING_BODY, source="feed-a")
        first, second = build(), build()
        first.state.record_pending(item)

        assert await first.process_item(item.id) == "processed"
        assert await second.process_item(item.id) is None

    @pytest.mark.asyncio
    async def test_run_and_source_state_recorded(self, build, outputs, make_item, session_factory):
        """Test the cycle is recorded with its summary and per-source state"""
        outputs.update({
            "feed-a": [make_item(FUNDING_TITLE, FUNDING_BODY, source="feed-a")],
            "broken": SourceError("broken", "HTTP 404"),
        })
        service = build()
        summary = await service.run_cycle(sources("feed-a", "broken"))

        with session_factory() as db:
            run = db.get(PipelineRun, uuid.UUID(summary.run_id))
            assert run.status == "partial"
            assert run.items_collected == 1
            assert run.items_processed == 1
            assert "broken" in run.error_message
            assert run.meta["sources"]["feed-a"]["collected"] == 1
            assert run.ended_at is not None

            broken = db.get(SourceState, "broken")
            assert broken.consecutive_failures == 1
            assert broken.last_status == "error"
            healthy = db.get(SourceState, "feed-a")
            assert healthy.consecutive_failures == 0
            assert healthy.items_collected_total == 1
            assert healthy.last_success_at is not None

    @pytest.mark.asyncio
    async def test_disabled_source_not_collected(self, build, outputs, make_item):
        """Test disabled sources are reported but never polled"""
        outputs["feed-a"] = [make_item(FUNDING_TITLE, FUNDING_BODY, source="feed-a")]
        config = SourceConfig(name="feed-a", type="canned", enabled=False)
        summary = await build().run_cycle([config])
        assert summary.sources["feed-a"].status == "disabled"
        assert summary.collected == 0

    @pytest.mark.asyncio
    async def test_stop_requested(self, build, outputs, make_item):
        """Test a stopped service starts no collection and marks the run cancelled"""
        outputs["feed-a"] = [make_item(FUNDING_TITLE, FUNDING_BODY, source="feed-a")]
        service = build()
        service.request_stop()

        summary = await service.run_cycle(sources("feed-a"))

        assert summary.cancelled is True
        assert summary.sources["feed-a"].status == "cancelled"
        assert summary.collected == 0


class TestScheduling:
    """Test per-source intervals and failure back-off"""

    def test_due_sources(self, session_factory):
        """Test new sources are due and recently polled ones wait"""
        service = PipelineService(session_factory, alert_conditions=[], sinks=[])
        configs = [
            SourceConfig(name="fresh", type="feed", interval_seconds=600),
            SourceConfig(name="recent", type="feed", interval_seconds=600),
            SourceConfig(name="failing", type="feed", interval_seconds=600),
            SourceConfig(name="off", type="feed", enabled=False),
        ]
        now = utcnow()
        with session_factory() as db:
            db.add(
                SourceState(
                    source_name="recent",
                    last_collected_at=now - timedelta(seconds=300),
                    consecutive_failures=0,
                    items_collected_total=0,
                )
            )
            # 3 failures stretch the interval to 4800s
            db.add(
                SourceState(
                    source_name="failing",
                    last_collected_at=now - timedelta(seconds=1200),
                    consecutive_failures=3,
                    items_collected_total=0,
                )
            )
            db.commit()

        assert [c.name for c in service.due_sources(configs, now)] == ["fresh"]
        later = now + timedelta(seconds=4000)
        assert [c.name for c in service.due_sources(configs, later)] == ["fresh", "recent", "failing"]
