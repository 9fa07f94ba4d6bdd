"""Collector and ingestion runner tests"""

import asyncio
import json

import httpx
import pytest

from intelpipe.core.errors import ConfigError, SourceAuthError, SourceError, TransientSourceError
from intelpipe.ingestion import ApiCollector, BaseCollector, CrtShCollector, FeedCollector, FileCollector, build_collector
from intelpipe.ingestion.base import parse_retry_after
from intelpipe.ingestion.runner import IngestionRunner
from intelpipe.schemas.config import SourceConfig

FEED = """<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0">
  <channel>
    <title>Security News</title>
    <item>
      <title>Acme Corp raises funding</title>
      <link>https://news.test/acme-funding</link>
      <guid>acme-funding</guid>
      <description>Series B round led by Example Ventures</description>
      <category>business</category>
    </item>
    <item>
      <title>Orphan entry</title>
      <description>No guid and no link</description>
    </item>
  </channel>
</rss>
"""

CRTSH_ROWS = [
    {
        "id": 9001,
        "issuer_name": "C=US, O=Let's Encrypt, CN=R3",
        "common_name": "login.acme.example",
        "name_value": "login.acme.example\nwww.acme.example",
        "not_before": "2026-10-01T00:00:00",
        "not_after": "2026-12-30T00:00:00",
        "serial_number": "04aa",
        "entry_timestamp": "2026-10-01T00:05:00",
    },
    {"issuer_name": "row without id"},
]


def config(name="test-source", type="feed", endpoint="https://source.test/feed", **kwargs) -> SourceConfig:
    return SourceConfig(name=name, type=type, endpoint=endpoint, rate_limit=0, **kwargs)


def mock_client(handler) -> httpx.AsyncClient:
    def dispatch(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(200)
        return handler(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(dispatch))


class TestCollectors:
    """Test each collector against canned upstream responses"""

    @pytest.mark.asyncio
    async def test_feed(self):
        """Test feed entries become structured items; entries without identity are skipped"""
        client = mock_client(lambda request: httpx.Response(200, text=FEED))
        collector = FeedCollector(config(), client, backoff_base=0)

        items = await collector.collect(collector.config)

        assert len(items) == 1
        assert collector.last_skipped == 1
        item = items[0]
        assert item.source == "test-source"
        assert item.source_url == "https://news.test/acme-funding"
        assert item.title == "Acme Corp raises funding"
        assert "Example Ventures" in item.text
        assert item.metadata["feed_title"] == "Security News"
        assert item.metadata["tags"] == ["business"]

    @pytest.mark.asyncio
    async def test_feed_ids_are_stable(self):
        """Test polling an unchanged feed twice yields the same ids"""
        client = mock_client(lambda request: httpx.Response(200, text=FEED))
        collector = FeedCollector(config(), client, backoff_base=0)

        first = await collector.collect(collector.config)
        second = await collector.collect(collector.config)
        assert [i.id for i in first] == [i.id for i in second]

    @pytest.mark.asyncio
    async def test_feed_garbage(self):
        """Test an unparseable feed fails the source"""
        client = mock_client(lambda request: httpx.Response(200, text="<html><body>not a feed"))
        collector = FeedCollector(config(), client, backoff_base=0)
        with pytest.raises(SourceError):
            await collector.collect(collector.config)

    @pytest.mark.asyncio
    async def test_api(self):
        """Test API records are read from a nested list and bad records skipped"""
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            payload = {
                "data": {
                    "articles": [
                        {"id": "a-1", "url": "https://news.test/a-1", "title": "Acme Corp breach"},
                        {"title": "missing identifiers"},
                        "not a record",
                    ]
                }
            }
            return httpx.Response(200, json=payload)

        cfg = config(
            type="api",
            endpoint="https://api.test/search",
            query="acme",
            options={"items_path": "data.articles", "params": {"lang": "en"}},
        )
        collector = ApiCollector(cfg, mock_client(handler), backoff_base=0)
        items = await collector.collect(cfg)

        assert seen["params"] == {"lang": "en", "q": "acme"}
        assert len(items) == 1
        assert collector.last_skipped == 2
        assert items[0].source_url == "https://news.test/a-1"
        assert items[0].content["title"] == "Acme Corp breach"

    @pytest.mark.asyncio
    async def test_api_unexpected_shape(self):
        """Test a response without a record list fails the source"""
        client = mock_client(lambda request: httpx.Response(200, json={"error": "quota"}))
        cfg = config(type="api", endpoint="https://api.test/search", options={"items_path": "data.articles"})
        with pytest.raises(SourceError):
            await ApiCollector(cfg, client, backoff_base=0).collect(cfg)

    @pytest.mark.asyncio
    async def test_crtsh(self):
        """Test certificate log entries become items carrying their names"""
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json=CRTSH_ROWS)

        cfg = config(type="crtsh", endpoint="https://crt.test/", query="acme.example")
        collector = CrtShCollector(cfg, mock_client(handler), backoff_base=0)
        items = await collector.collect(cfg)

        assert seen["params"] == {"q": "%.acme.example", "output": "json"}
        assert len(items) == 1
        assert collector.last_skipped == 1
        item = items[0]
        assert item.title == "Certificate issued for login.acme.example"
        assert item.content["names"] == ["login.acme.example", "www.acme.example"]
        assert "www.acme.example" in item.text
        assert item.source_url == "https://crt.sh/?id=9001"

    @pytest.mark.asyncio
    async def test_crtsh_requires_domain(self):
        """Test a certificate source without a domain is a configuration error"""
        cfg = config(type="crtsh", endpoint="https://crt.test/")
        with pytest.raises(ConfigError):
            await CrtShCollector(cfg, mock_client(lambda r: httpx.Response(200, json=[]))).collect(cfg)

    @pytest.mark.asyncio
    async def test_file_jsonl(self, tmp_path):
        """Test JSON lines exports are read and malformed lines skipped"""
        path = tmp_path / "export.jsonl"
        path.write_text(
            json.dumps({"id": "r-1", "title": "Acme Corp phishing kit"})
            + "\n{not json\n\n"
            + json.dumps({"title": "Row without id"})
            + "\n",
            encoding="utf-8",
        )
        cfg = config(type="file", endpoint="", options={"path": str(path)})
        collector = FileCollector(cfg)

        assert await collector.health_check() is True
        items = await collector.collect(cfg)

        assert [i.title for i in items] == ["Acme Corp phishing kit", "Row without id"]
        assert collector.last_skipped == 1
        assert items[0].metadata["line"] == 1

    @pytest.mark.asyncio
    async def test_file_csv(self, tmp_path):
        """Test CSV exports are read row by row"""
        path = tmp_path / "export.csv"
        path.write_text("id,title\nr-1,Acme Corp phishing kit\nr-2,Second row\n", encoding="utf-8")
        cfg = config(type="file", endpoint=str(path))
        items = await FileCollector(cfg).collect(cfg)
        assert [i.content["id"] for i in items] == ["r-1", "r-2"]

    @pytest.mark.asyncio
    async def test_file_jsonl_undecodable_line_skipped(self, tmp_path):
        """Test one line of invalid bytes does not lose the rest of the export"""
        path = tmp_path / "export.jsonl"
        path.write_bytes(
            json.dumps({"id": "r-1", "title": "First row"}).encode()
            + b"\n\xff\xfe{\"id\": \"r-2\"}\n"
            + json.dumps({"id": "r-3", "title": "Third row"}).encode()
            + b"\n"
        )
        cfg = config(type="file", endpoint=str(path))
        collector = FileCollector(cfg)
        items = await collector.collect(cfg)

        assert [i.content["id"] for i in items] == ["r-1", "r-3"]
        assert [i.metadata["line"] for i in items] == [1, 3]
        assert collector.last_skipped == 1

    @pytest.mark.asyncio
    async def test_file_csv_undecodable_row_skipped(self, tmp_path):
        """Test a CSV row with invalid bytes is skipped and counted"""
        path = tmp_path / "export.csv"
        path.write_bytes(b"id,title\nr-1,First row\nr-2,Bad \xff row\nr-3,Third row\n")
        cfg = config(type="file", endpoint=str(path))
        collector = FileCollector(cfg)
        items = await collector.collect(cfg)

        assert [i.content["id"] for i in items] == ["r-1", "r-3"]
        assert [i.metadata["line"] for i in items] == [2, 4]
        assert collector.last_skipped == 1

    @pytest.mark.asyncio
    async def test_file_missing(self, tmp_path):
        """Test a missing export fails the health check"""
        cfg = config(type="file", endpoint=str(tmp_path / "absent.jsonl"))
        assert await FileCollector(cfg).health_check() is False

    def test_unknown_type(self):
        """Test an unknown collector type is rejected"""
        with pytest.raises(ConfigError):
            build_collector(config(type="carrier-pigeon"))

    def test_registry(self):
        """Test each type maps to its collector"""
        assert isinstance(build_collector(config(type="api")), ApiCollector)
        assert isinstance(build_collector(config(type="crtsh", query="acme.example")), CrtShCollector)


class TestResilientHttp:
    """Test retries, back-off and credential handling"""

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        """Test 429 and 5xx responses are retried"""
        responses = [httpx.Response(429, headers={"Retry-After": "0"}), httpx.Response(503)]

        def handler(request):
            return responses.pop(0) if responses else httpx.Response(200, text=FEED)

        collector = FeedCollector(config(), mock_client(handler), max_retries=3, backoff_base=0)
        items = await collector.collect(collector.config)
        assert len(items) == 1
        assert responses == []

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        """Test persistent failures raise a transient source error"""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        collector = FeedCollector(config(), mock_client(handler), max_retries=3, backoff_base=0)
        with pytest.raises(TransientSourceError):
            await collector.collect(collector.config)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_auth_rejection_not_retried(self):
        """Test 401 fails immediately"""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        collector = FeedCollector(config(), mock_client(handler), max_retries=3, backoff_base=0)
        with pytest.raises(SourceAuthError):
            await collector.collect(collector.config)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_credentials_from_environment(self, monkeypatch):
        """Test the credential named by credentials_ref is sent"""
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=[])

        monkeypatch.setenv("TEST_NEWS_TOKEN", "s3cret")
        cfg = config(type="api", endpoint="https://api.test/search", credentials_ref="TEST_NEWS_TOKEN")
        await ApiCollector(cfg, mock_client(handler), backoff_base=0).collect(cfg)
        assert seen["auth"] == "Bearer s3cret"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, monkeypatch):
        """Test a missing credential is an auth error"""
        monkeypatch.delenv("TEST_NEWS_TOKEN", raising=False)
        cfg = config(type="api", endpoint="https://api.test/search", credentials_ref="TEST_NEWS_TOKEN")
        with pytest.raises(SourceAuthError):
            await ApiCollector(cfg, mock_client(lambda r: httpx.Response(200, json=[]))).collect(cfg)

    def test_parse_retry_after(self):
        """Test Retry-After in seconds and as an HTTP date"""
        assert parse_retry_after("7") == 7.0
        assert parse_retry_after(None) is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
        assert parse_retry_after("soon") is None


class StaticCollector(BaseCollector):
    """Collector returning canned results without network access"""

    type = "static"

    def __init__(self, name, outcomes, healthy=True):
        super().__init__(SourceConfig(name=name, type=self.type, rate_limit=0))
        self.outcomes = list(outcomes)
        self.healthy = healthy
        self.calls = 0

    async def health_check(self):
        return self.healthy

    async def collect(self, source_config):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestIngestionRunner:
    """Test source isolation in the runner"""

    @pytest.mark.asyncio
    async def test_failing_source_isolated(self, make_item):
        """Test one failing source does not affect the others"""
        good = StaticCollector("good", [[make_item("Acme Corp raises funding", source="good")]])
        bad = StaticCollector("bad", [SourceError("bad", "HTTP 404 from upstream")])

        results = await IngestionRunner([good, bad], retry_delay=0).run()

        assert results["good"].status == "success"
        assert len(results["good"].items) == 1
        assert results["bad"].status == "failure"
        assert "HTTP 404" in results["bad"].error

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, make_item):
        """Test a transient failure is retried within the cycle"""
        flaky = StaticCollector(
            "flaky", [TransientSourceError("flaky", "HTTP 503"), [make_item("Second try", source="flaky")]]
        )
        results = await IngestionRunner([flaky], max_attempts=2, retry_delay=0).run()
        assert results["flaky"].status == "success"
        assert flaky.calls == 2

    @pytest.mark.asyncio
    async def test_unhealthy_source_skipped(self):
        """Test a failed health check skips collection"""
        down = StaticCollector("down", [[]], healthy=False)
        results = await IngestionRunner([down]).run()
        assert results["down"].status == "skipped"
        assert down.calls == 0

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test a hung source times out and fails"""

        class HangingCollector(StaticCollector):
            async def collect(self, source_config):
                await asyncio.sleep(5)

        results = await IngestionRunner(
            [HangingCollector("hung", [])], source_timeout=0.05, max_attempts=1, retry_delay=0
        ).run()
        assert results["hung"].status == "failure"
        assert "timed out" in results["hung"].error

    @pytest.mark.asyncio
    async def test_stop_requested(self):
        """Test no source starts once a stop was requested"""
        stop = asyncio.Event()
        stop.set()
        idle = StaticCollector("idle", [[]])
        results = await IngestionRunner([idle], stop_event=stop).run()
        assert results["idle"].status == "cancelled"
        assert idle.calls == 0
