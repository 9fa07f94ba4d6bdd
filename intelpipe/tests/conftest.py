"""Shared fixtures: a throwaway SQLite database per test."""

from datetime import datetime, timezone

import pytest

from intelpipe.core.db import init_db, make_engine, make_session_factory
from intelpipe.schemas.items import CollectedItem, ContentType

# Texts with known SimHash distances: REPORT_EDITED is 2 bits from REPORT, UNRELATED is 24
REPORT = (
    "Researchers at the security firm published a detailed report on Tuesday describing a phishing "
    "campaign that targeted finance departments across Europe using invoices hosted on compromised "
    "websites and lookalike domains registered only days before the emails were sent to victims"
)
REPORT_EDITED = REPORT.replace("a phishing campaign", "a large phishing campaign")
UNRELATED = (
    "The city council approved a new budget for public parks and libraries after a long debate about "
    "maintenance costs school programs and the schedule for summer community events near the river"
)


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so worker threads share one database"""
    engine = make_engine(f"sqlite:///{tmp_path / 'intelpipe-test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def make_item():
    """Build a structured item from a title and body"""

    def _make(
        title: str,
        body: str = "",
        source: str = "test-source",
        key: str | None = None,
        collected_at: datetime | None = None,
    ) -> CollectedItem:
        return CollectedItem.create(
            source=source,
            natural_key=key or title,
            content={"title": title, "summary": body},
            content_type=ContentType.STRUCTURED,
            source_url="https://news.example.org/" + (key or title).lower().replace(" ", "-"),
            collected_at=collected_at or datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
        )

    return _make
