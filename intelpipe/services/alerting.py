"""Alert evaluation and notification delivery.

A notification row is inserted once per (item, condition); only the caller
whose insert succeeds delivers it, so re-processing an item never fires the
same alert twice. Delivery failures are recorded on the row and retried by
``redeliver_pending`` without creating a new notification.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from fnmatch import fnmatchcase
from typing import Iterable, List, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from intelpipe.core.config import settings
from intelpipe.core.db import as_utc, dialect_insert, utcnow
from intelpipe.core.logging import get_logger
from intelpipe.models.alerts import NotificationRecord
from intelpipe.schemas.config import AlertCondition
from intelpipe.schemas.entities import EntityType, ExtractedEntity
from intelpipe.schemas.items import CollectedItem
from intelpipe.schemas.notifications import Notification

log = get_logger("alerting")

EVIDENCE_WINDOW = 80


class NotificationSink(ABC):
    name: str

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver one notification; raise on failure."""

    async def aclose(self) -> None:
        return None


class LogSink(NotificationSink):
    name = "log"

    async def send(self, notification: Notification) -> None:
        log.bind(alert=notification.alert_name, item_id=notification.matched_item_id).warning(
            f"ALERT [{notification.severity}] {notification.alert_name} ({notification.subject}): "
            f"{notification.evidence}"
        )


class WebhookSink(NotificationSink):
    """POSTs the notification as JSON."""

    name = "webhook"

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def send(self, notification: Notification) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        resp = await self._client.post(self.url, json=notification.model_dump(mode="json"), timeout=self.timeout)
        resp.raise_for_status()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def default_sinks() -> List[NotificationSink]:
    sinks: List[NotificationSink] = [LogSink()]
    if settings.ALERT_WEBHOOK_URL:
        sinks.append(WebhookSink(settings.ALERT_WEBHOOK_URL))
    return sinks


def _snippet(text: str, start: int, end: int) -> str:
    left = max(0, start - EVIDENCE_WINDOW)
    right = min(len(text), end + EVIDENCE_WINDOW)
    return " ".join(text[left:right].split())


def match_condition(
    condition: AlertCondition, item: CollectedItem, entities: List[ExtractedEntity]
) -> Optional[str]:
    """Return an evidence string when ``condition`` matches the item, else None."""
    for key, patterns in condition.entity_filters.items():
        entity_type = EntityType(key).value
        for entity in entities:
            if entity.type != entity_type:
                continue
            value = entity.value.lower()
            for pattern in patterns:
                if fnmatchcase(value, pattern):
                    return f"{entity_type} {entity.value} matched '{pattern}': {entity.context}"

    if condition.keyword_filters:
        text = item.text
        for keyword in condition.keyword_filters:
            hit = re.search(rf"(?<!\w){re.escape(keyword)}(?!\w)", text, re.IGNORECASE)
            if hit:
                return f"keyword '{keyword}': {_snippet(text, hit.start(), hit.end())}"
    return None


class AlertEvaluator:
    def __init__(
        self,
        session_factory: sessionmaker,
        conditions: Iterable[AlertCondition],
        sinks: Optional[List[NotificationSink]] = None,
    ):
        self.session_factory = session_factory
        self.conditions = [c for c in conditions if c.enabled]
        self.sinks = sinks if sinks is not None else default_sinks()

    async def evaluate(self, item: CollectedItem, entities: List[ExtractedEntity]) -> List[Notification]:
        """Fire every matching condition that has not fired for this item yet."""
        fired: List[Notification] = []
        for condition in self.conditions:
            evidence = match_condition(condition, item, entities)
            if evidence is None:
                continue
            notification = self._record(item, condition, evidence)
            if notification is None:
                log.debug(f"Alert {condition.name} already fired for item {item.id}")
                continue
            await self._deliver(notification)
            fired.append(notification)
        return fired

    def _record(self, item: CollectedItem, condition: AlertCondition, evidence: str) -> Optional[Notification]:
        now = utcnow()
        matched = condition.model_dump(mode="json")
        with self.session_factory() as db:
            stmt = dialect_insert(db, NotificationRecord).values(
                item_id=item.id,
                alert_name=condition.name,
                severity=condition.severity,
                subject=condition.subject,
                matched_condition=matched,
                evidence=evidence,
                fired_at=now,
                delivered=False,
            )
            result = db.execute(stmt.on_conflict_do_nothing(index_elements=["item_id", "alert_name"]))
            db.commit()

        if result.rowcount != 1:
            return None
        return Notification(
            alert_name=condition.name,
            severity=condition.severity,
            subject=condition.subject,
            matched_item_id=item.id,
            matched_condition=matched,
            evidence=evidence,
            timestamp=now,
        )

    async def _deliver(self, notification: Notification) -> bool:
        errors: List[str] = []
        for sink in self.sinks:
            try:
                await sink.send(notification)
            except Exception as exc:  # noqa: BLE001
                errors.append(f"{sink.name}: {type(exc).__name__}: {exc}")
                log.error(f"Delivering alert {notification.alert_name} via {sink.name} failed: {exc}")

        with self.session_factory() as db:
            db.execute(
                update(NotificationRecord)
                .where(
                    NotificationRecord.item_id == notification.matched_item_id,
                    NotificationRecord.alert_name == notification.alert_name,
                )
                .values(delivered=not errors, delivery_error="; ".join(errors) or None)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        return not errors

    async def redeliver_pending(self, limit: int = 100) -> int:
        """Retry notifications whose delivery failed; returns how many went through."""
        stmt = (
            select(NotificationRecord)
            .where(NotificationRecord.delivered.is_(False))
            .order_by(NotificationRecord.fired_at)
            .limit(limit)
        )
        with self.session_factory() as db:
            pending = list(db.execute(stmt).scalars().all())

        delivered = 0
        for record in pending:
            notification = Notification(
                alert_name=record.alert_name,
                severity=record.severity,
                subject=record.subject,
                matched_item_id=record.item_id,
                matched_condition=record.matched_condition,
                evidence=record.evidence,
                timestamp=as_utc(record.fired_at),
            )
            if await self._deliver(notification):
                delivered += 1
        if pending:
            log.info(f"Redelivered {delivered}/{len(pending)} pending notifications")
        return delivered

    async def aclose(self) -> None:
        for sink in self.sinks:
            await sink.aclose()
