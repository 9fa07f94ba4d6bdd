"""Processed item store and its query surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from intelpipe.core.db import as_utc, dialect_insert, utcnow
from intelpipe.core.errors import StorageError
from intelpipe.core.logging import get_logger
from intelpipe.models.documents import ExtractedEntityRecord, IntelItem
from intelpipe.schemas.entities import ExtractedEntity, normalize_value
from intelpipe.schemas.items import CollectedItem

log = get_logger("storage")

Entities = ExtractedEntityRecord.__table__.c


def _window(column, start: Optional[datetime], end: Optional[datetime]) -> List[Any]:
    conditions = []
    if start is not None:
        conditions.append(column >= as_utc(start))
    if end is not None:
        conditions.append(column < as_utc(end))
    return conditions


class IntelStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------
    def save(self, item: CollectedItem, entities: List[ExtractedEntity]) -> None:
        """Idempotent upsert of one item and its entities."""
        try:
            with self.session_factory() as db:
                self._upsert_item(db, item, len(entities))
                if entities:
                    self._upsert_entities(db, item, entities)
                db.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"saving item {item.id} failed: {exc}") from exc

        log.debug(f"Stored item {item.id} with {len(entities)} entities")

    def _upsert_item(self, db, item: CollectedItem, entity_count: int) -> None:
        stmt = dialect_insert(db, IntelItem.__table__).values(
            id=item.id,
            source=item.source,
            source_url=item.source_url,
            title=item.title,
            text=item.text,
            content=item.content,
            content_type=item.content_type,
            metadata=item.metadata,
            fingerprint=item.fingerprint,
            entity_count=entity_count,
            collected_at=item.collected_at,
            processed_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "source_url": stmt.excluded.source_url,
                "title": stmt.excluded.title,
                "text": stmt.excluded.text,
                "content": stmt.excluded.content,
                "metadata": stmt.excluded["metadata"],
                "entity_count": stmt.excluded.entity_count,
            },
        )
        db.execute(stmt)

    def _upsert_entities(self, db, item: CollectedItem, entities: List[ExtractedEntity]) -> None:
        rows = [
            {
                "id": entity.id,
                "item_id": item.id,
                "entity_type": entity.type,
                "value": entity.value,
                "context": entity.context,
                "enrichment": entity.enrichment,
                "enrichment_status": entity.enrichment_status,
                "enrichment_provider": entity.enrichment_provider,
                "enrichment_error": entity.enrichment_error,
                "enrichment_expires_at": entity.enrichment_expires_at,
                "collected_at": item.collected_at,
            }
            for entity in entities
        ]
        stmt = dialect_insert(db, ExtractedEntityRecord.__table__).values(rows)
        new = stmt.excluded

        # A write without enrichment keeps whatever enrichment is already stored.
        keep = and_(new.enrichment.is_(None), Entities.enrichment.is_not(None))
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "context": new.context,
                "enrichment": func.coalesce(new.enrichment, Entities.enrichment),
                "enrichment_status": case((keep, Entities.enrichment_status), else_=new.enrichment_status),
                "enrichment_provider": case((keep, Entities.enrichment_provider), else_=new.enrichment_provider),
                "enrichment_error": case((keep, Entities.enrichment_error), else_=new.enrichment_error),
                "enrichment_expires_at": case(
                    (keep, Entities.enrichment_expires_at), else_=new.enrichment_expires_at
                ),
            },
        )
        db.execute(stmt)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------
    def get_item(self, item_id: str) -> Optional[IntelItem]:
        with self.session_factory() as db:
            return db.get(IntelItem, item_id)

    def entities_for_item(self, item_id: str) -> List[ExtractedEntityRecord]:
        stmt = (
            select(ExtractedEntityRecord)
            .where(ExtractedEntityRecord.item_id == item_id)
            .order_by(ExtractedEntityRecord.entity_type, ExtractedEntityRecord.value)
        )
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    def items_by_entity(
        self,
        entity_type: str,
        value: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[IntelItem]:
        matching = (
            select(ExtractedEntityRecord.item_id)
            .where(
                ExtractedEntityRecord.entity_type == entity_type,
                ExtractedEntityRecord.value == normalize_value(entity_type, value),
                *_window(ExtractedEntityRecord.collected_at, start, end),
            )
        )
        stmt = (
            select(IntelItem)
            .where(IntelItem.id.in_(matching))
            .order_by(IntelItem.collected_at.desc(), IntelItem.id)
            .limit(limit)
            .offset(offset)
        )
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    def items_by_source(
        self,
        source: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[IntelItem]:
        stmt = (
            select(IntelItem)
            .where(IntelItem.source == source, *_window(IntelItem.collected_at, start, end))
            .order_by(IntelItem.collected_at.desc(), IntelItem.id)
            .limit(limit)
            .offset(offset)
        )
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars().all())

    def count_by_source(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, int]:
        stmt = (
            select(IntelItem.source, func.count())
            .where(*_window(IntelItem.collected_at, start, end))
            .group_by(IntelItem.source)
        )
        with self.session_factory() as db:
            return {source: count for source, count in db.execute(stmt).all()}

    def count_by_entity_type(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Dict[str, int]:
        stmt = (
            select(ExtractedEntityRecord.entity_type, func.count())
            .where(*_window(ExtractedEntityRecord.collected_at, start, end))
            .group_by(ExtractedEntityRecord.entity_type)
        )
        with self.session_factory() as db:
            return {entity_type: count for entity_type, count in db.execute(stmt).all()}

    def related_entities(
        self, entity_type: str, value: str, depth: int = 1, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Entities that co-occur with the given one, breadth first up to ``depth`` hops."""
        origin = (entity_type, normalize_value(entity_type, value))
        visited: set[Tuple[str, str]] = {origin}
        frontier = [origin]
        related: List[Dict[str, Any]] = []

        with self.session_factory() as db:
            for hop in range(1, max(1, depth) + 1):
                found: Dict[Tuple[str, str], int] = {}
                for node_type, node_value in frontier:
                    items = select(ExtractedEntityRecord.item_id).where(
                        ExtractedEntityRecord.entity_type == node_type,
                        ExtractedEntityRecord.value == node_value,
                    )
                    stmt = (
                        select(
                            ExtractedEntityRecord.entity_type,
                            ExtractedEntityRecord.value,
                            func.count(func.distinct(ExtractedEntityRecord.item_id)),
                        )
                        .where(ExtractedEntityRecord.item_id.in_(items))
                        .group_by(ExtractedEntityRecord.entity_type, ExtractedEntityRecord.value)
                    )
                    for other_type, other_value, shared in db.execute(stmt).all():
                        key = (other_type, other_value)
                        if key in visited:
                            continue
                        found[key] = found.get(key, 0) + shared

                ranked = sorted(found.items(), key=lambda kv: (-kv[1], kv[0]))
                for (other_type, other_value), shared in ranked:
                    visited.add((other_type, other_value))
                    related.append(
                        {"entity_type": other_type, "value": other_value, "shared_items": shared, "depth": hop}
                    )
                frontier = [key for key, _ in ranked]
                if not frontier or len(related) >= limit:
                    break

        return related[:limit]
