"""Deduplication and quality gate.

Validation runs at intake, before anything is persisted. Classification runs
once an item has been claimed and checks it against the shared
``seen_fingerprints`` table, which every worker reads and writes, so two
workers can never both accept the same exact duplicate.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import sessionmaker

from intelpipe.core.config import settings
from intelpipe.core.db import dialect_insert
from intelpipe.core.fingerprint import (
    content_fingerprint,
    hamming_distance,
    normalize_text,
    signature_from_hex,
    signature_to_hex,
    simhash,
)
from intelpipe.core.logging import get_logger
from intelpipe.models.fingerprints import SeenFingerprint
from intelpipe.schemas.items import CollectedItem
from intelpipe.schemas.pipeline import GateDecision, GateOutcome

log = get_logger("quality_gate")


class QualityGate:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        exact_window: Optional[int] = None,
        near_window: Optional[int] = None,
        threshold: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.exact_window = exact_window if exact_window is not None else settings.DEDUP_EXACT_WINDOW
        self.near_window = near_window if near_window is not None else settings.DEDUP_NEAR_WINDOW
        self.threshold = threshold if threshold is not None else settings.DEDUP_NEAR_THRESHOLD

    # -------------------------------------------------------------------------
    # Step 1: validation (no database access)
    # -------------------------------------------------------------------------
    def validate(self, item: CollectedItem) -> GateDecision:
        if not item.source or not item.id:
            return GateDecision(outcome=GateOutcome.MALFORMED, reason="missing source or identifier")

        text = item.text
        if not normalize_text(text):
            return GateDecision(outcome=GateOutcome.EMPTY, reason="no extractable text")

        if content_fingerprint(text) != item.fingerprint:
            return GateDecision(outcome=GateOutcome.MALFORMED, reason="fingerprint does not match content")

        return GateDecision(outcome=GateOutcome.OK)

    # -------------------------------------------------------------------------
    # Steps 2-4: exact, then near duplicate, else accepted
    # -------------------------------------------------------------------------
    def classify(self, item: CollectedItem) -> GateDecision:
        signature = simhash(item.text)

        with self.session_factory() as db:
            own = db.execute(
                select(SeenFingerprint).where(SeenFingerprint.fingerprint == item.fingerprint)
            ).scalar_one_or_none()

            if own is not None and own.item_id != item.id:
                return GateDecision(
                    outcome=GateOutcome.EXACT_DUPLICATE,
                    reason="fingerprint already seen",
                    matched_item_id=own.item_id,
                )

            # On replay only entries recorded before this item count.
            before_seq = own.seq if own is not None else None
            decision = self._near_duplicate(db, item, signature, before_seq)

            if own is None:
                stmt = dialect_insert(db, SeenFingerprint).values(
                    fingerprint=item.fingerprint,
                    signature=signature_to_hex(signature),
                    item_id=item.id,
                    source=item.source,
                )
                result = db.execute(stmt.on_conflict_do_nothing(index_elements=["fingerprint"]))
                db.commit()

                if result.rowcount == 0:
                    winner = db.execute(
                        select(SeenFingerprint.item_id).where(SeenFingerprint.fingerprint == item.fingerprint)
                    ).scalar_one_or_none()
                    if winner is not None and winner != item.id:
                        return GateDecision(
                            outcome=GateOutcome.EXACT_DUPLICATE,
                            reason="fingerprint recorded concurrently",
                            matched_item_id=winner,
                        )

        return decision

    def _near_duplicate(self, db, item: CollectedItem, signature: int, before_seq: Optional[int]) -> GateDecision:
        stmt = select(SeenFingerprint.item_id, SeenFingerprint.signature).where(SeenFingerprint.item_id != item.id)
        if before_seq is not None:
            stmt = stmt.where(SeenFingerprint.seq < before_seq)
        stmt = stmt.order_by(SeenFingerprint.seq.desc()).limit(self.near_window)

        best_id: Optional[str] = None
        best_distance: Optional[int] = None
        for other_id, other_signature in db.execute(stmt):
            distance = hamming_distance(signature, signature_from_hex(other_signature))
            if best_distance is None or distance < best_distance:
                best_id, best_distance = other_id, distance

        if best_distance is not None and best_distance <= self.threshold:
            return GateDecision(
                outcome=GateOutcome.NEAR_DUPLICATE,
                reason=f"hamming distance {best_distance} <= {self.threshold}",
                matched_item_id=best_id,
                distance=best_distance,
            )
        return GateDecision(outcome=GateOutcome.ACCEPTED, distance=best_distance)

    # -------------------------------------------------------------------------
    # Window maintenance
    # -------------------------------------------------------------------------
    def prune(self) -> int:
        """Drop fingerprints that fell out of the rolling exact window."""
        with self.session_factory() as db:
            newest = db.execute(select(func.max(SeenFingerprint.seq))).scalar()
            if newest is None or newest <= self.exact_window:
                return 0
            result = db.execute(delete(SeenFingerprint).where(SeenFingerprint.seq <= newest - self.exact_window))
            db.commit()

        if result.rowcount:
            log.info(f"Pruned {result.rowcount} fingerprints outside the exact window")
        return result.rowcount
