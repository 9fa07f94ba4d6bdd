"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

Creates the raw item store, processing state, processed documents and
entities, the shared dedup window, the enrichment cache, notifications,
pipeline runs and per-source scheduling state.
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON(none_as_null=True).with_variant(postgresql.JSONB(none_as_null=True), "postgresql")
SEQ_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "raw_items",
        sa.Column("item_id", sa.String(64), primary_key=True),
        sa.Column("source", sa.String(200), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("collected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ingested_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_raw_items_source", "raw_items", ["source"])

    op.create_table(
        "processing_records",
        sa.Column("item_id", sa.String(64), primary_key=True),
        sa.Column("source", sa.String(200), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("worker_id", sa.String(100), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.String(), nullable=True),
        sa.Column("collected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_processing_records_source", "processing_records", ["source"])
    op.create_index("ix_processing_records_status", "processing_records", ["status"])

    op.create_table(
        "intel_items",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("source", sa.String(200), nullable=False),
        sa.Column("source_url", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("content", JSON_TYPE, nullable=True),
        sa.Column("content_type", sa.String(30), nullable=False),
        sa.Column("metadata", JSON_TYPE, nullable=True),
        sa.Column("fingerprint", sa.String(64), nullable=False),
        sa.Column("entity_count", sa.Integer(), nullable=False),
        sa.Column("collected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_intel_items_source", "intel_items", ["source"])
    op.create_index("ix_intel_items_fingerprint", "intel_items", ["fingerprint"])
    op.create_index("ix_intel_items_collected_at", "intel_items", ["collected_at"])
    op.create_index("ix_intel_items_source_collected", "intel_items", ["source", "collected_at"])

    op.create_table(
        "entities",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("value", sa.String(500), nullable=False),
        sa.Column("context", sa.Text(), nullable=False),
        sa.Column("enrichment", JSON_TYPE, nullable=True),
        sa.Column("enrichment_status", sa.String(20), nullable=False),
        sa.Column("enrichment_provider", sa.String(100), nullable=True),
        sa.Column("enrichment_error", sa.String(), nullable=True),
        sa.Column("enrichment_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("collected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_entities_item_id", "entities", ["item_id"])
    op.create_index("ix_entities_value", "entities", ["value"])
    op.create_index("ix_entities_collected_at", "entities", ["collected_at"])
    op.create_index("ix_entities_type_value_collected", "entities", ["entity_type", "value", "collected_at"])

    op.create_table(
        "seen_fingerprints",
        sa.Column("seq", SEQ_TYPE, primary_key=True, autoincrement=True),
        sa.Column("fingerprint", sa.String(64), nullable=False, unique=True),
        sa.Column("signature", sa.String(32), nullable=False),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("source", sa.String(200), nullable=False),
        sa.Column("seen_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_seen_fingerprints_item_id", "seen_fingerprints", ["item_id"])

    op.create_table(
        "enrichment_cache",
        sa.Column("entity_type", sa.String(30), primary_key=True),
        sa.Column("value", sa.String(500), primary_key=True),
        sa.Column("provider", sa.String(100), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_enrichment_cache_expires_at", "enrichment_cache", ["expires_at"])

    op.create_table(
        "notifications",
        sa.Column("item_id", sa.String(64), primary_key=True),
        sa.Column("alert_name", sa.String(200), primary_key=True),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("subject", sa.String(200), nullable=False),
        sa.Column("matched_condition", JSON_TYPE, nullable=False),
        sa.Column("evidence", sa.Text(), nullable=False),
        sa.Column("fired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivered", sa.Boolean(), nullable=False),
        sa.Column("delivery_error", sa.String(), nullable=True),
    )
    op.create_index("ix_notifications_fired_at", "notifications", ["fired_at"])

    op.create_table(
        "pipeline_runs",
        sa.Column("run_id", sa.Uuid(), primary_key=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("sources", sa.String(), nullable=False),
        sa.Column("items_collected", sa.Integer(), nullable=False),
        sa.Column("items_processed", sa.Integer(), nullable=False),
        sa.Column("items_failed", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("metadata", JSON_TYPE, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "source_state",
        sa.Column("source_name", sa.String(200), primary_key=True),
        sa.Column("last_collected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_status", sa.String(20), nullable=True),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False),
        sa.Column("items_collected_total", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("source_state")
    op.drop_table("pipeline_runs")

    op.drop_index("ix_notifications_fired_at", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("ix_enrichment_cache_expires_at", table_name="enrichment_cache")
    op.drop_table("enrichment_cache")

    op.drop_index("ix_seen_fingerprints_item_id", table_name="seen_fingerprints")
    op.drop_table("seen_fingerprints")

    op.drop_index("ix_entities_type_value_collected", table_name="entities")
    op.drop_index("ix_entities_collected_at", table_name="entities")
    op.drop_index("ix_entities_value", table_name="entities")
    op.drop_index("ix_entities_item_id", table_name="entities")
    op.drop_table("entities")

    op.drop_index("ix_intel_items_source_collected", table_name="intel_items")
    op.drop_index("ix_intel_items_collected_at", table_name="intel_items")
    op.drop_index("ix_intel_items_fingerprint", table_name="intel_items")
    op.drop_index("ix_intel_items_source", table_name="intel_items")
    op.drop_table("intel_items")

    op.drop_index("ix_processing_records_status", table_name="processing_records")
    op.drop_index("ix_processing_records_source", table_name="processing_records")
    op.drop_table("processing_records")

    op.drop_index("ix_raw_items_source", table_name="raw_items")
    op.drop_table("raw_items")
