"""Annotation engine schema - resources, processing logs, annotations

Revision ID: 0001
Revises:
Create Date: 2026-10-17

Key changes:
- Create resources table (notes + per-type metadata)
- Create processing_logs table (append-only audit of suggestion runs)
- Create annotations table with anchors, thread chain and AI provenance
- Add CHECK constraints mirroring the anchor and thread invariants

Constraints are declared inline so the same migration runs on PostgreSQL and
SQLite (which cannot add constraints to an existing table). Ids and
timestamps are generated by the application.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSON_TYPE = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    # ==========================================================================
    # Step 1: Create resources table
    # ==========================================================================
    op.create_table(
        "resources",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("details", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "type IN ('short-video','video','book','article','podcast','other')",
            name="ck_resources_type",
        ),
    )
    op.create_index("ix_resources_owner_id", "resources", ["owner_id"])

    # ==========================================================================
    # Step 2: Create processing_logs table
    # ==========================================================================
    op.create_table(
        "processing_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "parent_log_id",
            sa.Uuid(),
            sa.ForeignKey("processing_logs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column(
            "resource_id",
            sa.Uuid(),
            sa.ForeignKey("resources.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action_type", sa.Text(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("model_used", sa.Text(), nullable=True),
        sa.Column("input_data", JSON_TYPE, nullable=True),
        sa.Column("output_data", JSON_TYPE, nullable=True),
        sa.Column("error_details", JSON_TYPE, nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('processing','completed','failed','partial_success')",
            name="ck_processing_logs_status",
        ),
        sa.CheckConstraint("attempt_number >= 1", name="ck_processing_logs_attempt_number"),
    )
    op.create_index(
        "ix_processing_logs_resource_created",
        "processing_logs",
        ["resource_id", "created_at"],
    )

    # ==========================================================================
    # Step 3: Create annotations table (names must match the ORM exactly)
    # ==========================================================================
    op.create_table(
        "annotations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "resource_id",
            sa.Uuid(),
            sa.ForeignKey("resources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("start_offset", sa.Integer(), nullable=True),
        sa.Column("end_offset", sa.Integer(), nullable=True),
        sa.Column("quoted_text", sa.Text(), nullable=True),
        sa.Column("is_stale", sa.Boolean(), nullable=False),
        sa.Column("original_quoted_text", sa.Text(), nullable=True),
        sa.Column(
            "thread_root_id",
            sa.Uuid(),
            sa.ForeignKey("annotations.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "thread_prev_id",
            sa.Uuid(),
            sa.ForeignKey("annotations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_by_ai", sa.Boolean(), nullable=False),
        sa.Column("ai_suggestion_type", sa.Text(), nullable=True),
        sa.Column(
            "processing_log_id",
            sa.Uuid(),
            sa.ForeignKey("processing_logs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("retry_count", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("kind IN ('anchored','general')", name="ck_annotations_kind"),
        sa.CheckConstraint("status IN ('active','resolved')", name="ck_annotations_status"),
        sa.CheckConstraint("length(trim(body)) > 0", name="ck_annotations_body_not_blank"),
        sa.CheckConstraint(
            "(kind = 'general' AND start_offset IS NULL AND end_offset IS NULL "
            "AND quoted_text IS NULL) OR "
            "(kind = 'anchored' AND start_offset IS NOT NULL AND end_offset IS NOT NULL "
            "AND quoted_text IS NOT NULL AND start_offset >= 0 AND end_offset > start_offset)",
            name="ck_annotations_anchor_fields",
        ),
        sa.CheckConstraint(
            "thread_root_id IS NULL OR kind = 'general'",
            name="ck_annotations_reply_unanchored",
        ),
        sa.CheckConstraint(
            "retry_count IS NULL OR retry_count >= 0",
            name="ck_annotations_retry_count",
        ),
    )

    # ==========================================================================
    # Step 4: Indexes for listing, thread loading and the stale badge
    # ==========================================================================
    op.create_index(
        "ix_annotations_resource_status", "annotations", ["resource_id", "status"]
    )
    op.create_index(
        "ix_annotations_thread_root_created", "annotations", ["thread_root_id", "created_at"]
    )
    op.create_index(
        "ix_annotations_stale",
        "annotations",
        ["resource_id"],
        postgresql_where=sa.text("is_stale"),
        sqlite_where=sa.text("is_stale = 1"),
    )


def downgrade() -> None:
    op.drop_index("ix_annotations_stale", table_name="annotations")
    op.drop_index("ix_annotations_thread_root_created", table_name="annotations")
    op.drop_index("ix_annotations_resource_status", table_name="annotations")
    op.drop_table("annotations")

    op.drop_index("ix_processing_logs_resource_created", table_name="processing_logs")
    op.drop_table("processing_logs")

    op.drop_index("ix_resources_owner_id", table_name="resources")
    op.drop_table("resources")
