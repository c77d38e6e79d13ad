"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "frameworks",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("version", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "controls",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("framework_id", sa.String(), sa.ForeignKey("frameworks.id"), nullable=False),
        sa.Column("control_ref", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("requirement_text", sa.Text(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("framework_id", "control_ref", name="uq_controls_framework_ref"),
    )
    op.create_index("ix_controls_framework_id", "controls", ["framework_id"])
    op.create_index("ix_controls_framework_order", "controls", ["framework_id", "sort_order"])

    op.create_table(
        "documents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_documents_organization_id", "documents", ["organization_id"])

    op.create_table(
        "document_chunks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("document_id", sa.String(), sa.ForeignKey("documents.id"), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("page_number", sa.Integer(), nullable=True),
        sa.Column("text", sa.Text(), nullable=False),
        sa.UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_index"),
    )
    op.create_index("ix_document_chunks_document_id", "document_chunks", ["document_id"])

    op.create_table(
        "analysis_prompts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("prompt_type", sa.String(), nullable=False),
        sa.Column("prompt_text", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_analysis_prompts_type_active", "analysis_prompts", ["prompt_type", "is_active"]
    )

    op.create_table(
        "analyses",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        # No FK: unknown frameworks fail the job instead of the insert.
        sa.Column("framework_id", sa.String(), nullable=False),
        sa.Column("framework_name", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("document_ids_json", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("total_controls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_controls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("compliant_controls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("partial_controls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("missing_controls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_controls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("options_json", postgresql.JSONB(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_analyses_organization_id", "analyses", ["organization_id"])
    op.create_index("ix_analyses_framework_id", "analyses", ["framework_id"])
    op.create_index("ix_analyses_status", "analyses", ["status"])
    op.create_index(
        "ix_analyses_org_created",
        "analyses",
        ["organization_id", sa.text("created_at DESC")],
    )

    op.create_table(
        "evidence_mappings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "analysis_id",
            sa.String(),
            sa.ForeignKey("analyses.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("control_id", sa.String(), nullable=False),
        sa.Column("control_ref", sa.String(), nullable=True),
        sa.Column("control_title", sa.String(), nullable=False),
        sa.Column("control_description", sa.Text(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("reasoning", sa.Text(), nullable=False),
        sa.Column("is_failure", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("analysis_id", "control_id", name="uq_evidence_mappings_control"),
    )
    op.create_index("ix_evidence_mappings_analysis_id", "evidence_mappings", ["analysis_id"])
    op.create_index("ix_evidence_mappings_status", "evidence_mappings", ["status"])

    op.create_table(
        "evidence_items",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "evidence_mapping_id",
            sa.BigInteger(),
            sa.ForeignKey("evidence_mappings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("document_id", sa.String(), nullable=True),
        sa.Column("document_name", sa.String(), nullable=True),
        sa.Column("locator", sa.String(), nullable=True),
        sa.Column("chunk_index", sa.Integer(), nullable=True),
        sa.Column("page_number", sa.Integer(), nullable=True),
        sa.Column("evidence_text", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("relevance_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_evidence_items_evidence_mapping_id", "evidence_items", ["evidence_mapping_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_evidence_items_evidence_mapping_id", table_name="evidence_items")
    op.drop_table("evidence_items")
    op.drop_index("ix_evidence_mappings_status", table_name="evidence_mappings")
    op.drop_index("ix_evidence_mappings_analysis_id", table_name="evidence_mappings")
    op.drop_table("evidence_mappings")
    op.drop_index("ix_analyses_org_created", table_name="analyses")
    op.drop_index("ix_analyses_status", table_name="analyses")
    op.drop_index("ix_analyses_framework_id", table_name="analyses")
    op.drop_index("ix_analyses_organization_id", table_name="analyses")
    op.drop_table("analyses")
    op.drop_index("ix_analysis_prompts_type_active", table_name="analysis_prompts")
    op.drop_table("analysis_prompts")
    op.drop_index("ix_document_chunks_document_id", table_name="document_chunks")
    op.drop_table("document_chunks")
    op.drop_index("ix_documents_organization_id", table_name="documents")
    op.drop_table("documents")
    op.drop_index("ix_controls_framework_order", table_name="controls")
    op.drop_index("ix_controls_framework_id", table_name="controls")
    op.drop_table("controls")
    op.drop_table("frameworks")
