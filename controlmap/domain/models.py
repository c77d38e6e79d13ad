from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping SQLite-backed tests working.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Framework(Base):
    __tablename__ = "frameworks"

    # Framework catalogs are maintained by the catalog import tooling, read-only here.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    version: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Control(Base):
    __tablename__ = "controls"
    __table_args__ = (
        UniqueConstraint("framework_id", "control_ref", name="uq_controls_framework_ref"),
        Index("ix_controls_framework_order", "framework_id", "sort_order"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    framework_id: Mapped[str] = mapped_column(String, ForeignKey("frameworks.id"), index=True)
    # Human-facing identifier such as "A.5.1".
    control_ref: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    requirement_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    # Canonical catalog ordering; ties break on control_ref.
    sort_order: Mapped[int] = mapped_column(Integer, default=0)


class Document(Base):
    __tablename__ = "documents"

    # Written by the ingestion pipeline; only processed documents are analyzable.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    filename: Mapped[str] = mapped_column(String)
    content_type: Mapped[str | None] = mapped_column(String, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DocumentChunk(Base):
    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_index"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    document_id: Mapped[str] = mapped_column(String, ForeignKey("documents.id"), index=True)
    chunk_index: Mapped[int] = mapped_column(Integer)
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    text: Mapped[str] = mapped_column(Text)


class AnalysisPrompt(Base):
    __tablename__ = "analysis_prompts"
    __table_args__ = (
        Index("ix_analysis_prompts_type_active", "prompt_type", "is_active"),
    )

    # Operator-editable prompt templates; the built-in template applies when none is active.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    prompt_type: Mapped[str] = mapped_column(String)
    prompt_text: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Analysis(Base):
    __tablename__ = "analyses"
    __table_args__ = (
        Index("ix_analyses_org_created", "organization_id", text("created_at DESC")),
    )

    # One row per analysis job; counters are written at state transitions and finalization.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    # No FK: unknown frameworks must fail the job, not the insert.
    framework_id: Mapped[str] = mapped_column(String, index=True)
    framework_name: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True)
    document_ids_json: Mapped[list[str]] = mapped_column(JSONType, default=list)
    total_controls: Mapped[int] = mapped_column(Integer, default=0)
    completed_controls: Mapped[int] = mapped_column(Integer, default=0)
    compliant_controls: Mapped[int] = mapped_column(Integer, default=0)
    partial_controls: Mapped[int] = mapped_column(Integer, default=0)
    missing_controls: Mapped[int] = mapped_column(Integer, default=0)
    failed_controls: Mapped[int] = mapped_column(Integer, default=0)
    average_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    options_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class EvidenceMapping(Base):
    __tablename__ = "evidence_mappings"
    __table_args__ = (
        UniqueConstraint("analysis_id", "control_id", name="uq_evidence_mappings_control"),
    )

    # Materialized ControlOutcome; immutable once the analysis is terminal.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    analysis_id: Mapped[str] = mapped_column(
        String, ForeignKey("analyses.id", ondelete="CASCADE"), index=True
    )
    control_id: Mapped[str] = mapped_column(String)
    control_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    control_title: Mapped[str] = mapped_column(String)
    control_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String, index=True)
    confidence_score: Mapped[float] = mapped_column(Float, default=0.0)
    reasoning: Mapped[str] = mapped_column(Text)
    is_failure: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class EvidenceItem(Base):
    __tablename__ = "evidence_items"

    # One row per citation backing an evidence mapping.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    evidence_mapping_id: Mapped[int] = mapped_column(
        BigIntId, ForeignKey("evidence_mappings.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    document_id: Mapped[str | None] = mapped_column(String, nullable=True)
    document_name: Mapped[str | None] = mapped_column(String, nullable=True)
    locator: Mapped[str | None] = mapped_column(String, nullable=True)
    chunk_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    evidence_text: Mapped[str] = mapped_column(Text)
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    relevance_score: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
