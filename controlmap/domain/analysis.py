from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


STATE_QUEUED = "queued"
STATE_PREPARING = "preparing"
STATE_EVALUATING = "evaluating"
STATE_FINALIZING = "finalizing"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"

TERMINAL_STATES = frozenset({STATE_COMPLETED, STATE_FAILED})
ACTIVE_STATES = frozenset({STATE_QUEUED, STATE_PREPARING, STATE_EVALUATING, STATE_FINALIZING})

STATUS_COMPLIANT = "compliant"
STATUS_PARTIAL = "partial"
STATUS_MISSING = "missing"

CONTROL_STATUSES = (STATUS_COMPLIANT, STATUS_PARTIAL, STATUS_MISSING)


@dataclass(frozen=True)
class ControlSpec:
    # Immutable view of one framework control handed to evaluators.
    id: str
    ref: str
    title: str
    description: str = ""
    requirement_text: str = ""
    category: str | None = None
    position: int = 0


@dataclass(frozen=True)
class EvidenceCitation:
    locator: str | None
    text: str
    relevance: float = 0.0
    confidence: float = 0.0
    document_id: str | None = None
    document_name: str | None = None
    page_number: int | None = None
    chunk_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "locator": self.locator,
            "document_id": self.document_id,
            "document_name": self.document_name,
            "page_number": self.page_number,
            "chunk_index": self.chunk_index,
            "text": self.text,
            "relevance": self.relevance,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class ControlOutcome:
    """Result of evaluating one control; failures are outcomes, not omissions."""

    control_id: str
    control_ref: str
    control_title: str
    status: str
    confidence: float
    reasoning: str
    citations: tuple[EvidenceCitation, ...] = ()
    failed: bool = False
    attempts: int = 1
    control_description: str = ""
    position: int = 0

    def summary(self) -> dict[str, Any]:
        # Compact form carried on progress events.
        return {
            "control_id": self.control_id,
            "control_ref": self.control_ref,
            "title": self.control_title,
            "status": self.status,
            "confidence": self.confidence,
            "failed": self.failed,
            "citations": len(self.citations),
        }


@dataclass
class AnalysisTotals:
    total: int = 0
    completed: int = 0
    compliant: int = 0
    partial: int = 0
    missing: int = 0
    failed: int = 0
    confidence_sum: float = 0.0
    confidence_count: int = 0

    @property
    def average_confidence(self) -> float:
        if self.confidence_count == 0:
            return 0.0
        return self.confidence_sum / self.confidence_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_controls": self.total,
            "completed_controls": self.completed,
            "compliant": self.compliant,
            "partial": self.partial,
            "missing": self.missing,
            "failed": self.failed,
            "average_confidence": round(self.average_confidence, 2),
        }

    def copy(self) -> "AnalysisTotals":
        return AnalysisTotals(
            total=self.total,
            completed=self.completed,
            compliant=self.compliant,
            partial=self.partial,
            missing=self.missing,
            failed=self.failed,
            confidence_sum=self.confidence_sum,
            confidence_count=self.confidence_count,
        )


@dataclass(frozen=True)
class AnalysisSummary:
    # Terminal summary written by the aggregator; the terminal event is built from it.
    totals: AnalysisTotals
    average_confidence: float
    processing_time_ms: int
    completed_at: datetime


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    seq: int
    stage: str
    progress: int
    current_step: str
    totals: dict[str, Any]
    emitted_at: datetime
    control: dict[str, Any] | None = None
    terminal: bool = False
    error: str | None = None
    replay: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "seq": self.seq,
            "stage": self.stage,
            "progress": self.progress,
            "current_step": self.current_step,
            "totals": dict(self.totals),
            "control": self.control,
            "terminal": self.terminal,
            "error": self.error,
            "replay": self.replay,
            "emitted_at": self.emitted_at.isoformat(),
        }


@dataclass
class AnalysisJob:
    """In-memory state of one running analysis, owned by the orchestrator."""

    id: str
    organization_id: str
    framework_id: str
    document_ids: tuple[str, ...]
    state: str = STATE_QUEUED
    framework_name: str | None = None
    name: str | None = None
    max_controls: int | None = None
    totals: AnalysisTotals = field(default_factory=AnalysisTotals)
    progress: int = 0
    current_step: str = "Queued"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    processing_time_ms: int | None = None
    error: str | None = None
    cancel_reason: str | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def request_cancel(self, reason: str) -> bool:
        # First reason wins; later requests are no-ops.
        if self.cancel_event.is_set():
            return False
        self.cancel_reason = reason
        self.cancel_event.set()
        return True


@dataclass(frozen=True)
class AnalysisSnapshot:
    id: str
    organization_id: str
    framework_id: str
    framework_name: str | None
    name: str | None
    status: str
    progress: int
    current_step: str | None
    document_ids: tuple[str, ...]
    totals: dict[str, Any]
    processing_time_ms: int | None
    error: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime | None
    live: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "framework_id": self.framework_id,
            "framework_name": self.framework_name,
            "name": self.name,
            "status": self.status,
            "progress": self.progress,
            "current_step": self.current_step,
            "document_ids": list(self.document_ids),
            "totals": dict(self.totals),
            "processing_time_ms": self.processing_time_ms,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "live": self.live,
        }
