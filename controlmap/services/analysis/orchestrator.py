from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterator, TypeVar
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from controlmap.core.config import get_settings
from controlmap.core.errors import (
    AnalysisCancelledError,
    AnalysisConflictError,
    AnalysisError,
    AnalysisNotFoundError,
    AnalysisPersistenceError,
    AnalysisSetupError,
    ProviderConfigError,
    ServiceBusyError,
)
from controlmap.domain.analysis import (
    STATE_COMPLETED,
    STATE_EVALUATING,
    STATE_FAILED,
    STATE_FINALIZING,
    STATE_PREPARING,
    STATE_QUEUED,
    TERMINAL_STATES,
    AnalysisJob,
    AnalysisSnapshot,
    AnalysisSummary,
    AnalysisTotals,
    ControlOutcome,
    ControlSpec,
    ProgressEvent,
)
from controlmap.domain.models import Analysis
from controlmap.persistence.db import SessionLocal
from controlmap.persistence.repos import analyses as analyses_repo
from controlmap.persistence.repos import frameworks as frameworks_repo
from controlmap.providers.documents.base import DocumentPipeline, PreparedContext
from controlmap.providers.documents.database import DatabaseDocumentPipeline
from controlmap.providers.evaluation.base import EvaluationClient
from controlmap.providers.evaluation.factory import get_evaluation_client
from controlmap.services.analysis.aggregator import EvidenceAggregator
from controlmap.services.analysis.broadcaster import (
    ProgressBroadcaster,
    Subscription,
    get_progress_broadcaster,
)
from controlmap.services.analysis.evaluator import ControlEvaluator
from controlmap.services.analysis.prompts import (
    PromptTemplate,
    load_template,
    prompt_variables,
    render_prompt,
)
from controlmap.services.analysis.reports import build_gap_summary
from controlmap.services.resilience import Bulkhead, BulkheadLease, RetryPolicy
from controlmap.services.telemetry import increment_counter, set_gauge

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_progress(completed: int, total: int) -> int:
    # 100 is reserved for the terminal completed event.
    if total <= 0:
        return 0
    return min(99, completed * 100 // total)


@dataclass(frozen=True)
class _Plan:
    controls: list[ControlSpec]
    context: PreparedContext
    template: PromptTemplate
    evaluator: ControlEvaluator


class AnalysisOrchestrator:
    """Owns analysis jobs from start to terminal state.

    Each job runs as its own asyncio task: prepare the document context once,
    evaluate every control through a bounded worker pool, hand outcomes to a
    single-writer aggregator, then persist the summary and publish the terminal
    event built from it.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        evaluation_client: EvaluationClient | None = None,
        client_factory: Callable[[], EvaluationClient] | None = None,
        pipeline: DocumentPipeline | None = None,
        broadcaster: ProgressBroadcaster | None = None,
        bulkhead: Bulkhead | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory or SessionLocal
        self._client = evaluation_client
        self._client_factory = client_factory or get_evaluation_client
        self._pipeline = pipeline or DatabaseDocumentPipeline(self._session_factory)
        self._broadcaster = broadcaster or get_progress_broadcaster()
        self._bulkhead = bulkhead or Bulkhead("analysis", settings.analysis_max_jobs)
        self._retry_policy = retry_policy
        self._max_concurrency = max(1, settings.analysis_max_concurrency)
        self._job_timeout_s = settings.analysis_job_timeout_s
        self._cancel_grace_s = settings.analysis_cancel_grace_s
        self._jobs: dict[str, AnalysisJob] = {}
        self._background: set[asyncio.Task[None]] = set()

    @property
    def broadcaster(self) -> ProgressBroadcaster:
        return self._broadcaster

    @property
    def running_count(self) -> int:
        return self._bulkhead.active

    @property
    def analysis_slots(self) -> int:
        return self._bulkhead.limit

    # -- public operations -------------------------------------------------

    async def start_analysis(
        self,
        organization_id: str,
        framework_id: str,
        document_ids: list[str],
        *,
        name: str | None = None,
        max_controls: int | None = None,
    ) -> str:
        lease = self._bulkhead.try_acquire()
        if lease is None:
            increment_counter("service_busy_total")
            raise ServiceBusyError("Too many analyses are running; retry later")
        job_id = str(uuid4())
        doc_ids = tuple(dict.fromkeys(document_ids))
        options = {"max_controls": max_controls} if max_controls else None
        try:
            async with self._session_factory() as session:
                await analyses_repo.create_analysis(
                    session,
                    analysis_id=job_id,
                    organization_id=organization_id,
                    framework_id=framework_id,
                    document_ids=list(doc_ids),
                    status=STATE_QUEUED,
                    name=name,
                    options=options,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            lease.release()
            logger.exception("analysis_create_failed organization_id=%s", organization_id)
            raise AnalysisPersistenceError("Failed to create analysis") from exc

        job = AnalysisJob(
            id=job_id,
            organization_id=organization_id,
            framework_id=framework_id,
            document_ids=doc_ids,
            name=name,
            max_controls=max_controls,
        )
        self._jobs[job_id] = job
        self._broadcaster.register(job_id, self._event(job))
        job.task = asyncio.create_task(self._run(job, lease), name=f"analysis:{job_id}")
        increment_counter("analyses_started_total")
        self._update_running_gauge()
        logger.info(
            "analysis_started job_id=%s organization_id=%s framework_id=%s documents=%s",
            job_id,
            organization_id,
            framework_id,
            len(doc_ids),
        )
        return job_id

    async def get_snapshot(self, job_id: str) -> AnalysisSnapshot:
        job = self._jobs.get(job_id)
        if job is not None:
            return self._job_snapshot(job)
        async with self._session_factory() as session:
            row = await analyses_repo.get_analysis(session, job_id)
        if row is None:
            raise AnalysisNotFoundError(f"Analysis {job_id} not found")
        return self._row_snapshot(row)

    async def cancel_analysis(self, job_id: str, reason: str = "Cancelled by user") -> AnalysisSnapshot:
        job = self._jobs.get(job_id)
        if job is None:
            async with self._session_factory() as session:
                row = await analyses_repo.get_analysis(session, job_id)
                if row is None:
                    raise AnalysisNotFoundError(f"Analysis {job_id} not found")
                if row.status in TERMINAL_STATES:
                    raise AnalysisConflictError(f"Analysis {job_id} is already {row.status}")
                # Left behind by a process that no longer runs it.
                logger.warning("analysis_cancel_orphan job_id=%s status=%s", job_id, row.status)
                await analyses_repo.update_analysis(
                    session,
                    job_id,
                    status=STATE_FAILED,
                    error_message=reason,
                    completed_at=_utc_now(),
                )
                await session.commit()
            return await self.get_snapshot(job_id)
        if job.is_terminal:
            raise AnalysisConflictError(f"Analysis {job_id} is already {job.state}")
        if job.request_cancel(reason):
            logger.info("analysis_cancel_requested job_id=%s reason=%s", job_id, reason)
        return self._job_snapshot(job)

    async def delete_analysis(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is not None and not job.is_terminal:
            raise AnalysisConflictError(f"Analysis {job_id} is still {job.state}")
        async with self._session_factory() as session:
            row = await analyses_repo.get_analysis(session, job_id)
            if row is None:
                raise AnalysisNotFoundError(f"Analysis {job_id} not found")
            if row.status not in TERMINAL_STATES:
                raise AnalysisConflictError(f"Analysis {job_id} is still {row.status}")
            try:
                await analyses_repo.delete_analysis(session, job_id)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise AnalysisPersistenceError("Failed to delete analysis") from exc
        self._jobs.pop(job_id, None)
        self._broadcaster.discard(job_id)
        logger.info("analysis_deleted job_id=%s", job_id)

    async def list_analyses(self, organization_id: str, *, limit: int = 50) -> list[AnalysisSnapshot]:
        async with self._session_factory() as session:
            rows = await analyses_repo.list_analyses(session, organization_id, limit=limit)
        snapshots = []
        for row in rows:
            job = self._jobs.get(row.id)
            snapshots.append(self._job_snapshot(job) if job is not None else self._row_snapshot(row))
        return snapshots

    async def get_results(self, job_id: str, *, statuses: list[str] | None = None) -> dict[str, Any]:
        """Summary, per-control evidence and gap summary of one analysis.

        ``statuses`` filters the returned controls; the gap summary always
        covers the whole analysis. An empty list selects no controls.
        """
        snapshot = await self.get_snapshot(job_id)
        async with self._session_factory() as session:
            mappings = await analyses_repo.list_mappings(session, job_id)
        controls = [
            {
                "control_id": mapping.control_id,
                "control_ref": mapping.control_ref,
                "title": mapping.control_title,
                "description": mapping.control_description,
                "status": mapping.status,
                "confidence": mapping.confidence_score,
                "reasoning": mapping.reasoning,
                "failed": mapping.is_failure,
                "attempts": mapping.attempts,
                "evidence": [
                    {
                        "document_id": item.document_id,
                        "document_name": item.document_name,
                        "locator": item.locator,
                        "page_number": item.page_number,
                        "chunk_index": item.chunk_index,
                        "text": item.evidence_text,
                        "confidence": item.confidence,
                        "relevance": item.relevance_score,
                    }
                    for item in items
                ],
            }
            for mapping, items in mappings
        ]
        selected = controls
        if statuses is not None:
            selected = [control for control in controls if control["status"] in statuses]
        return {
            "analysis": snapshot.to_dict(),
            "controls": selected,
            "gaps": build_gap_summary(controls),
        }

    def subscribe(self, job_id: str) -> Subscription | None:
        return self._broadcaster.subscribe(job_id)

    def snapshot_event(self, snapshot: AnalysisSnapshot) -> ProgressEvent:
        # Synthetic event for observers of jobs whose topic is already gone.
        return ProgressEvent(
            job_id=snapshot.id,
            seq=0,
            stage=snapshot.status,
            progress=snapshot.progress,
            current_step=snapshot.current_step or snapshot.status,
            totals=dict(snapshot.totals),
            emitted_at=_utc_now(),
            terminal=snapshot.status in TERMINAL_STATES,
            error=snapshot.error,
            replay=True,
        )

    async def wait(self, job_id: str, timeout: float | None = None) -> AnalysisSnapshot:
        job = self._jobs.get(job_id)
        if job is not None and job.task is not None:
            await asyncio.wait({job.task}, timeout=timeout)
        return await self.get_snapshot(job_id)

    async def shutdown(self, reason: str = "Analysis interrupted by shutdown") -> None:
        tasks = []
        for job in list(self._jobs.values()):
            if job.is_terminal or job.task is None or job.task.done():
                continue
            job.request_cancel(reason)
            job.task.cancel()
            tasks.append(job.task)
        if tasks:
            logger.warning("analysis_shutdown cancelling=%s", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
        for retry in list(self._background):
            retry.cancel()

    # -- job lifecycle -----------------------------------------------------

    async def _run(self, job: AnalysisJob, lease: BulkheadLease) -> None:
        started = time.monotonic()
        job.started_at = _utc_now()
        loop = asyncio.get_running_loop()
        timeout_handle = loop.call_later(self._job_timeout_s, self._on_timeout, job)
        aggregator: EvidenceAggregator | None = None
        try:
            plan = await self._prepare(job)
            aggregator = EvidenceAggregator(
                job.id,
                len(plan.controls),
                on_outcome=lambda outcome, totals: self._on_outcome(job, outcome, totals),
                started_monotonic=started,
            )
            await self._evaluate(job, plan, aggregator)
            summary = await self._finalize(job, aggregator)
            self._complete(job, summary)
        except AnalysisCancelledError as exc:
            if aggregator is not None:
                aggregator.discard()
            await self._fail(job, str(exc), started)
        except AnalysisError as exc:
            if aggregator is not None:
                aggregator.discard()
            logger.warning("analysis_failed job_id=%s error=%s", job.id, exc)
            await self._fail(job, str(exc), started)
        except asyncio.CancelledError:
            if aggregator is not None:
                aggregator.discard()
            await self._fail(job, job.cancel_reason or "Analysis interrupted", started)
            raise
        except Exception as exc:  # noqa: BLE001 - every job must reach a terminal state
            if aggregator is not None:
                aggregator.discard()
            logger.exception("analysis_crashed job_id=%s", job.id)
            await self._fail(job, f"Internal error: {type(exc).__name__}", started)
        finally:
            timeout_handle.cancel()
            lease.release()
            self._update_running_gauge()

    async def _until_cancelled(self, job: AnalysisJob, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the job is cancelled or times out first.

        The losing await is cancelled, so a hung database call or document
        pipeline cannot hold the job past its wall-clock ceiling.
        """
        task = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.create_task(job.cancel_event.wait())
        try:
            await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_wait.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise AnalysisCancelledError(job.cancel_reason or "Analysis cancelled")
        return task.result()

    async def _load_inputs(self, job: AnalysisJob) -> tuple[list[ControlSpec], PromptTemplate]:
        try:
            async with self._session_factory() as session:
                framework = await frameworks_repo.get_framework(session, job.framework_id)
                if framework is None:
                    raise AnalysisSetupError(f"Framework {job.framework_id} not found")
                controls = await frameworks_repo.list_controls(session, job.framework_id)
                template = await load_template(session, framework.name)
                job.framework_name = framework.name
                if job.max_controls:
                    controls = controls[: job.max_controls]
                job.totals = AnalysisTotals(total=len(controls))
                await analyses_repo.update_analysis(
                    session,
                    job.id,
                    status=STATE_PREPARING,
                    framework_name=framework.name,
                    total_controls=len(controls),
                    started_at=job.started_at,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise AnalysisPersistenceError("Failed to load analysis inputs") from exc
        return controls, template

    async def _prepare(self, job: AnalysisJob) -> _Plan:
        self._transition(job, STATE_PREPARING, "Loading framework controls")
        controls, template = await self._until_cancelled(job, self._load_inputs(job))
        if not controls:
            raise AnalysisSetupError(f"Framework {job.framework_id} has no controls")
        if not job.document_ids:
            raise AnalysisSetupError("No documents selected for analysis")

        try:
            client = self._client or self._client_factory()
            client.validate()
        except ProviderConfigError as exc:
            raise AnalysisSetupError(str(exc)) from exc

        self._transition(job, STATE_PREPARING, "Preparing document context")
        try:
            context = await self._until_cancelled(
                job,
                self._pipeline.get_prepared_context(job.organization_id, list(job.document_ids)),
            )
        except SQLAlchemyError as exc:
            raise AnalysisPersistenceError("Failed to load documents") from exc
        if not context.document_ids:
            raise AnalysisSetupError("None of the selected documents are available for analysis")
        self._raise_if_cancelled(job)

        evaluator = ControlEvaluator(client, self._pipeline, policy=self._retry_policy)
        logger.info(
            "analysis_prepared job_id=%s controls=%s documents=%s prompt_type=%s prompt_source=%s",
            job.id,
            len(controls),
            context.document_count,
            template.prompt_type,
            template.source,
        )
        return _Plan(controls=controls, context=context, template=template, evaluator=evaluator)

    async def _evaluate(self, job: AnalysisJob, plan: _Plan, aggregator: EvidenceAggregator) -> None:
        total = len(plan.controls)
        await self._until_cancelled(job, self._persist_state(job, STATE_EVALUATING))
        self._transition(job, STATE_EVALUATING, f"Evaluating {total} controls")
        aggregator.start()
        # Workers share one iterator so controls start in canonical order.
        remaining: Iterator[ControlSpec] = iter(plan.controls)

        async def worker() -> None:
            for control in remaining:
                if job.cancel_event.is_set():
                    return
                job.current_step = f"Evaluating {control.ref} {control.title}".strip()
                variables = prompt_variables(
                    control, framework_name=job.framework_name, context=plan.context
                )
                prompt = render_prompt(plan.template.text, variables)
                outcome = await plan.evaluator.evaluate(control, prompt, plan.context)
                await aggregator.submit(outcome)

        workers = [
            asyncio.create_task(worker(), name=f"analysis-worker:{job.id}:{index}")
            for index in range(min(self._max_concurrency, total))
        ]
        cancel_wait = asyncio.create_task(job.cancel_event.wait())
        try:
            pending = set(workers)
            while pending:
                done, _ = await asyncio.wait(pending | {cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
                if cancel_wait in done:
                    break
            if job.cancel_event.is_set():
                if pending:
                    # In-flight evaluations get a bounded grace period, then are cancelled.
                    _, pending = await asyncio.wait(pending, timeout=self._cancel_grace_s)
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                raise AnalysisCancelledError(job.cancel_reason or "Analysis cancelled")
            for task in workers:
                exc = task.exception()
                if exc is not None:
                    raise exc
            await aggregator.close()
        finally:
            cancel_wait.cancel()
            for task in workers:
                if not task.done():
                    task.cancel()

    async def _finalize(self, job: AnalysisJob, aggregator: EvidenceAggregator) -> AnalysisSummary:
        self._raise_if_cancelled(job)
        job.totals = aggregator.totals
        self._transition(job, STATE_FINALIZING, "Persisting results")
        await self._until_cancelled(job, self._persist_state(job, STATE_FINALIZING))
        self._raise_if_cancelled(job)
        # A cancelled finalize rolls its transaction back, so nothing partial is kept.
        return await self._until_cancelled(job, aggregator.finalize(self._session_factory))

    def _complete(self, job: AnalysisJob, summary: AnalysisSummary) -> None:
        # The terminal event reports exactly what was persisted.
        job.state = STATE_COMPLETED
        job.totals = summary.totals
        job.progress = 100
        job.current_step = "Analysis complete"
        job.completed_at = summary.completed_at
        job.processing_time_ms = summary.processing_time_ms
        self._broadcaster.publish(job.id, self._event(job, terminal=True))
        self._jobs.pop(job.id, None)
        increment_counter("analyses_completed_total")
        logger.info(
            "analysis_completed job_id=%s total=%s failed=%s average_confidence=%s processing_time_ms=%s",
            job.id,
            summary.totals.total,
            summary.totals.failed,
            summary.average_confidence,
            summary.processing_time_ms,
        )

    async def _fail(self, job: AnalysisJob, message: str, started: float) -> None:
        job.state = STATE_FAILED
        job.error = message
        job.current_step = "Analysis failed"
        job.completed_at = _utc_now()
        job.processing_time_ms = int((time.monotonic() - started) * 1000)
        # Outcomes of a failed job are discarded, so no control counts as completed
        # and progress falls back to what the persisted row reports.
        job.totals = AnalysisTotals(total=job.totals.total)
        job.progress = compute_progress(0, job.totals.total)
        persisted = await self._write_failure(job)
        self._broadcaster.publish(job.id, self._event(job, terminal=True))
        if persisted:
            self._jobs.pop(job.id, None)
        else:
            # The job stays live, and so visible as failed, until the row catches up.
            retry = asyncio.create_task(
                self._retry_failure_write(job), name=f"analysis-fail:{job.id}"
            )
            self._background.add(retry)
            retry.add_done_callback(self._background.discard)
        increment_counter("analyses_failed_total")
        logger.warning("analysis_terminal_failed job_id=%s error=%s", job.id, message)

    async def _write_failure(self, job: AnalysisJob) -> bool:
        try:
            async with self._session_factory() as session:
                await analyses_repo.update_analysis(
                    session,
                    job.id,
                    status=STATE_FAILED,
                    error_message=job.error,
                    framework_name=job.framework_name,
                    total_controls=job.totals.total,
                    completed_controls=0,
                    compliant_controls=0,
                    partial_controls=0,
                    missing_controls=0,
                    failed_controls=0,
                    average_confidence=0.0,
                    completed_at=job.completed_at,
                    processing_time_ms=job.processing_time_ms,
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("analysis_fail_persist_failed job_id=%s", job.id)
            return False
        return True

    async def _retry_failure_write(self, job: AnalysisJob) -> None:
        settings = get_settings()
        attempts = max(1, settings.analysis_fail_persist_attempts)
        try:
            for attempt in range(1, attempts + 1):
                await asyncio.sleep(settings.analysis_fail_persist_backoff_s * attempt)
                if await self._write_failure(job):
                    logger.info("analysis_fail_persisted job_id=%s attempt=%s", job.id, attempt)
                    return
            # Left as an orphan row; cancel_analysis can still close it out.
            logger.error("analysis_fail_persist_abandoned job_id=%s attempts=%s", job.id, attempts)
        finally:
            self._jobs.pop(job.id, None)

    def _on_outcome(self, job: AnalysisJob, outcome: ControlOutcome, totals: AnalysisTotals) -> None:
        # Runs on the aggregator task, so events leave in completion-count order.
        if job.cancel_event.is_set():
            return
        job.totals = totals
        job.progress = max(job.progress, compute_progress(totals.completed, totals.total))
        job.current_step = f"Evaluated {outcome.control_ref}: {outcome.status}"
        self._broadcaster.publish(job.id, self._event(job, control=outcome.summary()))

    def _on_timeout(self, job: AnalysisJob) -> None:
        if job.is_terminal:
            return
        reason = f"Analysis timed out after {self._job_timeout_s}s"
        logger.warning("analysis_timeout job_id=%s", job.id)
        increment_counter("analyses_timed_out_total")
        job.request_cancel(reason)

    def _raise_if_cancelled(self, job: AnalysisJob) -> None:
        if job.cancel_event.is_set():
            raise AnalysisCancelledError(job.cancel_reason or "Analysis cancelled")

    def _transition(self, job: AnalysisJob, state: str, step: str) -> None:
        job.state = state
        job.current_step = step
        self._broadcaster.publish(job.id, self._event(job))

    async def _persist_state(self, job: AnalysisJob, state: str) -> None:
        try:
            async with self._session_factory() as session:
                await analyses_repo.update_analysis(session, job.id, status=state)
                await session.commit()
        except SQLAlchemyError as exc:
            raise AnalysisPersistenceError(f"Failed to record state {state}") from exc

    def _update_running_gauge(self) -> None:
        running = sum(1 for job in self._jobs.values() if not job.is_terminal)
        set_gauge("analyses_running", running)

    # -- snapshots ---------------------------------------------------------

    def _event(
        self,
        job: AnalysisJob,
        *,
        control: dict[str, Any] | None = None,
        terminal: bool = False,
    ) -> ProgressEvent:
        return ProgressEvent(
            job_id=job.id,
            seq=0,
            stage=job.state,
            progress=job.progress,
            current_step=job.current_step,
            totals=job.totals.to_dict(),
            emitted_at=_utc_now(),
            control=control,
            terminal=terminal,
            error=job.error,
        )

    def _job_snapshot(self, job: AnalysisJob) -> AnalysisSnapshot:
        return AnalysisSnapshot(
            id=job.id,
            organization_id=job.organization_id,
            framework_id=job.framework_id,
            framework_name=job.framework_name,
            name=job.name,
            status=job.state,
            progress=job.progress,
            current_step=job.current_step,
            document_ids=job.document_ids,
            totals=job.totals.to_dict(),
            processing_time_ms=job.processing_time_ms,
            error=job.error,
            started_at=job.started_at,
            completed_at=job.completed_at,
            created_at=None,
            live=True,
        )

    def _row_snapshot(self, row: Analysis) -> AnalysisSnapshot:
        total = row.total_controls or 0
        completed = row.completed_controls or 0
        if row.status == STATE_COMPLETED:
            progress = 100
        else:
            progress = compute_progress(completed, total)
        totals = {
            "total_controls": total,
            "completed_controls": completed,
            "compliant": row.compliant_controls or 0,
            "partial": row.partial_controls or 0,
            "missing": row.missing_controls or 0,
            "failed": row.failed_controls or 0,
            "average_confidence": round(row.average_confidence or 0.0, 2),
        }
        return AnalysisSnapshot(
            id=row.id,
            organization_id=row.organization_id,
            framework_id=row.framework_id,
            framework_name=row.framework_name,
            name=row.name,
            status=row.status,
            progress=progress,
            current_step=None,
            document_ids=tuple(row.document_ids_json or ()),
            totals=totals,
            processing_time_ms=row.processing_time_ms,
            error=row.error_message,
            started_at=row.started_at,
            completed_at=row.completed_at,
            created_at=row.created_at,
            live=False,
        )


_orchestrator: AnalysisOrchestrator | None = None


def get_orchestrator() -> AnalysisOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = AnalysisOrchestrator()
    return _orchestrator


def reset_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None
