from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from controlmap.core.errors import AnalysisError, AnalysisPersistenceError
from controlmap.domain.analysis import (
    STATUS_COMPLIANT,
    STATUS_PARTIAL,
    AnalysisSummary,
    AnalysisTotals,
    ControlOutcome,
)
from controlmap.persistence.repos import analyses as analyses_repo
from controlmap.services.telemetry import increment_counter

logger = logging.getLogger(__name__)


OutcomeCallback = Callable[[ControlOutcome, AnalysisTotals], None]


class EvidenceAggregator:
    """Single writer for one analysis' running totals.

    Evaluator workers ``submit`` outcomes in any order; one consumer task applies
    them in arrival order, so totals never need a lock. ``finalize`` writes the
    evidence records and the summary in a single transaction.
    """

    def __init__(
        self,
        job_id: str,
        total: int,
        *,
        on_outcome: OutcomeCallback | None = None,
        started_monotonic: float | None = None,
    ) -> None:
        self._job_id = job_id
        self._totals = AnalysisTotals(total=total)
        self._outcomes: dict[str, ControlOutcome] = {}
        self._on_outcome = on_outcome
        self._started = started_monotonic if started_monotonic is not None else time.monotonic()
        self._queue: asyncio.Queue[ControlOutcome | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    @property
    def totals(self) -> AnalysisTotals:
        return self._totals.copy()

    @property
    def outcomes(self) -> list[ControlOutcome]:
        return sorted(self._outcomes.values(), key=lambda outcome: outcome.position)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._consume(), name=f"aggregator:{self._job_id}")

    async def submit(self, outcome: ControlOutcome) -> None:
        await self._queue.put(outcome)

    async def close(self) -> None:
        # Drain everything submitted so far, then stop the consumer.
        if self._task is None:
            return
        await self._queue.put(None)
        await self._task

    def discard(self) -> None:
        # Cancelled jobs drop their outcomes; nothing is persisted.
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._outcomes.clear()

    async def _consume(self) -> None:
        while True:
            outcome = await self._queue.get()
            if outcome is None:
                return
            if not self._apply(outcome):
                continue
            if self._on_outcome is not None:
                try:
                    self._on_outcome(outcome, self._totals.copy())
                except Exception:  # noqa: BLE001 - observers never stop aggregation
                    logger.exception("aggregator_callback_failed job_id=%s", self._job_id)

    def _apply(self, outcome: ControlOutcome) -> bool:
        if outcome.control_id in self._outcomes:
            logger.warning(
                "aggregator_duplicate_outcome job_id=%s control_id=%s", self._job_id, outcome.control_id
            )
            increment_counter("aggregator_duplicate_outcomes_total")
            return False
        if self._totals.completed >= self._totals.total:
            logger.error(
                "aggregator_outcome_overflow job_id=%s control_id=%s", self._job_id, outcome.control_id
            )
            return False
        self._outcomes[outcome.control_id] = outcome
        totals = self._totals
        totals.completed += 1
        if outcome.status == STATUS_COMPLIANT:
            totals.compliant += 1
        elif outcome.status == STATUS_PARTIAL:
            totals.partial += 1
        else:
            totals.missing += 1
        if outcome.failed:
            totals.failed += 1
        else:
            totals.confidence_sum += outcome.confidence
            totals.confidence_count += 1
        return True

    def build_summary(self) -> AnalysisSummary:
        totals = self._totals.copy()
        return AnalysisSummary(
            totals=totals,
            average_confidence=round(totals.average_confidence, 2),
            processing_time_ms=int((time.monotonic() - self._started) * 1000),
            completed_at=datetime.now(timezone.utc),
        )

    async def finalize(self, session_factory: async_sessionmaker[AsyncSession]) -> AnalysisSummary:
        if self._totals.completed != self._totals.total:
            raise AnalysisError(
                f"Cannot finalize with {self._totals.completed} of {self._totals.total} outcomes"
            )
        summary = self.build_summary()
        async with session_factory() as session:
            try:
                await analyses_repo.persist_results(
                    session,
                    analysis_id=self._job_id,
                    outcomes=self.outcomes,
                    summary=summary,
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.exception("aggregator_persist_failed job_id=%s", self._job_id)
                raise AnalysisPersistenceError("Failed to persist analysis results") from exc
        logger.info(
            "analysis_results_persisted job_id=%s total=%s compliant=%s partial=%s missing=%s failed=%s",
            self._job_id,
            summary.totals.total,
            summary.totals.compliant,
            summary.totals.partial,
            summary.totals.missing,
            summary.totals.failed,
        )
        return summary
