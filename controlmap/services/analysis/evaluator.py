from __future__ import annotations

import asyncio
import logging
import math
from typing import Any

from controlmap.core.config import get_settings
from controlmap.core.errors import (
    ControlMapError,
    EvaluationOutputError,
    EvaluationTimeoutError,
)
from controlmap.domain.analysis import (
    CONTROL_STATUSES,
    STATUS_MISSING,
    ControlOutcome,
    ControlSpec,
    EvidenceCitation,
)
from controlmap.providers.documents.base import DocumentPipeline, PreparedContext
from controlmap.providers.evaluation.base import EvaluationClient
from controlmap.services.resilience import (
    CircuitBreaker,
    RetryPolicy,
    get_circuit_breaker,
    retry_async,
)
from controlmap.services.telemetry import increment_counter

logger = logging.getLogger(__name__)


def clamp_score(value: Any, *, strict: bool) -> float:
    """Coerce a model-supplied score into [0, 100].

    Missing values count as 0. Non-numeric values raise
    ``EvaluationOutputError`` when ``strict`` and count as 0 otherwise.
    """
    if value is None:
        return 0.0
    try:
        if isinstance(value, bool):
            raise TypeError("boolean score")
        number = float(value)
    except (TypeError, ValueError) as exc:
        if strict:
            raise EvaluationOutputError(f"Confidence is not numeric: {value!r}") from exc
        return 0.0
    if math.isnan(number):
        if strict:
            raise EvaluationOutputError("Confidence is NaN")
        return 0.0
    return min(100.0, max(0.0, number))


def failure_outcome(control: ControlSpec, message: str, *, attempts: int) -> ControlOutcome:
    return ControlOutcome(
        control_id=control.id,
        control_ref=control.ref,
        control_title=control.title,
        control_description=control.description,
        position=control.position,
        status=STATUS_MISSING,
        confidence=0.0,
        reasoning=f"Analysis failed: {message}",
        citations=(),
        failed=True,
        attempts=attempts,
    )


class ControlEvaluator:
    """Wraps one evaluation client with retry, circuit breaking and output validation."""

    def __init__(
        self,
        client: EvaluationClient,
        pipeline: DocumentPipeline,
        *,
        breaker: CircuitBreaker | None = None,
        policy: RetryPolicy | None = None,
        evidence_max_chars: int | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client
        self._pipeline = pipeline
        self._breaker = breaker
        self._timeout_s = settings.evaluation_timeout_ms / 1000.0
        # Outer bound stays above the per-call timeout so the call's own timeout is reported.
        self._policy = policy or RetryPolicy.from_settings(headroom_ms=1000)
        self._evidence_max_chars = evidence_max_chars or settings.evidence_text_max_chars

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is None:
            self._breaker = await get_circuit_breaker(getattr(self._client, "name", "evaluation"))
        return self._breaker

    async def evaluate(
        self, control: ControlSpec, prompt: str, context: PreparedContext
    ) -> ControlOutcome:
        breaker = await self._get_breaker()
        attempts = 0

        async def _call() -> ControlOutcome:
            nonlocal attempts
            attempts += 1
            increment_counter("evaluation_attempts_total")
            async with breaker.guard():
                try:
                    payload = await asyncio.wait_for(
                        self._client.evaluate(control, prompt), timeout=self._timeout_s
                    )
                except asyncio.TimeoutError as exc:
                    raise EvaluationTimeoutError(
                        f"Evaluation timed out after {self._timeout_s:.0f}s"
                    ) from exc
            return self._build_outcome(control, payload, context, attempts)

        def _on_retry(attempt: int, exc: Exception) -> None:
            logger.warning(
                "control_evaluation_retry control_id=%s attempt=%s error=%s",
                control.id,
                attempt,
                type(exc).__name__,
            )

        try:
            return await retry_async(_call, policy=self._policy, on_retry=_on_retry)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - one control must never abort the job
            increment_counter("evaluation_failures_total")
            message = str(exc) or type(exc).__name__
            if isinstance(exc, (ControlMapError, asyncio.TimeoutError)):
                logger.warning(
                    "control_evaluation_failed control_id=%s attempts=%s error=%s",
                    control.id,
                    attempts,
                    message,
                )
            else:
                logger.exception(
                    "control_evaluation_failed control_id=%s attempts=%s", control.id, attempts
                )
            return failure_outcome(control, message, attempts=max(attempts, 1))

    def _build_outcome(
        self,
        control: ControlSpec,
        payload: dict[str, Any],
        context: PreparedContext,
        attempts: int,
    ) -> ControlOutcome:
        status = str(payload.get("status") or "").strip().lower()
        if status not in CONTROL_STATUSES:
            raise EvaluationOutputError(f"Invalid status: {payload.get('status')!r}")
        confidence = clamp_score(payload.get("confidence"), strict=True)
        reasoning = str(payload.get("reasoning") or "").strip() or "No reasoning provided"
        citations = tuple(
            self._build_citation(item, context) for item in payload.get("citations") or []
        )
        return ControlOutcome(
            control_id=control.id,
            control_ref=control.ref,
            control_title=control.title,
            control_description=control.description,
            position=control.position,
            status=status,
            confidence=confidence,
            reasoning=reasoning,
            citations=citations,
            failed=False,
            attempts=attempts,
        )

    def _build_citation(self, item: dict[str, Any], context: PreparedContext) -> EvidenceCitation:
        source = self._pipeline.resolve_citation(context, item)
        text = str(item.get("text") or "")[: self._evidence_max_chars]
        return EvidenceCitation(
            locator=item.get("locator"),
            text=text,
            relevance=clamp_score(item.get("relevance"), strict=False),
            confidence=clamp_score(item.get("confidence"), strict=False),
            document_id=source.document_id,
            document_name=source.document_name,
            page_number=source.page_number,
            chunk_index=source.chunk_index,
        )
