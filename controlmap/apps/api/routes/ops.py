from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from controlmap.apps.api.deps import get_db, get_orchestrator
from controlmap.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from controlmap.apps.api.response import SuccessEnvelope, success_response
from controlmap.core.config import get_settings
from controlmap.domain.models import Analysis
from controlmap.persistence.db import pool_stats
from controlmap.services.analysis.orchestrator import AnalysisOrchestrator
from controlmap.services.resilience import get_circuit_breaker_state
from controlmap.services.telemetry import (
    availability,
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
    request_latency_by_status,
    stream_duration_stats,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)

_EVALUATION_BREAKERS = ("evaluation.vertex", "evaluation.anthropic")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _db_error(message: str) -> HTTPException:
    # Keep ops errors explicit without leaking stack traces.
    return HTTPException(status_code=500, detail={"code": "DB_ERROR", "message": message})


async def _check_db_health(db: AsyncSession) -> bool:
    try:
        await db.execute(select(1))
    except SQLAlchemyError:
        return False
    return True


@router.get("/health", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_health(
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> dict:
    settings = get_settings()
    db_ok = await _check_db_health(db)
    breaker_name = f"evaluation.{settings.evaluation_provider.lower()}"
    breaker_state = await get_circuit_breaker_state(breaker_name)
    payload = {
        "status": "ok" if db_ok and breaker_state != "open" else "degraded",
        "api": "ok",
        "db": "ok" if db_ok else "degraded",
        "evaluation_provider": settings.evaluation_provider,
        "evaluation_breaker": breaker_state,
        "progress_topics": orchestrator.broadcaster.topic_count,
        "timestamp": _utc_now().isoformat(),
    }
    return success_response(request=request, data=payload)


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_metrics(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # JSON metrics for dashboards; counters are process-local.
    try:
        rows = (
            await db.execute(select(Analysis.status, func.count()).group_by(Analysis.status))
        ).all()
    except SQLAlchemyError as exc:
        raise _db_error("Database error while aggregating analysis metrics") from exc
    by_status = {str(status): int(count) for status, count in rows}

    metrics_counters = counters_snapshot()
    payload: dict[str, Any] = {
        "counters": {
            "controlmap_analyses_started_total": metrics_counters.get("analyses_started_total", 0),
            "controlmap_analyses_completed_total": metrics_counters.get("analyses_completed_total", 0),
            "controlmap_analyses_failed_total": metrics_counters.get("analyses_failed_total", 0),
            "controlmap_analyses_timed_out_total": metrics_counters.get("analyses_timed_out_total", 0),
            "controlmap_evaluation_attempts_total": metrics_counters.get("evaluation_attempts_total", 0),
            "controlmap_evaluation_failures_total": metrics_counters.get("evaluation_failures_total", 0),
            "controlmap_external_retries_total": metrics_counters.get("external_retries_total", 0),
            "controlmap_service_busy_total": metrics_counters.get("service_busy_total", 0),
            "controlmap_analysis_api_errors_total": metrics_counters.get(
                "analysis_api_errors_total", 0
            ),
            "controlmap_progress_events_dropped_total": metrics_counters.get(
                "progress_events_dropped_total", 0
            ),
        },
        "gauges": {
            "controlmap_analyses_running": gauges_snapshot().get("analyses_running", 0.0),
            "controlmap_progress_topics_active": gauges_snapshot().get("progress_topics_active", 0.0),
        },
        "analyses_by_status": by_status,
    }
    payload["telemetry_counters"] = metrics_counters
    payload["telemetry_gauges"] = gauges_snapshot()
    payload["availability"] = availability(3600)
    payload["latency_ms"] = request_latency_by_status(3600)
    payload["external_call_latency_ms"] = external_latency_by_integration(3600)
    payload["sse_stream_duration_ms"] = stream_duration_stats()
    payload["db_pool"] = pool_stats()
    payload["circuit_breaker_state"] = {
        name: await get_circuit_breaker_state(name) for name in _EVALUATION_BREAKERS
    }
    return success_response(request=request, data=payload)
