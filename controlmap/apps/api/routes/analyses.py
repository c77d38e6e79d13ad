from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field

from controlmap.apps.api.deps import get_orchestrator
from controlmap.apps.api.errors import http_error_for
from controlmap.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from controlmap.apps.api.response import (
    SSE_HEADERS,
    SuccessEnvelope,
    heartbeat_frame,
    markdown_attachment,
    progress_frame,
    success_response,
)
from controlmap.core.config import get_settings
from controlmap.core.errors import ControlMapError
from controlmap.services.analysis.orchestrator import AnalysisOrchestrator
from controlmap.services.analysis.reports import (
    markdown_filename,
    parse_status_filter,
    render_markdown,
)
from controlmap.services.telemetry import record_stream_duration

logger = logging.getLogger(__name__)
router = APIRouter(tags=["analyses"], responses=DEFAULT_ERROR_RESPONSES)


class StartAnalysisRequest(BaseModel):
    organization_id: str = Field(min_length=1)
    framework_id: str = Field(min_length=1)
    document_ids: list[str] = Field(default_factory=list)
    name: str | None = Field(default=None, max_length=200)
    # Quick mode: evaluate only the first N controls in catalog order.
    max_controls: int | None = Field(default=None, ge=1)


class StartAnalysisResponse(BaseModel):
    job_id: str
    status: str


class CancelAnalysisRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class AnalysisTotalsResponse(BaseModel):
    total_controls: int
    completed_controls: int
    compliant: int
    partial: int
    missing: int
    failed: int
    average_confidence: float


class AnalysisResponse(BaseModel):
    id: str
    organization_id: str
    framework_id: str
    framework_name: str | None
    name: str | None
    status: str
    progress: int
    current_step: str | None
    document_ids: list[str]
    totals: AnalysisTotalsResponse
    processing_time_ms: int | None
    error: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime | None
    live: bool


class AnalysisListResponse(BaseModel):
    items: list[AnalysisResponse]


class DeleteAnalysisResponse(BaseModel):
    job_id: str
    deleted: bool


@router.post(
    "/analyses",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[StartAnalysisResponse],
)
async def start_analysis(
    payload: StartAnalysisRequest,
    request: Request,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> dict:
    try:
        job_id = await orchestrator.start_analysis(
            payload.organization_id,
            payload.framework_id,
            payload.document_ids,
            name=payload.name,
            max_controls=payload.max_controls,
        )
    except ControlMapError as exc:
        raise http_error_for(exc) from exc
    return success_response(request=request, data=StartAnalysisResponse(job_id=job_id, status="queued"))


@router.get("/analyses", response_model=SuccessEnvelope[AnalysisListResponse])
async def list_analyses(
    request: Request,
    organization_id: str = Query(min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> dict:
    snapshots = await orchestrator.list_analyses(organization_id, limit=limit)
    return success_response(request=request, data={"items": [s.to_dict() for s in snapshots]})


@router.get("/analyses/{job_id}", response_model=SuccessEnvelope[AnalysisResponse])
async def get_analysis(
    job_id: str,
    request: Request,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> dict:
    try:
        snapshot = await orchestrator.get_snapshot(job_id)
    except ControlMapError as exc:
        raise http_error_for(exc) from exc
    return success_response(request=request, data=snapshot.to_dict())


@router.get("/analyses/{job_id}/events")
async def analysis_events(
    job_id: str,
    request: Request,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    if not orchestrator.broadcaster.has_topic(job_id):
        # Unknown ids fail here, before any stream headers go out.
        try:
            await orchestrator.get_snapshot(job_id)
        except ControlMapError as exc:
            raise http_error_for(exc) from exc
    heartbeat_s = get_settings().progress_sse_heartbeat_s

    async def event_stream() -> AsyncGenerator[str, None]:
        started = time.monotonic()
        # Subscribed only once the body is actually read, so an unread response holds nothing.
        subscription = orchestrator.subscribe(job_id)
        try:
            if subscription is None:
                # Topic already torn down (or owned elsewhere): send the persisted state once.
                try:
                    snapshot = await orchestrator.get_snapshot(job_id)
                except ControlMapError:
                    logger.warning("analysis_events_snapshot_gone job_id=%s", job_id)
                    return
                yield progress_frame(orchestrator.snapshot_event(snapshot))
                return
            while True:
                if await request.is_disconnected():
                    # Disconnects only close this subscription; the job keeps running.
                    logger.info("analysis_events_disconnected job_id=%s", job_id)
                    break
                try:
                    event = await subscription.next_event(timeout=heartbeat_s)
                except StopAsyncIteration:
                    break
                if event is None:
                    yield heartbeat_frame(job_id)
                    continue
                yield progress_frame(event)
                if event.terminal:
                    break
        finally:
            if subscription is not None:
                subscription.close()
            record_stream_duration((time.monotonic() - started) * 1000.0)

    return StreamingResponse(event_stream(), headers=SSE_HEADERS, media_type="text/event-stream")


@router.post(
    "/analyses/{job_id}/cancel",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[AnalysisResponse],
)
async def cancel_analysis(
    job_id: str,
    request: Request,
    payload: CancelAnalysisRequest | None = None,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> dict:
    reason = (payload.reason if payload else None) or "Cancelled by user"
    try:
        snapshot = await orchestrator.cancel_analysis(job_id, reason)
    except ControlMapError as exc:
        raise http_error_for(exc) from exc
    return success_response(request=request, data=snapshot.to_dict())


@router.delete("/analyses/{job_id}", response_model=SuccessEnvelope[DeleteAnalysisResponse])
async def delete_analysis(
    job_id: str,
    request: Request,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> dict:
    try:
        await orchestrator.delete_analysis(job_id)
    except ControlMapError as exc:
        raise http_error_for(exc) from exc
    return success_response(request=request, data=DeleteAnalysisResponse(job_id=job_id, deleted=True))


@router.get("/analyses/{job_id}/results", response_model=SuccessEnvelope[dict[str, Any]])
async def get_analysis_results(
    job_id: str,
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> dict:
    statuses = parse_status_filter(status_filter)
    try:
        results = await orchestrator.get_results(job_id, statuses=statuses)
    except ControlMapError as exc:
        raise http_error_for(exc) from exc
    return success_response(request=request, data=results)


@router.get("/analyses/{job_id}/export/markdown", response_class=Response)
async def export_analysis_markdown(
    job_id: str,
    status_filter: str | None = Query(default=None, alias="status"),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> Response:
    statuses = parse_status_filter(status_filter)
    try:
        results = await orchestrator.get_results(job_id, statuses=statuses)
    except ControlMapError as exc:
        raise http_error_for(exc) from exc
    generated_at = datetime.now(timezone.utc)
    body = render_markdown(results, statuses=statuses, generated_at=generated_at)
    filename = markdown_filename(results["analysis"], statuses, generated_at)
    return markdown_attachment(body, filename)
