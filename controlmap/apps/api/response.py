from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from fastapi import Request
from fastapi.responses import Response
from pydantic import BaseModel

from controlmap.domain.analysis import ProgressEvent


API_VERSION = "v1"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
}

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def _meta(request: Request) -> dict[str, Any]:
    # The request middleware stamps every request; handlers reached without it get "unknown".
    request_id = getattr(request.state, "request_id", None) or "unknown"
    return ResponseMeta(request_id=request_id).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}


# -- progress stream frames -------------------------------------------------


def event_type(event: ProgressEvent) -> str:
    if not event.terminal:
        return "analysis.progress"
    return "analysis.failed" if event.error else "analysis.completed"


def sse_frame(payload_type: str, job_id: str, data: dict[str, Any]) -> str:
    """One SSE message: event name ``message``, data a single compact JSON line."""
    body = json.dumps(
        {"type": payload_type, "job_id": job_id, "data": data},
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return f"event: message\ndata: {body}\n\n"


def progress_frame(event: ProgressEvent) -> str:
    return sse_frame(event_type(event), event.job_id, event.to_payload())


def heartbeat_frame(job_id: str) -> str:
    return sse_frame("heartbeat", job_id, {"ts": datetime.now(timezone.utc).isoformat()})


# -- report downloads -------------------------------------------------------


def markdown_attachment(body: str, filename: str) -> Response:
    return Response(
        content=body,
        media_type="text/markdown",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
