from __future__ import annotations

from typing import Any

from controlmap.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _error_response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    404: _error_response("Not found", "ANALYSIS_NOT_FOUND", "Analysis not found"),
    409: _error_response("Conflict", "ANALYSIS_CONFLICT", "Analysis is still evaluating"),
    422: _error_response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _error_response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
    503: _error_response("Service busy", "SERVICE_BUSY", "Too many analyses are running; retry later"),
}
