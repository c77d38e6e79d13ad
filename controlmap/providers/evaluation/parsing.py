from __future__ import annotations

import json
import re
from typing import Any

from controlmap.core.errors import EvaluationOutputError


# Models often wrap JSON in prose or code fences; take the outermost object.
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _locator(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return f"CHUNK-{int(value)}"
    text = str(value).strip()
    return text or None


def normalize_citation(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "locator": _locator(_first(item, "locator", "chunkId", "chunk_id")),
        "document_id": _first(item, "documentId", "document_id"),
        "text": _first(item, "evidenceText", "evidence_text", "text") or "",
        "page_number": _first(item, "pageNumber", "page_number"),
        "chunk_index": _first(item, "chunkIndex", "chunk_index"),
        "confidence": _first(item, "confidence"),
        "relevance": _first(item, "relevanceScore", "relevance_score", "relevance"),
    }


def normalize_payload(data: Any) -> dict[str, Any]:
    # Accept the camelCase keys the prompts ask for as well as snake_case.
    if not isinstance(data, dict):
        raise EvaluationOutputError("Evaluation output is not a JSON object")
    raw_citations = _first(data, "evidenceItems", "evidence_items", "citations") or []
    if not isinstance(raw_citations, list):
        raise EvaluationOutputError("Evaluation citations must be a list")
    return {
        "status": _first(data, "status"),
        "confidence": _first(data, "confidenceScore", "confidence_score", "confidence"),
        "reasoning": _first(data, "reasoning"),
        "citations": [normalize_citation(item) for item in raw_citations if isinstance(item, dict)],
    }


def parse_evaluation_text(text: str | None) -> dict[str, Any]:
    if not text:
        raise EvaluationOutputError("Evaluation backend returned an empty response")
    match = _JSON_OBJECT.search(text)
    if match is None:
        raise EvaluationOutputError("No JSON object found in evaluation response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise EvaluationOutputError(f"Evaluation response is not valid JSON: {exc.msg}") from exc
    return normalize_payload(data)
