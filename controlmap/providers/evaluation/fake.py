from __future__ import annotations

from typing import Any

from controlmap.domain.analysis import ControlSpec
from controlmap.providers.evaluation.parsing import normalize_payload


class FakeEvaluationClient:
    name = "evaluation.fake"

    def __init__(self, payload: dict[str, Any] | None = None) -> None:
        # Deterministic answer keeps tests and local runs free of external calls.
        self._payload = payload or {
            "status": "missing",
            "confidenceScore": 0,
            "reasoning": "No evidence found for this control in the provided documents.",
            "evidenceItems": [],
        }
        self.calls: list[str] = []

    def validate(self) -> None:
        return None

    async def evaluate(self, control: ControlSpec, prompt: str) -> dict[str, Any]:
        _ = prompt
        self.calls.append(control.id)
        return normalize_payload(dict(self._payload))
