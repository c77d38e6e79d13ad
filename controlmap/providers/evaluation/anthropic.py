from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from controlmap.core.config import get_settings
from controlmap.core.errors import (
    EvaluationAuthError,
    EvaluationError,
    EvaluationOutputError,
    EvaluationTimeoutError,
    EvaluationTransportError,
    ProviderConfigError,
)
from controlmap.domain.analysis import ControlSpec
from controlmap.providers.evaluation.parsing import parse_evaluation_text
from controlmap.services.telemetry import record_external_call

logger = logging.getLogger(__name__)


class AnthropicEvaluationClient:
    name = "evaluation.anthropic"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.evaluation_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(base_url=self._settings.anthropic_base_url, timeout=timeout_s)
        return self._client

    def validate(self) -> None:
        if not self._settings.anthropic_api_key:
            raise ProviderConfigError(
                "ANTHROPIC_API_KEY is required for the anthropic evaluation provider"
            )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def evaluate(self, control: ControlSpec, prompt: str) -> dict[str, Any]:
        self.validate()
        api_key = self._settings.anthropic_api_key

        payload = {
            "model": self._settings.anthropic_model,
            "max_tokens": self._settings.evaluation_max_output_tokens,
            "temperature": 0.1,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {
            "x-api-key": api_key,
            "anthropic-version": self._settings.anthropic_api_version,
            "content-type": "application/json",
        }
        client = self._get_client()
        start = time.monotonic()

        def _record(success: bool) -> None:
            record_external_call(
                integration=self.name,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

        try:
            response = await client.post("/v1/messages", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            _record(False)
            logger.warning("anthropic_evaluate_timeout control_id=%s", control.id)
            raise EvaluationTimeoutError("Anthropic evaluation timed out.") from exc
        except httpx.HTTPError as exc:
            _record(False)
            logger.warning("anthropic_evaluate_transport_error control_id=%s", control.id)
            raise EvaluationTransportError("Anthropic request failed.") from exc

        if response.status_code in {401, 403}:
            _record(False)
            raise EvaluationAuthError("Anthropic auth error: check ANTHROPIC_API_KEY.")
        if response.status_code == 429 or response.status_code >= 500:
            _record(False)
            error = EvaluationTransportError(f"Anthropic error: {response.status_code}")
            setattr(error, "status_code", response.status_code)
            raise error
        if response.status_code >= 400:
            _record(False)
            error = EvaluationError(f"Anthropic rejected the request: {response.status_code}")
            setattr(error, "status_code", response.status_code)
            raise error

        _record(True)
        try:
            body = response.json()
        except ValueError as exc:
            raise EvaluationOutputError("Anthropic returned a non-JSON body.") from exc
        blocks = body.get("content") or []
        text = "".join(
            block.get("text", "") for block in blocks if isinstance(block, dict) and block.get("type") == "text"
        )
        return parse_evaluation_text(text)
