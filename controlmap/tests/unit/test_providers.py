from __future__ import annotations

import json

import httpx
import pytest

from controlmap.core.config import get_settings
from controlmap.core.errors import (
    EvaluationAuthError,
    EvaluationError,
    EvaluationTimeoutError,
    EvaluationTransportError,
    ProviderConfigError,
)
from controlmap.domain.analysis import ControlSpec
from controlmap.providers.evaluation.anthropic import AnthropicEvaluationClient
from controlmap.providers.evaluation.factory import get_evaluation_client
from controlmap.providers.evaluation.fake import FakeEvaluationClient
from controlmap.providers.evaluation.gemini_vertex import GeminiVertexEvaluationClient
from controlmap.services.telemetry import external_latency_by_integration


CONTROL = ControlSpec(id="c1", ref="A.5.1", title="Policies")


def _anthropic(monkeypatch, handler) -> AnthropicEvaluationClient:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    get_settings.cache_clear()
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://anthropic.test"
    )
    return AnthropicEvaluationClient(client=client)


def test_factory_selects_provider(monkeypatch) -> None:
    monkeypatch.setenv("EVALUATION_PROVIDER", "fake")
    get_settings.cache_clear()
    assert isinstance(get_evaluation_client(), FakeEvaluationClient)

    monkeypatch.setenv("EVALUATION_PROVIDER", "anthropic")
    get_settings.cache_clear()
    assert isinstance(get_evaluation_client(), AnthropicEvaluationClient)

    monkeypatch.setenv("EVALUATION_PROVIDER", "openai")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_evaluation_client()


@pytest.mark.asyncio
async def test_fake_client_reports_missing() -> None:
    client = FakeEvaluationClient()
    payload = await client.evaluate(CONTROL, "prompt")
    assert payload["status"] == "missing"
    assert payload["confidence"] == 0
    assert client.calls == ["c1"]


@pytest.mark.asyncio
async def test_vertex_client_missing_config(monkeypatch) -> None:
    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    monkeypatch.delenv("GOOGLE_CLOUD_LOCATION", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError, match="GOOGLE_CLOUD_PROJECT"):
        GeminiVertexEvaluationClient().validate()
    with pytest.raises(ProviderConfigError):
        await GeminiVertexEvaluationClient().evaluate(CONTROL, "prompt")


@pytest.mark.asyncio
async def test_anthropic_client_missing_key(monkeypatch) -> None:
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError, match="ANTHROPIC_API_KEY"):
        AnthropicEvaluationClient().validate()
    with pytest.raises(ProviderConfigError):
        await AnthropicEvaluationClient().evaluate(CONTROL, "prompt")


@pytest.mark.asyncio
async def test_anthropic_client_parses_text_blocks(monkeypatch) -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        text = '```json\n{"status": "compliant", "confidenceScore": 81, "reasoning": "ok", "evidenceItems": []}\n```'
        return httpx.Response(200, json={"content": [{"type": "text", "text": text}]})

    client = _anthropic(monkeypatch, handler)
    payload = await client.evaluate(CONTROL, "Evaluate this control")

    assert payload["status"] == "compliant"
    assert payload["confidence"] == 81
    assert seen["headers"]["x-api-key"] == "test-key"
    assert seen["body"]["messages"][0]["content"] == "Evaluate this control"
    assert external_latency_by_integration(60)["evaluation.anthropic"]["calls"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "error"),
    [
        (401, EvaluationAuthError),
        (429, EvaluationTransportError),
        (503, EvaluationTransportError),
        (400, EvaluationError),
    ],
)
async def test_anthropic_client_maps_http_errors(monkeypatch, status_code: int, error: type) -> None:
    client = _anthropic(monkeypatch, lambda _request: httpx.Response(status_code, json={}))
    with pytest.raises(error):
        await client.evaluate(CONTROL, "prompt")


@pytest.mark.asyncio
async def test_anthropic_client_maps_timeouts(monkeypatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = _anthropic(monkeypatch, handler)
    with pytest.raises(EvaluationTimeoutError):
        await client.evaluate(CONTROL, "prompt")
