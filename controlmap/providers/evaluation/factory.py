from __future__ import annotations

from controlmap.core.config import get_settings
from controlmap.core.errors import ProviderConfigError
from controlmap.providers.evaluation.anthropic import AnthropicEvaluationClient
from controlmap.providers.evaluation.base import EvaluationClient
from controlmap.providers.evaluation.fake import FakeEvaluationClient
from controlmap.providers.evaluation.gemini_vertex import GeminiVertexEvaluationClient


def get_evaluation_client() -> EvaluationClient:
    settings = get_settings()
    provider = (settings.evaluation_provider or "vertex").lower()

    if provider == "fake":
        return FakeEvaluationClient()
    if provider == "anthropic":
        return AnthropicEvaluationClient()
    if provider == "vertex":
        return GeminiVertexEvaluationClient()
    raise ProviderConfigError(f"Unknown EVALUATION_PROVIDER: {settings.evaluation_provider}")
