from __future__ import annotations

import logging
import time
from typing import Any

from controlmap.core.config import get_settings
from controlmap.core.errors import (
    EvaluationAuthError,
    EvaluationTimeoutError,
    EvaluationTransportError,
    ProviderConfigError,
)
from controlmap.domain.analysis import ControlSpec
from controlmap.providers.evaluation.parsing import parse_evaluation_text
from controlmap.services.telemetry import record_external_call

logger = logging.getLogger(__name__)


class GeminiVertexEvaluationClient:
    name = "evaluation.vertex"

    def __init__(self) -> None:
        self._settings = get_settings()
        self._model: Any = None

    def _validate_config(self) -> tuple[str, str, str]:
        # Fail fast to avoid confusing downstream SDK errors.
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        model = self._settings.gemini_model
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if not model:
            missing.append("GEMINI_MODEL")
        if missing:
            raise ProviderConfigError(f"Vertex config missing: set {', '.join(missing)} in .env.")
        return project, location, model

    def validate(self) -> None:
        self._validate_config()

    def _get_model(self) -> Any:
        if self._model is not None:
            return self._model
        project, location, model_name = self._validate_config()
        try:
            from vertexai import init
            from vertexai.generative_models import GenerativeModel
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install google-cloud-aiplatform."
            ) from exc
        init(project=project, location=location)
        self._model = GenerativeModel(model_name)
        return self._model

    async def evaluate(self, control: ControlSpec, prompt: str) -> dict[str, Any]:
        model = self._get_model()
        from google.api_core.exceptions import (
            DeadlineExceeded,
            GoogleAPICallError,
            PermissionDenied,
            Unauthenticated,
        )
        from google.auth.exceptions import DefaultCredentialsError, RefreshError
        from vertexai.generative_models import GenerationConfig

        start = time.monotonic()
        success = False
        try:
            response = await model.generate_content_async(
                prompt,
                generation_config=GenerationConfig(
                    temperature=0.1,
                    max_output_tokens=self._settings.evaluation_max_output_tokens,
                ),
            )
            text = getattr(response, "text", None)
            success = True
        except (DefaultCredentialsError, RefreshError, PermissionDenied, Unauthenticated) as exc:
            logger.warning("vertex_evaluate_auth_error control_id=%s", control.id)
            raise EvaluationAuthError(
                "Vertex auth error: run `gcloud auth application-default login`."
            ) from exc
        except DeadlineExceeded as exc:
            logger.warning("vertex_evaluate_timeout control_id=%s", control.id)
            raise EvaluationTimeoutError("Vertex evaluation timed out.") from exc
        except GoogleAPICallError as exc:
            logger.warning("vertex_evaluate_error control_id=%s code=%s", control.id, exc.code)
            error = EvaluationTransportError(f"Vertex evaluation failed: {exc.message}")
            setattr(error, "status_code", exc.code)
            raise error from exc
        except ValueError as exc:
            # Raised by response.text when the candidate was blocked or empty.
            logger.warning("vertex_evaluate_empty control_id=%s", control.id)
            raise EvaluationTransportError("Vertex returned no usable candidate.") from exc
        finally:
            record_external_call(
                integration=self.name,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )
        return parse_evaluation_text(text)
