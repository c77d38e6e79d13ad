from __future__ import annotations


class ControlMapError(Exception):
    """Base error for controlmap."""


class ProviderConfigError(ControlMapError):
    """Missing or invalid provider configuration."""


class DatabaseError(ControlMapError):
    """Database layer failure."""


class IntegrationUnavailableError(ControlMapError):
    """External integration is temporarily unavailable (circuit open)."""


class ServiceBusyError(ControlMapError):
    """Local capacity is saturated; the caller should retry later."""


class EvaluationError(ControlMapError):
    """Evaluation backend call failed."""


class EvaluationTransportError(EvaluationError):
    """Network, rate-limit or 5xx failure talking to the evaluation backend."""


class EvaluationTimeoutError(EvaluationTransportError):
    """Evaluation backend did not answer in time."""


class EvaluationAuthError(EvaluationError):
    """Evaluation backend rejected our credentials."""


class EvaluationOutputError(EvaluationError):
    """Evaluation backend answered with output we cannot use."""


class AnalysisError(ControlMapError):
    """Analysis lifecycle failure."""


class AnalysisSetupError(AnalysisError):
    """Analysis cannot start: unknown framework, no controls or no documents."""


class AnalysisPersistenceError(AnalysisError):
    """Analysis results could not be written durably."""


class AnalysisCancelledError(AnalysisError):
    """Analysis was cancelled by request or timed out."""


class AnalysisNotFoundError(AnalysisError):
    """No analysis exists with the given id."""


class AnalysisConflictError(AnalysisError):
    """Operation is not allowed in the analysis' current state."""
