from __future__ import annotations

from typing import Any, Protocol

from controlmap.domain.analysis import ControlSpec


class EvaluationClient(Protocol):
    """One request/response call to a reasoning backend for one control.

    Returns a payload with ``status``, ``confidence``, ``reasoning`` and
    ``citations`` keys (see ``parsing.normalize_payload``) or raises an
    ``EvaluationError`` subclass.
    """

    name: str

    def validate(self) -> None:
        """Raise ``ProviderConfigError`` when the backend cannot be called at all."""
        ...

    async def evaluate(self, control: ControlSpec, prompt: str) -> dict[str, Any]:
        ...
