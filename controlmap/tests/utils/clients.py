from __future__ import annotations

import asyncio
from typing import Any, Callable

from controlmap.domain.analysis import ControlSpec
from controlmap.providers.evaluation.parsing import normalize_payload


def answer(status: str = "missing", confidence: float = 0, **extra: Any) -> dict[str, Any]:
    payload = {
        "status": status,
        "confidenceScore": confidence,
        "reasoning": f"Evidence judged {status}.",
        "evidenceItems": [],
    }
    payload.update(extra)
    return payload


class ScriptedClient:
    """Evaluation client whose answer per control is decided by a callback.

    The callback receives the control and the 1-based attempt number for that
    control and returns a raw payload or raises.
    """

    def __init__(
        self,
        respond: Callable[[ControlSpec, int], dict[str, Any]] | None = None,
        *,
        name: str = "evaluation.scripted",
        gate: asyncio.Event | None = None,
        gate_after: int = 0,
        delay: Callable[[ControlSpec], float] | None = None,
        config_error: Exception | None = None,
    ) -> None:
        self.name = name
        self._respond = respond or (lambda _control, _attempt: answer())
        self._gate = gate
        self._gate_after = gate_after
        self._delay = delay
        self._config_error = config_error
        self.calls: list[str] = []
        self.attempts: dict[str, int] = {}
        self.started = asyncio.Event()
        self.completed: list[str] = []

    def validate(self) -> None:
        if self._config_error is not None:
            raise self._config_error

    async def evaluate(self, control: ControlSpec, prompt: str) -> dict[str, Any]:
        _ = prompt
        self.calls.append(control.id)
        attempt = self.attempts.get(control.id, 0) + 1
        self.attempts[control.id] = attempt
        self.started.set()
        # Calls past ``gate_after`` block until the test opens the gate.
        if self._gate is not None and len(self.calls) > self._gate_after:
            await self._gate.wait()
        if self._delay is not None:
            await asyncio.sleep(self._delay(control))
        payload = normalize_payload(self._respond(control, attempt))
        self.completed.append(control.id)
        return payload


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)
