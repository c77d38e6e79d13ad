from __future__ import annotations

import os
import tempfile

# Settings are read at import time by the engine, so point it at a local DB first.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.gettempdir()}/controlmap-test-{os.getpid()}.db",
)
os.environ.setdefault("EVALUATION_PROVIDER", "fake")
os.environ.setdefault("CB_SHARED_STATE", "false")

import pytest

from controlmap.core.config import get_settings
from controlmap.domain.models import Base
from controlmap.persistence.db import engine
from controlmap.services.analysis.broadcaster import reset_progress_broadcaster
from controlmap.services.analysis.orchestrator import reset_orchestrator
from controlmap.services.resilience import reset_breakers
from controlmap.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test keeps analyses and evidence rows isolated.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    get_settings.cache_clear()
    reset_breakers()
    reset_progress_broadcaster()
    reset_orchestrator()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_breakers()
    reset_progress_broadcaster()
    reset_orchestrator()
