from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from controlmap.persistence.db import get_session
from controlmap.services.analysis.orchestrator import AnalysisOrchestrator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


def get_orchestrator(request: Request) -> AnalysisOrchestrator:
    # The app owns one orchestrator so every request sees the same job registry.
    return request.app.state.orchestrator
