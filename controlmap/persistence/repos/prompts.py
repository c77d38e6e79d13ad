from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from controlmap.domain.models import AnalysisPrompt


async def get_active_prompt(session: AsyncSession, prompt_type: str) -> AnalysisPrompt | None:
    # Most recently updated active template wins when several are active.
    result = await session.execute(
        select(AnalysisPrompt)
        .where(AnalysisPrompt.prompt_type == prompt_type)
        .where(AnalysisPrompt.is_active.is_(True))
        .order_by(AnalysisPrompt.updated_at.desc(), AnalysisPrompt.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
