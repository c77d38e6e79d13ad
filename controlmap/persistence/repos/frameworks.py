from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from controlmap.domain.analysis import ControlSpec
from controlmap.domain.models import Control, Framework


async def get_framework(session: AsyncSession, framework_id: str) -> Framework | None:
    result = await session.execute(select(Framework).where(Framework.id == framework_id))
    return result.scalar_one_or_none()


async def list_controls(session: AsyncSession, framework_id: str) -> list[ControlSpec]:
    # Canonical catalog order: sort_order, then control_ref for ties.
    result = await session.execute(
        select(Control)
        .where(Control.framework_id == framework_id)
        .order_by(Control.sort_order.asc(), Control.control_ref.asc())
    )
    return [
        ControlSpec(
            id=row.id,
            ref=row.control_ref,
            title=row.title,
            description=row.description or "",
            requirement_text=row.requirement_text or "",
            category=row.category,
            position=position,
        )
        for position, row in enumerate(result.scalars().all())
    ]
