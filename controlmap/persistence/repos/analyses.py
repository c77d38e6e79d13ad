from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from controlmap.domain.analysis import STATE_COMPLETED, AnalysisSummary, ControlOutcome
from controlmap.domain.models import Analysis, EvidenceItem, EvidenceMapping


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_analysis(
    session: AsyncSession,
    *,
    analysis_id: str,
    organization_id: str,
    framework_id: str,
    document_ids: list[str],
    status: str,
    name: str | None = None,
    options: dict[str, Any] | None = None,
) -> Analysis:
    row = Analysis(
        id=analysis_id,
        organization_id=organization_id,
        framework_id=framework_id,
        name=name,
        status=status,
        document_ids_json=list(document_ids),
        options_json=options or None,
        created_at=_utc_now(),
    )
    session.add(row)
    return row


async def get_analysis(session: AsyncSession, analysis_id: str) -> Analysis | None:
    result = await session.execute(select(Analysis).where(Analysis.id == analysis_id))
    return result.scalar_one_or_none()


async def list_analyses(
    session: AsyncSession, organization_id: str, *, limit: int = 50
) -> list[Analysis]:
    result = await session.execute(
        select(Analysis)
        .where(Analysis.organization_id == organization_id)
        .order_by(Analysis.created_at.desc(), Analysis.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def update_analysis(session: AsyncSession, analysis_id: str, **values: Any) -> None:
    await session.execute(update(Analysis).where(Analysis.id == analysis_id).values(**values))


async def persist_results(
    session: AsyncSession,
    *,
    analysis_id: str,
    outcomes: Iterable[ControlOutcome],
    summary: AnalysisSummary,
) -> None:
    # Caller owns the transaction: mappings, items and the summary commit together.
    ordered = sorted(outcomes, key=lambda outcome: outcome.position)
    mappings: list[tuple[EvidenceMapping, ControlOutcome]] = []
    for outcome in ordered:
        mapping = EvidenceMapping(
            analysis_id=analysis_id,
            control_id=outcome.control_id,
            control_ref=outcome.control_ref,
            control_title=outcome.control_title,
            control_description=outcome.control_description or None,
            position=outcome.position,
            status=outcome.status,
            confidence_score=outcome.confidence,
            reasoning=outcome.reasoning,
            is_failure=outcome.failed,
            attempts=outcome.attempts,
        )
        session.add(mapping)
        mappings.append((mapping, outcome))
    # One flush assigns mapping ids for the evidence items.
    await session.flush()
    for mapping, outcome in mappings:
        for position, citation in enumerate(outcome.citations):
            session.add(
                EvidenceItem(
                    evidence_mapping_id=mapping.id,
                    position=position,
                    document_id=citation.document_id,
                    document_name=citation.document_name,
                    locator=citation.locator,
                    chunk_index=citation.chunk_index,
                    page_number=citation.page_number,
                    evidence_text=citation.text,
                    confidence=citation.confidence,
                    relevance_score=citation.relevance,
                )
            )
    totals = summary.totals
    await update_analysis(
        session,
        analysis_id,
        status=STATE_COMPLETED,
        total_controls=totals.total,
        completed_controls=totals.completed,
        compliant_controls=totals.compliant,
        partial_controls=totals.partial,
        missing_controls=totals.missing,
        failed_controls=totals.failed,
        average_confidence=summary.average_confidence,
        processing_time_ms=summary.processing_time_ms,
        completed_at=summary.completed_at,
        error_message=None,
    )


async def list_mappings(
    session: AsyncSession, analysis_id: str
) -> list[tuple[EvidenceMapping, list[EvidenceItem]]]:
    result = await session.execute(
        select(EvidenceMapping)
        .where(EvidenceMapping.analysis_id == analysis_id)
        .order_by(EvidenceMapping.position.asc(), EvidenceMapping.id.asc())
    )
    mappings = list(result.scalars().all())
    if not mappings:
        return []
    items_result = await session.execute(
        select(EvidenceItem)
        .where(EvidenceItem.evidence_mapping_id.in_([mapping.id for mapping in mappings]))
        .order_by(EvidenceItem.evidence_mapping_id.asc(), EvidenceItem.position.asc())
    )
    by_mapping: dict[int, list[EvidenceItem]] = {}
    for item in items_result.scalars().all():
        by_mapping.setdefault(item.evidence_mapping_id, []).append(item)
    return [(mapping, by_mapping.get(mapping.id, [])) for mapping in mappings]


async def delete_analysis(session: AsyncSession, analysis_id: str) -> None:
    # Delete children explicitly; SQLite test databases do not enforce ON DELETE CASCADE.
    mapping_ids = select(EvidenceMapping.id).where(EvidenceMapping.analysis_id == analysis_id)
    await session.execute(
        delete(EvidenceItem)
        .where(EvidenceItem.evidence_mapping_id.in_(mapping_ids))
        .execution_options(synchronize_session=False)
    )
    await session.execute(delete(EvidenceMapping).where(EvidenceMapping.analysis_id == analysis_id))
    await session.execute(delete(Analysis).where(Analysis.id == analysis_id))
