from __future__ import annotations

import pytest
from sqlalchemy.exc import SQLAlchemyError

from controlmap.core.errors import AnalysisError, AnalysisPersistenceError
from controlmap.domain.analysis import STATE_QUEUED, ControlOutcome, EvidenceCitation
from controlmap.persistence.db import SessionLocal
from controlmap.persistence.repos import analyses as analyses_repo
from controlmap.services.analysis.aggregator import EvidenceAggregator


def _outcome(index: int, status: str, confidence: float, *, failed: bool = False) -> ControlOutcome:
    return ControlOutcome(
        control_id=f"c{index}",
        control_ref=f"C-{index}",
        control_title=f"Control {index}",
        status=status,
        confidence=confidence,
        reasoning="because",
        citations=(
            EvidenceCitation(locator="CHUNK-0", text="quote", relevance=90, confidence=80, document_id="doc-1"),
        )
        if not failed
        else (),
        failed=failed,
        position=index,
    )


async def _create_row(job_id: str) -> None:
    async with SessionLocal() as session:
        await analyses_repo.create_analysis(
            session,
            analysis_id=job_id,
            organization_id="org-1",
            framework_id="fw-1",
            document_ids=["doc-1"],
            status=STATE_QUEUED,
        )
        await session.commit()


@pytest.mark.asyncio
async def test_totals_track_every_outcome_in_arrival_order() -> None:
    seen: list[int] = []
    aggregator = EvidenceAggregator(
        "job-1", 3, on_outcome=lambda _outcome, totals: seen.append(totals.completed)
    )
    aggregator.start()
    await aggregator.submit(_outcome(2, "partial", 50))
    await aggregator.submit(_outcome(0, "compliant", 90))
    await aggregator.submit(_outcome(1, "missing", 0, failed=True))
    await aggregator.close()

    totals = aggregator.totals
    assert seen == [1, 2, 3]
    assert (totals.compliant, totals.partial, totals.missing, totals.failed) == (1, 1, 1, 1)
    assert totals.compliant + totals.partial + totals.missing == totals.completed
    # Failure outcomes do not drag the average down.
    assert totals.average_confidence == 70
    assert [outcome.control_id for outcome in aggregator.outcomes] == ["c0", "c1", "c2"]


@pytest.mark.asyncio
async def test_duplicate_and_overflow_outcomes_are_rejected() -> None:
    aggregator = EvidenceAggregator("job-2", 1)
    aggregator.start()
    await aggregator.submit(_outcome(0, "compliant", 90))
    await aggregator.submit(_outcome(0, "missing", 0))
    await aggregator.submit(_outcome(1, "missing", 0))
    await aggregator.close()
    assert aggregator.totals.completed == 1
    assert aggregator.totals.compliant == 1


@pytest.mark.asyncio
async def test_finalize_requires_every_outcome() -> None:
    aggregator = EvidenceAggregator("job-3", 2)
    aggregator.start()
    await aggregator.submit(_outcome(0, "compliant", 90))
    await aggregator.close()
    with pytest.raises(AnalysisError):
        await aggregator.finalize(SessionLocal)


@pytest.mark.asyncio
async def test_finalize_persists_mappings_items_and_summary() -> None:
    await _create_row("job-4")
    aggregator = EvidenceAggregator("job-4", 2)
    aggregator.start()
    await aggregator.submit(_outcome(1, "partial", 40))
    await aggregator.submit(_outcome(0, "compliant", 80))
    await aggregator.close()

    summary = await aggregator.finalize(SessionLocal)

    assert summary.average_confidence == 60
    async with SessionLocal() as session:
        row = await analyses_repo.get_analysis(session, "job-4")
        mappings = await analyses_repo.list_mappings(session, "job-4")
    assert row.status == "completed"
    assert row.completed_controls == 2
    assert row.compliant_controls == 1
    assert row.partial_controls == 1
    assert [mapping.control_id for mapping, _items in mappings] == ["c0", "c1"]
    assert all(len(items) == 1 for _mapping, items in mappings)


@pytest.mark.asyncio
async def test_finalize_failure_writes_nothing(monkeypatch) -> None:
    await _create_row("job-5")

    async def boom(*_args, **_kwargs) -> None:
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(analyses_repo, "persist_results", boom)
    aggregator = EvidenceAggregator("job-5", 1)
    aggregator.start()
    await aggregator.submit(_outcome(0, "compliant", 90))
    await aggregator.close()
    with pytest.raises(AnalysisPersistenceError):
        await aggregator.finalize(SessionLocal)

    async with SessionLocal() as session:
        row = await analyses_repo.get_analysis(session, "job-5")
        assert await analyses_repo.list_mappings(session, "job-5") == []
    assert row.status == "queued"
