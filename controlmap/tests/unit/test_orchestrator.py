from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import SQLAlchemyError

from controlmap.core.config import get_settings
from controlmap.core.errors import (
    AnalysisConflictError,
    AnalysisNotFoundError,
    EvaluationAuthError,
    EvaluationTransportError,
    ProviderConfigError,
    ServiceBusyError,
)
from controlmap.domain.analysis import ControlSpec
from controlmap.persistence.db import SessionLocal
from controlmap.persistence.repos import analyses as analyses_repo
from controlmap.providers.documents.database import DatabaseDocumentPipeline
from controlmap.providers.evaluation.gemini_vertex import GeminiVertexEvaluationClient
from controlmap.services.analysis.broadcaster import ProgressBroadcaster
from controlmap.services.analysis.orchestrator import AnalysisOrchestrator, compute_progress
from controlmap.services.resilience import Bulkhead, RetryPolicy
from controlmap.tests.utils.clients import ScriptedClient, answer, wait_until
from controlmap.tests.utils.seed import seed_documents, seed_framework


FAST_RETRY = RetryPolicy(timeout_ms=2000, max_attempts=2, backoff_ms=1)


def _orchestrator(client: ScriptedClient, **kwargs) -> AnalysisOrchestrator:
    kwargs.setdefault("broadcaster", ProgressBroadcaster())
    kwargs.setdefault("retry_policy", FAST_RETRY)
    return AnalysisOrchestrator(evaluation_client=client, **kwargs)


async def _collect(orchestrator: AnalysisOrchestrator, job_id: str) -> list:
    subscription = orchestrator.subscribe(job_id)
    assert subscription is not None
    events = []
    async for event in subscription:
        events.append(event)
    return events


async def _mappings(job_id: str) -> list:
    async with SessionLocal() as session:
        return await analyses_repo.list_mappings(session, job_id)


def test_compute_progress_reserves_100_for_completion() -> None:
    assert compute_progress(0, 0) == 0
    assert compute_progress(1, 3) == 33
    assert compute_progress(3, 3) == 99


@pytest.mark.asyncio
async def test_all_missing_analysis_completes() -> None:
    framework_id, control_ids = await seed_framework(controls=3)
    document_ids = await seed_documents()
    client = ScriptedClient()
    orchestrator = _orchestrator(client)

    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    events = await _collect(orchestrator, job_id)
    snapshot = await orchestrator.wait(job_id, timeout=5)

    assert snapshot.status == "completed"
    assert snapshot.progress == 100
    assert snapshot.totals["total_controls"] == 3
    assert snapshot.totals["missing"] == 3
    assert snapshot.totals["compliant"] == 0
    assert snapshot.totals["partial"] == 0
    assert snapshot.totals["average_confidence"] == 0

    terminal = events[-1]
    assert terminal.terminal is True
    assert terminal.progress == 100
    assert terminal.error is None
    # The terminal event carries exactly what was persisted.
    assert terminal.totals == snapshot.totals
    progresses = [event.progress for event in events]
    assert progresses == sorted(progresses)
    seqs = [event.seq for event in events if not event.replay]
    assert seqs == sorted(seqs)

    mappings = await _mappings(job_id)
    assert [mapping.control_id for mapping, _items in mappings] == control_ids
    assert sorted(client.calls) == sorted(control_ids)


@pytest.mark.asyncio
async def test_running_totals_stay_consistent_on_every_event() -> None:
    framework_id, _ = await seed_framework(controls=6)
    document_ids = await seed_documents()
    statuses = ["compliant", "partial", "missing"]

    def respond(control: ControlSpec, _attempt: int) -> dict:
        index = int(control.ref.split("-")[1])
        return answer(statuses[index % 3], 30 * (index % 3) + 20)

    orchestrator = _orchestrator(ScriptedClient(respond))
    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    events = await _collect(orchestrator, job_id)

    for event in events:
        totals = event.totals
        assert totals["compliant"] + totals["partial"] + totals["missing"] == totals["completed_controls"]
        assert totals["completed_controls"] <= totals["total_controls"]
    control_events = [event for event in events if event.control is not None]
    assert len(control_events) == 6
    assert [event.totals["completed_controls"] for event in control_events] == [1, 2, 3, 4, 5, 6]
    final = events[-1].totals
    assert (final["compliant"], final["partial"], final["missing"]) == (2, 2, 2)


@pytest.mark.asyncio
async def test_transient_failure_is_retried_and_recorded() -> None:
    framework_id, control_ids = await seed_framework(controls=3)
    document_ids = await seed_documents()

    def respond(control: ControlSpec, attempt: int) -> dict:
        if control.id == control_ids[1] and attempt == 1:
            raise EvaluationTransportError("connection reset")
        return answer("compliant", 80)

    orchestrator = _orchestrator(ScriptedClient(respond))
    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    snapshot = await orchestrator.wait(job_id, timeout=5)

    assert snapshot.status == "completed"
    assert snapshot.totals["compliant"] == 3
    assert snapshot.totals["failed"] == 0
    by_control = {mapping.control_id: mapping for mapping, _items in await _mappings(job_id)}
    assert by_control[control_ids[1]].attempts == 2
    assert by_control[control_ids[0]].attempts == 1


@pytest.mark.asyncio
async def test_permanent_failure_becomes_failed_outcome() -> None:
    framework_id, control_ids = await seed_framework(controls=3)
    document_ids = await seed_documents()

    def respond(control: ControlSpec, _attempt: int) -> dict:
        if control.id == control_ids[2]:
            raise EvaluationAuthError("invalid credentials")
        return answer("compliant", 90)

    orchestrator = _orchestrator(ScriptedClient(respond))
    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    snapshot = await orchestrator.wait(job_id, timeout=5)

    assert snapshot.status == "completed"
    assert snapshot.totals["completed_controls"] == 3
    assert snapshot.totals["failed"] == 1
    assert snapshot.totals["missing"] == 1
    assert snapshot.totals["average_confidence"] == 90
    results = await orchestrator.get_results(job_id)
    failed = [control for control in results["controls"] if control["failed"]]
    assert len(failed) == 1
    assert failed[0]["reasoning"].startswith("Analysis failed:")
    assert failed[0]["confidence"] == 0


@pytest.mark.asyncio
async def test_cancel_before_completion_persists_nothing(monkeypatch) -> None:
    monkeypatch.setenv("ANALYSIS_CANCEL_GRACE_S", "0.05")
    monkeypatch.setenv("ANALYSIS_MAX_CONCURRENCY", "1")
    get_settings.cache_clear()
    framework_id, _ = await seed_framework(controls=4)
    document_ids = await seed_documents()
    gate = asyncio.Event()
    client = ScriptedClient(gate=gate, gate_after=2)
    orchestrator = _orchestrator(client)

    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    subscription = orchestrator.subscribe(job_id)

    def two_evaluated() -> bool:
        last = orchestrator.broadcaster.last_event(job_id)
        return len(client.calls) == 3 and last is not None and last.progress == 50

    await wait_until(two_evaluated)

    await orchestrator.cancel_analysis(job_id, "Stopped by auditor")
    events = [event async for event in subscription]
    snapshot = await orchestrator.wait(job_id, timeout=5)

    assert any(event.progress == 50 for event in events)
    assert snapshot.status == "failed"
    assert snapshot.live is False
    assert snapshot.error == "Stopped by auditor"
    assert snapshot.totals["completed_controls"] == 0
    terminal = events[-1]
    assert terminal.terminal is True
    assert terminal.error == "Stopped by auditor"
    # The failed event reports what the row now says, not the last running progress.
    assert terminal.progress == snapshot.progress == 0
    assert terminal.totals == snapshot.totals
    assert await _mappings(job_id) == []
    with pytest.raises(AnalysisConflictError):
        await orchestrator.cancel_analysis(job_id)


@pytest.mark.asyncio
async def test_late_subscriber_sees_snapshot_then_live_progress(monkeypatch) -> None:
    monkeypatch.setenv("ANALYSIS_MAX_CONCURRENCY", "1")
    get_settings.cache_clear()
    framework_id, _ = await seed_framework(controls=4)
    document_ids = await seed_documents()
    gate = asyncio.Event()
    orchestrator = _orchestrator(ScriptedClient(gate=gate, gate_after=2))

    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    broadcaster = orchestrator.broadcaster

    def halfway() -> bool:
        last = broadcaster.last_event(job_id)
        return last is not None and last.progress >= 50

    await wait_until(halfway)

    subscription = orchestrator.subscribe(job_id)
    first = await subscription.next_event(timeout=5)
    assert first.replay is True
    assert first.progress == 50
    assert first.totals["completed_controls"] == 2

    gate.set()
    rest = [event async for event in subscription]
    progresses = [first.progress] + [event.progress for event in rest]
    assert progresses == sorted(progresses)
    assert rest[-1].terminal is True
    assert rest[-1].progress == 100


@pytest.mark.asyncio
async def test_persistence_failure_fails_the_job(monkeypatch) -> None:
    framework_id, _ = await seed_framework(controls=2)
    document_ids = await seed_documents()

    async def boom(*_args, **_kwargs) -> None:
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(analyses_repo, "persist_results", boom)
    orchestrator = _orchestrator(ScriptedClient(lambda _c, _a: answer("compliant", 90)))
    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    events = await _collect(orchestrator, job_id)
    snapshot = await orchestrator.wait(job_id, timeout=5)

    assert snapshot.status == "failed"
    assert "persist" in snapshot.error
    assert events[-1].terminal is True
    assert events[-1].error == snapshot.error
    assert not any(event.stage == "completed" for event in events)
    assert await _mappings(job_id) == []


@pytest.mark.asyncio
async def test_unknown_framework_fails_during_preparation() -> None:
    document_ids = await seed_documents()
    client = ScriptedClient()
    orchestrator = _orchestrator(client)
    job_id = await orchestrator.start_analysis("org-1", "fw-missing", document_ids)
    snapshot = await orchestrator.wait(job_id, timeout=5)
    assert snapshot.status == "failed"
    assert "fw-missing" in snapshot.error
    assert client.calls == []


@pytest.mark.asyncio
async def test_unavailable_documents_fail_during_preparation() -> None:
    framework_id, _ = await seed_framework(controls=2)
    pending = await seed_documents(processed=False)
    orchestrator = _orchestrator(ScriptedClient())

    no_docs = await orchestrator.start_analysis("org-1", framework_id, [])
    unprocessed = await orchestrator.start_analysis("org-1", framework_id, pending)

    assert (await orchestrator.wait(no_docs, timeout=5)).status == "failed"
    failed = await orchestrator.wait(unprocessed, timeout=5)
    assert failed.status == "failed"
    assert failed.error == "None of the selected documents are available for analysis"


@pytest.mark.asyncio
async def test_quick_mode_limits_controls() -> None:
    framework_id, control_ids = await seed_framework(controls=5)
    document_ids = await seed_documents()
    client = ScriptedClient()
    orchestrator = _orchestrator(client)
    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids, max_controls=2)
    snapshot = await orchestrator.wait(job_id, timeout=5)
    assert snapshot.totals["total_controls"] == 2
    assert sorted(client.calls) == control_ids[:2]


@pytest.mark.asyncio
async def test_saturated_bulkhead_rejects_new_jobs() -> None:
    framework_id, _ = await seed_framework(controls=1)
    document_ids = await seed_documents()
    gate = asyncio.Event()
    orchestrator = _orchestrator(ScriptedClient(gate=gate), bulkhead=Bulkhead("analysis", 1))

    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    with pytest.raises(ServiceBusyError):
        await orchestrator.start_analysis("org-1", framework_id, document_ids)
    gate.set()
    assert (await orchestrator.wait(job_id, timeout=5)).status == "completed"
    # Capacity returns once the job is terminal.
    second = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    assert (await orchestrator.wait(second, timeout=5)).status == "completed"


@pytest.mark.asyncio
async def test_results_filter_and_delete() -> None:
    framework_id, control_ids = await seed_framework(controls=3)
    document_ids = await seed_documents()

    def respond(control: ControlSpec, _attempt: int) -> dict:
        return answer("compliant", 95) if control.id == control_ids[0] else answer("missing", 0)

    orchestrator = _orchestrator(ScriptedClient(respond))
    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids, name="Q3 review")
    await orchestrator.wait(job_id, timeout=5)

    results = await orchestrator.get_results(job_id, statuses=["compliant"])
    assert [control["control_id"] for control in results["controls"]] == [control_ids[0]]
    # Gaps always cover the whole analysis.
    assert len(results["gaps"]["missing_controls"]) == 2
    assert (await orchestrator.get_results(job_id, statuses=[]))["controls"] == []

    listed = await orchestrator.list_analyses("org-1")
    assert [snapshot.name for snapshot in listed] == ["Q3 review"]
    assert listed[0].live is False

    await orchestrator.delete_analysis(job_id)
    with pytest.raises(AnalysisNotFoundError):
        await orchestrator.get_snapshot(job_id)
    assert await _mappings(job_id) == []


@pytest.mark.asyncio
async def test_job_timeout_cancels_the_job(monkeypatch) -> None:
    monkeypatch.setenv("ANALYSIS_JOB_TIMEOUT_S", "0.1")
    monkeypatch.setenv("ANALYSIS_CANCEL_GRACE_S", "0.05")
    get_settings.cache_clear()
    framework_id, _ = await seed_framework(controls=2)
    document_ids = await seed_documents()
    orchestrator = _orchestrator(ScriptedClient(gate=asyncio.Event()))

    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    snapshot = await orchestrator.wait(job_id, timeout=5)
    assert snapshot.status == "failed"
    assert "timed out" in snapshot.error


@pytest.mark.asyncio
async def test_shutdown_fails_running_jobs() -> None:
    framework_id, _ = await seed_framework(controls=2)
    document_ids = await seed_documents()
    client = ScriptedClient(gate=asyncio.Event())
    orchestrator = _orchestrator(client)
    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    await asyncio.wait_for(client.started.wait(), timeout=5)

    await orchestrator.shutdown()

    snapshot = await orchestrator.get_snapshot(job_id)
    assert snapshot.status == "failed"
    assert snapshot.live is False


class _StalledPipeline(DatabaseDocumentPipeline):
    async def get_prepared_context(self, organization_id, document_ids):
        await asyncio.sleep(30)
        return await super().get_prepared_context(organization_id, document_ids)


@pytest.mark.asyncio
async def test_job_timeout_applies_while_preparing(monkeypatch) -> None:
    monkeypatch.setenv("ANALYSIS_JOB_TIMEOUT_S", "0.1")
    monkeypatch.setenv("ANALYSIS_CANCEL_GRACE_S", "0.05")
    get_settings.cache_clear()
    framework_id, _ = await seed_framework(controls=2)
    document_ids = await seed_documents()
    client = ScriptedClient()
    bulkhead = Bulkhead("analysis", 1)
    orchestrator = _orchestrator(client, pipeline=_StalledPipeline(SessionLocal), bulkhead=bulkhead)

    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    snapshot = await orchestrator.wait(job_id, timeout=5)

    assert snapshot.status == "failed"
    assert "timed out" in snapshot.error
    assert snapshot.live is False
    assert client.calls == []
    assert bulkhead.active == 0


@pytest.mark.asyncio
async def test_job_timeout_applies_while_finalizing(monkeypatch) -> None:
    monkeypatch.setenv("ANALYSIS_JOB_TIMEOUT_S", "0.5")
    monkeypatch.setenv("ANALYSIS_CANCEL_GRACE_S", "0.05")
    get_settings.cache_clear()

    async def stalled_persist(session, **kwargs) -> None:
        await asyncio.sleep(30)

    monkeypatch.setattr(analyses_repo, "persist_results", stalled_persist)
    framework_id, _ = await seed_framework(controls=2)
    document_ids = await seed_documents()
    client = ScriptedClient()
    orchestrator = _orchestrator(client)

    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    snapshot = await orchestrator.wait(job_id, timeout=5)

    assert len(client.calls) == 2
    assert snapshot.status == "failed"
    assert "timed out" in snapshot.error
    assert snapshot.totals["completed_controls"] == 0
    assert await _mappings(job_id) == []


@pytest.mark.asyncio
async def test_misconfigured_provider_fails_during_preparation(monkeypatch) -> None:
    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    get_settings.cache_clear()
    framework_id, _ = await seed_framework(controls=2)
    document_ids = await seed_documents()
    orchestrator = AnalysisOrchestrator(
        client_factory=GeminiVertexEvaluationClient,
        broadcaster=ProgressBroadcaster(),
        retry_policy=FAST_RETRY,
    )

    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    snapshot = await orchestrator.wait(job_id, timeout=5)

    assert snapshot.status == "failed"
    assert "GOOGLE_CLOUD_PROJECT" in snapshot.error
    assert snapshot.totals["completed_controls"] == 0
    assert await _mappings(job_id) == []


@pytest.mark.asyncio
async def test_provider_config_error_skips_every_evaluation() -> None:
    framework_id, _ = await seed_framework(controls=3)
    document_ids = await seed_documents()
    client = ScriptedClient(config_error=ProviderConfigError("ANTHROPIC_API_KEY is required"))
    orchestrator = _orchestrator(client)

    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    snapshot = await orchestrator.wait(job_id, timeout=5)

    assert snapshot.status == "failed"
    assert "ANTHROPIC_API_KEY" in snapshot.error
    assert client.calls == []


@pytest.mark.asyncio
async def test_out_of_order_completion_keeps_progress_monotonic(monkeypatch) -> None:
    monkeypatch.setenv("ANALYSIS_MAX_CONCURRENCY", "3")
    get_settings.cache_clear()
    framework_id, control_ids = await seed_framework(controls=3)
    document_ids = await seed_documents()
    # C-1 is slowest and C-3 fastest, so outcomes land in reverse catalog order.
    client = ScriptedClient(delay=lambda control: 0.2 - 0.05 * int(control.ref.split("-")[1]))
    orchestrator = _orchestrator(client)

    job_id = await orchestrator.start_analysis("org-1", framework_id, document_ids)
    events = await _collect(orchestrator, job_id)
    snapshot = await orchestrator.wait(job_id, timeout=5)

    assert snapshot.status == "completed"
    assert client.completed == list(reversed(control_ids))
    control_events = [event for event in events if event.control is not None]
    assert [event.control["control_ref"] for event in control_events] == ["C-3", "C-2", "C-1"]
    assert [event.totals["completed_controls"] for event in control_events] == [1, 2, 3]
    progresses = [event.progress for event in events]
    assert progresses == sorted(progresses)
    assert progresses[-1] == 100
    mappings = await _mappings(job_id)
    assert [mapping.control_id for mapping, _items in mappings] == control_ids


@pytest.mark.asyncio
async def test_failed_state_write_is_retried_then_job_released(monkeypatch) -> None:
    monkeypatch.setenv("ANALYSIS_FAIL_PERSIST_BACKOFF_S", "0.01")
    get_settings.cache_clear()
    original_update = analyses_repo.update_analysis
    failures_left = [1]

    async def flaky_update(session, analysis_id, **values) -> None:
        if values.get("status") == "failed" and failures_left[0]:
            failures_left[0] -= 1
            raise SQLAlchemyError("database is locked")
        await original_update(session, analysis_id, **values)

    monkeypatch.setattr(analyses_repo, "update_analysis", flaky_update)
    document_ids = await seed_documents()
    orchestrator = _orchestrator(ScriptedClient())

    job_id = await orchestrator.start_analysis("org-1", "fw-missing", document_ids)
    first = await orchestrator.wait(job_id, timeout=5)
    assert first.status == "failed"

    snapshot = first
    for _ in range(200):
        snapshot = await orchestrator.get_snapshot(job_id)
        if not snapshot.live:
            break
        await asyncio.sleep(0.01)

    assert failures_left == [0]
    assert snapshot.live is False
    assert snapshot.status == "failed"
    assert "fw-missing" in snapshot.error
    await orchestrator.delete_analysis(job_id)
    with pytest.raises(AnalysisNotFoundError):
        await orchestrator.get_snapshot(job_id)
