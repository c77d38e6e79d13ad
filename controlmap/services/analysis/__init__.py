from __future__ import annotations

from controlmap.services.analysis.aggregator import EvidenceAggregator
from controlmap.services.analysis.broadcaster import (
    ProgressBroadcaster,
    Subscription,
    get_progress_broadcaster,
)
from controlmap.services.analysis.evaluator import ControlEvaluator
from controlmap.services.analysis.orchestrator import (
    AnalysisOrchestrator,
    compute_progress,
    get_orchestrator,
)


__all__ = [
    "AnalysisOrchestrator",
    "ControlEvaluator",
    "EvidenceAggregator",
    "ProgressBroadcaster",
    "Subscription",
    "compute_progress",
    "get_orchestrator",
    "get_progress_broadcaster",
]
