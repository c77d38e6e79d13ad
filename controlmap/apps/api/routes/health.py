from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from controlmap.apps.api.deps import get_orchestrator
from controlmap.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from controlmap.apps.api.response import API_VERSION, SuccessEnvelope, success_response
from controlmap.services.analysis.orchestrator import AnalysisOrchestrator

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class LivenessResponse(BaseModel):
    status: str
    service: str
    api_version: str
    analyses_running: int
    analysis_slots: int


@router.get("/health", response_model=SuccessEnvelope[LivenessResponse])
async def liveness(
    request: Request,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> dict:
    # Process liveness plus job-slot usage; database and breaker checks live under /ops/health.
    payload = LivenessResponse(
        status="ok",
        service="controlmap",
        api_version=API_VERSION,
        analyses_running=orchestrator.running_count,
        analysis_slots=orchestrator.analysis_slots,
    )
    return success_response(request=request, data=payload)
