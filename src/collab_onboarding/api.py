"""
Onboarding API Endpoints.

Thin HTTP surface over the FlowOrchestrator so a UI can drive the flow
over localhost. One orchestrator per process.
"""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from .container import build_container
from .orchestrator import FlowOrchestrator
from .steps import coerce_step_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/onboarding", tags=["onboarding"])

_orchestrator: FlowOrchestrator | None = None


async def get_orchestrator() -> FlowOrchestrator:
    """Build and initialize the process-wide orchestrator on first use."""
    global _orchestrator
    if _orchestrator is None or not _orchestrator.is_initialized:
        orchestrator = build_container().orchestrator
        if not await orchestrator.initialize():
            raise HTTPException(status_code=503, detail="No usable onboarding session")
        _orchestrator = orchestrator
    return _orchestrator


# =============================================================================
# Request/Response Models
# =============================================================================


class StepRequest(BaseModel):
    """Raw step form data, camelCase as sent by the app."""
    data: dict = Field(default_factory=dict)


class SkipStepRequest(BaseModel):
    step_id: str
    reason: str | None = None


class ConnectivityRequest(BaseModel):
    online: bool


class StepResponse(BaseModel):
    success: bool
    next_step: str | None = None
    route: str | None = None
    error: str | None = None
    errors: list[str] = []
    warnings: list[str] = []
    pending_sync: bool = False
    queued: bool = False


class ProgressResponse(BaseModel):
    current_step: str
    completed_steps: list[str]
    skipped_steps: list[str]
    total_steps: int
    percentage_complete: int
    is_complete: bool
    next_step: str | None
    can_proceed: bool
    user_migrated: bool
    is_online: bool
    estimated_minutes_remaining: int
    offline_queue_size: int = 0


class SyncResponse(BaseModel):
    synced_count: int
    total: int
    success: bool


def _require_step(step_id: str):
    sid = coerce_step_id(step_id)
    if sid is None:
        raise HTTPException(status_code=404, detail=f"Unknown step: {step_id}")
    return sid


def _step_response(orchestrator: FlowOrchestrator, result) -> StepResponse:
    return StepResponse(
        success=result.success,
        next_step=result.next_step,
        route=orchestrator.route_for(result.next_step) if result.next_step else None,
        error=result.error,
        errors=result.errors,
        warnings=result.warnings,
        pending_sync=result.pending_sync,
        queued=result.queued,
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/progress", response_model=ProgressResponse)
async def get_progress(orchestrator: FlowOrchestrator = Depends(get_orchestrator)) -> ProgressResponse:
    progress = orchestrator.get_progress()
    return ProgressResponse(**asdict(progress), offline_queue_size=orchestrator.get_offline_queue_size())


@router.get("/routes")
async def get_routes(orchestrator: FlowOrchestrator = Depends(get_orchestrator)) -> dict[str, str]:
    return orchestrator.catalog.route_table()


@router.get("/steps/{step_id}")
async def get_step_data(step_id: str, orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    sid = _require_step(step_id)
    data = await orchestrator.get_step_data(sid)
    if data is None:
        raise HTTPException(status_code=404, detail=f"No saved data for step {sid.value}")
    return data


@router.get("/steps/{step_id}/options")
async def get_step_options(step_id: str, orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    sid = _require_step(step_id)
    return {"step_id": sid.value, "options": await orchestrator.get_step_options(sid)}


@router.post("/steps/{step_id}", response_model=StepResponse)
async def execute_step(
    step_id: str,
    request: StepRequest,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
) -> StepResponse:
    """Validate and save a step, then advance the flow."""
    sid = _require_step(step_id)
    result = await orchestrator.execute_step(sid, request.data)
    if not result.success and result.errors:
        raise HTTPException(status_code=422, detail={"message": result.error, "errors": result.errors})
    return _step_response(orchestrator, result)


@router.post("/skip", response_model=StepResponse)
async def skip_step(
    request: SkipStepRequest,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
) -> StepResponse:
    sid = _require_step(request.step_id)
    result = await orchestrator.skip_step(sid, request.reason)
    return _step_response(orchestrator, result)


@router.post("/sync", response_model=SyncResponse)
async def sync_offline_data(orchestrator: FlowOrchestrator = Depends(get_orchestrator)) -> SyncResponse:
    result = await orchestrator.sync_offline_data()
    return SyncResponse(synced_count=result.synced_count, total=result.total, success=result.success)


@router.post("/connectivity")
async def set_connectivity(
    request: ConnectivityRequest,
    orchestrator: FlowOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.set_online(request.online)
    response = {"online": orchestrator.is_online}
    if result is not None:
        response["synced_count"] = result.synced_count
        response["total"] = result.total
    return response


@router.get("/errors")
async def get_errors(orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    return {
        "stats": orchestrator.recovery.error_stats(),
        "errors": [record.to_dict() for record in orchestrator.recovery.error_log()],
    }


@router.post("/reset")
async def reset_onboarding(orchestrator: FlowOrchestrator = Depends(get_orchestrator)):
    current = await orchestrator.reset()
    logger.info("Onboarding reset via API")
    return {"success": True, "current_step": current}


# =============================================================================
# Application
# =============================================================================


app = FastAPI(title="Collab Onboarding", version="1.0.0")
app.include_router(router, prefix="/api")


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
