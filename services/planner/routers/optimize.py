"""
Optimization endpoints.

POST /trips/{trip_id}/optimize
    Full run: normalize -> select -> route (assembly + conflict scan).
    With "apply" (default true) the schedule is written back through the
    reset-then-apply job, unless a newer run for the trip has started in the
    meantime ("applied": null).

POST /trips/{trip_id}/stages/{normalize|select|route}
    Runs the pipeline up to that stage and returns the stage's own output.
    Upstream stages are usually served from the stage cache.

Success:  {"success": true, "result", "execution_time_ms", "cached", "message", "requestId"}
Failure:  rendered by the OptimizationError handler in main.py
          {"success": false, "error": {...}, "stage", "code", "requestId"}
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from services.planner.db.repository import TripNotFoundError, load_snapshot
from services.planner.jobs.apply_schedule import apply_schedule
from services.planner.middleware.sentry import report_stage_failure
from services.planner.optimization.errors import OptimizationError
from services.planner.optimization.pipeline import STAGE_ENDPOINTS, PipelineResult
from services.planner.optimization.types import TripSnapshot
from services.planner.realtime.progress import STAGE_ROUTING

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trips", tags=["optimization"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class OptimizeRequest(BaseModel):
    settings: dict[str, Any] = Field(default_factory=dict, description="OptimizationSettings, camelCase or snake_case")
    force_refresh: bool = Field(default=False, alias="forceRefresh")
    apply: bool = Field(default=True, description="Write the schedule back to the trip's places")

    model_config = {"populate_by_name": True}


class StageRequest(BaseModel):
    settings: dict[str, Any] = Field(default_factory=dict)
    force_refresh: bool = Field(default=False, alias="forceRefresh")

    model_config = {"populate_by_name": True}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _snapshot(request: Request, trip_id: str) -> TripSnapshot:
    db = request.app.state.db
    if db is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "DB_UNAVAILABLE", "message": "Database connection not available."},
        )
    try:
        return await load_snapshot(db, trip_id)
    except TripNotFoundError:
        raise HTTPException(
            status_code=404,
            detail={"code": "TRIP_NOT_FOUND", "message": f"Trip {trip_id!r} not found."},
        )


async def _run(
    request: Request,
    trip_id: str,
    settings: dict[str, Any],
    until: str,
    force_refresh: bool,
) -> PipelineResult:
    snapshot = await _snapshot(request, trip_id)
    pipeline = request.app.state.pipeline
    try:
        return await pipeline.run(snapshot, settings, until=until, force_refresh=force_refresh)
    except OptimizationError as exc:
        report_stage_failure(exc, trip_id)
        raise


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/{trip_id}/optimize")
async def optimize_trip(trip_id: str, request: Request, body: OptimizeRequest | None = None) -> dict:
    body = body or OptimizeRequest()
    outcome = await _run(request, trip_id, body.settings, STAGE_ROUTING, body.force_refresh)

    response = outcome.to_response()
    if body.apply:
        broker = request.app.state.broker
        async with broker.write_lock(trip_id):
            if broker.is_authoritative(trip_id, outcome.run_id):
                applied = await apply_schedule(request.app.state.db, outcome.schedule)
                response["applied"] = applied["result_id"]
            else:
                logger.info(
                    "optimize: run superseded before write-back, not applied: trip=%s run=%s",
                    trip_id, outcome.run_id,
                )
                response["applied"] = None

    logger.info(
        "optimize: trip=%s run=%s ms=%d cached=%s apply=%s",
        trip_id, outcome.run_id, outcome.execution_time_ms, outcome.cached, body.apply,
    )
    response["requestId"] = request.state.request_id
    return response


@router.post("/{trip_id}/stages/{stage_name}")
async def run_stage(
    trip_id: str,
    stage_name: str,
    request: Request,
    body: StageRequest | None = None,
) -> dict:
    until = STAGE_ENDPOINTS.get(stage_name)
    if until is None:
        raise HTTPException(
            status_code=404,
            detail={
                "code": "UNKNOWN_STAGE",
                "message": f"Unknown stage {stage_name!r}; expected one of {sorted(STAGE_ENDPOINTS)}.",
            },
        )
    body = body or StageRequest()
    outcome = await _run(request, trip_id, body.settings, until, body.force_refresh)

    response = outcome.to_response()
    response["requestId"] = request.state.request_id
    return response
