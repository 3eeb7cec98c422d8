"""
Schedule exports.

GET /trips/{trip_id}/schedule       structured JSON document (exports.document)
GET /trips/{trip_id}/schedule.ics   iCalendar (exports.ical)

Both read the trip's active optimization_results row.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from services.planner.db.repository import load_active_schedule, load_member_names
from services.planner.exports.document import export_document
from services.planner.exports.ical import build_calendar
from services.planner.optimization.types import TripSchedule

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trips", tags=["schedule"])


async def _active_schedule(request: Request, trip_id: str) -> TripSchedule:
    db = request.app.state.db
    if db is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "DB_UNAVAILABLE", "message": "Database connection not available."},
        )
    schedule = await load_active_schedule(db, trip_id)
    if schedule is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "SCHEDULE_NOT_FOUND", "message": f"Trip {trip_id!r} has no optimized schedule."},
        )
    return schedule


@router.get("/{trip_id}/schedule")
async def get_schedule(trip_id: str, request: Request) -> dict:
    schedule = await _active_schedule(request, trip_id)
    return {
        "success": True,
        "data": export_document(schedule),
        "requestId": request.state.request_id,
    }


@router.get("/{trip_id}/schedule.ics")
async def get_schedule_calendar(trip_id: str, request: Request) -> Response:
    schedule = await _active_schedule(request, trip_id)
    member_names = await load_member_names(request.app.state.db, trip_id)
    ics_content = build_calendar(schedule, member_names=member_names)

    logger.info(
        "schedule.ics: trip=%s days=%d visits=%d",
        trip_id, len(schedule.days), len(schedule.visits()),
    )
    return Response(
        content=ics_content.encode("utf-8"),
        media_type="text/calendar; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="trip-{trip_id}-schedule.ics"',
            "Cache-Control": "no-cache",
        },
    )
