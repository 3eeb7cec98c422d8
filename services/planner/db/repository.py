"""
asyncpg reads for the planner.

Tables (camelCase columns, quoted):
  trips                  id, "startDate", "endDate", timezone, currency
  trip_members           "tripId", "userId", status ('joined' members only)
  users                  id, name
  places                 candidate places, one row per member wish or anchor
  optimization_results   one JSONB TripSchedule per run, one "isActive" per trip

load_snapshot() takes the read-only input for a run; everything after that
works on the snapshot, never on live rows.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any

from services.planner.optimization.types import CandidatePlace, Member, TripSchedule, TripSnapshot

logger = logging.getLogger(__name__)


class TripNotFoundError(LookupError):
    pass


_TRIP_SQL = """
SELECT id, "startDate", "endDate", timezone, currency
FROM trips
WHERE id = $1
"""

_MEMBERS_SQL = """
SELECT tm."userId" AS id, COALESCE(u.name, '') AS display_name
FROM trip_members tm
LEFT JOIN users u ON u.id = tm."userId"
WHERE tm."tripId" = $1
  AND tm.status = 'joined'
ORDER BY tm."joinedAt" NULLS LAST, tm."userId"
"""

_PLACES_SQL = """
SELECT
    id,
    "memberId",
    name,
    latitude,
    longitude,
    "wishLevel",
    "stayDurationMinutes",
    category,
    "earliestArrival",
    "latestDeparture",
    "isAnchor",
    "anchorRole"
FROM places
WHERE "tripId" = $1
  AND "isSelectedForOptimization" = true
ORDER BY "createdAt", id
"""

_ACTIVE_SCHEDULE_SQL = """
SELECT schedule
FROM optimization_results
WHERE "tripId" = $1 AND "isActive" = true
ORDER BY "createdAt" DESC
LIMIT 1
"""


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def _place_from_row(row: Any) -> CandidatePlace:
    return CandidatePlace(
        id=str(row["id"]),
        member_id=str(row["memberId"]) if row["memberId"] is not None else None,
        name=row["name"] or "",
        latitude=float(row["latitude"]),
        longitude=float(row["longitude"]),
        wish_level=int(row["wishLevel"]),
        stay_duration_minutes=int(row["stayDurationMinutes"]),
        category=row["category"] or "other",
        earliest_arrival=row["earliestArrival"],
        latest_departure=row["latestDeparture"],
        is_anchor=bool(row["isAnchor"]),
        anchor_role=row["anchorRole"],
    )


async def load_snapshot(pool: Any, trip_id: str) -> TripSnapshot:
    """Read trip, joined members and candidate places into a TripSnapshot."""
    async with pool.acquire() as conn:
        trip = await conn.fetchrow(_TRIP_SQL, trip_id)
        if trip is None:
            raise TripNotFoundError(trip_id)
        member_rows = await conn.fetch(_MEMBERS_SQL, trip_id)
        place_rows = await conn.fetch(_PLACES_SQL, trip_id)

    snapshot = TripSnapshot(
        trip_id=str(trip["id"]),
        start_date=_as_date(trip["startDate"]),
        end_date=_as_date(trip["endDate"]),
        timezone=trip["timezone"],
        members=tuple(Member(id=str(r["id"]), display_name=r["display_name"]) for r in member_rows),
        places=tuple(_place_from_row(r) for r in place_rows),
    )
    logger.info(
        "Snapshot loaded: trip=%s members=%d places=%d days=%d",
        trip_id, len(snapshot.members), len(snapshot.places), snapshot.day_count,
    )
    return snapshot


async def load_active_schedule(pool: Any, trip_id: str) -> TripSchedule | None:
    row = await pool.fetchrow(_ACTIVE_SCHEDULE_SQL, trip_id)
    if row is None:
        return None
    payload = row["schedule"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return TripSchedule.from_dict(payload)


async def load_member_names(pool: Any, trip_id: str) -> dict[str, str]:
    rows = await pool.fetch(_MEMBERS_SQL, trip_id)
    return {str(r["id"]): r["display_name"] for r in rows}
