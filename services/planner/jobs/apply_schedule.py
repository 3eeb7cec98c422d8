"""
Reset-then-apply write of an optimized schedule.

One transaction per trip:
  1. Clear every scheduling flag on the trip's places (selected, scheduled,
     day, arrival/departure, visit order, transport mode). Places the new
     schedule does not mention must not keep a previous run's assignment.
  2. Write the new assignments: scheduled visits, plus places that were
     selected but lost on the day (time_window / day_failed drops).
  3. Deactivate the trip's previous optimization_results rows.
  4. Insert the new schedule as the one active row.

Any failure rolls everything back; the previous active schedule stays.

Entry points:
    async def apply_schedule(pool, schedule)
    python -m services.planner.jobs.apply_schedule --trip-id <trip>
        re-applies the trip's active schedule to its places (repair after a
        manual edit of the places table).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import time
import uuid
from typing import Any

from services.planner.db.repository import load_active_schedule
from services.planner.optimization.types import TripSchedule

logger = logging.getLogger(__name__)

# Drop reasons for places that were selected but could not be placed on a day
_SELECTED_DROP_REASONS = {"time_window", "day_failed"}


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

_RESET_SQL = """
UPDATE places
SET "isSelected"         = false,
    "isScheduled"        = false,
    "scheduledDay"       = NULL,
    "scheduledDate"      = NULL,
    "arrivalTime"        = NULL,
    "departureTime"      = NULL,
    "visitOrder"         = NULL,
    "transportMode"      = NULL,
    "updatedAt"          = NOW()
WHERE "tripId" = $1
"""

_APPLY_VISIT_SQL = """
UPDATE places
SET "isSelected"    = true,
    "isScheduled"   = true,
    "scheduledDay"  = $3,
    "scheduledDate" = $4,
    "arrivalTime"   = $5,
    "departureTime" = $6,
    "visitOrder"    = $7,
    "transportMode" = $8,
    "updatedAt"     = NOW()
WHERE id = $1 AND "tripId" = $2
"""

_MARK_SELECTED_SQL = """
UPDATE places
SET "isSelected" = true,
    "updatedAt"  = NOW()
WHERE id = $1 AND "tripId" = $2
"""

_DEACTIVATE_SQL = """
UPDATE optimization_results
SET "isActive" = false
WHERE "tripId" = $1 AND "isActive" = true
"""

_INSERT_RESULT_SQL = """
INSERT INTO optimization_results
    (id, "tripId", "isActive", "algorithmVersion", "generatedAt", schedule, "createdAt")
VALUES ($1, $2, true, $3, $4, $5::jsonb, NOW())
"""


def _visit_rows(schedule: TripSchedule) -> list[tuple]:
    rows = []
    for day in schedule.days:
        outbound = {leg.from_place_id: leg.mode for leg in day.legs}
        for order, visit in enumerate(day.visits):
            # Mode of the leg that leaves this visit; None for the day's last stop
            mode = outbound.get(visit.id)
            rows.append((
                visit.id,
                schedule.trip_id,
                day.day_index,
                day.date,
                visit.arrival_time,
                visit.departure_time,
                order,
                mode,
            ))
    return rows


async def apply_schedule(pool: Any, schedule: TripSchedule) -> dict[str, Any]:
    """
    Reset the trip's scheduling flags and apply ``schedule`` atomically.

    Returns:
        {"trip_id", "result_id", "visits_applied", "selected_only", "duration_ms"}
    """
    start_ts = time.monotonic()
    trip_id = schedule.trip_id
    result_id = str(uuid.uuid4())

    visit_rows = _visit_rows(schedule)
    scheduled_ids = {row[0] for row in visit_rows}
    selected_only = sorted({
        d.place_id for d in schedule.stats.dropped
        if d.reason in _SELECTED_DROP_REASONS and d.place_id not in scheduled_ids
    })

    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(_RESET_SQL, trip_id)
            if visit_rows:
                await conn.executemany(_APPLY_VISIT_SQL, visit_rows)
            if selected_only:
                await conn.executemany(_MARK_SELECTED_SQL, [(pid, trip_id) for pid in selected_only])
            await conn.execute(_DEACTIVATE_SQL, trip_id)
            await conn.execute(
                _INSERT_RESULT_SQL,
                result_id,
                trip_id,
                schedule.algorithm_version,
                schedule.generated_at,
                json.dumps(schedule.to_dict()),
            )

    duration_ms = int((time.monotonic() - start_ts) * 1000)
    logger.info(
        "apply_schedule: complete trip=%s result=%s visits=%d selected_only=%d duration_ms=%d",
        trip_id, result_id, len(visit_rows), len(selected_only), duration_ms,
    )
    return {
        "trip_id": trip_id,
        "result_id": result_id,
        "visits_applied": len(visit_rows),
        "selected_only": len(selected_only),
        "duration_ms": duration_ms,
    }


async def reapply_active(pool: Any, trip_id: str) -> dict[str, Any] | None:
    """Re-apply the trip's active schedule. None when the trip has none."""
    schedule = await load_active_schedule(pool, trip_id)
    if schedule is None:
        logger.warning("apply_schedule: no active schedule for trip=%s", trip_id)
        return None
    return await apply_schedule(pool, schedule)


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main(argv: list[str] | None = None) -> None:
    """Standalone entry point: re-apply the active schedule of one trip."""
    import asyncpg

    from services.planner.config import settings

    parser = argparse.ArgumentParser(description="Re-apply a trip's active optimized schedule.")
    parser.add_argument("--trip-id", required=True)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    pool = await asyncpg.create_pool(settings.database_url, min_size=1, max_size=2)
    try:
        result = await reapply_active(pool, args.trip_id)
        print(f"apply_schedule complete: {result}")
    finally:
        await pool.close()


if __name__ == "__main__":
    asyncio.run(main())
