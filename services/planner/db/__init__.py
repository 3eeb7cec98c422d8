"""
asyncpg data access for the planner service.

Re-exports the snapshot/schedule readers used by the routers and jobs.
"""

from services.planner.db.repository import (
    TripNotFoundError,
    load_active_schedule,
    load_member_names,
    load_snapshot,
)

__all__ = [
    "TripNotFoundError",
    "load_active_schedule",
    "load_member_names",
    "load_snapshot",
]
