"""
Tests for the asyncpg snapshot reads.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import pytest

from services.planner.db.repository import (
    TripNotFoundError,
    load_active_schedule,
    load_member_names,
    load_snapshot,
)
from services.planner.tests.helpers.factories import run_stages, two_member_snapshot
from services.planner.tests.helpers.fakes import make_conn, make_pool

TRIP_ROW = {
    "id": "trip-1",
    "startDate": datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc),
    "endDate": date(2026, 4, 3),
    "timezone": "Asia/Tokyo",
    "currency": "JPY",
}

MEMBER_ROWS = [
    {"id": "alice", "display_name": "Alice"},
    {"id": "bob", "display_name": ""},
]

PLACE_ROWS = [
    {
        "id": "home",
        "memberId": None,
        "name": "Hotel",
        "latitude": 35.68,
        "longitude": 139.76,
        "wishLevel": 3,
        "stayDurationMinutes": 0,
        "category": None,
        "earliestArrival": None,
        "latestDeparture": None,
        "isAnchor": True,
        "anchorRole": "departure",
    },
    {
        "id": "p1",
        "memberId": "alice",
        "name": None,
        "latitude": "35.71",
        "longitude": "139.80",
        "wishLevel": 4,
        "stayDurationMinutes": 90,
        "category": "museum",
        "earliestArrival": datetime(2026, 4, 2, 1, 0, tzinfo=timezone.utc),
        "latestDeparture": None,
        "isAnchor": False,
        "anchorRole": None,
    },
]


class TestLoadSnapshot:

    @pytest.mark.asyncio
    async def test_builds_snapshot(self):
        conn = make_conn(fetchrow=TRIP_ROW, fetch=[MEMBER_ROWS, PLACE_ROWS])
        snapshot = await load_snapshot(make_pool(conn), "trip-1")

        assert snapshot.trip_id == "trip-1"
        assert snapshot.start_date == date(2026, 4, 1)
        assert snapshot.end_date == date(2026, 4, 3)
        assert snapshot.day_count == 3
        assert snapshot.timezone == "Asia/Tokyo"
        assert [m.id for m in snapshot.members] == ["alice", "bob"]
        assert snapshot.members[0].display_name == "Alice"

        home, p1 = snapshot.places
        assert home.is_anchor and home.anchor_role == "departure"
        assert home.member_id is None
        assert home.category == "other"
        assert p1.member_id == "alice"
        assert p1.name == ""
        assert p1.latitude == pytest.approx(35.71)
        assert p1.is_pinned

    @pytest.mark.asyncio
    async def test_missing_trip(self):
        conn = make_conn(fetchrow=None)
        with pytest.raises(TripNotFoundError):
            await load_snapshot(make_pool(conn), "nope")
        conn.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_queries_are_parameterised(self):
        conn = make_conn(fetchrow=TRIP_ROW, fetch=[[], []])
        await load_snapshot(make_pool(conn), "trip-1")
        assert conn.fetchrow.call_args.args[1] == "trip-1"
        assert all(c.args[1] == "trip-1" for c in conn.fetch.call_args_list)


class TestActiveSchedule:

    @pytest.mark.asyncio
    async def test_decodes_json_text(self):
        schedule = run_stages(two_member_snapshot())
        pool = make_pool(make_conn())
        pool.fetchrow = AsyncMock(return_value={"schedule": json.dumps(schedule.to_dict())})

        loaded = await load_active_schedule(pool, "trip-1")
        assert loaded == schedule

    @pytest.mark.asyncio
    async def test_accepts_decoded_jsonb(self):
        schedule = run_stages(two_member_snapshot())
        pool = make_pool(make_conn())
        pool.fetchrow = AsyncMock(return_value={"schedule": json.loads(json.dumps(schedule.to_dict()))})

        assert (await load_active_schedule(pool, "trip-1")).trip_id == "trip-1"

    @pytest.mark.asyncio
    async def test_none_when_absent(self):
        assert await load_active_schedule(make_pool(make_conn()), "trip-1") is None


class TestMemberNames:

    @pytest.mark.asyncio
    async def test_maps_ids_to_names(self):
        pool = make_pool(make_conn())
        pool.fetch = AsyncMock(return_value=MEMBER_ROWS)
        assert await load_member_names(pool, "trip-1") == {"alice": "Alice", "bob": ""}
