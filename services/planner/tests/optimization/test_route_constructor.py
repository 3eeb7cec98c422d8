"""
Tests for multi-day route construction.

Covers:
- Leg timing: arrival = previous departure + minimal buffer + leg duration
- Overnight transfer from where the previous day ended
- Anchor handling (departure opens day 1, destination closes the last day)
- Overrun repair: least valuable flexible places deferred, then dropped
- Time windows: pinned days, opening times, missed windows, outside the trip
- Per-day failure past midnight without aborting the trip
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

import pytest

from services.planner.optimization.errors import StageComputationError
from services.planner.optimization.normalizer import normalize_preferences
from services.planner.optimization.route_constructor import (
    DROP_OUTSIDE_TRIP,
    DROP_TIME_WINDOW,
    DROP_TRIP_CAPACITY,
    GreedyRouteConstructor,
)
from services.planner.optimization.selector import FairGreedySelector
from services.planner.optimization.types import (
    ANCHOR_DESTINATION,
    DAY_FAILED,
    MODE_CAR,
    MODE_FLIGHT,
    NormalizedPlace,
    SelectedPlace,
)
from services.planner.realtime.progress import STAGE_ROUTING
from services.planner.tests.helpers.factories import (
    START,
    make_anchor,
    make_place,
    make_settings,
    two_member_snapshot,
)

UTC = timezone.utc


def _selected(place, level=0.5) -> SelectedPlace:
    if place.is_anchor:
        level = None
    return SelectedPlace.from_normalized(NormalizedPlace.from_candidate(place, level), 1, None)


def _at(hour: int, minute: int = 0, day: date = START) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=UTC)


def _construct(places, days: int = 1, **settings_overrides):
    settings = make_settings(**settings_overrides)
    end = START + timedelta(days=days - 1)
    return GreedyRouteConstructor().construct(
        [_selected(p) for p in places], START, end, settings
    )


# ---------------------------------------------------------------------------
# 1. Timing
# ---------------------------------------------------------------------------

class TestLegTiming:

    def test_single_far_place_by_car(self):
        result, _ = _construct([make_anchor(), make_place("a1", "alice", km_north=50.0)])
        day = result.days[0]

        assert [v.id for v in day.visits] == ["home", "a1"]
        home, a1 = day.visits
        # breakfast held at day start, anchor keeps its minimum stay
        assert home.arrival_time == _at(8, 45)
        assert home.departure_time == _at(9, 15)

        leg = day.legs[0]
        assert leg.mode == MODE_CAR
        assert leg.duration_minutes == 75
        assert leg.departure_time == _at(9, 20)
        assert leg.arrival_time == _at(10, 35)
        assert leg.estimated_cost == pytest.approx(2500.0)

        assert a1.arrival_time == _at(10, 35)
        assert a1.departure_time == _at(11, 35)

    def test_arrival_follows_buffer_and_leg(self):
        snapshot = two_member_snapshot()
        settings = make_settings()
        normalization, _ = normalize_preferences(snapshot, settings)
        selection, _ = FairGreedySelector().select(normalization.places, settings)
        result, _ = GreedyRouteConstructor().construct(
            selection.places, snapshot.start_date, snapshot.end_date, settings
        )

        buffer = timedelta(minutes=settings.minimal_buffer_minutes)
        for day in result.days:
            assert len(day.legs) == max(0, len(day.visits) - 1)
            for prev, leg, visit in zip(day.visits, day.legs, day.visits[1:]):
                assert leg.from_place_id == prev.id
                assert leg.to_place_id == visit.id
                assert leg.departure_time >= prev.departure_time + buffer
                assert visit.arrival_time >= leg.arrival_time
                assert leg.arrival_time == leg.departure_time + timedelta(minutes=leg.duration_minutes)

    def test_overnight_transfer_from_previous_day_end(self):
        day_two = START + timedelta(days=1)
        places = [
            make_anchor(),
            make_place("p1", "alice", stay=400, km_north=0.4),
            make_place("far", "alice", km_north=150.0),
        ]
        result, _ = _construct(places, days=2)
        first, second = result.days

        assert [v.id for v in first.visits] == ["home", "p1"]
        assert [v.id for v in second.visits] == ["far"]
        assert len(second.legs) == 1

        transfer = second.legs[0]
        assert (transfer.from_place_id, transfer.to_place_id) == ("p1", "far")
        assert transfer.mode == MODE_CAR
        assert transfer.distance_km == pytest.approx(149.6, abs=0.01)
        assert transfer.duration_minutes == 225
        assert transfer.departure_time == _at(8, 45, day=day_two)
        assert transfer.arrival_time == _at(12, 30, day=day_two)
        assert transfer.estimated_cost == pytest.approx(149.6 * 50, abs=1.0)

        far = second.visits[0]
        assert far.arrival_time == _at(12, 30, day=day_two)
        assert far.departure_time == _at(13, 30, day=day_two)

    def test_anchor_stay_has_minimum(self):
        result, _ = _construct([make_anchor(stay=0), make_place("p1", "alice")], anchorMinStayMinutes=45)
        home = result.days[0].visits[0]
        assert home.stay_minutes == 45

    def test_destination_closes_last_day(self):
        places = [
            make_anchor(),
            make_anchor("hotel", ANCHOR_DESTINATION, km_north=3.0),
            make_place("p1", "alice", km_north=1.5),
            make_place("p2", "alice", km_north=2.0),
        ]
        result, _ = _construct(places, days=2)
        assert result.days[0].visits[0].id == "home"
        assert result.days[-1].visits[-1].id == "hotel"
        assert "hotel" not in [v.id for v in result.days[0].visits]

    def test_no_departure_anchor_raises(self):
        with pytest.raises(StageComputationError) as exc_info:
            _construct([make_place("p1", "alice")])
        assert exc_info.value.code == "NO_ANCHOR_PLACE"
        assert exc_info.value.stage == STAGE_ROUTING

    def test_deterministic(self):
        places = [make_anchor()] + [
            make_place(f"p{i}", "alice", km_north=0.3 * i, stay=90) for i in range(1, 7)
        ]
        first, _ = _construct(places, days=2)
        second, _ = _construct(list(reversed(places)), days=2)
        assert first.to_dict() == second.to_dict()

    def test_progress_within_routing_share(self):
        _, notes = _construct([make_anchor(), make_place("p1", "alice")], days=3)
        assert all(n.stage == STAGE_ROUTING for n in notes)
        assert notes[-1].percent == pytest.approx(70.0)


# ---------------------------------------------------------------------------
# 2. Overrun repair and capacity
# ---------------------------------------------------------------------------

class TestOverrunRepair:

    def test_build_day_defers_lowest_value_first(self):
        settings = make_settings()
        home = _selected(make_anchor())
        places = [_selected(make_place(f"p{i}", "alice", stay=240)) for i in range(1, 6)]

        schedule, deferred, late = GreedyRouteConstructor()._build_day(
            0, START, places, home, settings, opening=home, closing=None
        )

        assert [p.id for p in deferred] == ["p1", "p2", "p3"]
        assert late == []
        assert [v.id for v in schedule.visits] == ["home", "p4", "p5"]
        assert schedule.visits[-1].departure_time <= _at(20, 0)

    def test_deferral_prefers_lower_normalized_level(self):
        settings = make_settings()
        home = _selected(make_anchor())
        low = _selected(make_place("z-low", "alice", stay=240), level=0.2)
        high = [_selected(make_place(f"p{i}", "alice", stay=240), level=0.9) for i in range(1, 3)]

        _, deferred, _ = GreedyRouteConstructor()._build_day(
            0, START, high + [low], home, settings, opening=home, closing=None
        )
        assert deferred[0].id == "z-low"

    def test_overnight_transfer_counts_toward_overrun(self):
        # 08:45 + 225 min by car + 500 min stay ends at 20:50, past the 20:00 day end.
        settings = make_settings()
        woke_at = _selected(make_place("p1", "alice", km_north=0.4))
        far = _selected(make_place("far", "alice", stay=500, km_north=150.0))

        schedule, deferred, late = GreedyRouteConstructor()._build_day(
            1, START + timedelta(days=1), [far], woke_at, settings, opening=None, closing=None
        )

        assert [p.id for p in deferred] == ["far"]
        assert late == []
        assert schedule.visits == []
        assert schedule.legs == []

    def test_trip_capacity_drop_on_last_day(self):
        places = [make_anchor()] + [make_place(f"p{i}", "alice", stay=240) for i in range(1, 6)]
        result, _ = _construct(places, days=2)

        scheduled = [v.id for d in result.days for v in d.visits if not v.place.is_anchor]
        assert sorted(scheduled) == ["p1", "p2", "p3", "p4"]
        assert [(d.place_id, d.reason) for d in result.dropped] == [("p5", DROP_TRIP_CAPACITY)]
        assert result.failed_days == []

    def test_every_selected_place_accounted_for(self):
        places = [make_anchor()] + [
            make_place(f"p{i}", "alice", stay=180, km_north=0.2 * i) for i in range(1, 10)
        ]
        result, _ = _construct(places, days=2)

        scheduled = {v.id for d in result.days for v in d.visits}
        dropped = {d.place_id for d in result.dropped}
        assert scheduled.isdisjoint(dropped)
        assert scheduled | dropped == {p.id for p in places}

    def test_days_stay_within_budget(self):
        places = [make_anchor()] + [
            make_place(f"p{i}", "alice", stay=120, km_north=0.4 * i) for i in range(1, 12)
        ]
        result, _ = _construct(places, days=3)
        for day in result.days:
            day_end = _at(20, 0, day=day.date)
            assert all(v.departure_time <= day_end for v in day.visits)


# ---------------------------------------------------------------------------
# 3. Time windows
# ---------------------------------------------------------------------------

class TestTimeWindows:

    def test_earliest_arrival_waits_for_opening(self):
        places = [
            make_anchor(),
            make_place("flex", "alice", km_north=0.5),
            make_place("opens", "alice", km_north=0.8, earliest_arrival=_at(14, 0)),
        ]
        result, _ = _construct(places)
        visits = {v.id: v for v in result.days[0].visits}

        assert visits["opens"].arrival_time == _at(14, 0)
        assert visits["opens"].departure_time == _at(15, 0)
        assert visits["flex"].departure_time < visits["opens"].arrival_time

    def test_pinned_place_lands_on_its_day(self):
        second_day = START + timedelta(days=1)
        places = [
            make_anchor(),
            make_place("pinned", "alice", earliest_arrival=_at(10, 0, day=second_day)),
        ]
        result, _ = _construct(places, days=3)
        assert [v.id for v in result.days[1].visits] == ["pinned"]
        assert all("pinned" not in [v.id for v in d.visits] for i, d in enumerate(result.days) if i != 1)

    def test_missed_latest_departure_drops_place(self):
        places = [
            make_anchor(),
            make_place("early", "alice", latest_departure=_at(8, 30)),
        ]
        result, _ = _construct(places)

        assert [v.id for v in result.days[0].visits] == ["home"]
        assert [(d.place_id, d.reason, d.day_index) for d in result.dropped] == [
            ("early", DROP_TIME_WINDOW, 0)
        ]

    def test_window_outside_trip_dates(self):
        places = [
            make_anchor(),
            make_place("later", "alice", earliest_arrival=_at(10, 0, day=date(2026, 5, 1))),
        ]
        result, _ = _construct(places)
        assert [(d.place_id, d.reason, d.day_index) for d in result.dropped] == [
            ("later", DROP_OUTSIDE_TRIP, None)
        ]


# ---------------------------------------------------------------------------
# 4. Day failure
# ---------------------------------------------------------------------------

class TestDayFailure:

    def test_past_midnight_fails_day_only(self):
        places = [
            make_anchor(),
            make_anchor("far-hotel", ANCHOR_DESTINATION, km_north=300.0),
        ]
        result, _ = _construct(places, dayStart=time(23, 0), dailyHours=1)

        assert len(result.days) == 1
        assert result.days[0].status == DAY_FAILED
        assert result.days[0].visits == []
        assert len(result.failed_days) == 1
        failed = result.failed_days[0]
        assert failed.day_index == 0
        assert failed.stage == "routing"
        assert "midnight" in failed.reason

    def test_flight_leg_for_long_distance(self):
        places = [
            make_anchor(),
            make_anchor("far-hotel", ANCHOR_DESTINATION, km_north=300.0),
        ]
        result, _ = _construct(places)
        assert result.days[0].legs[0].mode == MODE_FLIGHT
        assert result.days[0].legs[0].duration_minutes == 150
