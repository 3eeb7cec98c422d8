"""
Tests for the composite schedule score and its validation checks.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

import pytest

from services.planner.optimization.scoring import score_schedule, validate_days
from services.planner.optimization.types import (
    MODE_CAR,
    MODE_FLIGHT,
    DaySchedule,
    DayStats,
    NormalizationResult,
    NormalizedPlace,
    ScheduledVisit,
    SelectedPlace,
    TransportLeg,
)
from services.planner.tests.helpers.factories import (
    START,
    make_anchor,
    make_place,
    make_snapshot,
    run_stages,
)

UTC = timezone.utc


def _at(hour: int, minute: int = 0, day=START) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=UTC)


def _visit(place_id: str, member_id: str = "alice", level: float = 0.5, day_index: int = 0) -> ScheduledVisit:
    place = SelectedPlace.from_normalized(
        NormalizedPlace.from_candidate(make_place(place_id, member_id), level), 1, None
    )
    start = _at(9, 0, day=START + timedelta(days=day_index))
    return ScheduledVisit(place=place, day_index=day_index, arrival_time=start, departure_time=start + timedelta(hours=1))


def _normalization(*members: str) -> NormalizationResult:
    places = [
        NormalizedPlace.from_candidate(make_place(f"{m}-wish", m), 0.5) for m in members
    ]
    return NormalizationResult(places=places, members=[], group_fairness=1.0)


# ---------------------------------------------------------------------------
# 1. Validation
# ---------------------------------------------------------------------------

class TestValidateDays:

    def test_plain_day_is_valid(self):
        day = DaySchedule(day_index=0, date=START, visits=[_visit("a1")])
        assert validate_days([day]) == []

    def test_place_scheduled_twice(self):
        days = [
            DaySchedule(day_index=0, date=START, visits=[_visit("a1")]),
            DaySchedule(day_index=1, date=START + timedelta(days=1), visits=[_visit("a1", day_index=1)]),
        ]
        assert validate_days(days) == ["place a1 is scheduled more than once"]

    def test_empty_day(self):
        days = [
            DaySchedule(day_index=0, date=START, visits=[_visit("a1")]),
            DaySchedule(day_index=1, date=START + timedelta(days=1)),
        ]
        assert validate_days(days) == ["day 2 has no scheduled places"]

    def test_long_flight_day(self):
        leg = TransportLeg("a1", "b1", MODE_FLIGHT, 6000.0, 780, _at(6, 0), _at(19, 0))
        day = DaySchedule(day_index=0, date=START, visits=[_visit("a1"), _visit("b1", "bob")], legs=[leg])

        assert validate_days([day]) == [
            "1 leg(s) longer than 12 hours",
            "day 1 has 13.0h of travel",
            "flights on more than half of the trip's days",
        ]

    def test_flights_on_half_the_days_are_fine(self):
        leg = TransportLeg("a1", "b1", MODE_FLIGHT, 900.0, 210, _at(10, 0), _at(13, 30))
        days = [
            DaySchedule(day_index=0, date=START, visits=[_visit("a1"), _visit("b1")], legs=[leg]),
            DaySchedule(day_index=1, date=START + timedelta(days=1), visits=[_visit("c1", day_index=1)]),
        ]
        assert validate_days(days) == []


# ---------------------------------------------------------------------------
# 2. Score
# ---------------------------------------------------------------------------

class TestScoreSchedule:

    def test_components_and_weighted_total(self):
        leg = TransportLeg("a1", "b1", MODE_CAR, 20.0, 30, _at(10, 0), _at(10, 30))
        day = DaySchedule(
            day_index=0,
            date=START,
            visits=[_visit("a1", level=0.4), _visit("b1", level=0.8)],
            legs=[leg],
            stats=DayStats(total_places=2, total_travel_minutes=30, total_stay_minutes=120),
        )
        score = score_schedule([day], _normalization("alice"))

        assert score.efficiency == 80
        assert score.wish_satisfaction == 60
        assert score.fairness == 100
        assert score.feasibility == 100
        # 0.3 * 0.8 + 0.2 * 0.6 + 0.2 * 1.0 + 0.3 * 1.0
        assert score.total == 86
        assert score.is_valid

    def test_uneven_member_counts_lower_fairness(self):
        visits = [_visit("a1", "alice")] + [_visit(f"b{i}", "bob") for i in range(3)]
        day = DaySchedule(day_index=0, date=START, visits=visits)
        # counts (1, 3): variance 1, mean 2
        assert score_schedule([day], _normalization("alice", "bob")).fairness == 50

    def test_member_with_nothing_scheduled_counts(self):
        day = DaySchedule(day_index=0, date=START, visits=[_visit("a1", "alice")])
        # counts (1, 0): variance 0.25, mean 0.5
        assert score_schedule([day], _normalization("alice", "bob")).fairness == 50

    def test_empty_schedule_uses_neutral_components(self):
        score = score_schedule([DaySchedule(day_index=0, date=START)], _normalization("alice"))
        assert score.efficiency == 50
        assert score.wish_satisfaction == 80
        assert score.validation_issues == ("day 1 has no scheduled places",)
        assert score.feasibility == 80

    def test_feasibility_floor(self):
        days = [DaySchedule(day_index=i, date=START + timedelta(days=i)) for i in range(6)]
        score = score_schedule(days, _normalization("alice"))
        assert len(score.validation_issues) == 6
        assert score.feasibility == 10

    def test_assembled_schedule_carries_score(self):
        snapshot = make_snapshot([make_anchor(), make_place("a1", "alice", km_north=50.0, category="museum")])
        score = run_stages(snapshot).stats.score

        # stay 90 of 165 active minutes, a1 normalized to 0.48, one member
        assert score.efficiency == 55
        assert score.wish_satisfaction == 48
        assert score.fairness == 100
        assert score.feasibility == 100
        assert score.total == 76

    def test_empty_trip_day_is_flagged(self):
        snapshot = make_snapshot(
            [make_anchor(), make_place("a1", "alice", km_north=50.0)],
            end=START + timedelta(days=1),
        )
        stats = run_stages(snapshot).stats

        assert stats.score.validation_issues == ("day 2 has no scheduled places",)
        assert stats.score.feasibility == 80
        assert stats.to_dict()["score"]["isValid"] is False

    @pytest.mark.parametrize("count", [1, 3])
    def test_total_within_bounds(self, count):
        days = [DaySchedule(day_index=i, date=START + timedelta(days=i)) for i in range(count)]
        assert 0 <= score_schedule(days, _normalization("alice")).total <= 100
