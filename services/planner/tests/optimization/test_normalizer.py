"""
Tests for preference normalization and snapshot validation.

Covers:
- Per-member rescaling under balanced, fairness- and efficiency-led settings
- Clamp to [0.1, 1.0]; anchors pass through untouched
- Duplicate submissions merged before place counts
- Member place counts and fairness weights
- Group fairness score
- Malformed coordinates abort the stage
- validate_snapshot rejects malformed input before any stage
"""

from __future__ import annotations

import math
from dataclasses import replace
from datetime import date, datetime, timezone

import pytest

from services.planner.optimization.errors import InputValidationError, StageComputationError
from services.planner.optimization.normalizer import (
    normalize_preferences,
    normalized_level,
    validate_snapshot,
)
from services.planner.optimization.types import ANCHOR_DEPARTURE, ANCHOR_DESTINATION
from services.planner.realtime.progress import STAGE_NORMALIZING
from services.planner.tests.helpers.factories import (
    make_anchor,
    make_member,
    make_place,
    make_settings,
    make_snapshot,
)


def _levels(result) -> dict[str, float | None]:
    return {p.id: p.normalized_wish_level for p in result.places}


# ---------------------------------------------------------------------------
# 1. Formula
# ---------------------------------------------------------------------------

class TestNormalizedLevel:

    def test_single_top_rated_place_balanced_settings_is_one(self):
        snapshot = make_snapshot([make_place("p1", "alice", wish=5)])
        result, _ = normalize_preferences(snapshot, make_settings())
        assert result.places[0].normalized_wish_level == 1.0

    def test_fairness_led_uses_fairness_factor_as_multiplier(self):
        settings = make_settings(fairness_weight=0.8, efficiency_weight=0.2)
        # base 1.0, factor sqrt(1/4) = 0.5, multiplier 0.5
        assert normalized_level(5, 4, settings) == pytest.approx(0.25)

    def test_efficiency_led_uses_base_preference_as_multiplier(self):
        settings = make_settings(fairness_weight=0.2, efficiency_weight=0.8)
        # base 1.0, factor 0.5, multiplier 1.0
        assert normalized_level(5, 4, settings) == pytest.approx(0.5)

    def test_balanced_averages_factor_and_preference(self):
        settings = make_settings()
        # base 0.6, factor 0.5, multiplier (0.5 + 0.6) / 2
        assert normalized_level(3, 4, settings) == pytest.approx(0.6 * 0.5 * 0.55)

    def test_low_values_clamp_to_floor(self):
        assert normalized_level(1, 10, make_settings()) == 0.1

    @pytest.mark.parametrize("wish", [1, 2, 3, 4, 5])
    @pytest.mark.parametrize("count", [1, 2, 5, 20])
    def test_always_within_bounds(self, wish, count):
        for fw, ew in ((0.6, 0.4), (0.9, 0.1), (0.1, 0.9)):
            level = normalized_level(wish, count, make_settings(fairness_weight=fw, efficiency_weight=ew))
            assert 0.1 <= level <= 1.0

    def test_fewer_places_never_lower_under_fairness_weight(self):
        settings = make_settings(fairness_weight=0.8, efficiency_weight=0.2)
        for wish in range(1, 6):
            levels = [normalized_level(wish, count, settings) for count in range(1, 10)]
            assert levels == sorted(levels, reverse=True)


# ---------------------------------------------------------------------------
# 2. Stage output
# ---------------------------------------------------------------------------

class TestNormalizePreferences:

    def test_two_member_scenario_factors(self):
        places = [make_place("a1", "alice", wish=5)] + [
            make_place(f"b{i}", "bob", wish=5) for i in range(4)
        ]
        snapshot = make_snapshot(places)
        result, _ = normalize_preferences(
            snapshot, make_settings(fairness_weight=0.8, efficiency_weight=0.2)
        )
        levels = _levels(result)
        assert levels["a1"] == pytest.approx(1.0)
        assert all(levels[f"b{i}"] == pytest.approx(0.25) for i in range(4))

    def test_anchors_pass_through_unchanged(self):
        anchor = make_anchor("home", ANCHOR_DEPARTURE)
        goal = make_anchor("hotel", ANCHOR_DESTINATION, km_north=3)
        snapshot = make_snapshot([anchor, goal, make_place("p1", "alice")])
        result, _ = normalize_preferences(snapshot, make_settings())

        by_id = {p.id: p for p in result.places}
        assert by_id["home"].normalized_wish_level is None
        assert by_id["hotel"].normalized_wish_level is None
        assert by_id["home"].latitude == anchor.latitude
        assert by_id["home"].anchor_role == ANCHOR_DEPARTURE

    def test_place_order_preserved(self):
        places = [make_place("z", "alice"), make_anchor(), make_place("a", "bob")]
        result, _ = normalize_preferences(make_snapshot(places), make_settings())
        assert [p.id for p in result.places] == ["z", "home", "a"]

    def test_member_counts_and_weights(self):
        places = [make_place("a1", "alice")] + [make_place(f"b{i}", "bob") for i in range(4)]
        members = [make_member("alice"), make_member("bob"), make_member("carol")]
        result, _ = normalize_preferences(make_snapshot(places, members=members), make_settings())

        by_id = {m.id: m for m in result.members}
        assert by_id["alice"].place_count == 1
        assert by_id["alice"].fairness_weight == pytest.approx(1.0)
        assert by_id["bob"].place_count == 4
        assert by_id["bob"].fairness_weight == pytest.approx(0.5)
        assert by_id["carol"].place_count == 0
        assert by_id["carol"].fairness_weight == 0.0

    def test_duplicate_submissions_merge_before_counting(self):
        places = [
            make_place("a1", "alice", wish=2, stay=60, name="Tower"),
            make_place("b1", "bob", wish=5, stay=90, name="Tower"),
            make_place("b2", "bob", wish=3, km_north=2.0),
        ]
        result, _ = normalize_preferences(make_snapshot(places), make_settings())

        assert [p.id for p in result.places] == ["b1", "b2"]
        tower = result.places[0]
        assert tower.contributors == ("alice", "bob")
        assert tower.wish_level == 5
        by_id = {m.id: m for m in result.members}
        assert by_id["alice"].place_count == 0
        assert by_id["bob"].place_count == 2

    def test_group_fairness_is_one_for_single_member(self):
        result, _ = normalize_preferences(
            make_snapshot([make_place("p1", "alice"), make_place("p2", "alice")]),
            make_settings(),
        )
        assert result.group_fairness == 1.0

    def test_group_fairness_drops_with_uneven_means(self):
        places = [make_place("a1", "alice", wish=5)] + [
            make_place(f"b{i}", "bob", wish=1) for i in range(6)
        ]
        result, _ = normalize_preferences(make_snapshot(places), make_settings())
        levels = _levels(result)
        mean_b = sum(levels[f"b{i}"] for i in range(6)) / 6
        spread = ((levels["a1"] - mean_b) / 2) ** 2
        assert result.group_fairness == pytest.approx(math.exp(-spread * 5))
        assert result.group_fairness < 1.0

    def test_progress_notes_end_at_100(self):
        _, notes = normalize_preferences(make_snapshot([make_place("p1", "alice")]), make_settings())
        assert all(n.stage == STAGE_NORMALIZING for n in notes)
        assert notes[-1].percent == 100

    @pytest.mark.parametrize("lat,lng", [(95.0, 10.0), (10.0, -181.0), (float("nan"), 0.0)])
    def test_malformed_coordinates_abort(self, lat, lng):
        place = make_place("p1", "alice", latitude=lat, longitude=lng)
        with pytest.raises(StageComputationError) as exc_info:
            normalize_preferences(make_snapshot([place]), make_settings())
        assert exc_info.value.code == "MALFORMED_COORDINATES"
        assert exc_info.value.stage == STAGE_NORMALIZING


# ---------------------------------------------------------------------------
# 3. Input validation
# ---------------------------------------------------------------------------

class TestValidateSnapshot:

    def test_valid_snapshot_passes(self):
        validate_snapshot(make_snapshot([make_anchor(), make_place("p1", "alice")]))

    def test_no_places(self):
        snapshot = make_snapshot([], members=[make_member("alice")])
        with pytest.raises(InputValidationError, match="no places"):
            validate_snapshot(snapshot)

    def test_no_members(self):
        snapshot = make_snapshot([make_anchor()], members=[])
        with pytest.raises(InputValidationError, match="no members"):
            validate_snapshot(snapshot)

    def test_end_before_start(self):
        snapshot = make_snapshot(
            [make_place("p1", "alice")], start=date(2026, 4, 3), end=date(2026, 4, 1)
        )
        with pytest.raises(InputValidationError):
            validate_snapshot(snapshot)

    @pytest.mark.parametrize("wish", [0, 6])
    def test_wish_level_out_of_range(self, wish):
        with pytest.raises(InputValidationError, match="wish level"):
            validate_snapshot(make_snapshot([make_place("p1", "alice", wish=wish)]))

    def test_owner_must_be_member(self):
        snapshot = make_snapshot([make_place("p1", "mallory")], members=[make_member("alice")])
        with pytest.raises(InputValidationError, match="not a trip member"):
            validate_snapshot(snapshot)

    def test_duplicate_place_ids(self):
        snapshot = make_snapshot([make_place("p1", "alice"), make_place("p1", "alice")])
        with pytest.raises(InputValidationError, match="duplicate"):
            validate_snapshot(snapshot)

    def test_zero_stay_for_member_place(self):
        with pytest.raises(InputValidationError, match="stay duration"):
            validate_snapshot(make_snapshot([make_place("p1", "alice", stay=0)]))

    def test_naive_time_window(self):
        place = make_place("p1", "alice", earliest_arrival=datetime(2026, 4, 1, 10, 0))
        with pytest.raises(InputValidationError, match="timezone-aware"):
            validate_snapshot(make_snapshot([place]))

    def test_aware_time_window_accepted(self):
        place = make_place("p1", "alice", earliest_arrival=datetime(2026, 4, 1, 10, 0, tzinfo=timezone.utc))
        validate_snapshot(make_snapshot([place]))

    def test_anchor_requires_role(self):
        anchor = replace(make_anchor(), anchor_role=None)
        with pytest.raises(InputValidationError, match="anchor_role"):
            validate_snapshot(make_snapshot([anchor, make_place("p1", "alice")]))

    def test_single_anchor_per_role(self):
        places = [make_anchor("h1"), make_anchor("h2"), make_place("p1", "alice")]
        with pytest.raises(InputValidationError, match="more than one departure"):
            validate_snapshot(make_snapshot(places))
