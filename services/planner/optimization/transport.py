"""
Transport mode choice, leg durations and the cost model.

Mode by straight-line distance d (km), thresholds from settings:

    d <= walking_max_km          walking
    d <= transit_max_km          public_transit
    d >= flight_min_km           flight
    otherwise                    car

Planned durations use effective door-to-door speeds (detours, waiting and
parking folded in) plus a fixed overhead. The physical minimum uses the
fastest plausible speeds and is what the conflict scan compares against, so
a planned leg is never below its own minimum.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from services.planner.optimization.settings import OptimizationSettings
from services.planner.optimization.types import (
    MODE_CAR,
    MODE_FLIGHT,
    MODE_PUBLIC_TRANSIT,
    MODE_WALKING,
)


@dataclass(frozen=True)
class ModeProfile:
    speed_kmh: float
    overhead_minutes: int


PLANNING_PROFILES: dict[str, ModeProfile] = {
    MODE_WALKING: ModeProfile(5.0, 0),
    MODE_PUBLIC_TRANSIT: ModeProfile(20.0, 0),
    MODE_CAR: ModeProfile(40.0, 0),
    MODE_FLIGHT: ModeProfile(600.0, 120),  # check-in, security, boarding
}

PHYSICAL_MINIMUM_PROFILES: dict[str, ModeProfile] = {
    MODE_WALKING: ModeProfile(6.0, 0),
    MODE_PUBLIC_TRANSIT: ModeProfile(50.0, 0),
    MODE_CAR: ModeProfile(80.0, 0),
    MODE_FLIGHT: ModeProfile(900.0, 60),
}

# Cost model (settings.currency, defaults to JPY)
_FLIGHT_FARE = 15000.0
_CAR_COST_PER_KM = 50.0
_TRANSIT_FARE = 500.0

MEAL_COSTS: dict[str, float] = {
    "breakfast": 1000.0,
    "lunch": 1500.0,
    "dinner": 3000.0,
    "snack": 500.0,
}


def select_mode(distance_km: float, settings: OptimizationSettings) -> str:
    if distance_km <= settings.walking_max_km:
        return MODE_WALKING
    if distance_km <= settings.transit_max_km:
        return MODE_PUBLIC_TRANSIT
    if distance_km >= settings.flight_min_km:
        return MODE_FLIGHT
    return MODE_CAR


def _minutes(distance_km: float, profile: ModeProfile) -> int:
    return int(math.ceil(distance_km / profile.speed_kmh * 60.0)) + profile.overhead_minutes


def leg_duration_minutes(mode: str, distance_km: float) -> int:
    return _minutes(distance_km, PLANNING_PROFILES[mode])


def minimum_duration_minutes(mode: str, distance_km: float) -> int:
    """Fastest physically plausible duration for the mode and distance."""
    return int(math.floor(
        distance_km / PHYSICAL_MINIMUM_PROFILES[mode].speed_kmh * 60.0
    )) + PHYSICAL_MINIMUM_PROFILES[mode].overhead_minutes


def leg_cost(mode: str, distance_km: float) -> float:
    if mode == MODE_FLIGHT:
        return _FLIGHT_FARE
    if mode == MODE_CAR:
        return round(distance_km * _CAR_COST_PER_KM, 2)
    if mode == MODE_PUBLIC_TRANSIT:
        return _TRANSIT_FARE
    return 0.0


def meal_cost(meal_type: str) -> float:
    return MEAL_COSTS.get(meal_type, 0.0)
