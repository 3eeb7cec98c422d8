"""
Per-run optimization settings.

Every option the pipeline understands is enumerated here with its default.
The object is validated once, at pipeline entry, and then handed read-only to
each stage; stages never re-default missing options themselves.

Accepts snake_case or the camelCase aliases used by the web client.
"""

from __future__ import annotations

from datetime import time
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class OptimizationSettings(BaseModel):
    # Normalization / selection
    fairness_weight: float = Field(default=0.6, ge=0.0, le=1.0, alias="fairnessWeight")
    efficiency_weight: float = Field(default=0.4, ge=0.0, le=1.0, alias="efficiencyWeight")
    max_places: int = Field(default=20, ge=0, le=200, alias="maxPlaces")

    # Daily envelope
    daily_hours: float = Field(default=12.0, gt=0.0, le=24.0, alias="dailyHours")
    day_start: time = Field(default=time(8, 0), alias="dayStart")
    timezone: str = Field(default="UTC", alias="timezone")

    # Transport mode thresholds (straight-line km)
    walking_max_km: float = Field(default=1.0, gt=0.0, alias="walkingMaxKm")
    transit_max_km: float = Field(default=20.0, gt=0.0, alias="transitMaxKm")
    flight_min_km: float = Field(default=200.0, gt=0.0, alias="flightMinKm")

    # Buffers and meals (minutes)
    minimal_buffer_minutes: int = Field(default=5, ge=1, le=60, alias="minimalBufferMinutes")
    min_buffer_minutes: int = Field(default=5, ge=1, le=120, alias="minBufferMinutes")
    max_buffer_minutes: int = Field(default=30, ge=0, le=240, alias="maxBufferMinutes")
    min_meal_minutes: int = Field(default=30, ge=10, le=120, alias="minMealMinutes")
    anchor_min_stay_minutes: int = Field(default=30, ge=1, le=240, alias="anchorMinStayMinutes")

    # Exports
    calendar_leg_min_minutes: int = Field(default=60, ge=0, alias="calendarLegMinMinutes")
    currency: str = Field(default="JPY", min_length=3, max_length=3, alias="currency")

    model_config = {"populate_by_name": True, "frozen": True, "extra": "forbid"}

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone: {v}")
        return v

    @model_validator(mode="after")
    def check_ordering(self) -> "OptimizationSettings":
        if not self.walking_max_km <= self.transit_max_km <= self.flight_min_km:
            raise ValueError(
                "transport thresholds must satisfy walking_max_km <= transit_max_km <= flight_min_km"
            )
        if self.min_buffer_minutes > self.max_buffer_minutes:
            raise ValueError("min_buffer_minutes must not exceed max_buffer_minutes")
        if self.minimal_buffer_minutes > self.min_buffer_minutes:
            raise ValueError("minimal_buffer_minutes must not exceed min_buffer_minutes")
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def daily_minutes(self) -> int:
        return int(round(self.daily_hours * 60))

    def to_dict(self) -> dict[str, Any]:
        """camelCase dump, stored in schedule metadata."""
        return self.model_dump(mode="json", by_alias=True)
