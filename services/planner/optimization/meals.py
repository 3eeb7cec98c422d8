"""
Canonical meal windows shared by routing, assembly and the conflict scan.

    breakfast  08:00 - 09:00   nominal 45 min
    lunch      12:00 - 13:30   nominal 60 min
    dinner     18:00 - 20:00   nominal 90 min

Windows are wall-clock times in the trip's timezone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo


@dataclass(frozen=True)
class MealWindow:
    meal_type: str
    start: time
    end: time
    nominal_minutes: int

    def bounds(self, day: date, tz: tzinfo) -> tuple[datetime, datetime]:
        return (
            datetime.combine(day, self.start, tzinfo=tz),
            datetime.combine(day, self.end, tzinfo=tz),
        )


MEAL_WINDOWS: tuple[MealWindow, ...] = (
    MealWindow("breakfast", time(8, 0), time(9, 0), 45),
    MealWindow("lunch", time(12, 0), time(13, 30), 60),
    MealWindow("dinner", time(18, 0), time(20, 0), 90),
)


def overlap_minutes(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> int:
    start = max(start_a, start_b)
    end = min(end_a, end_b)
    if end <= start:
        return 0
    return int((end - start).total_seconds() // 60)
