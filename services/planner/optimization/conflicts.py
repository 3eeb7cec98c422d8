"""
Conflict scan over an assembled TripSchedule.

Advisory only: the schedule is never modified. Checks, per day:

  time_overlap       critical  a visit departs at or after the next one arrives
  time_window        critical  a visit starts before its earliest arrival or ends after
                               its latest departure
  travel_impossible  warning   a leg is faster than its mode physically allows
  meal_timing        minor     the day runs through a meal window with no meal of that type
  insufficient_time  warning   the day ends after day_start + daily_hours

A day "runs through" a meal window when its first arrival leaves less than
min_meal_minutes of the window before it and its last departure leaves less
than min_meal_minutes after it; a day starting at 08:30 has not skipped
breakfast, a day running 08:30-13:00 has skipped lunch.

Conflict ids are a stable hash of (type, day, affected ids), so re-running
the scan on the same schedule yields the same ids.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta

from services.planner.optimization.meals import MEAL_WINDOWS
from services.planner.optimization.settings import OptimizationSettings
from services.planner.optimization.transport import minimum_duration_minutes
from services.planner.optimization.types import Conflict, DaySchedule, TripSchedule
from services.planner.realtime.progress import STAGE_ROUTING, StageProgress

logger = logging.getLogger(__name__)

SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"
SEVERITY_MINOR = "minor"

_SEVERITY_RANK = {SEVERITY_CRITICAL: 0, SEVERITY_WARNING: 1, SEVERITY_MINOR: 2}


def _conflict_id(conflict_type: str, day_index: int, ids: tuple[str, ...]) -> str:
    digest = hashlib.sha1(f"{conflict_type}:{day_index}:{','.join(ids)}".encode()).hexdigest()
    return f"cf_{digest[:12]}"


def _hhmm(dt: datetime) -> str:
    return dt.strftime("%H:%M")


class ConflictDetector:

    def __init__(self, settings: OptimizationSettings) -> None:
        self.settings = settings
        self.tz = settings.tz

    def _make(
        self,
        conflict_type: str,
        severity: str,
        day: DaySchedule,
        ids: tuple[str, ...],
        description: str,
        resolution: str,
        auto_resolvable: bool,
    ) -> Conflict:
        return Conflict(
            conflict_id=_conflict_id(conflict_type, day.day_index, ids),
            conflict_type=conflict_type,
            severity=severity,
            description=description,
            affected_ids=ids,
            suggested_resolution=resolution,
            auto_resolvable=auto_resolvable,
            day_index=day.day_index,
        )

    def _overlaps(self, day: DaySchedule) -> list[Conflict]:
        found = []
        for a, b in zip(day.visits, day.visits[1:]):
            if a.departure_time >= b.arrival_time:
                overlap = int((a.departure_time - b.arrival_time).total_seconds() // 60)
                found.append(self._make(
                    "time_overlap",
                    SEVERITY_CRITICAL,
                    day,
                    (a.id, b.id),
                    f"{a.place.name or a.id} ends at {_hhmm(a.departure_time)} but "
                    f"{b.place.name or b.id} starts at {_hhmm(b.arrival_time)}",
                    f"Move {b.place.name or b.id} at least "
                    f"{overlap + self.settings.minimal_buffer_minutes} minutes later",
                    True,
                ))
        return found

    def _time_windows(self, day: DaySchedule) -> list[Conflict]:
        found = []
        for visit in day.visits:
            place = visit.place
            early = place.earliest_arrival is not None and visit.arrival_time < place.earliest_arrival
            late = place.latest_departure is not None and visit.departure_time > place.latest_departure
            if not (early or late):
                continue
            if early:
                description = (
                    f"{place.name or visit.id} starts at {_hhmm(visit.arrival_time)}, "
                    f"before it opens at {_hhmm(place.earliest_arrival.astimezone(self.tz))}"
                )
            else:
                description = (
                    f"{place.name or visit.id} ends at {_hhmm(visit.departure_time)}, "
                    f"after its latest departure {_hhmm(place.latest_departure.astimezone(self.tz))}"
                )
            found.append(self._make(
                "time_window",
                SEVERITY_CRITICAL,
                day,
                (visit.id,),
                description,
                f"Move {place.name or visit.id} inside its time window or drop it",
                False,
            ))
        return found

    def _travel(self, day: DaySchedule) -> list[Conflict]:
        found = []
        for leg in day.legs:
            minimum = minimum_duration_minutes(leg.mode, leg.distance_km)
            if leg.duration_minutes < minimum:
                found.append(self._make(
                    "travel_impossible",
                    SEVERITY_WARNING,
                    day,
                    (leg.from_place_id, leg.to_place_id),
                    f"{leg.distance_km:.1f} km by {leg.mode} planned in "
                    f"{leg.duration_minutes} min; at least {minimum} min needed",
                    f"Allow at least {minimum} minutes or change transport mode",
                    False,
                ))
        return found

    def _meals(self, day: DaySchedule) -> list[Conflict]:
        if not day.visits:
            return []
        first = day.visits[0].arrival_time
        last = max(v.departure_time for v in day.visits)
        served = {m.meal_type for m in day.meals}
        need = timedelta(minutes=self.settings.min_meal_minutes)

        found = []
        for window in MEAL_WINDOWS:
            if window.meal_type in served:
                continue
            w_start, w_end = window.bounds(day.date, self.tz)
            if first < w_end - need and last > w_start + need:
                inside = [v.id for v in day.visits if v.arrival_time < w_end and v.departure_time > w_start]
                ids = tuple(inside) or (day.visits[0].id,)
                found.append(self._make(
                    "meal_timing",
                    SEVERITY_MINOR,
                    day,
                    ids,
                    f"No {window.meal_type} between {window.start:%H:%M} and {window.end:%H:%M}",
                    f"Shorten a visit to fit {window.meal_type} "
                    f"({self.settings.min_meal_minutes}+ min) inside the window",
                    True,
                ))
        return found

    def _budget(self, day: DaySchedule) -> list[Conflict]:
        if not day.visits:
            return []
        day_start = datetime.combine(day.date, self.settings.day_start, tzinfo=self.tz)
        day_end = day_start + timedelta(minutes=self.settings.daily_minutes)
        late = tuple(v.id for v in day.visits if v.departure_time > day_end)
        if not late:
            return []
        last = max(v.departure_time for v in day.visits)
        over = int((last - day_end).total_seconds() // 60)
        return [self._make(
            "insufficient_time",
            SEVERITY_WARNING,
            day,
            late,
            f"Day {day.day_index + 1} runs {over} min past its {self.settings.daily_hours:g}h budget",
            "Remove or shorten a visit on this day",
            False,
        )]

    def scan_day(self, day: DaySchedule) -> list[Conflict]:
        if day.failed:
            return []
        return (
            self._overlaps(day)
            + self._time_windows(day)
            + self._travel(day)
            + self._meals(day)
            + self._budget(day)
        )

    def detect(self, schedule: TripSchedule) -> tuple[list[Conflict], list[StageProgress]]:
        conflicts: list[Conflict] = []
        for day in schedule.days:
            conflicts.extend(self.scan_day(day))

        conflicts.sort(key=lambda c: (_SEVERITY_RANK[c.severity], c.day_index, c.conflict_id))

        logger.info(
            "Conflict scan complete: trip=%s conflicts=%d critical=%d",
            schedule.trip_id,
            len(conflicts),
            sum(1 for c in conflicts if c.severity == SEVERITY_CRITICAL),
        )
        return conflicts, [StageProgress(STAGE_ROUTING, 100, f"Found {len(conflicts)} conflicts")]
