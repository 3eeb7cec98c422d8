"""
Multi-day route construction.

Greedy, per day, in trip order:

  1. Places with a time window are pinned to the day their window falls on
     (trip timezone). A window outside the trip drops the place.
  2. The day is filled nearest-first from the current location (the
     departure anchor on day 1, afterwards wherever the previous day ended)
     while leg + minimal buffer + stay still fits the day's hour budget,
     less the time held back for meals.
  3. The day's places are ordered nearest-neighbour, time-aware: a place
     whose window would otherwise be missed is taken first, and a place
     that is not open yet is only taken when nothing else is ready.
  4. Each leg gets a mode by distance and a duration from its mode profile.
     arrival = previous.departure + minimal_buffer + leg.duration
     departure = arrival + stay
     When the clock sits inside a meal window with enough room left, the
     meal's nominal length is held open before the next leg leaves.
     From day 2 on, the first place is reached by a transfer leg from
     wherever the previous day ended; it leaves at day start, after any
     meal held there.
  5. A day that overruns its budget defers its least valuable flexible place
     to the next day (dropped on the last day) and is re-timed. A place that
     cannot leave before its latest departure is dropped.

Anchors are never dropped or deferred: the departure anchor opens day 1 and
the destination anchor closes the last day.

A day whose timeline spills past midnight fails on its own; its places are
reported as dropped and construction continues with the next day.

Output: DaySchedules with visits and legs only. Meals, buffers and stats are
the assembler's job.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Protocol

from services.planner.optimization.errors import DayScheduleError, StageComputationError
from services.planner.optimization.geo import distance_between
from services.planner.optimization.meals import MEAL_WINDOWS, overlap_minutes
from services.planner.optimization.settings import OptimizationSettings
from services.planner.optimization.transport import leg_cost, leg_duration_minutes, select_mode
from services.planner.optimization.types import (
    ANCHOR_DEPARTURE,
    ANCHOR_DESTINATION,
    DAY_FAILED,
    DaySchedule,
    DroppedPlace,
    FailedDay,
    RouteResult,
    ScheduledVisit,
    SelectedPlace,
    TransportLeg,
)
from services.planner.realtime.progress import STAGE_ROUTING, StageProgress

logger = logging.getLogger(__name__)

# Share of the routing stage's progress range spent constructing routes;
# assembly and the conflict scan use the rest.
ROUTING_PROGRESS_SHARE = 70.0

# How long the clock may idle to catch a meal window that the next visit
# would otherwise swallow.
_MEAL_MAX_WAIT_MINUTES = 60

DROP_TRIP_CAPACITY = "trip_capacity"
DROP_TIME_WINDOW = "time_window"
DROP_OUTSIDE_TRIP = "outside_trip_dates"
DROP_DAY_FAILED = "day_failed"


class RouteConstructor(Protocol):
    """Swappable route construction strategy."""

    def construct(
        self,
        places: list[SelectedPlace],
        start_date: date,
        end_date: date,
        settings: OptimizationSettings,
    ) -> tuple[RouteResult, list[StageProgress]]:
        ...


def _minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


class GreedyRouteConstructor:
    """Default RouteConstructor. Deterministic for identical input."""

    def construct(
        self,
        places: list[SelectedPlace],
        start_date: date,
        end_date: date,
        settings: OptimizationSettings,
    ) -> tuple[RouteResult, list[StageProgress]]:
        day_count = (end_date - start_date).days + 1
        notes = [StageProgress(STAGE_ROUTING, 0, f"Routing {len(places)} places over {day_count} days")]

        departure = next((p for p in places if p.anchor_role == ANCHOR_DEPARTURE), None)
        destination = next((p for p in places if p.anchor_role == ANCHOR_DESTINATION), None)
        if departure is None:
            raise StageComputationError(
                "no departure anchor place found",
                stage=STAGE_ROUTING,
                code="NO_ANCHOR_PLACE",
            )

        tz = settings.tz
        dropped: list[DroppedPlace] = []
        pinned: dict[int, list[SelectedPlace]] = {}
        pool: list[SelectedPlace] = []

        for place in sorted((p for p in places if not p.is_anchor), key=lambda p: p.id):
            if not place.is_pinned:
                pool.append(place)
                continue
            pin = place.earliest_arrival or place.latest_departure
            day_index = (pin.astimezone(tz).date() - start_date).days
            if 0 <= day_index < day_count:
                pinned.setdefault(day_index, []).append(place)
            else:
                dropped.append(DroppedPlace(place.id, place.member_id, DROP_OUTSIDE_TRIP))

        days: list[DaySchedule] = []
        failed: list[FailedDay] = []
        location: SelectedPlace = departure
        carry: list[SelectedPlace] = []

        for day_index in range(day_count):
            day_date = start_date + timedelta(days=day_index)
            is_first = day_index == 0
            is_last = day_index == day_count - 1

            flexible = carry + self._fill(
                pool,
                fixed=pinned.get(day_index, []) + carry,
                location=location,
                day_date=day_date,
                settings=settings,
                opening=departure if is_first else None,
                closing=destination if is_last else None,
            )
            carry = []
            members_today = pinned.get(day_index, []) + flexible

            try:
                schedule, deferred, late = self._build_day(
                    day_index,
                    day_date,
                    members_today,
                    location,
                    settings,
                    opening=departure if is_first else None,
                    closing=destination if is_last else None,
                )
            except DayScheduleError as exc:
                logger.warning("Routing day failed: day=%d reason=%s", day_index, exc.reason)
                failed.append(FailedDay(day_index, "routing", exc.reason))
                days.append(DaySchedule(
                    day_index=day_index,
                    date=day_date,
                    status=DAY_FAILED,
                    failure_reason=exc.reason,
                ))
                dropped.extend(
                    DroppedPlace(p.id, p.member_id, DROP_DAY_FAILED, day_index)
                    for p in members_today
                )
                continue

            dropped.extend(DroppedPlace(p.id, p.member_id, DROP_TIME_WINDOW, day_index) for p in late)
            if is_last:
                dropped.extend(
                    DroppedPlace(p.id, p.member_id, DROP_TRIP_CAPACITY, day_index) for p in deferred
                )
            else:
                carry = deferred

            days.append(schedule)
            if schedule.visits:
                location = schedule.visits[-1].place

            notes.append(StageProgress(
                STAGE_ROUTING,
                ROUTING_PROGRESS_SHARE * (day_index + 1) / day_count,
                f"Routed day {day_index + 1} of {day_count}",
            ))

        dropped.extend(DroppedPlace(p.id, p.member_id, DROP_TRIP_CAPACITY) for p in pool)

        logger.info(
            "Routing complete: days=%d visits=%d dropped=%d failed_days=%d",
            day_count,
            sum(len(d.visits) for d in days),
            len(dropped),
            len(failed),
        )
        return RouteResult(days=days, dropped=dropped, failed_days=failed), notes

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _stay(place: SelectedPlace, settings: OptimizationSettings) -> int:
        if place.is_anchor:
            return max(place.stay_duration_minutes, settings.anchor_min_stay_minutes)
        return place.stay_duration_minutes

    @staticmethod
    def _leg_minutes(a: SelectedPlace, b: SelectedPlace, settings: OptimizationSettings) -> int:
        distance = distance_between(a, b)
        return leg_duration_minutes(select_mode(distance, settings), distance)

    @staticmethod
    def _day_bounds(day_date: date, settings: OptimizationSettings) -> tuple[datetime, datetime]:
        start = datetime.combine(day_date, settings.day_start, tzinfo=settings.tz)
        return start, start + _minutes(settings.daily_minutes)

    def _meal_reserve(self, day_date: date, settings: OptimizationSettings) -> int:
        day_start, day_end = self._day_bounds(day_date, settings)
        total = 0
        for window in MEAL_WINDOWS:
            w_start, w_end = window.bounds(day_date, settings.tz)
            if overlap_minutes(day_start, day_end, w_start, w_end) >= settings.min_meal_minutes:
                total += window.nominal_minutes
        return total

    def _fill(
        self,
        pool: list[SelectedPlace],
        fixed: list[SelectedPlace],
        location: SelectedPlace,
        day_date: date,
        settings: OptimizationSettings,
        opening: SelectedPlace | None,
        closing: SelectedPlace | None,
    ) -> list[SelectedPlace]:
        """Take places out of ``pool`` for one day, nearest first, within budget."""
        budget = settings.daily_minutes - self._meal_reserve(day_date, settings)
        step = settings.minimal_buffer_minutes

        used = self._stay(opening, settings) if opening else 0
        for place in fixed:
            used += self._leg_minutes(location, place, settings) + step + self._stay(place, settings)

        taken: list[SelectedPlace] = []
        cursor = location
        while pool:
            ranked = sorted(pool, key=lambda p: (distance_between(cursor, p), p.id))
            for place in ranked:
                cost = self._leg_minutes(cursor, place, settings) + step + self._stay(place, settings)
                tail = 0
                if closing is not None:
                    tail = self._leg_minutes(place, closing, settings) + step + self._stay(closing, settings)
                if used + cost + tail <= budget:
                    taken.append(place)
                    pool.remove(place)
                    used += cost
                    cursor = place
                    break
            else:
                break
        return taken

    def _order(
        self,
        places: list[SelectedPlace],
        start: SelectedPlace,
        clock: datetime,
        settings: OptimizationSettings,
    ) -> list[SelectedPlace]:
        """Time-aware nearest neighbour ordering from ``start``."""
        remaining = sorted(places, key=lambda p: p.id)
        ordered: list[SelectedPlace] = []
        cursor = start
        step = _minutes(settings.minimal_buffer_minutes)

        def eta(src: SelectedPlace, dst: SelectedPlace, t: datetime) -> datetime:
            return t + step + _minutes(self._leg_minutes(src, dst, settings))

        def leave(dst: SelectedPlace, arrive: datetime) -> datetime:
            if dst.earliest_arrival is not None and arrive < dst.earliest_arrival:
                arrive = dst.earliest_arrival
            return arrive + _minutes(self._stay(dst, settings))

        while remaining:
            ready = [
                p for p in remaining
                if p.earliest_arrival is None or p.earliest_arrival <= eta(cursor, p, clock)
            ]
            if ready:
                choice = min(ready, key=lambda p: (distance_between(cursor, p), p.id))
            else:
                choice = min(remaining, key=lambda p: (p.earliest_arrival, p.id))

            after_choice = leave(choice, eta(cursor, choice, clock))
            urgent = [
                q for q in remaining
                if q is not choice
                and q.latest_departure is not None
                and leave(q, eta(choice, q, after_choice)) > q.latest_departure
                and leave(q, eta(cursor, q, clock)) <= q.latest_departure
            ]
            if urgent:
                choice = min(urgent, key=lambda q: (q.latest_departure, q.id))
                after_choice = leave(choice, eta(cursor, choice, clock))

            ordered.append(choice)
            remaining.remove(choice)
            cursor = choice
            clock = after_choice
        return ordered

    def _hold_meal(
        self,
        clock: datetime,
        day_date: date,
        held: set[str],
        settings: OptimizationSettings,
    ) -> datetime:
        """Advance the clock past a meal when it sits inside an open window."""
        for window in MEAL_WINDOWS:
            if window.meal_type in held:
                continue
            w_start, w_end = window.bounds(day_date, settings.tz)
            if w_start <= clock and clock + _minutes(settings.min_meal_minutes) <= w_end:
                held.add(window.meal_type)
                length = min(window.nominal_minutes, int((w_end - clock).total_seconds() // 60))
                return clock + _minutes(length)
        return clock

    def _wait_for_meal(
        self,
        clock: datetime,
        next_departure: datetime,
        day_date: date,
        held: set[str],
        settings: OptimizationSettings,
    ) -> datetime | None:
        """
        If the next visit would swallow a whole meal window, return the clock
        to hold the meal at instead (window start + meal), else None.
        """
        for window in MEAL_WINDOWS:
            if window.meal_type in held:
                continue
            w_start, w_end = window.bounds(day_date, settings.tz)
            swallowed = next_departure > w_end - _minutes(settings.min_meal_minutes)
            wait = (w_start - clock).total_seconds() / 60
            if clock < w_start and swallowed and wait <= _MEAL_MAX_WAIT_MINUTES:
                held.add(window.meal_type)
                return w_start + _minutes(window.nominal_minutes)
        return None

    def _time(
        self,
        day_index: int,
        day_date: date,
        sequence: list[SelectedPlace],
        settings: OptimizationSettings,
        origin: SelectedPlace | None = None,
    ) -> tuple[list[ScheduledVisit], list[TransportLeg]]:
        """
        Clock the sequence. ``origin`` is where the group woke up; when set,
        the first place gets a transfer leg from it.
        """
        day_start, _ = self._day_bounds(day_date, settings)
        step = _minutes(settings.minimal_buffer_minutes)

        visits: list[ScheduledVisit] = []
        legs: list[TransportLeg] = []
        held: set[str] = set()
        prev: ScheduledVisit | None = None

        for place in sequence:
            clock = day_start if prev is None else prev.departure_time + step
            clock = self._hold_meal(clock, day_date, held, settings)

            src = prev.place if prev is not None else origin
            if src is not None and src.id == place.id:
                src = None

            def _arrive(leg_start: datetime) -> tuple[datetime, datetime, float, str, int]:
                if src is None:
                    distance, mode, minutes = 0.0, "", 0
                else:
                    distance = distance_between(src, place)
                    mode = select_mode(distance, settings)
                    minutes = leg_duration_minutes(mode, distance)
                arrival = leg_start + _minutes(minutes)
                if place.earliest_arrival is not None and arrival < place.earliest_arrival:
                    arrival = place.earliest_arrival
                return arrival, arrival + _minutes(self._stay(place, settings)), distance, mode, minutes

            arrival, departure, distance, mode, minutes = _arrive(clock)
            held_at = self._wait_for_meal(clock, departure, day_date, held, settings)
            if held_at is not None:
                clock = held_at
                arrival, departure, distance, mode, minutes = _arrive(clock)

            if src is not None:
                legs.append(TransportLeg(
                    from_place_id=src.id,
                    to_place_id=place.id,
                    mode=mode,
                    distance_km=round(distance, 3),
                    duration_minutes=minutes,
                    departure_time=clock,
                    arrival_time=clock + _minutes(minutes),
                    estimated_cost=leg_cost(mode, distance),
                ))
            visit = ScheduledVisit(
                place=place,
                day_index=day_index,
                arrival_time=arrival,
                departure_time=departure,
            )
            visits.append(visit)
            prev = visit

        return visits, legs

    def _build_day(
        self,
        day_index: int,
        day_date: date,
        members_today: list[SelectedPlace],
        location: SelectedPlace,
        settings: OptimizationSettings,
        opening: SelectedPlace | None,
        closing: SelectedPlace | None,
    ) -> tuple[DaySchedule, list[SelectedPlace], list[SelectedPlace]]:
        """
        Order and time one day, repairing overruns.

        Returns:
            (schedule, deferred places, places dropped for their time window)
        """
        day_start, day_end = self._day_bounds(day_date, settings)
        midnight = datetime.combine(day_date + timedelta(days=1), time(0, 0), tzinfo=settings.tz)
        current = list(members_today)
        deferred: list[SelectedPlace] = []
        late: list[SelectedPlace] = []

        while True:
            start = opening or location
            clock = day_start
            if opening is not None:
                clock += _minutes(self._stay(opening, settings))
            ordered = self._order(current, start, clock, settings)

            sequence = ([opening] if opening else []) + ordered + ([closing] if closing else [])
            visits, legs = self._time(
                day_index, day_date, sequence, settings,
                origin=None if opening else location,
            )

            missed = [
                v.place for v in visits
                if not v.place.is_anchor
                and v.place.latest_departure is not None
                and v.departure_time > v.place.latest_departure
            ]
            if missed:
                worst = min(missed, key=lambda p: (p.value, p.id))
                current.remove(worst)
                late.append(worst)
                continue

            if visits and visits[-1].departure_time > day_end and current:
                movable = [p for p in current if not p.is_pinned] or current
                worst = min(movable, key=lambda p: (p.value, p.id))
                current.remove(worst)
                if worst.is_pinned:
                    late.append(worst)
                else:
                    deferred.append(worst)
                continue

            break

        if visits and visits[-1].departure_time > midnight:
            raise DayScheduleError(day_index, "schedule runs past midnight")

        return (
            DaySchedule(day_index=day_index, date=day_date, visits=visits, legs=legs),
            deferred,
            late,
        )
