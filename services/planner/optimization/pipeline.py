"""
Optimization pipeline orchestrator.

Flow for one run:
  1. Resolve settings (validated once, here) and validate the snapshot.
     Input errors are raised before a run is registered or any event sent.
  2. Claim the trip on the broker (supersede or reject an in-flight run).
  3. collecting -> normalizing -> selecting -> routing, strictly in order.
     Each stage is a pure function returning (output, progress notes); it runs
     in a worker thread under its own time bound. The orchestrator turns the
     notes into ProgressEvents and publishes them. "routing" covers route
     construction, schedule assembly and the conflict scan.
  4. Between stages the run checks whether it was superseded.
  5. complete (100%) with the total execution time, or an error event that
     keeps the last percent and names the failing stage.

Stage results are cached in Redis under a fingerprint of their inputs; a hit
skips the computation and marks the result as cached.

A stage that overruns its bound raises StageTimeoutError. The worker thread
itself cannot be interrupted and finishes in the background; its output is
discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError

from services.planner.optimization.assembler import ScheduleAssembler
from services.planner.optimization.cache import StageCache, fingerprint
from services.planner.optimization.conflicts import ConflictDetector
from services.planner.optimization.errors import (
    InputValidationError,
    OptimizationCancelled,
    OptimizationError,
    StageComputationError,
    StageTimeoutError,
)
from services.planner.optimization.normalizer import normalize_preferences, validate_snapshot
from services.planner.optimization.route_constructor import GreedyRouteConstructor, RouteConstructor
from services.planner.optimization.selector import FairGreedySelector, Selector
from services.planner.optimization.settings import OptimizationSettings
from services.planner.optimization.types import (
    NormalizationResult,
    SelectionResult,
    TripSchedule,
    TripSnapshot,
)
from services.planner.realtime.broker import POLICY_SUPERSEDE, ProgressBroker, RunHandle
from services.planner.realtime.progress import (
    STAGE_COLLECTING,
    STAGE_NORMALIZING,
    STAGE_ROUTING,
    STAGE_SELECTING,
    ProgressEvent,
    ProgressReporter,
    StageProgress,
)

logger = logging.getLogger(__name__)

# Stage endpoint names -> progress stage
STAGE_ENDPOINTS: dict[str, str] = {
    "normalize": STAGE_NORMALIZING,
    "select": STAGE_SELECTING,
    "route": STAGE_ROUTING,
}


@dataclass(frozen=True)
class StageTimeouts:
    normalize_s: float = 10.0
    select_s: float = 20.0
    routing_s: float = 40.0


@dataclass
class PipelineResult:
    """What a run hands back. ``result`` is the output of the last stage run."""
    trip_id: str
    run_id: str
    stage: str
    result: Any
    execution_time_ms: int
    cached: bool
    message: str
    stage_timings_ms: dict[str, int] = field(default_factory=dict)

    @property
    def schedule(self) -> TripSchedule | None:
        return self.result if isinstance(self.result, TripSchedule) else None

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "result": self.result.to_dict(),
            "execution_time_ms": self.execution_time_ms,
            "cached": self.cached,
            "message": self.message,
        }


def resolve_settings(
    raw: OptimizationSettings | dict[str, Any] | None,
    default_timezone: str | None = None,
) -> OptimizationSettings:
    """Validate request settings once; the trip's timezone fills a missing one."""
    if isinstance(raw, OptimizationSettings):
        return raw
    data = dict(raw or {})
    if default_timezone and "timezone" not in data:
        data["timezone"] = default_timezone
    try:
        return OptimizationSettings.model_validate(data)
    except ValidationError as exc:
        raise InputValidationError(f"invalid settings: {exc.errors()[0].get('msg', exc)}") from exc


class OptimizationPipeline:
    """
    Runs the stages for one trip and publishes progress.

    Usage:
        pipeline = OptimizationPipeline(broker, cache=StageCache(redis))
        outcome = await pipeline.run(snapshot, {"fairnessWeight": 0.8})
        outcome.schedule.stats.dropped_count
    """

    def __init__(
        self,
        broker: ProgressBroker,
        cache: StageCache | None = None,
        selector: Selector | None = None,
        route_constructor: RouteConstructor | None = None,
        timeouts: StageTimeouts | None = None,
        algorithm_version: str = "3.0",
        run_policy: str = POLICY_SUPERSEDE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.broker = broker
        self.cache = cache or StageCache(None)
        self.selector = selector or FairGreedySelector()
        self.route_constructor = route_constructor or GreedyRouteConstructor()
        self.timeouts = timeouts or StageTimeouts()
        self.algorithm_version = algorithm_version
        self.run_policy = run_policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Stage plumbing
    # ------------------------------------------------------------------

    async def _publish(self, event: ProgressEvent) -> None:
        await self.broker.publish(event)

    async def _publish_notes(self, reporter: ProgressReporter, notes: list[StageProgress]) -> None:
        for note in notes:
            await self._publish(reporter.report(note))

    @staticmethod
    def _check_cancelled(handle: RunHandle, stage: str | None) -> None:
        if handle.cancelled:
            raise OptimizationCancelled("superseded by a newer optimization run", stage=stage)

    async def _compute(self, stage: str, timeout: float, func: Callable, *args) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
        except asyncio.TimeoutError as exc:
            raise StageTimeoutError(
                f"{stage} stage exceeded its {timeout:g}s limit", stage=stage
            ) from exc

    async def _cached_stage(
        self,
        reporter: ProgressReporter,
        trip_id: str,
        stage: str,
        digest: str,
        timeout: float,
        force_refresh: bool,
        decode: Callable[[dict[str, Any]], Any],
        func: Callable,
        *args,
    ) -> tuple[Any, bool]:
        if not force_refresh:
            hit = await self.cache.get(trip_id, stage, digest)
            if hit is not None:
                await self._publish(reporter.report(StageProgress(stage, 100, f"{stage.capitalize()} result loaded from cache")))
                return decode(hit), True

        output, notes = await self._compute(stage, timeout, func, *args)
        await self._publish_notes(reporter, notes)
        await self.cache.set(trip_id, stage, digest, output.to_dict())
        return output, False

    # ------------------------------------------------------------------
    # Routing group: construct -> assemble -> conflicts
    # ------------------------------------------------------------------

    def _route_and_assemble(
        self,
        snapshot: TripSnapshot,
        normalization: NormalizationResult,
        selection: SelectionResult,
        settings: OptimizationSettings,
        generated_at: datetime,
    ) -> tuple[TripSchedule, list[StageProgress]]:
        route, notes = self.route_constructor.construct(
            selection.places, snapshot.start_date, snapshot.end_date, settings
        )
        schedule, assembly_notes = ScheduleAssembler(settings).assemble(
            snapshot.trip_id,
            route,
            selection,
            normalization,
            generated_at=generated_at,
            algorithm_version=self.algorithm_version,
        )
        conflicts, conflict_notes = ConflictDetector(settings).detect(schedule)
        schedule.conflicts = conflicts
        return schedule, notes + assembly_notes + conflict_notes

    # ------------------------------------------------------------------
    # Public entry
    # ------------------------------------------------------------------

    async def run(
        self,
        snapshot: TripSnapshot,
        settings: OptimizationSettings | dict[str, Any] | None = None,
        until: str = STAGE_ROUTING,
        force_refresh: bool = False,
    ) -> PipelineResult:
        """
        Run the pipeline for ``snapshot`` up to and including ``until``.

        Raises:
            InputValidationError:  before any stage, nothing published
            StageComputationError: a stage failed (error event published)
            StageTimeoutError:     a stage overran its bound
            OptimizationCancelled: a newer run superseded this one
            RunInProgressError:    run_policy="reject" and a run is in flight
        """
        start_ts = time.monotonic()
        resolved = resolve_settings(settings, snapshot.timezone)
        validate_snapshot(snapshot)

        trip_id = snapshot.trip_id
        handle = self.broker.begin_run(trip_id, self.run_policy)
        reporter = ProgressReporter(trip_id, handle.run_id, clock=self._clock)
        timings: dict[str, int] = {}
        cached_flags: list[bool] = []

        logger.info(
            "Optimization start: trip=%s run=%s until=%s places=%d members=%d days=%d",
            trip_id, handle.run_id, until, len(snapshot.places), len(snapshot.members), snapshot.day_count,
        )

        try:
            await self._publish(reporter.enter(STAGE_COLLECTING, "Collecting trip data"))
            await self._publish(reporter.report(StageProgress(
                STAGE_COLLECTING, 100,
                f"Collected {len(snapshot.places)} places from {len(snapshot.members)} members",
            )))

            settings_key = resolved.to_dict()

            # -- Normalize --
            self._check_cancelled(handle, reporter.stage)
            await self._publish(reporter.enter(STAGE_NORMALIZING, "Normalizing preferences"))
            t0 = time.monotonic()
            norm_digest = fingerprint({"snapshot": snapshot.to_dict(), "settings": settings_key})
            normalization, cached = await self._cached_stage(
                reporter, trip_id, STAGE_NORMALIZING, norm_digest,
                self.timeouts.normalize_s, force_refresh,
                NormalizationResult.from_dict,
                normalize_preferences, snapshot, resolved,
            )
            timings[STAGE_NORMALIZING] = int((time.monotonic() - t0) * 1000)
            cached_flags.append(cached)
            result: Any = normalization

            # -- Select --
            if until in (STAGE_SELECTING, STAGE_ROUTING):
                self._check_cancelled(handle, reporter.stage)
                await self._publish(reporter.enter(STAGE_SELECTING, "Selecting places"))
                t0 = time.monotonic()
                sel_digest = fingerprint({
                    "upstream": norm_digest,
                    "settings": settings_key,
                    "selector": type(self.selector).__name__,
                })
                selection, cached = await self._cached_stage(
                    reporter, trip_id, STAGE_SELECTING, sel_digest,
                    self.timeouts.select_s, force_refresh,
                    SelectionResult.from_dict,
                    self.selector.select, normalization.places, resolved,
                )
                timings[STAGE_SELECTING] = int((time.monotonic() - t0) * 1000)
                cached_flags.append(cached)
                result = selection

            # -- Route, assemble, scan --
            if until == STAGE_ROUTING:
                self._check_cancelled(handle, reporter.stage)
                await self._publish(reporter.enter(STAGE_ROUTING, "Building daily routes"))
                t0 = time.monotonic()
                route_digest = fingerprint({
                    "upstream": sel_digest,
                    "settings": settings_key,
                    "dates": [snapshot.start_date.isoformat(), snapshot.end_date.isoformat()],
                    "constructor": type(self.route_constructor).__name__,
                    "version": self.algorithm_version,
                })
                result, cached = await self._cached_stage(
                    reporter, trip_id, STAGE_ROUTING, route_digest,
                    self.timeouts.routing_s, force_refresh,
                    TripSchedule.from_dict,
                    self._route_and_assemble, snapshot, normalization, selection, resolved, self._clock(),
                )
                timings[STAGE_ROUTING] = int((time.monotonic() - t0) * 1000)
                cached_flags.append(cached)

            self._check_cancelled(handle, reporter.stage)
            execution_time_ms = int((time.monotonic() - start_ts) * 1000)
            message = self._summary(result)
            await self._publish(reporter.complete(message, execution_time_ms=execution_time_ms))

        except OptimizationError as exc:
            if exc.stage is None and not isinstance(exc, InputValidationError):
                exc.stage = reporter.stage
            await self._fail(reporter, exc, start_ts)
            raise
        except Exception as exc:
            logger.error(
                "Optimization crashed: trip=%s run=%s stage=%s", trip_id, handle.run_id, reporter.stage,
                exc_info=True,
            )
            wrapped = StageComputationError(str(exc) or type(exc).__name__, stage=reporter.stage)
            await self._fail(reporter, wrapped, start_ts)
            raise wrapped from exc
        finally:
            self.broker.end_run(handle)

        logger.info(
            "Optimization complete: trip=%s run=%s ms=%d cached=%s timings=%s",
            trip_id, handle.run_id, execution_time_ms, all(cached_flags), timings,
        )
        return PipelineResult(
            trip_id=trip_id,
            run_id=handle.run_id,
            stage=until,
            result=result,
            execution_time_ms=execution_time_ms,
            cached=bool(cached_flags) and all(cached_flags),
            message=message,
            stage_timings_ms=timings,
        )

    async def _fail(self, reporter: ProgressReporter, exc: OptimizationError, start_ts: float) -> None:
        logger.warning(
            "Optimization failed: trip=%s run=%s stage=%s code=%s message=%s",
            reporter.trip_id, reporter.run_id, exc.stage, exc.code, exc.message,
        )
        if reporter.finished:
            return
        await self._publish(reporter.fail(
            exc.message,
            message=f"Optimization failed during {exc.stage or 'setup'}",
            execution_time_ms=int((time.monotonic() - start_ts) * 1000),
        ))

    @staticmethod
    def _summary(result: Any) -> str:
        if isinstance(result, TripSchedule):
            stats = result.stats
            return (
                f"Scheduled {stats.total_places} places over {stats.total_days} days "
                f"({stats.dropped_count} dropped, {len(stats.failed_days)} failed days, "
                f"{len(result.conflicts)} conflicts)"
            )
        if isinstance(result, SelectionResult):
            return f"Selected {len(result.places)} places in {result.rounds} rounds"
        return f"Normalized {len(result.places)} places"
