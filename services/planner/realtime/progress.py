"""
Progress stage machine for optimization runs.

    collecting -> normalizing -> selecting -> routing -> complete

Any stage that has not finished may instead move to error.

Stages report a stage-local percent (0-100). The reporter maps it into the
stage's fixed global range so the percent subscribers see never decreases:

    collecting    0 -  5
    normalizing   5 - 25
    selecting    25 - 65
    routing      65 - 95   (includes schedule assembly and conflict scan)
    complete          100

An error event keeps the last percent reached; error and complete are
terminal.

The reporter only builds ProgressEvent objects. Delivery is the broker's job
(see broker.py), so stages and tests can use a reporter with no I/O at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

STAGE_COLLECTING = "collecting"
STAGE_NORMALIZING = "normalizing"
STAGE_SELECTING = "selecting"
STAGE_ROUTING = "routing"
STAGE_COMPLETE = "complete"
STAGE_ERROR = "error"

STAGE_ORDER = (
    STAGE_COLLECTING,
    STAGE_NORMALIZING,
    STAGE_SELECTING,
    STAGE_ROUTING,
    STAGE_COMPLETE,
)

STAGE_RANGES: dict[str, tuple[int, int]] = {
    STAGE_COLLECTING: (0, 5),
    STAGE_NORMALIZING: (5, 25),
    STAGE_SELECTING: (25, 65),
    STAGE_ROUTING: (65, 95),
    STAGE_COMPLETE: (100, 100),
}

_TERMINAL = {STAGE_COMPLETE, STAGE_ERROR}


class InvalidStageTransition(ValueError):
    pass


@dataclass(frozen=True)
class StageProgress:
    """Stage-local progress note returned by a pure stage function."""
    stage: str
    percent: float  # 0-100 within the stage
    message: str


@dataclass(frozen=True)
class ProgressEvent:
    trip_id: str
    run_id: str
    stage: str
    progress: int
    message: str
    timestamp: datetime
    execution_time_ms: int | None = None
    error: str | None = None

    @property
    def dedup_key(self) -> tuple[str, str]:
        """Consumers wanting exactly-once drop repeats of (stage, timestamp)."""
        return (self.stage, self.timestamp.isoformat())

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "tripId": self.trip_id,
            "runId": self.run_id,
            "stage": self.stage,
            "progress": self.progress,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.execution_time_ms is not None:
            d["executionTimeMs"] = self.execution_time_ms
        if self.error is not None:
            d["error"] = self.error
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ProgressEvent":
        return cls(
            trip_id=d["tripId"],
            run_id=d.get("runId", ""),
            stage=d["stage"],
            progress=int(d["progress"]),
            message=d.get("message", ""),
            timestamp=datetime.fromisoformat(d["timestamp"]),
            execution_time_ms=d.get("executionTimeMs"),
            error=d.get("error"),
        )


class ProgressReporter:
    """
    Stage machine for one run of one trip.

    Usage:
        reporter = ProgressReporter(trip_id, run_id)
        events = [reporter.enter(STAGE_COLLECTING, "Loading places")]
        events.append(reporter.report(StageProgress(STAGE_COLLECTING, 100, "Loaded")))
        ...
        events.append(reporter.complete("Done", execution_time_ms=1234))
    """

    def __init__(self, trip_id: str, run_id: str, clock=None) -> None:
        self.trip_id = trip_id
        self.run_id = run_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.stage: str | None = None
        self.percent = 0

    @property
    def finished(self) -> bool:
        return self.stage in _TERMINAL

    def _event(self, message: str, execution_time_ms: int | None = None, error: str | None = None) -> ProgressEvent:
        return ProgressEvent(
            trip_id=self.trip_id,
            run_id=self.run_id,
            stage=self.stage,
            progress=self.percent,
            message=message,
            timestamp=self._clock(),
            execution_time_ms=execution_time_ms,
            error=error,
        )

    def _advance_to(self, global_percent: int) -> None:
        self.percent = max(self.percent, min(100, global_percent))

    def enter(self, stage: str, message: str, execution_time_ms: int | None = None) -> ProgressEvent:
        """Transition into ``stage``. Only forward moves are allowed."""
        if stage not in STAGE_RANGES:
            raise InvalidStageTransition(f"unknown stage: {stage}")
        if self.finished:
            raise InvalidStageTransition(f"run already finished ({self.stage})")
        if self.stage is not None and STAGE_ORDER.index(stage) <= STAGE_ORDER.index(self.stage):
            raise InvalidStageTransition(f"cannot move from {self.stage} to {stage}")

        self.stage = stage
        self._advance_to(STAGE_RANGES[stage][0])
        return self._event(message, execution_time_ms=execution_time_ms)

    def report(self, note: StageProgress) -> ProgressEvent:
        """Map a stage-local percent into the global range of the current stage."""
        if note.stage != self.stage:
            raise InvalidStageTransition(
                f"progress for {note.stage} while in {self.stage}"
            )
        lo, hi = STAGE_RANGES[note.stage]
        local = min(100.0, max(0.0, note.percent))
        self._advance_to(int(lo + (hi - lo) * local / 100.0))
        return self._event(note.message)

    def complete(self, message: str, execution_time_ms: int | None = None) -> ProgressEvent:
        return self.enter(STAGE_COMPLETE, message, execution_time_ms=execution_time_ms)

    def fail(self, error: str, message: str = "Optimization failed", execution_time_ms: int | None = None) -> ProgressEvent:
        """Terminal error event. Keeps the percent reached so far."""
        if self.finished:
            raise InvalidStageTransition(f"run already finished ({self.stage})")
        logger.info(
            "Progress error: trip=%s run=%s at=%s%% error=%s",
            self.trip_id, self.run_id, self.percent, error,
        )
        self.stage = STAGE_ERROR
        return self._event(message, execution_time_ms=execution_time_ms, error=error)
