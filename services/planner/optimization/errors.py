"""
Error taxonomy for the optimization pipeline.

Every error carries a machine-readable ``code``, the ``stage`` it was raised
in (None for input validation, which happens before any stage) and the HTTP
status the API layer answers with.

Partial results (dropped places, failed days) and conflict findings are
never errors; they travel as data on a successful TripSchedule.
"""

from __future__ import annotations

from typing import Any


class OptimizationError(Exception):
    """Base class for everything the pipeline raises on purpose."""

    code = "OPTIMIZATION_ERROR"
    http_status = 500

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "stage": self.stage,
        }


class InputValidationError(OptimizationError):
    """Malformed request: rejected before any stage runs. Non-retryable."""

    code = "INVALID_INPUT"
    http_status = 400


class StageComputationError(OptimizationError):
    """A stage could not produce output. Aborts the run."""

    code = "STAGE_FAILED"
    http_status = 422


class StageTimeoutError(StageComputationError):
    code = "STAGE_TIMEOUT"
    http_status = 504


class OptimizationCancelled(OptimizationError):
    """Raised between stages when a newer run took over the trip."""

    code = "RUN_SUPERSEDED"
    http_status = 409


class RunInProgressError(OptimizationError):
    code = "RUN_IN_PROGRESS"
    http_status = 409


class DayScheduleError(Exception):
    """A single day could not be routed or assembled.

    Caught per day by the route constructor and the assembler; the day is
    flagged as failed and the rest of the trip continues.
    """

    def __init__(self, day_index: int, reason: str) -> None:
        super().__init__(f"day {day_index}: {reason}")
        self.day_index = day_index
        self.reason = reason
