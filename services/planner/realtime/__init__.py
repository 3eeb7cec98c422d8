"""
Optimization progress delivery.

ProgressReporter
    Per-run stage machine; turns stage-local notes into ProgressEvents with
    a never-decreasing global percent.

ProgressBroker
    Owned pub/sub registry (trip_id -> subscriptions) plus run authority.
    One per process, created in the app lifespan.

RedisProgressStore
    Latest event per trip mirrored to Redis for other workers.

Usage:
    from services.planner.realtime import ProgressBroker, ProgressReporter
"""

from __future__ import annotations

from services.planner.realtime.broker import ProgressBroker, RunHandle, Subscription
from services.planner.realtime.progress import ProgressEvent, ProgressReporter, StageProgress
from services.planner.realtime.progress_store import RedisProgressStore

__all__ = [
    "ProgressBroker",
    "ProgressEvent",
    "ProgressReporter",
    "RedisProgressStore",
    "RunHandle",
    "StageProgress",
    "Subscription",
]
