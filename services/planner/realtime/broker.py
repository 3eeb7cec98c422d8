"""
In-process pub/sub for optimization progress.

ProgressBroker owns a registry of trip_id -> set of Subscriptions. Nothing is
module-level: the FastAPI app creates one broker at startup and stores it on
app.state; tests create their own.

Delivery:
  - subscribe() registers a queue and immediately replays the trip's latest
    event, so a consumer joining mid-run sees where the run is, then every
    later event in publish order.
  - At-least-once. A consumer that reads both the replay and the live copy of
    the same event can drop repeats by ProgressEvent.dedup_key.
  - Channels are keyed by trip_id only; no event crosses trips.

Run authority:
  begin_run() makes a new run the trip's authoritative run. With the
  "supersede" policy an in-flight run is cancelled (it notices between
  stages); with "reject" the new request fails with RunInProgressError.
  publish() drops events whose run_id is not the trip's authoritative run,
  so two runs never interleave in one stream. A finished run stays
  authoritative until the next begin_run(); schedule write-back checks
  is_authoritative() while holding write_lock(), so an older run never
  overwrites the schedule of a newer one.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from services.planner.optimization.errors import RunInProgressError
from services.planner.realtime.progress import ProgressEvent
from services.planner.realtime.progress_store import RedisProgressStore

logger = logging.getLogger(__name__)

POLICY_SUPERSEDE = "supersede"
POLICY_REJECT = "reject"

_CLOSED = None


@dataclass
class RunHandle:
    """One optimization run's claim on a trip."""
    trip_id: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cancelled: bool = False
    finished: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class Subscription:
    """
    A subscriber's channel. Iterate it to receive events; close() (or leaving
    the ``async with`` block) deregisters it.

        async with broker.subscribe(trip_id) as sub:
            async for event in sub:
                ...
    """

    def __init__(self, broker: "ProgressBroker", trip_id: str) -> None:
        self.trip_id = trip_id
        self._broker = broker
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _deliver(self, event: ProgressEvent | None) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or None once the subscription is closed."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def pending(self) -> list[ProgressEvent]:
        """Drain whatever is queued without waiting."""
        events = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not _CLOSED:
                events.append(event)
        return events

    def close(self) -> None:
        if self.closed:
            return
        self._broker.unsubscribe(self)
        self._queue.put_nowait(_CLOSED)
        self.closed = True

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        event = await self._queue.get()
        if event is _CLOSED:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


class ProgressBroker:

    def __init__(self, store: RedisProgressStore | None = None) -> None:
        self._subscribers: dict[str, set[Subscription]] = {}
        self._latest: dict[str, ProgressEvent] = {}
        self._runs: dict[str, RunHandle] = {}
        self._authoritative: dict[str, str] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._store = store

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, trip_id: str) -> Subscription:
        sub = Subscription(self, trip_id)
        self._subscribers.setdefault(trip_id, set()).add(sub)
        latest = self._latest.get(trip_id)
        if latest is not None:
            sub._deliver(latest)
        logger.debug("progress subscribe: trip=%s subscribers=%d", trip_id, self.subscriber_count(trip_id))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.trip_id)
        if not subs:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.trip_id]

    def subscriber_count(self, trip_id: str) -> int:
        return len(self._subscribers.get(trip_id, ()))

    def latest(self, trip_id: str) -> ProgressEvent | None:
        return self._latest.get(trip_id)

    async def latest_or_stored(self, trip_id: str) -> ProgressEvent | None:
        event = self._latest.get(trip_id)
        if event is None and self._store is not None:
            event = await self._store.load(trip_id)
        return event

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def begin_run(self, trip_id: str, policy: str = POLICY_SUPERSEDE) -> RunHandle:
        current = self._runs.get(trip_id)
        if current is not None and not current.finished:
            if policy == POLICY_REJECT:
                raise RunInProgressError(
                    f"an optimization run is already in progress for trip {trip_id}"
                )
            logger.info(
                "Superseding run: trip=%s old_run=%s", trip_id, current.run_id
            )
            current.cancel()

        handle = RunHandle(trip_id=trip_id)
        self._runs[trip_id] = handle
        self._authoritative[trip_id] = handle.run_id
        return handle

    def end_run(self, handle: RunHandle) -> None:
        handle.finished = True
        if self._runs.get(handle.trip_id) is handle:
            del self._runs[handle.trip_id]

    def is_authoritative(self, trip_id: str, run_id: str) -> bool:
        return self._authoritative.get(trip_id, run_id) == run_id

    def write_lock(self, trip_id: str) -> asyncio.Lock:
        """Serializes schedule write-back for one trip."""
        return self._write_locks.setdefault(trip_id, asyncio.Lock())

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, event: ProgressEvent) -> bool:
        """Fan an event out to the trip's subscribers. False if it was stale."""
        if not self.is_authoritative(event.trip_id, event.run_id):
            logger.debug(
                "Dropping stale progress: trip=%s run=%s stage=%s",
                event.trip_id, event.run_id, event.stage,
            )
            return False

        self._latest[event.trip_id] = event
        for sub in list(self._subscribers.get(event.trip_id, ())):
            sub._deliver(event)
        if self._store is not None:
            await self._store.save(event)
        return True

    def close_trip(self, trip_id: str) -> None:
        """Close every subscription on a trip (shutdown, trip deleted)."""
        for sub in list(self._subscribers.get(trip_id, ())):
            sub.close()

    def close_all(self) -> None:
        for trip_id in list(self._subscribers):
            self.close_trip(trip_id)
