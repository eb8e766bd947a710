"""
Matching worker

Three producers feed one pipeline:
1. new-request / new-ride events pushed onto an in-process queue
2. a periodic sweep over every pending request
3. an expiration sweep that cancels stale unmatched rides and requests

The producers may overlap on the same request. That is safe because the
assignment transaction re-verifies and binds with conditional updates.

Run with: python worker.py
"""
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
import asyncio
import enum
import logging
import sys
import threading

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError

import config
from assignment import Assignment, assign
from db import check_connection, get_session, init_db
from errors import ConcurrentAssignmentConflict, NotFoundError, PersistenceError
from lifecycle import unit_of_work
from matching import find_candidates, find_passengers
from models import RequestStatus, Ride, RideRequest, RideStatus, utc_now
from notifications import NotificationType, notify

logger = logging.getLogger(__name__)


class WorkerState(str, enum.Enum):
    IDLE = "idle"
    HANDLING_EVENT = "handling_event"
    SWEEPING = "sweeping"
    EXPIRING = "expiring"


class EventKind(str, enum.Enum):
    REQUEST_CREATED = "request_created"
    RIDE_CREATED = "ride_created"


def match_request(request_id: int, tolerances=None, attempts: Optional[int] = None) -> Optional[Assignment]:
    """Match one request to its best ride.

    On a conflict the next-ranked ride is tried, up to ``attempts`` rides in
    total. Returns None when the request stays pending.
    """
    attempts = attempts or config.ASSIGNMENT_ATTEMPTS
    with get_session() as session:
        request = session.get(RideRequest, request_id)
        if request is None:
            raise NotFoundError(f"request {request_id} not found")
        if not request.auto_match:
            logger.debug(f"Request {request_id} opted out of automatic matching")
            return None

    candidates = find_candidates(request_id, tolerances)
    if not candidates:
        logger.info(f"No compatible ride for request {request_id}; it stays pending")
        return None

    for candidate in candidates[:attempts]:
        try:
            return assign(candidate.ride.id, request_id)
        except ConcurrentAssignmentConflict as exc:
            logger.info(f"{exc}; trying the next candidate")
    logger.info(f"Request {request_id} left pending after {min(attempts, len(candidates))} conflicting attempt(s)")
    return None


def match_ride(ride_id: int, tolerances=None) -> int:
    """Fill a newly offered ride from the pending requests, best match first."""
    matched = 0
    for candidate in find_passengers(ride_id, tolerances):
        try:
            result = assign(ride_id, candidate.request.id)
        except ConcurrentAssignmentConflict as exc:
            logger.info(f"{exc}; skipping")
            continue
        matched += 1
        if result.seats_remaining == 0:
            break
    logger.info(f"Ride {ride_id} picked up {matched} passenger request(s)")
    return matched


def run_sweep(tolerances=None, should_stop: Optional[Callable[[], bool]] = None) -> int:
    """Run the matching pipeline over every pending request.

    A failing request is logged and skipped; it stays pending for the next
    pass. ``should_stop`` is polled between requests so shutdown can cut the
    sweep short.
    """
    try:
        with get_session() as session:
            rows = (
                session.query(RideRequest.id)
                .filter(RideRequest.status == RequestStatus.PENDING.value)
                .filter(RideRequest.ride_id.is_(None))
                .filter(RideRequest.auto_match == True)  # noqa: E712
                .order_by(RideRequest.created_at, RideRequest.id)
                .all()
            )
    except SQLAlchemyError as exc:
        raise PersistenceError("could not list pending requests") from exc

    pending_ids = [row.id for row in rows]
    logger.info(f"Sweeping {len(pending_ids)} pending request(s)")
    matched = 0
    for request_id in pending_ids:
        if should_stop is not None and should_stop():
            logger.info(f"Sweep interrupted after {matched} match(es)")
            break
        try:
            if match_request(request_id, tolerances) is not None:
                matched += 1
        except PersistenceError as exc:
            logger.warning(f"Request {request_id} skipped this sweep: {exc}")
        except Exception:
            logger.exception(f"Unexpected error while matching request {request_id}")
    logger.info(f"Sweep matched {matched} request(s)")
    return matched


def expire_stale(now=None, grace_minutes: Optional[float] = None) -> int:
    """Cancel unmatched requests and unstarted, passenger-less rides past their time.

    Nothing was reserved for these entities, so there is nothing to release.
    """
    grace = config.EXPIRATION_GRACE_MINUTES if grace_minutes is None else grace_minutes
    cutoff = (now or utc_now()) - timedelta(minutes=grace)
    expired = 0
    with unit_of_work() as session:
        stale_requests = (
            session.query(RideRequest)
            .filter(RideRequest.status == RequestStatus.PENDING.value)
            .filter(RideRequest.ride_id.is_(None))
            .filter(RideRequest.scheduled_time < cutoff)
            .all()
        )
        for request in stale_requests:
            updated = (
                session.query(RideRequest)
                .filter(RideRequest.id == request.id)
                .filter(RideRequest.status == RequestStatus.PENDING.value)
                .filter(RideRequest.ride_id.is_(None))
                .update(
                    {"status": RequestStatus.CANCELLED.value, "cancel_reason": "expired", "updated_at": utc_now()},
                    synchronize_session=False,
                )
            )
            if updated:
                expired += 1
                notify(
                    session, request.rider_id, "Request Expired",
                    "No driver was found for your ride in time.",
                    NotificationType.REQUEST_EXPIRED, request_id=request.id,
                )

        stale_rides = (
            session.query(Ride)
            .filter(Ride.status == RideStatus.PENDING.value)
            .filter(Ride.scheduled_time < cutoff)
            .all()
        )
        for ride in stale_rides:
            updated = (
                session.query(Ride)
                .filter(Ride.id == ride.id)
                .filter(Ride.status == RideStatus.PENDING.value)
                .update(
                    {"status": RideStatus.CANCELLED.value, "cancel_reason": "expired", "updated_at": utc_now()},
                    synchronize_session=False,
                )
            )
            if updated:
                expired += 1
                notify(
                    session, ride.driver_id, "Ride Expired",
                    "Your ride offer expired without passengers.",
                    NotificationType.RIDE_EXPIRED, ride_id=ride.id,
                )
        session.commit()

    if expired:
        logger.info(f"Expired {expired} stale ride(s)/request(s)")
    return expired


class MatchingWorker:
    """Asyncio host for the matching pipeline.

    Events are consumed from an in-process queue; the sweep and expiration
    passes are interval jobs on an AsyncIOScheduler. Storage work runs in
    threads so a long sweep never blocks event handling.
    """

    def __init__(self, tolerances=None, sweep_interval_minutes: Optional[float] = None,
                 expiration_interval_minutes: Optional[float] = None, initial_run: bool = True):
        self.tolerances = tolerances or config.DEFAULT_TOLERANCES
        self.sweep_interval_minutes = sweep_interval_minutes or config.SWEEP_INTERVAL_MINUTES
        self.expiration_interval_minutes = expiration_interval_minutes or config.EXPIRATION_INTERVAL_MINUTES
        self.initial_run = initial_run
        self.events: asyncio.Queue = asyncio.Queue()
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._active = Counter()
        self._stopping = threading.Event()
        self._tasks = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def active_states(self):
        states = frozenset(state for state, count in self._active.items() if count > 0)
        return states or frozenset({WorkerState.IDLE})

    @contextmanager
    def _entered(self, state: WorkerState):
        self._active[state] += 1
        try:
            yield
        finally:
            self._active[state] -= 1

    def publish_request(self, request_id: int):
        self.events.put_nowait((EventKind.REQUEST_CREATED, request_id))

    def publish_ride(self, ride_id: int):
        self.events.put_nowait((EventKind.RIDE_CREATED, ride_id))

    async def handle_event(self, kind: EventKind, entity_id: int) -> int:
        with self._entered(WorkerState.HANDLING_EVENT):
            if kind == EventKind.REQUEST_CREATED:
                result = await asyncio.to_thread(match_request, entity_id, self.tolerances)
                return 1 if result is not None else 0
            if kind == EventKind.RIDE_CREATED:
                return await asyncio.to_thread(match_ride, entity_id, self.tolerances)
            raise ValueError(f"unknown event kind {kind!r}")

    async def sweep(self) -> int:
        with self._entered(WorkerState.SWEEPING):
            return await asyncio.to_thread(run_sweep, self.tolerances, self._stopping.is_set)

    async def expire(self) -> int:
        with self._entered(WorkerState.EXPIRING):
            return await asyncio.to_thread(expire_stale)

    async def _consume_events(self):
        while True:
            kind, entity_id = await self.events.get()
            try:
                await self.handle_event(kind, entity_id)
            except NotFoundError as exc:
                logger.warning(f"Dropped {kind.value} event: {exc}")
            except Exception:
                logger.exception(f"Failed to handle {kind.value} event for {entity_id}")
            finally:
                self.events.task_done()

    async def _run_job(self, name: str, job):
        try:
            result = await job()
            logger.debug(f"[{name}] finished with result {result}")
        except Exception:
            logger.exception(f"[{name}] failed; retrying next interval")

    def _build_scheduler(self) -> AsyncIOScheduler:
        scheduler = AsyncIOScheduler(timezone="UTC")
        first_run = {"next_run_time": datetime.now(timezone.utc)} if self.initial_run else {}
        scheduler.add_job(
            self._run_job,
            "interval",
            args=["sweep", self.sweep],
            minutes=self.sweep_interval_minutes,
            id="matching_sweep",
            name="Matching Sweep Job",
            max_instances=1,
            coalesce=True,
            **first_run,
        )
        scheduler.add_job(
            self._run_job,
            "interval",
            args=["expire", self.expire],
            minutes=self.expiration_interval_minutes,
            id="expiration_sweep",
            name="Expiration Job",
            max_instances=1,
            coalesce=True,
            **first_run,
        )
        return scheduler

    async def start(self):
        """Verify storage, then launch the event consumer and the scheduler.

        Raises PersistenceError when storage is unreachable; the host process
        is expected to restart the worker with backoff.
        """
        if self._tasks:
            return
        await asyncio.to_thread(check_connection)
        self._stopping.clear()
        self._tasks = [asyncio.create_task(self._consume_events(), name="matching-events")]
        self.scheduler = self._build_scheduler()
        self.scheduler.start()
        logger.info(
            f"Matching worker started (sweep every {self.sweep_interval_minutes} min, "
            f"expiration every {self.expiration_interval_minutes} min)"
        )

    async def stop(self):
        """Shut the scheduler down, cancel the consumer and wait for in-flight passes."""
        self._stopping.set()
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        while self._active[WorkerState.SWEEPING] or self._active[WorkerState.EXPIRING]:
            await asyncio.sleep(0.05)
        logger.info("Matching worker stopped")


async def run_worker():
    worker = MatchingWorker()
    await worker.start()
    try:
        await asyncio.Event().wait()
    finally:
        await worker.stop()


def main() -> int:
    logging.basicConfig(format=config.LOG_FORMAT, level=config.LOG_LEVEL)
    try:
        init_db()
        asyncio.run(run_worker())
    except (PersistenceError, SQLAlchemyError) as exc:
        logger.critical(f"Matching worker halted, storage unavailable: {exc}")
        return 1
    except KeyboardInterrupt:
        logger.info("Matching worker interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
