"""
Dispatch worker pool.

Leases descriptors from the dispatch queue, runs them through the
dispatcher and settles each lease according to the outcome. Concurrency is
bounded globally by the number of workers and per target by a bulkhead,
so one unresponsive target cannot occupy the whole pool.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set

import structlog

from ..queues.dispatch import DispatchQueue, DispatchQueueError, Lease
from .deadletter import DeadLetterError
from .delivery import Dispatcher
from .events import TERMINAL_STATES, DeliveryState, InvalidTransitionError, transition
from .retry import RetryAction, RetryManager

logger = structlog.get_logger(__name__)


class DeliveryTracker:
    """
    Bounded record of each delivery's lifecycle state.

    Transitions go through the delivery state machine, so an illegal move
    raises ``InvalidTransitionError``. Oldest entries are evicted once
    ``max_entries`` is reached.
    """

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self._states: "OrderedDict[str, DeliveryState]" = OrderedDict()
        self._transitions: Dict[str, int] = {state.value: 0 for state in DeliveryState}

    def get(self, delivery_id: str) -> Optional[DeliveryState]:
        return self._states.get(delivery_id)

    def begin(self, delivery_id: str) -> DeliveryState:
        """Mark a leased delivery as in flight."""
        current = self._states.get(delivery_id)
        if current is None or current in TERMINAL_STATES:
            # First sighting, or a duplicate of a finished delivery.
            current = DeliveryState.PENDING
        elif current != DeliveryState.PENDING:
            current = transition(current, DeliveryState.PENDING)
        return self._set(delivery_id, transition(current, DeliveryState.IN_FLIGHT))

    def finish(self, delivery_id: str, state: DeliveryState) -> DeliveryState:
        """Move an in-flight delivery to ``state``."""
        current = self._states.get(delivery_id, DeliveryState.IN_FLIGHT)
        return self._set(delivery_id, transition(current, state))

    def _set(self, delivery_id: str, state: DeliveryState) -> DeliveryState:
        self._states[delivery_id] = state
        self._states.move_to_end(delivery_id)
        self._transitions[state.value] += 1
        while len(self._states) > self.max_entries:
            self._states.popitem(last=False)
        return state

    def counts(self) -> Dict[str, int]:
        """Tracked deliveries per current state."""
        counts = {state.value: 0 for state in DeliveryState}
        for state in self._states.values():
            counts[state.value] += 1
        return counts

    def recent(self, limit: int = 100) -> List[Dict[str, str]]:
        """Most recently updated deliveries, newest first."""
        items = list(self._states.items())[-limit:]
        return [{"delivery_id": d, "state": s.value} for d, s in reversed(items)]

    def __len__(self) -> int:
        return len(self._states)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tracked": len(self._states),
            "current": self.counts(),
            "transitions": dict(self._transitions),
        }


class DispatchWorkerPool:
    """
    Drives deliveries from the dispatch queue to their targets.

    A single poller leases only as many descriptors as there are free
    worker slots, then runs each lease as its own task. A lease for a
    target already at ``per_target_concurrency`` is handed back to the
    queue with a short delay instead of waiting for a slot.
    """

    def __init__(
        self,
        queue: DispatchQueue,
        dispatcher: Dispatcher,
        retry_manager: RetryManager,
        workers: int = 16,
        per_target_concurrency: int = 4,
        visibility_timeout: float = 60.0,
        batch_size: int = 10,
        poll_interval: float = 0.5,
        bulkhead_requeue_delay: float = 1.0,
        tracker: Optional[DeliveryTracker] = None,
        metrics: Optional[Any] = None,
    ):
        """
        Initialize worker pool.

        Args:
            queue: Dispatch queue to lease from
            dispatcher: Performs the HTTP attempt
            retry_manager: Decides requeue or dead-letter on failure
            workers: Maximum deliveries in flight
            per_target_concurrency: Maximum deliveries in flight per target
            visibility_timeout: Lease duration requested on receive
            batch_size: Maximum leases per receive call
            poll_interval: Sleep between empty receives
            bulkhead_requeue_delay: Delay for leases handed back by the bulkhead
            tracker: Delivery state tracker (created if None)
            metrics: Optional MetricsCollector
        """
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if per_target_concurrency < 1:
            raise ValueError("per_target_concurrency must be at least 1")

        self.queue = queue
        self.dispatcher = dispatcher
        self.retry_manager = retry_manager
        self.workers = workers
        self.per_target_concurrency = per_target_concurrency
        self.visibility_timeout = visibility_timeout
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.bulkhead_requeue_delay = bulkhead_requeue_delay
        self.tracker = tracker if tracker is not None else DeliveryTracker()
        self._metrics = metrics

        self._target_slots: Dict[str, asyncio.Semaphore] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._slot_freed = asyncio.Event()
        self._poll_task: Optional[asyncio.Task] = None
        self._is_running = False

        self._leases_processed = 0
        self._succeeded = 0
        self._retried = 0
        self._dead_lettered = 0
        self._bulkhead_rejections = 0
        self._settle_failures = 0
        self._start_time = time.time()

    @property
    def is_running(self) -> bool:
        return self._is_running and self._poll_task is not None and not self._poll_task.done()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        """Start the poller."""
        if self._is_running:
            return

        self._is_running = True
        self._poll_task = asyncio.create_task(self._poll_loop())

        logger.info(
            "Dispatch worker pool started",
            workers=self.workers,
            per_target_concurrency=self.per_target_concurrency,
            visibility_timeout=self.visibility_timeout,
        )

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """
        Stop leasing and wait for in-flight deliveries.

        Deliveries still running after ``grace_seconds`` are cancelled;
        their leases expire and the queue redelivers them.
        """
        if not self._is_running:
            return

        self._is_running = False
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        cancelled = 0
        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=grace_seconds)
            for task in pending:
                task.cancel()
                cancelled += 1
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info(
            "Dispatch worker pool stopped",
            cancelled_deliveries=cancelled,
            leases_processed=self._leases_processed,
        )

    async def drain(self, timeout: Optional[float] = None, check_interval: float = 0.05) -> bool:
        """
        Wait until nothing is visible or leased on the queue and nothing is in flight.

        Retries scheduled for later do not hold up the drain.

        Returns:
            True if drained, False on timeout
        """

        async def _wait_until_idle() -> None:
            while True:
                stats = await self.queue.get_stats()
                if (
                    not self._tasks
                    and stats.get("visible", 0) == 0
                    and stats.get("leased", 0) == 0
                ):
                    return
                await asyncio.sleep(check_interval)

        try:
            await asyncio.wait_for(_wait_until_idle(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Drain timed out", in_flight=self.in_flight, timeout=timeout)
            return False

    async def run_once(self) -> int:
        """
        Lease one batch and process it to completion.

        Returns:
            Number of leases processed
        """
        leases = await self.queue.receive(self.batch_size, self.visibility_timeout)
        if leases:
            await asyncio.gather(*(self.process_lease(lease) for lease in leases))
        return len(leases)

    async def _poll_loop(self) -> None:
        while self._is_running:
            free = self.workers - len(self._tasks)
            if free <= 0:
                self._slot_freed.clear()
                await self._slot_freed.wait()
                continue

            try:
                leases = await self.queue.receive(
                    min(self.batch_size, free), self.visibility_timeout
                )
            except DispatchQueueError as e:
                if self._metrics:
                    self._metrics.record_counter("queue_failures_total", labels={"op": "receive"})
                logger.error("Queue receive failed", error=str(e))
                await asyncio.sleep(self.poll_interval)
                continue

            if not leases:
                await asyncio.sleep(self.poll_interval)
                continue

            for lease in leases:
                task = asyncio.create_task(self.process_lease(lease))
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._slot_freed.set()
        if not task.cancelled() and task.exception() is not None:
            logger.error("Delivery task failed", error=str(task.exception()))

    def _target_slot(self, target_id: str) -> asyncio.Semaphore:
        slot = self._target_slots.get(target_id)
        if slot is None:
            slot = asyncio.Semaphore(self.per_target_concurrency)
            self._target_slots[target_id] = slot
        return slot

    async def process_lease(self, lease: Lease) -> None:
        """Dispatch one leased delivery and settle its lease."""
        delivery = lease.delivery
        slot = self._target_slot(delivery.target_id)

        if slot.locked():
            self._bulkhead_rejections += 1
            if self._metrics:
                self._metrics.record_counter("bulkhead_rejections_total")
            logger.debug(
                "Target saturated, handing lease back",
                delivery_id=delivery.delivery_id,
                target_id=delivery.target_id,
                requeue_delay=self.bulkhead_requeue_delay,
            )
            try:
                await self.queue.nack(lease.handle, delay=self.bulkhead_requeue_delay)
            except DispatchQueueError as e:
                logger.warning(
                    "Bulkhead nack failed, lease left to expire",
                    delivery_id=delivery.delivery_id,
                    error=str(e),
                )
            return

        async with slot:
            await self._dispatch(lease)

    async def _dispatch(self, lease: Lease) -> None:
        delivery = lease.delivery
        self._leases_processed += 1
        self._track(delivery.delivery_id, None)

        try:
            result = await self.dispatcher.process(delivery)
        except Exception as e:
            self._settle_failures += 1
            logger.error(
                "Dispatcher raised, lease left to expire",
                delivery_id=delivery.delivery_id,
                error=str(e),
                exc_info=True,
            )
            self._track(delivery.delivery_id, DeliveryState.PENDING)
            return

        if result.is_success:
            await self._ack(lease)
            self._succeeded += 1
            if self._metrics:
                self._metrics.record_counter("deliveries_succeeded_total")
            self._track(delivery.delivery_id, DeliveryState.SUCCEEDED)
            return

        try:
            decision = await self.retry_manager.schedule(delivery, result)
        except (DispatchQueueError, DeadLetterError) as e:
            # Without an ack the queue redelivers this lease after its timeout.
            self._settle_failures += 1
            if self._metrics:
                self._metrics.record_counter("queue_failures_total", labels={"op": "schedule"})
            logger.error(
                "Failed to schedule retry, lease left to expire",
                delivery_id=delivery.delivery_id,
                attempt=delivery.attempt + 1,
                error=str(e),
            )
            self._track(delivery.delivery_id, DeliveryState.PENDING)
            return

        await self._ack(lease)
        if decision.action == RetryAction.REQUEUED:
            self._retried += 1
            self._track(delivery.delivery_id, DeliveryState.RETRYING)
        else:
            self._dead_lettered += 1
            self._track(delivery.delivery_id, DeliveryState.DEAD_LETTERED)

    async def _ack(self, lease: Lease) -> None:
        try:
            acked = await self.queue.ack(lease.handle)
        except DispatchQueueError as e:
            self._settle_failures += 1
            logger.error(
                "Ack failed, delivery may be attempted again",
                delivery_id=lease.delivery.delivery_id,
                error=str(e),
            )
            return
        if not acked:
            self._settle_failures += 1
            logger.warning(
                "Lease expired before ack, delivery may be attempted again",
                delivery_id=lease.delivery.delivery_id,
                message_id=lease.message_id,
            )

    def _track(self, delivery_id: str, state: Optional[DeliveryState]) -> None:
        try:
            if state is None:
                self.tracker.begin(delivery_id)
            else:
                self.tracker.finish(delivery_id, state)
        except InvalidTransitionError as e:
            # Duplicate descriptors for one delivery can overlap in flight.
            logger.debug("Delivery state not updated", delivery_id=delivery_id, error=str(e))

    def get_stats(self) -> Dict[str, Any]:
        """Get worker pool statistics."""
        return {
            "running": self.is_running,
            "workers": self.workers,
            "in_flight": self.in_flight,
            "per_target_concurrency": self.per_target_concurrency,
            "targets_tracked": len(self._target_slots),
            "leases_processed": self._leases_processed,
            "succeeded": self._succeeded,
            "retried": self._retried,
            "dead_lettered": self._dead_lettered,
            "bulkhead_rejections": self._bulkhead_rejections,
            "settle_failures": self._settle_failures,
            "uptime_seconds": time.time() - self._start_time,
            "tracker": self.tracker.get_stats(),
        }

