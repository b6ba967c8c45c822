"""
Retry scheduling for failed deliveries.

A retry is a delayed enqueue: the descriptor goes back on the dispatch
queue with its attempt counter bumped and becomes visible once the
backoff delay has passed. Nothing sleeps in process. Deliveries whose
next attempt would land past their deadline are dead-lettered instead.
"""

import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

import structlog

from ..queues.dispatch import DispatchQueue
from .deadletter import DeadLetterReason, DeadLetterRecord, DeadLetterSink
from .delivery import DispatchResult, Outcome
from .events import Delivery

logger = structlog.get_logger(__name__)

DEFAULT_RETRY_WINDOW_SECONDS = 24 * 60 * 60


class BackoffStrategy(ABC):
    """Maps a failure count to the delay before the next attempt."""

    @abstractmethod
    def delay_for(self, attempt: int) -> float:
        """
        Delay before the next attempt.

        Args:
            attempt: Failed attempts so far, starting at 1

        Returns:
            Delay in seconds; never smaller than the delay for ``attempt - 1``
        """


class ExponentialBackoff(BackoffStrategy):
    """
    ``min(base * multiplier^(attempt-1) + jitter, max_single_delay)``.

    Jitter is proportional, drawn uniformly from
    ``[0, jitter_ratio * base * multiplier^(attempt-1)]``. Keeping
    ``jitter_ratio <= multiplier - 1`` means the largest jittered delay for
    one attempt never exceeds the smallest for the next, so delays are
    non-decreasing however the jitter falls.
    """

    def __init__(
        self,
        base_delay: float = 10.0,
        multiplier: float = 2.0,
        jitter_ratio: float = 0.5,
        max_single_delay: float = 3600.0,
        rng: Optional[random.Random] = None,
    ):
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if jitter_ratio < 0 or jitter_ratio > multiplier - 1:
            raise ValueError("jitter_ratio must be between 0 and multiplier - 1")
        if max_single_delay < base_delay:
            raise ValueError("max_single_delay must be at least base_delay")

        self.base_delay = base_delay
        self.multiplier = multiplier
        self.jitter_ratio = jitter_ratio
        self.max_single_delay = max_single_delay
        self._rng = rng or random.Random()  # nosec B311

    def raw_delay(self, attempt: int) -> float:
        """Delay before jitter and capping."""
        if attempt < 1:
            raise ValueError("attempt must be at least 1")
        try:
            return self.base_delay * self.multiplier ** (attempt - 1)
        except OverflowError:
            return float("inf")

    def delay_for(self, attempt: int) -> float:
        raw = self.raw_delay(attempt)
        if raw >= self.max_single_delay:
            return self.max_single_delay
        jitter = raw * self.jitter_ratio * self._rng.random()
        return min(raw + jitter, self.max_single_delay)


class RetryAction(str, Enum):
    """What the retry manager did with a failed delivery."""

    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of scheduling a failed delivery."""

    action: RetryAction
    delivery: Delivery
    delay: Optional[float] = None
    reason: Optional[DeadLetterReason] = None

    @property
    def requeued(self) -> bool:
        return self.action == RetryAction.REQUEUED


class RetryManager:
    """
    Requeues failed deliveries with backoff, or dead-letters them.

    Each delivery carries its own deadline (first attempt plus the retry
    window), so the decision depends only on the descriptor and the clock
    and survives process restarts along with the queue.
    """

    def __init__(
        self,
        queue: DispatchQueue,
        dead_letters: DeadLetterSink,
        strategy: Optional[BackoffStrategy] = None,
        window_seconds: float = DEFAULT_RETRY_WINDOW_SECONDS,
        max_attempts: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[Any] = None,
    ):
        """
        Initialize retry manager.

        Args:
            queue: Dispatch queue used for delayed re-enqueue
            dead_letters: Sink for terminally failed deliveries
            strategy: Backoff strategy (exponential with defaults if None)
            window_seconds: Retry window measured from the first attempt
            max_attempts: Optional cap on total attempts
            clock: Time source
            metrics: Optional MetricsCollector
        """
        if window_seconds <= 0 or window_seconds > DEFAULT_RETRY_WINDOW_SECONDS:
            raise ValueError("window_seconds must be within (0, 86400]")
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.queue = queue
        self.dead_letters = dead_letters
        self.strategy = strategy or ExponentialBackoff()
        self.window_seconds = window_seconds
        self.max_attempts = max_attempts
        self._clock = clock
        self._metrics = metrics

        self._requeued_total = 0
        self._dead_lettered: Dict[str, int] = {reason.value: 0 for reason in DeadLetterReason}

    def deadline_for(self, delivery: Delivery) -> float:
        """Latest time an attempt may be scheduled for."""
        return min(delivery.deadline, delivery.first_attempt_at + self.window_seconds)

    async def schedule(self, delivery: Delivery, result: DispatchResult) -> RetryDecision:
        """
        Apply the retry policy to a failed attempt.

        Args:
            delivery: The descriptor as it was attempted
            result: The failed dispatch result

        Returns:
            RetryDecision describing the requeue or dead-letter

        Raises:
            DispatchQueueError: If the delayed re-enqueue failed
            DeadLetterError: If the dead-letter sink failed
        """
        if result.outcome == Outcome.SUCCESS:
            raise ValueError("Cannot schedule a retry for a successful delivery")

        failed_attempts = delivery.attempt + 1

        if result.outcome == Outcome.PERMANENT_FAILURE:
            return await self._dead_letter(
                delivery, failed_attempts, DeadLetterReason.PERMANENT_FAILURE, result
            )

        if self.max_attempts is not None and failed_attempts >= self.max_attempts:
            return await self._dead_letter(
                delivery, failed_attempts, DeadLetterReason.ATTEMPTS_EXHAUSTED, result
            )

        now = self._clock()
        delay = self.strategy.delay_for(failed_attempts)
        if now + delay > self.deadline_for(delivery):
            return await self._dead_letter(
                delivery, failed_attempts, DeadLetterReason.WINDOW_EXHAUSTED, result
            )

        retried = delivery.with_retry(next_attempt_at=now + delay, error=result.reason)
        await self.queue.enqueue(retried, delay=delay)

        self._requeued_total += 1
        if self._metrics:
            self._metrics.record_counter("retries_scheduled_total")
            self._metrics.record_histogram("retry_delay_seconds", delay)
        logger.info(
            "Retry scheduled",
            delivery_id=delivery.delivery_id,
            target_id=delivery.target_id,
            attempt=retried.attempt,
            delay_seconds=round(delay, 3),
            next_attempt_at=retried.next_attempt_at,
            error=result.reason,
        )
        return RetryDecision(action=RetryAction.REQUEUED, delivery=retried, delay=delay)

    async def _dead_letter(
        self,
        delivery: Delivery,
        failed_attempts: int,
        reason: DeadLetterReason,
        result: DispatchResult,
    ) -> RetryDecision:
        final = replace(delivery, attempt=failed_attempts, last_error=result.reason)
        record = DeadLetterRecord(
            delivery=final,
            reason=reason,
            status_code=result.status_code,
            error=result.error,
            dead_lettered_at=self._clock(),
        )
        await self.dead_letters.put(record)

        self._dead_lettered[reason.value] += 1
        if self._metrics:
            self._metrics.record_counter("dead_letters_total", labels={"reason": reason.value})
        logger.warning(
            "Delivery dead-lettered",
            delivery_id=delivery.delivery_id,
            event_id=delivery.event_id,
            target_id=delivery.target_id,
            attempts=failed_attempts,
            reason=record.description,
            status_code=result.status_code,
            error=result.error,
        )
        return RetryDecision(action=RetryAction.DEAD_LETTERED, delivery=final, reason=reason)

    async def park_unfinished(self, deliveries: Iterable[Delivery]) -> int:
        """
        Dead-letter deliveries the process can no longer hold.

        Called at shutdown for a queue that does not outlive the process;
        the parked records can be redriven once the engine runs again.

        Returns:
            Number of deliveries parked
        """
        parked = 0
        for delivery in deliveries:
            await self.dead_letters.put(
                DeadLetterRecord(
                    delivery=delivery,
                    reason=DeadLetterReason.SHUTDOWN,
                    error="engine stopped before the delivery completed",
                    dead_lettered_at=self._clock(),
                )
            )
            parked += 1
            self._dead_lettered[DeadLetterReason.SHUTDOWN.value] += 1
            if self._metrics:
                self._metrics.record_counter(
                    "dead_letters_total", labels={"reason": DeadLetterReason.SHUTDOWN.value}
                )
        return parked

    async def redrive(self, delivery_id: str) -> Optional[Delivery]:
        """
        Move a dead-lettered delivery back onto the dispatch queue.

        The delivery restarts with attempt 0 and a fresh retry window. An
        offloaded payload must still be within its retention period.

        Returns:
            The re-enqueued delivery, or None if nothing was parked under ``delivery_id``
        """
        record = await self.dead_letters.pop(delivery_id)
        if record is None:
            return None

        now = self._clock()
        delivery = replace(
            record.delivery,
            attempt=0,
            first_attempt_at=now,
            next_attempt_at=now,
            deadline=now + self.window_seconds,
            last_error=None,
        )
        try:
            await self.queue.enqueue(delivery)
        except Exception:
            # Put it back so the operator can try again.
            await self.dead_letters.put(record)
            raise

        logger.info(
            "Dead letter redriven",
            delivery_id=delivery_id,
            previous_reason=record.reason.value,
        )
        return delivery

    def get_stats(self) -> Dict[str, Any]:
        """Get retry statistics."""
        return {
            "requeued_total": self._requeued_total,
            "dead_lettered": dict(self._dead_lettered),
            "window_seconds": self.window_seconds,
            "max_attempts": self.max_attempts,
        }
