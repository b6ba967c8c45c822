"""
Fan-out engine: turns one event into one delivery per eligible target.

Payloads at or under the inline threshold travel inside the descriptor;
larger payloads are written once to the payload store and every delivery
of the event carries the same reference.
"""

import time
from typing import Any, Callable, List, Optional

import structlog

from ..cache.subscriptions import SubscriptionCache, SubscriptionMatch
from ..queues.dispatch import DispatchQueue, DispatchQueueError, MessageTooLargeError
from ..storage.payloads import PayloadStore, PayloadStoreError
from .events import Delivery, WebhookEvent, derive_delivery_id

logger = structlog.get_logger(__name__)


class FanoutError(Exception):
    """
    The event could not be fully fanned out.

    No acknowledgement should be given to the event transport, so that it
    redelivers the event; deterministic delivery ids make the retry safe.
    """

    def __init__(self, message: str, event_id: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.event_id = event_id
        self.original_error = original_error


class FanoutEngine:
    """Consumes raw events and emits delivery descriptors onto the dispatch queue."""

    def __init__(
        self,
        cache: SubscriptionCache,
        queue: DispatchQueue,
        payload_store: PayloadStore,
        inline_threshold_bytes: int,
        retry_window_seconds: float,
        clock: Callable[[], float] = time.time,
        metrics: Optional[Any] = None,
    ):
        """
        Initialize fan-out engine.

        Args:
            cache: Subscription cache used for matching
            queue: Dispatch queue receiving the descriptors
            payload_store: Store for payloads above the inline threshold
            inline_threshold_bytes: Largest payload carried inline
            retry_window_seconds: Retry budget, fixes each delivery's deadline
            clock: Time source
            metrics: Optional MetricsCollector
        """
        self.cache = cache
        self.queue = queue
        self.payload_store = payload_store
        self.inline_threshold_bytes = inline_threshold_bytes
        self.retry_window_seconds = retry_window_seconds
        self._clock = clock
        self._metrics = metrics

    async def handle(self, event: WebhookEvent) -> List[Delivery]:
        """
        Fan out ``event`` and enqueue its deliveries.

        Returns:
            The deliveries enqueued, empty when nothing subscribes

        Raises:
            FanoutError: If the payload store or the queue failed
        """
        if self._metrics:
            self._metrics.record_counter("events_received_total")

        matches = sorted(self.cache.lookup(event.event_type))
        if not matches:
            logger.debug(
                "No subscribers for event",
                event_id=event.event_id,
                event_type=event.event_type,
            )
            if self._metrics:
                self._metrics.record_counter("events_unmatched_total")
            return []

        payload_ref: Optional[str] = None
        if event.payload_size > self.inline_threshold_bytes:
            payload_ref = await self._offload(event)

        now = self._clock()
        deliveries: List[Delivery] = []
        for match in matches:
            delivery = self._build_delivery(event, match, now, payload_ref)
            try:
                await self.queue.enqueue(delivery)
            except MessageTooLargeError:
                if payload_ref is not None:
                    raise FanoutError(
                        "Descriptor exceeds queue limit even with offloaded payload",
                        event_id=event.event_id,
                    )
                # Long URL or ids pushed an inline descriptor over the limit.
                payload_ref = await self._offload(event)
                delivery = self._build_delivery(event, match, now, payload_ref)
                await self._enqueue_or_fail(event, delivery)
            except DispatchQueueError as e:
                self._raise_enqueue_failure(event, delivery, e)
            deliveries.append(delivery)

        if self._metrics:
            self._metrics.record_counter("deliveries_created_total", len(deliveries))
        logger.info(
            "Event fanned out",
            event_id=event.event_id,
            event_type=event.event_type,
            delivery_count=len(deliveries),
            payload_size=event.payload_size,
            offloaded=payload_ref is not None,
        )
        return deliveries

    def _build_delivery(
        self,
        event: WebhookEvent,
        match: SubscriptionMatch,
        now: float,
        payload_ref: Optional[str],
    ) -> Delivery:
        return Delivery(
            delivery_id=derive_delivery_id(event.event_id, match.target_id),
            event_id=event.event_id,
            event_type=event.event_type,
            target_id=match.target_id,
            subscription_id=match.subscription_id,
            url=match.url,
            payload=None if payload_ref else event.payload,
            payload_ref=payload_ref,
            attempt=0,
            first_attempt_at=now,
            next_attempt_at=now,
            deadline=now + self.retry_window_seconds,
        )

    async def _offload(self, event: WebhookEvent) -> str:
        try:
            ref = await self.payload_store.put(event.payload)
        except PayloadStoreError as e:
            if self._metrics:
                self._metrics.record_counter("payload_store_failures_total", labels={"op": "put"})
            logger.error(
                "Payload offload failed",
                event_id=event.event_id,
                payload_size=event.payload_size,
                error=str(e),
            )
            raise FanoutError(
                f"Failed to offload payload for event {event.event_id}",
                event_id=event.event_id,
                original_error=e,
            )
        if self._metrics:
            self._metrics.record_counter("payloads_offloaded_total")
        return ref

    async def _enqueue_or_fail(self, event: WebhookEvent, delivery: Delivery) -> None:
        try:
            await self.queue.enqueue(delivery)
        except DispatchQueueError as e:
            self._raise_enqueue_failure(event, delivery, e)

    def _raise_enqueue_failure(
        self, event: WebhookEvent, delivery: Delivery, error: DispatchQueueError
    ) -> None:
        if self._metrics:
            self._metrics.record_counter("queue_failures_total", labels={"op": "enqueue"})
        logger.error(
            "Enqueue failed during fan-out",
            event_id=event.event_id,
            delivery_id=delivery.delivery_id,
            error=str(error),
        )
        raise FanoutError(
            f"Failed to enqueue delivery {delivery.delivery_id}",
            event_id=event.event_id,
            original_error=error,
        )
