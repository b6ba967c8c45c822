"""
Unit tests for the fan-out engine.
"""

import os

import pytest

from webhook_brain.cache.subscriptions import SubscriptionCache
from webhook_brain.queues.dispatch import DispatchQueueError, InMemoryDispatchQueue
from webhook_brain.registry.sources import StaticRegistrationSource
from webhook_brain.storage.payloads import InMemoryPayloadStore, PayloadStoreError, payload_ref_for
from webhook_brain.webhooks.events import WebhookEvent, derive_delivery_id
from webhook_brain.webhooks.fanout import FanoutEngine, FanoutError

ORDER_CREATED = "core.orders.created.v1"
WINDOW = 24 * 3600


class BrokenPayloadStore(InMemoryPayloadStore):
    async def put(self, data: bytes) -> str:
        raise PayloadStoreError("disk full")


class BrokenQueue(InMemoryDispatchQueue):
    async def enqueue(self, delivery, delay: float = 0.0) -> str:
        raise DispatchQueueError("queue unavailable")


@pytest.fixture
async def two_target_cache(state_factory, clock):
    source = StaticRegistrationSource(
        state_factory(
            targets=[("tgt-1", "http://one/hook"), ("tgt-2", "http://two/hook")],
            filters=[("flt-orders", [ORDER_CREATED])],
            subscriptions=[("sub-1", "tgt-1", "flt-orders"), ("sub-2", "tgt-2", "flt-orders")],
        )
    )
    cache = SubscriptionCache(source, clock=clock)
    await cache.refresh()
    return cache


def make_engine(cache, queue, store, clock, metrics=None, inline_threshold=256 * 1024):
    return FanoutEngine(
        cache=cache,
        queue=queue,
        payload_store=store,
        inline_threshold_bytes=inline_threshold,
        retry_window_seconds=WINDOW,
        clock=clock,
        metrics=metrics,
    )


class TestFanoutEngine:
    """Test event fan-out."""

    @pytest.mark.asyncio
    async def test_unmatched_event(self, two_target_cache, queue, payload_store, clock, metrics):
        """Test that an event nobody subscribes to produces nothing."""
        engine = make_engine(two_target_cache, queue, payload_store, clock, metrics)

        deliveries = await engine.handle(WebhookEvent("core.unknown.v1", b"{}", "evt-1"))

        assert deliveries == []
        assert len(queue) == 0
        assert metrics.get_counter("events_unmatched_total") == 1

    @pytest.mark.asyncio
    async def test_small_payload_inline(self, two_target_cache, queue, payload_store, clock):
        """Test one inline delivery per matched target."""
        engine = make_engine(two_target_cache, queue, payload_store, clock)
        event = WebhookEvent(ORDER_CREATED, b'{"order": 1}', "evt-1")

        deliveries = await engine.handle(event)

        assert sorted(d.target_id for d in deliveries) == ["tgt-1", "tgt-2"]
        for delivery in deliveries:
            assert delivery.payload == event.payload
            assert delivery.payload_ref is None
            assert delivery.attempt == 0
            assert delivery.deadline == clock() + WINDOW
            assert delivery.delivery_id == derive_delivery_id("evt-1", delivery.target_id)
        assert len(payload_store) == 0
        assert len(queue) == 2

    @pytest.mark.asyncio
    async def test_large_payload_offloaded_once(self, two_target_cache, queue, payload_store, clock, metrics):
        """Test that a 2 MB payload is stored once and shared by reference."""
        engine = make_engine(two_target_cache, queue, payload_store, clock, metrics)
        payload = os.urandom(2 * 1024 * 1024)

        deliveries = await engine.handle(WebhookEvent(ORDER_CREATED, payload, "evt-big"))

        assert len(deliveries) == 2
        assert {d.payload_ref for d in deliveries} == {payload_ref_for(payload)}
        assert all(d.payload is None for d in deliveries)
        assert len(payload_store) == 1
        assert await payload_store.get(deliveries[0].payload_ref) == payload
        assert metrics.get_counter("payloads_offloaded_total") == 1

        leases = await queue.receive(max_batch=10, visibility_timeout=30)
        assert len(leases) == 2

    @pytest.mark.asyncio
    async def test_oversized_inline_descriptor_falls_back_to_reference(
        self, two_target_cache, payload_store, clock
    ):
        """Test offloading when an inline descriptor exceeds the queue limit."""
        queue = InMemoryDispatchQueue(max_message_bytes=2048, clock=clock)
        engine = make_engine(two_target_cache, queue, payload_store, clock, inline_threshold=1500)
        payload = b"x" * 1400

        deliveries = await engine.handle(WebhookEvent(ORDER_CREATED, payload, "evt-1"))

        assert len(deliveries) == 2
        assert all(d.payload_ref == payload_ref_for(payload) for d in deliveries)
        assert len(queue) == 2

    @pytest.mark.asyncio
    async def test_payload_store_failure(self, two_target_cache, queue, clock):
        """Test that an offload failure aborts fan-out without enqueueing."""
        engine = make_engine(two_target_cache, queue, BrokenPayloadStore(), clock, inline_threshold=10)

        with pytest.raises(FanoutError) as exc_info:
            await engine.handle(WebhookEvent(ORDER_CREATED, b"x" * 100, "evt-1"))

        assert exc_info.value.event_id == "evt-1"
        assert isinstance(exc_info.value.original_error, PayloadStoreError)
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_queue_failure(self, two_target_cache, payload_store, clock, metrics):
        """Test that an enqueue failure surfaces as a fan-out error."""
        engine = make_engine(two_target_cache, BrokenQueue(clock=clock), payload_store, clock, metrics)

        with pytest.raises(FanoutError):
            await engine.handle(WebhookEvent(ORDER_CREATED, b"{}", "evt-1"))
        assert metrics.get_counter("queue_failures_total", labels={"op": "enqueue"}) == 1

    @pytest.mark.asyncio
    async def test_refanout_is_idempotent_by_id(self, two_target_cache, queue, payload_store, clock):
        """Test that fanning out the same event twice yields the same delivery ids."""
        engine = make_engine(two_target_cache, queue, payload_store, clock)
        event = WebhookEvent(ORDER_CREATED, b"{}", "evt-1")

        first = await engine.handle(event)
        clock.advance(5)
        second = await engine.handle(event)

        assert sorted(d.delivery_id for d in first) == sorted(d.delivery_id for d in second)
