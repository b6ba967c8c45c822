"""
Pytest configuration and fixtures for Webhook Brain tests.
"""

import asyncio
from collections import deque
from typing import Iterable, List, Optional, Tuple

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from webhook_brain.analytics.collector import MetricsCollector
from webhook_brain.cache.subscriptions import SubscriptionCache
from webhook_brain.queues.dispatch import InMemoryDispatchQueue
from webhook_brain.registry.entities import Filter, RegistrationState, Subscription, Target
from webhook_brain.registry.sources import StaticRegistrationSource
from webhook_brain.storage.payloads import InMemoryPayloadStore
from webhook_brain.webhooks.deadletter import InMemoryDeadLetterSink
from webhook_brain.webhooks.events import Delivery, derive_delivery_id

ORDER_CREATED = "core.orders.created.v1"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Receiver:
    """Webhook endpoint that records requests and answers with scripted statuses."""

    def __init__(self):
        self.requests: List[dict] = []
        self.statuses: deque = deque()
        self.default_status = 200
        self.delay = 0.0
        self.server: Optional[TestServer] = None

    def respond_with(self, *statuses: int) -> None:
        self.statuses.extend(statuses)

    def url(self, path: str = "/hook") -> str:
        return str(self.server.make_url(path))

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        self.requests.append({"path": request.path, "headers": dict(request.headers), "body": body})
        if self.delay:
            await asyncio.sleep(self.delay)
        status = self.statuses.popleft() if self.statuses else self.default_status
        if 300 <= status < 400:
            return web.Response(status=status, headers={"Location": self.url("/elsewhere")})
        return web.Response(status=status)


def make_state(
    targets: Iterable[Tuple[str, str]] = (),
    filters: Iterable[Tuple[str, Iterable[str]]] = (),
    subscriptions: Iterable[Tuple] = (),
) -> RegistrationState:
    """Build registration state from tuples; subscriptions are (id, target, filter[, active])."""
    return RegistrationState(
        targets=[Target(target_id=t, url=u) for t, u in targets],
        filters=[Filter(filter_id=f, events=frozenset(events)) for f, events in filters],
        subscriptions=[
            Subscription(
                subscription_id=s[0],
                target_id=s[1],
                filter_id=s[2],
                active=s[3] if len(s) > 3 else True,
            )
            for s in subscriptions
        ],
    )


def make_delivery(
    clock: FakeClock,
    url: str = "http://example.invalid/hook",
    target_id: str = "tgt-1",
    event_id: str = "evt-1",
    payload: Optional[bytes] = b'{"order": 1}',
    payload_ref: Optional[str] = None,
    window: float = 24 * 3600,
) -> Delivery:
    now = clock()
    return Delivery(
        delivery_id=derive_delivery_id(event_id, target_id),
        event_id=event_id,
        event_type=ORDER_CREATED,
        target_id=target_id,
        subscription_id="sub-1",
        url=url,
        payload=None if payload_ref else payload,
        payload_ref=payload_ref,
        first_attempt_at=now,
        next_attempt_at=now,
        deadline=now + window,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def queue(clock):
    return InMemoryDispatchQueue(max_message_bytes=256 * 1024, clock=clock)


@pytest.fixture
def payload_store():
    return InMemoryPayloadStore()


@pytest.fixture
def dead_letters():
    return InMemoryDeadLetterSink()


@pytest.fixture
def registration_source():
    return StaticRegistrationSource(
        make_state(
            targets=[("tgt-1", "http://x")],
            filters=[("flt-orders", [ORDER_CREATED])],
            subscriptions=[("sub-1", "tgt-1", "flt-orders")],
        )
    )


@pytest.fixture
async def subscription_cache(registration_source, clock, metrics):
    cache = SubscriptionCache(registration_source, refresh_interval_seconds=30, clock=clock, metrics=metrics)
    await cache.refresh()
    return cache


@pytest.fixture
async def receiver():
    """Local HTTP endpoint standing in for a webhook target."""
    recv = Receiver()
    app = web.Application(client_max_size=10 * 1024 * 1024)
    app.router.add_post("/{name}", recv.handle)
    server = TestServer(app)
    await server.start_server()
    recv.server = server
    yield recv
    await server.close()


@pytest.fixture
def delivery_factory(clock):
    """Build deliveries stamped with the fake clock."""

    def _factory(**kwargs) -> Delivery:
        return make_delivery(clock, **kwargs)

    return _factory


@pytest.fixture
def state_factory():
    return make_state
