#!/usr/bin/env python3
"""
Basic usage example for Webhook Brain.

This example embeds the delivery engine in a script: it starts a local
webhook receiver, registers it as a target and pushes a few events
through fan-out and dispatch without any external services.
"""

import asyncio
import os
import sys
from pathlib import Path

from aiohttp import web

# Add the src directory to the path for development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from webhook_brain.config.settings import Config
from webhook_brain.registry.entities import Filter, RegistrationState, Subscription, Target
from webhook_brain.registry.sources import StaticRegistrationSource
from webhook_brain.server import WebhookBrainServer
from webhook_brain.webhooks.events import WebhookEvent

RECEIVER_PORT = 8089


async def start_receiver(received: list) -> web.AppRunner:
    """Local endpoint: /orders accepts everything, /gone answers 410."""

    async def orders(request: web.Request) -> web.Response:
        body = await request.read()
        received.append((request.headers["X-Webhook-Delivery-Id"], len(body)))
        return web.Response(status=204)

    async def gone(request: web.Request) -> web.Response:
        await request.read()
        return web.Response(status=410)

    app = web.Application(client_max_size=8 * 1024 * 1024)
    app.router.add_post("/orders", orders)
    app.router.add_post("/gone", gone)
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, "127.0.0.1", RECEIVER_PORT).start()
    return runner


async def main():
    """Run a short delivery session."""
    print("🚀 Starting Webhook Brain example")

    received: list = []
    runner = await start_receiver(received)

    base = f"http://127.0.0.1:{RECEIVER_PORT}"
    source = StaticRegistrationSource(
        RegistrationState(
            targets=[
                Target(target_id="tgt-orders", url=f"{base}/orders"),
                Target(target_id="tgt-retired", url=f"{base}/gone"),
            ],
            filters=[Filter(filter_id="flt-orders", events=frozenset({"core.orders.created.v1"}))],
            subscriptions=[
                Subscription(subscription_id="sub-1", target_id="tgt-orders", filter_id="flt-orders"),
                Subscription(subscription_id="sub-2", target_id="tgt-retired", filter_id="flt-orders"),
            ],
        )
    )

    config = Config(
        server={"log_level": "INFO", "drain_timeout_seconds": 10.0},
        queue={"poll_interval_seconds": 0.05},
    )
    engine = WebhookBrainServer(config, source=source)

    async def events():
        yield WebhookEvent("core.orders.created.v1", b'{"order_id": 1}', "evt-small")
        yield WebhookEvent("core.orders.created.v1", os.urandom(2 * 1024 * 1024), "evt-large")
        yield WebhookEvent("core.orders.paid.v1", b'{"order_id": 1}', "evt-unmatched")

    try:
        await engine.run(events())

        print(f"\n📬 Receiver got {len(received)} deliveries:")
        for delivery_id, size in received:
            print(f"   • {delivery_id}: {size} bytes")

        print("\n🪦 Dead letters:")
        for record in await engine.dead_letters.list():
            print(f"   • {record.delivery_id} -> {record.delivery.url} ({record.description})")

        stats = await engine.get_stats()
        print(f"\n📊 Payloads offloaded: {stats['payload_store']['payloads']}")
        print(f"📊 Retry stats: {stats['retry']}")
    finally:
        await runner.cleanup()
        print("🛑 Example finished")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n🛑 Example interrupted by user")
