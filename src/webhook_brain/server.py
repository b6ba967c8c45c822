"""
Main Webhook Brain engine.

Builds every component from configuration, runs the background parts
(subscription refresh and the dispatch worker pool) and feeds incoming
events through the fan-out engine.
"""

import asyncio
import random
import signal
import sys
import time
from pathlib import Path
from typing import Any, AsyncIterable, Dict, Optional

import structlog

from .webhooks.events import WebhookEvent
from .webhooks.deadletter import DeadLetterSink, InMemoryDeadLetterSink, JsonlDeadLetterSink
from .analytics.collector import MetricsCollector
from .cache.subscriptions import SubscriptionCache
from .config.settings import Config
from .queues.dispatch import DispatchQueue, InMemoryDispatchQueue, JournaledDispatchQueue
from .registry.sources import (
    FileRegistrationSource,
    RegistrationSource,
    RestRegistrationSource,
    StaticRegistrationSource,
)
from .storage.payloads import FilesystemPayloadStore, InMemoryPayloadStore, PayloadStore
from .utils.health import (
    HealthChecker,
    create_cache_health_check,
    create_queue_health_check,
    create_worker_pool_health_check,
)
from .webhooks.delivery import Dispatcher
from .webhooks.fanout import FanoutEngine, FanoutError
from .webhooks.retry import ExponentialBackoff, RetryManager
from .webhooks.workers import DispatchWorkerPool

logger = structlog.get_logger(__name__)


def build_registration_source(config: Config) -> RegistrationSource:
    registry = config.registry
    if registry.source == "rest":
        return RestRegistrationSource(
            base_url=registry.base_url,
            api_key=registry.api_key,
            timeout_seconds=registry.timeout_seconds,
            max_retries=registry.max_retries,
        )
    if registry.path:
        return FileRegistrationSource(Path(registry.path))
    logger.warning("No registration path configured, starting with no subscriptions")
    return StaticRegistrationSource()


def build_dispatch_queue(config: Config) -> DispatchQueue:
    queue = config.queue
    if queue.backend == "journal":
        return JournaledDispatchQueue(
            Path(queue.journal_path),
            max_message_bytes=queue.max_message_bytes,
            fsync=queue.fsync,
        )
    return InMemoryDispatchQueue(max_message_bytes=queue.max_message_bytes)


def build_payload_store(config: Config) -> PayloadStore:
    if config.payload_store.backend == "filesystem":
        return FilesystemPayloadStore(Path(config.payload_store.directory))
    return InMemoryPayloadStore()


def build_dead_letter_sink(config: Config) -> DeadLetterSink:
    if config.dead_letter.backend == "jsonl":
        return JsonlDeadLetterSink(Path(config.dead_letter.path))
    return InMemoryDeadLetterSink()


class WebhookBrainServer:
    """
    The delivery engine as one process.

    Components can be injected for embedding and tests; anything not
    passed in is built from ``config``.
    """

    def __init__(
        self,
        config: Config,
        source: Optional[RegistrationSource] = None,
        queue: Optional[DispatchQueue] = None,
        payload_store: Optional[PayloadStore] = None,
        dead_letters: Optional[DeadLetterSink] = None,
        dispatcher: Optional[Dispatcher] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Engine configuration
            source: Registration source (built from config if None)
            queue: Dispatch queue (built from config if None)
            payload_store: Payload store (built from config if None)
            dead_letters: Dead-letter sink (built from config if None)
            dispatcher: Dispatcher (built from config if None)
        """
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.metrics = MetricsCollector()

        self.source = source if source is not None else build_registration_source(config)
        self.cache = SubscriptionCache(
            self.source,
            refresh_interval_seconds=config.cache.refresh_interval_seconds,
            metrics=self.metrics,
        )
        self.queue = queue if queue is not None else build_dispatch_queue(config)
        self.payload_store = (
            payload_store if payload_store is not None else build_payload_store(config)
        )
        self.dead_letters = (
            dead_letters if dead_letters is not None else build_dead_letter_sink(config)
        )

        self.fanout = FanoutEngine(
            cache=self.cache,
            queue=self.queue,
            payload_store=self.payload_store,
            inline_threshold_bytes=config.fanout.inline_threshold_bytes,
            retry_window_seconds=config.retry.window_seconds,
            metrics=self.metrics,
        )
        self.dispatcher = (
            dispatcher
            if dispatcher is not None
            else Dispatcher(
                payload_store=self.payload_store,
                timeout_seconds=config.dispatcher.timeout_seconds,
                body_format=config.dispatcher.body_format,
                content_type=config.dispatcher.content_type,
                user_agent=config.dispatcher.user_agent,
                retryable_status_codes=config.dispatcher.retryable_status_codes,
                metrics=self.metrics,
            )
        )
        self.retry_manager = RetryManager(
            queue=self.queue,
            dead_letters=self.dead_letters,
            strategy=ExponentialBackoff(
                base_delay=config.retry.base_delay_seconds,
                multiplier=config.retry.multiplier,
                jitter_ratio=config.retry.jitter_ratio,
                max_single_delay=config.retry.max_single_delay_seconds,
            ),
            window_seconds=config.retry.window_seconds,
            max_attempts=config.retry.max_attempts,
            metrics=self.metrics,
        )
        self.workers = DispatchWorkerPool(
            queue=self.queue,
            dispatcher=self.dispatcher,
            retry_manager=self.retry_manager,
            workers=config.dispatcher.workers,
            per_target_concurrency=config.dispatcher.per_target_concurrency,
            visibility_timeout=config.queue.visibility_timeout_seconds,
            batch_size=config.queue.receive_batch_size,
            poll_interval=config.queue.poll_interval_seconds,
            bulkhead_requeue_delay=config.dispatcher.bulkhead_requeue_delay_seconds,
            metrics=self.metrics,
        )

        self.health_checker = HealthChecker()
        self._setup_health_checks()

        self._events_failed = 0
        self._start_time = time.time()

    async def start(self) -> None:
        """Load subscriptions and start background processing."""
        if self._running:
            return

        logger.info("Starting Webhook Brain", version=self.config.version)
        self._shutdown_event.clear()
        await self.queue.open()
        await self.cache.start()
        await self.workers.start()
        self._running = True
        logger.info(
            "Webhook Brain started",
            subscriptions_loaded=self.cache.loaded,
            workers=self.config.dispatcher.workers,
        )

    async def stop(self) -> None:
        """Stop background processing and release resources."""
        if not self._running:
            return

        logger.info("Stopping Webhook Brain")
        self._running = False
        self._shutdown_event.set()

        await self.workers.stop(grace_seconds=self.config.server.shutdown_grace_seconds)
        await self._settle_queue()
        await self.cache.stop()
        await self.dispatcher.close()
        await self.source.close()

        logger.info("Webhook Brain stopped", uptime_seconds=round(time.time() - self._start_time, 1))

    async def _settle_queue(self) -> None:
        """
        Make sure no queued work is lost with the process.

        A durable queue keeps its descriptors for the next run. The
        in-process queue cannot, so whatever it still holds (delayed
        retries and leases cancelled by the grace period) is dead-lettered
        and can be redriven later.
        """
        if not self.queue.durable and isinstance(self.queue, InMemoryDispatchQueue):
            stranded = await self.queue.evacuate()
            if stranded:
                parked = await self.retry_manager.park_unfinished(stranded)
                logger.warning(
                    "Dead-lettered deliveries still queued at shutdown",
                    parked=parked,
                    dead_letter_sink=type(self.dead_letters).__name__,
                )
        await self.queue.close()

    async def handle_event(self, event: WebhookEvent) -> int:
        """
        Fan out one event, retrying transient failures.

        Returns:
            Number of deliveries created; 0 if fan-out ultimately failed
        """
        attempts = self.config.server.fanout_attempts
        for attempt in range(1, attempts + 1):
            try:
                deliveries = await self.fanout.handle(event)
                return len(deliveries)
            except FanoutError as e:
                if attempt == attempts:
                    self._events_failed += 1
                    self.metrics.record_counter("events_failed_total")
                    logger.error(
                        "Giving up on event after repeated fan-out failures",
                        event_id=event.event_id,
                        attempts=attempts,
                        error=e.message,
                    )
                    return 0
                delay = min(0.1 * (2 ** (attempt - 1)) + random.uniform(0, 0.1), 5.0)  # nosec B311
                logger.warning(
                    "Fan-out failed, retrying",
                    event_id=event.event_id,
                    attempt=attempt,
                    retry_in_seconds=round(delay, 2),
                    error=e.message,
                )
                await asyncio.sleep(delay)
        return 0

    async def run(self, events: AsyncIterable[WebhookEvent], drain: bool = True) -> None:
        """
        Consume ``events`` until exhausted or a shutdown signal arrives.

        When the input ends, queued work is given ``drain_timeout_seconds``
        to finish before the engine stops.
        """
        self._setup_signal_handlers()
        try:
            await self.start()
            consume_task = asyncio.create_task(self._consume(events))
            shutdown_task = asyncio.create_task(self._shutdown_event.wait())
            done, _ = await asyncio.wait(
                {consume_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED
            )

            if consume_task in done:
                shutdown_task.cancel()
                consume_task.result()
                if drain and self._running:
                    await self.workers.drain(timeout=self.config.server.drain_timeout_seconds)
            else:
                consume_task.cancel()
                try:
                    await consume_task
                except asyncio.CancelledError:
                    logger.info("Event consumption cancelled")

        except Exception as e:
            logger.error("Engine error", error=str(e), exc_info=True)
            raise
        finally:
            self._remove_signal_handlers()
            await self.stop()

    async def _consume(self, events: AsyncIterable[WebhookEvent]) -> None:
        async for event in events:
            if not self._running:
                break
            await self.handle_event(event)

    def _setup_health_checks(self) -> None:
        self.health_checker.register_check(
            "subscription_cache",
            create_cache_health_check(self.cache),
            timeout_seconds=2.0,
            critical=True,
        )
        self.health_checker.register_check(
            "dispatch_queue",
            create_queue_health_check(
                self.queue, max_visible=self.config.queue.max_visible_backlog
            ),
            timeout_seconds=5.0,
            critical=True,
        )
        self.health_checker.register_check(
            "worker_pool",
            create_worker_pool_health_check(self.workers),
            timeout_seconds=1.0,
            critical=True,
        )

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        if sys.platform == "win32":
            return

        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            logger.info("Received signal, initiating shutdown", signal=signum)
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread, e.g. under a test runner.
                logger.debug("Signal handler not installed", signal=signum)

    def _remove_signal_handlers(self) -> None:
        if sys.platform == "win32":
            return
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                pass

    @property
    def running(self) -> bool:
        return self._running

    async def health_check(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Health status information
        """
        health_status = await self.health_checker.run_all_checks()
        return {
            "status": health_status.status,
            "running": self._running,
            "timestamp": health_status.timestamp,
            "checks": health_status.to_dict()["checks"],
        }

    async def get_stats(self) -> Dict[str, Any]:
        """Get statistics from every component."""
        return {
            "version": self.config.version,
            "running": self._running,
            "uptime_seconds": time.time() - self._start_time,
            "events_failed": self._events_failed,
            "cache": self.cache.get_stats(),
            "queue": await self.queue.get_stats(),
            "payload_store": await self.payload_store.get_stats(),
            "workers": self.workers.get_stats(),
            "retry": self.retry_manager.get_stats(),
            "dead_letters": await self.dead_letters.get_stats(),
            "metrics": self.metrics.get_summary(),
        }
