"""
Subscription cache for low-latency event matching.

Readers resolve an event type against an immutable snapshot. A single
background refresher rebuilds the snapshot from the registration source
and publishes it by replacing one reference, so a reader sees either the
old snapshot or the new one, never a mix.
"""

import asyncio
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional

import structlog

from ..registry.entities import RegistrationState
from ..registry.sources import RegistrationSource

logger = structlog.get_logger(__name__)

_EMPTY: FrozenSet["SubscriptionMatch"] = frozenset()


@dataclass(frozen=True, order=True)
class SubscriptionMatch:
    """A target eligible to receive an event, and the subscription that makes it so."""

    target_id: str
    url: str
    subscription_id: str


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Immutable index from event type to eligible targets."""

    index: Mapping[str, FrozenSet[SubscriptionMatch]]
    version: int = 0
    built_at: float = field(default_factory=time.time)
    subscription_count: int = 0

    def lookup(self, event_type: str) -> FrozenSet[SubscriptionMatch]:
        return self.index.get(event_type, _EMPTY)

    @property
    def event_type_count(self) -> int:
        return len(self.index)

    @classmethod
    def empty(cls) -> "SubscriptionSnapshot":
        return cls(index=MappingProxyType({}), version=0, built_at=0.0)

    @classmethod
    def build(
        cls, state: RegistrationState, version: int, built_at: float
    ) -> "SubscriptionSnapshot":
        """
        Build a snapshot from registration state.

        Only active subscriptions whose target and filter both exist are
        indexed. Several subscriptions binding the same target to the same
        event type collapse into one match (the lowest subscription id),
        since the delivery identity is per (event, target).
        """
        targets = state.targets_by_id()
        filters = state.filters_by_id()
        by_type: Dict[str, Dict[str, SubscriptionMatch]] = {}
        indexed = 0

        for sub in state.subscriptions:
            if not sub.active:
                continue

            target = targets.get(sub.target_id)
            flt = filters.get(sub.filter_id)
            if target is None or flt is None:
                logger.warning(
                    "Skipping subscription with dangling reference",
                    subscription_id=sub.subscription_id,
                    target_id=sub.target_id,
                    filter_id=sub.filter_id,
                    target_found=target is not None,
                    filter_found=flt is not None,
                )
                continue

            indexed += 1
            match = SubscriptionMatch(
                target_id=target.target_id,
                url=target.url,
                subscription_id=sub.subscription_id,
            )
            for event_type in flt.events:
                per_target = by_type.setdefault(event_type, {})
                current = per_target.get(target.target_id)
                if current is None or match.subscription_id < current.subscription_id:
                    per_target[target.target_id] = match

        index = MappingProxyType(
            {event_type: frozenset(matches.values()) for event_type, matches in by_type.items()}
        )
        return cls(index=index, version=version, built_at=built_at, subscription_count=indexed)


class SubscriptionCache:
    """
    Periodically refreshed event-type index over active subscriptions.

    ``lookup`` is synchronous and lock-free. Staleness is bounded by the
    refresh interval: a subscription deactivated just after a refresh can
    still match until the next one completes.
    """

    def __init__(
        self,
        source: RegistrationSource,
        refresh_interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
        metrics: Optional[Any] = None,
    ):
        """
        Initialize subscription cache.

        Args:
            source: Registration source the snapshot is rebuilt from
            refresh_interval_seconds: Interval between background rebuilds
            clock: Time source for snapshot timestamps
            metrics: Optional MetricsCollector
        """
        self.source = source
        self.refresh_interval_seconds = refresh_interval_seconds
        self._clock = clock
        self._metrics = metrics

        self._snapshot = SubscriptionSnapshot.empty()
        self._loaded = False
        self._refresh_lock = asyncio.Lock()
        self._invalidated = asyncio.Event()
        self._refresh_task: Optional[asyncio.Task] = None
        self._running = False

        self._refresh_count = 0
        self._failure_count = 0
        self._last_error: Optional[str] = None

    @property
    def snapshot(self) -> SubscriptionSnapshot:
        return self._snapshot

    @property
    def loaded(self) -> bool:
        """Whether at least one snapshot has been built successfully."""
        return self._loaded

    @property
    def staleness_seconds(self) -> Optional[float]:
        if not self._loaded:
            return None
        return max(0.0, self._clock() - self._snapshot.built_at)

    def lookup(self, event_type: str) -> FrozenSet[SubscriptionMatch]:
        """Return the targets eligible for ``event_type`` in the current snapshot."""
        return self._snapshot.lookup(event_type)

    async def refresh(self) -> bool:
        """
        Rebuild the snapshot from the source and swap it in.

        On failure the last good snapshot stays in service.

        Returns:
            True if a new snapshot was published
        """
        async with self._refresh_lock:
            try:
                state = await self.source.load()
                snapshot = SubscriptionSnapshot.build(
                    state, version=self._snapshot.version + 1, built_at=self._clock()
                )
            except Exception as e:
                self._failure_count += 1
                self._last_error = str(e)
                if self._metrics:
                    self._metrics.record_counter("cache_refresh_failures_total")
                logger.error(
                    "Subscription cache refresh failed, serving last good snapshot",
                    snapshot_version=self._snapshot.version,
                    error=str(e),
                    exc_info=True,
                )
                return False

            self._snapshot = snapshot
            self._loaded = True
            self._refresh_count += 1
            self._last_error = None

        if self._metrics:
            self._metrics.record_gauge("cache_event_types", snapshot.event_type_count)
        logger.info(
            "Subscription cache refreshed",
            snapshot_version=snapshot.version,
            event_types=snapshot.event_type_count,
            active_subscriptions=snapshot.subscription_count,
        )
        return True

    def invalidate(self) -> None:
        """Ask the background refresher to rebuild now instead of waiting for the interval."""
        self._invalidated.set()

    async def start(self) -> None:
        """Load the first snapshot and start the background refresher."""
        if self._running:
            return

        self._running = True
        await self.refresh()
        self._refresh_task = asyncio.create_task(self._refresh_loop())

        logger.info(
            "Subscription cache started",
            refresh_interval_seconds=self.refresh_interval_seconds,
            loaded=self._loaded,
        )

    async def stop(self) -> None:
        """Stop the background refresher."""
        if not self._running:
            return

        self._running = False
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None

        logger.info("Subscription cache stopped", refresh_count=self._refresh_count)

    async def _refresh_loop(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(
                    self._invalidated.wait(), timeout=self.refresh_interval_seconds
                )
                logger.debug("Subscription cache invalidated")
            except asyncio.TimeoutError:
                pass
            self._invalidated.clear()
            await self.refresh()

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        return {
            "loaded": self._loaded,
            "snapshot_version": self._snapshot.version,
            "event_types": self._snapshot.event_type_count,
            "active_subscriptions": self._snapshot.subscription_count,
            "staleness_seconds": self.staleness_seconds,
            "refresh_interval_seconds": self.refresh_interval_seconds,
            "refresh_count": self._refresh_count,
            "failure_count": self._failure_count,
            "last_error": self._last_error,
        }
