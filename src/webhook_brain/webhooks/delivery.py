"""
Webhook dispatcher: one HTTP attempt per leased delivery.

Resolves the payload, POSTs it to the target and classifies the outcome.
The dispatcher never waits for a retry; failed deliveries go back to the
caller, which hands them to the retry manager.
"""

import asyncio
import base64
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

import aiohttp
import structlog

from ..storage.payloads import PayloadStore, PayloadStoreError
from .events import Delivery

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 500


class Outcome(str, Enum):
    """Classification of a dispatch attempt."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class DispatchResult:
    """Result of a single dispatch attempt."""

    delivery_id: str
    outcome: Outcome
    status_code: Optional[int] = None
    error: Optional[str] = None
    response_time_ms: float = 0.0
    timestamp: float = 0.0

    @property
    def is_success(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @property
    def reason(self) -> str:
        """Short human-readable failure reason."""
        if self.status_code is not None:
            return f"HTTP {self.status_code}"
        return self.error or self.outcome.value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "delivery_id": self.delivery_id,
            "outcome": self.outcome.value,
            "status_code": self.status_code,
            "error": self.error,
            "response_time_ms": self.response_time_ms,
            "timestamp": self.timestamp,
        }


def classify_status(status: int, retryable_status_codes: Iterable[int] = (408, 429)) -> Outcome:
    """Map an HTTP status code to a dispatch outcome."""
    if 200 <= status < 300:
        return Outcome.SUCCESS
    if status >= 500 or status in retryable_status_codes:
        return Outcome.RETRYABLE_FAILURE
    return Outcome.PERMANENT_FAILURE


class Dispatcher:
    """
    Performs the outbound HTTP call for a delivery.

    One shared ``aiohttp.ClientSession`` serves every call; each call is
    bounded by its own timeout so a slow target only holds the worker
    that issued the call.
    """

    def __init__(
        self,
        payload_store: PayloadStore,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: float = 10.0,
        body_format: str = "raw",
        content_type: str = "application/octet-stream",
        user_agent: str = "Webhook-Brain/0.1",
        retryable_status_codes: Iterable[int] = (408, 429),
        clock: Callable[[], float] = time.time,
        metrics: Optional[Any] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            payload_store: Store resolving offloaded payloads
            session: HTTP session (created on first use if None)
            timeout_seconds: Per-call timeout
            body_format: "raw" for payload bytes, "envelope" for a JSON wrapper
            content_type: Content-Type for raw bodies
            user_agent: User-Agent header
            retryable_status_codes: Non-5xx statuses that are retried
            clock: Time source
            metrics: Optional MetricsCollector
        """
        if body_format not in ("raw", "envelope"):
            raise ValueError(f"Unknown body format: {body_format}")

        self.payload_store = payload_store
        self.timeout_seconds = timeout_seconds
        self.body_format = body_format
        self.content_type = content_type
        self.user_agent = user_agent
        self.retryable_status_codes = frozenset(retryable_status_codes)
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._metrics = metrics

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=0, enable_cleanup_closed=True)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def process(self, delivery: Delivery) -> DispatchResult:
        """
        Attempt ``delivery`` once.

        Returns:
            The classified result; never raises for target or store failures
        """
        started = self._clock()

        try:
            payload = await self._resolve_payload(delivery)
        except PayloadStoreError as e:
            logger.warning(
                "Payload fetch failed, will retry",
                delivery_id=delivery.delivery_id,
                payload_ref=delivery.payload_ref,
                error=str(e),
            )
            if self._metrics:
                self._metrics.record_counter("payload_store_failures_total", labels={"op": "get"})
            return self._result(
                delivery, Outcome.RETRYABLE_FAILURE, started, error=f"payload fetch failed: {e}"
            )

        body, headers = self._build_request(delivery, payload)
        session = await self._ensure_session()
        attempt_start = time.monotonic()

        try:
            async with session.post(
                delivery.url,
                data=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                allow_redirects=False,
            ) as response:
                # Drain so the connection can be reused.
                await response.read()
                status = response.status
        except aiohttp.InvalidURL as e:
            return self._finish(
                delivery, Outcome.PERMANENT_FAILURE, started, attempt_start,
                error=f"invalid url: {e}",
            )
        except asyncio.TimeoutError:
            return self._finish(
                delivery, Outcome.RETRYABLE_FAILURE, started, attempt_start,
                error=f"timeout after {self.timeout_seconds}s",
            )
        except aiohttp.ClientError as e:
            return self._finish(
                delivery, Outcome.RETRYABLE_FAILURE, started, attempt_start,
                error=f"{type(e).__name__}: {e}",
            )

        outcome = classify_status(status, self.retryable_status_codes)
        return self._finish(delivery, outcome, started, attempt_start, status_code=status)

    async def _resolve_payload(self, delivery: Delivery) -> bytes:
        if delivery.payload is not None:
            return delivery.payload
        return await self.payload_store.get(delivery.payload_ref)

    def _build_request(self, delivery: Delivery, payload: bytes):
        headers = {
            "User-Agent": self.user_agent,
            "X-Webhook-Delivery-Id": delivery.delivery_id,
            "X-Webhook-Event-Id": delivery.event_id,
            "X-Webhook-Event-Type": delivery.event_type,
            "X-Webhook-Attempt": str(delivery.attempt + 1),
        }

        if self.body_format == "envelope":
            headers["Content-Type"] = "application/json"
            body = json.dumps(
                {
                    "delivery_id": delivery.delivery_id,
                    "event_id": delivery.event_id,
                    "event_type": delivery.event_type,
                    "attempt": delivery.attempt + 1,
                    "payload": base64.b64encode(payload).decode("ascii"),
                },
                separators=(",", ":"),
            ).encode("utf-8")
        else:
            headers["Content-Type"] = self.content_type
            body = payload

        return body, headers

    def _finish(
        self,
        delivery: Delivery,
        outcome: Outcome,
        started: float,
        attempt_start: float,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> DispatchResult:
        response_time_ms = (time.monotonic() - attempt_start) * 1000
        if self._metrics:
            self._metrics.record_histogram("dispatch_duration_ms", response_time_ms)

        log = logger.info if outcome == Outcome.SUCCESS else logger.warning
        log(
            "Dispatch attempt finished",
            delivery_id=delivery.delivery_id,
            event_id=delivery.event_id,
            target_id=delivery.target_id,
            attempt=delivery.attempt + 1,
            outcome=outcome.value,
            status_code=status_code,
            error=error,
            response_time_ms=round(response_time_ms, 2),
        )
        return self._result(
            delivery, outcome, started,
            status_code=status_code, error=error, response_time_ms=response_time_ms,
        )

    def _result(
        self,
        delivery: Delivery,
        outcome: Outcome,
        started: float,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        response_time_ms: float = 0.0,
    ) -> DispatchResult:
        if self._metrics:
            self._metrics.record_counter("dispatch_outcomes_total", labels={"outcome": outcome.value})
        return DispatchResult(
            delivery_id=delivery.delivery_id,
            outcome=outcome,
            status_code=status_code,
            error=error[:MAX_ERROR_LENGTH] if error else None,
            response_time_ms=response_time_ms,
            timestamp=started,
        )
