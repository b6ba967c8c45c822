"""
Dispatch queue contract and in-process implementations.

The queue carries delivery descriptors with at-least-once semantics:
a received message is leased for a visibility timeout and reappears
unless acked. A delay on enqueue postpones first visibility, which is
how retries get scheduled without a timer service.
"""

import asyncio
import json
import os
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..webhooks.events import (
    Delivery,
    DescriptorDecodeError,
    decode_descriptor,
    encode_descriptor,
)

logger = structlog.get_logger(__name__)


class DispatchQueueError(Exception):
    """Base exception for dispatch queue failures."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class MessageTooLargeError(DispatchQueueError):
    """The encoded descriptor exceeds the transport's message size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Message of {size} bytes exceeds queue limit of {limit} bytes")
        self.size = size
        self.limit = limit


@dataclass(frozen=True)
class Lease:
    """A received descriptor together with the handle that settles it."""

    handle: str
    message_id: str
    delivery: Delivery
    receive_count: int
    leased_until: float


class DispatchQueue(ABC):
    """At-least-once, lease-based queue of delivery descriptors."""

    #: Whether queued descriptors outlive the process.
    durable = True

    @abstractmethod
    async def enqueue(self, delivery: Delivery, delay: float = 0.0) -> str:
        """Add a descriptor, first visible after ``delay`` seconds. Returns the message id."""

    @abstractmethod
    async def receive(self, max_batch: int, visibility_timeout: float) -> List[Lease]:
        """Lease up to ``max_batch`` visible descriptors."""

    @abstractmethod
    async def ack(self, handle: str) -> bool:
        """Permanently remove a leased descriptor. False if the lease is no longer held."""

    @abstractmethod
    async def nack(self, handle: str, delay: float = 0.0) -> bool:
        """Release a lease so the descriptor is visible again after ``delay``."""

    async def open(self) -> None:
        """Prepare the transport before the first enqueue or receive."""

    async def close(self) -> None:
        """Release transport resources."""

    async def get_stats(self) -> Dict[str, Any]:
        return {}


@dataclass
class _Message:
    message_id: str
    body: bytes
    visible_at: float
    receive_count: int = 0
    lease_handle: Optional[str] = None

    def journal_entry(self) -> Dict[str, Any]:
        return {
            "op": "put",
            "id": self.message_id,
            "body": self.body.decode("utf-8"),
            "visible_at": self.visible_at,
            "receive_count": self.receive_count,
        }


class InMemoryDispatchQueue(DispatchQueue):
    """
    In-process dispatch queue with SQS-like lease semantics.

    Messages are stored encoded so the size limit applies exactly as it
    would on a networked transport. Time comes from an injectable clock.
    Nothing survives the process; see ``JournaledDispatchQueue``.
    """

    durable = False

    def __init__(
        self,
        max_message_bytes: int = 256 * 1024,
        clock: Callable[[], float] = time.time,
    ):
        self.max_message_bytes = max_message_bytes
        self._clock = clock
        self._messages: Dict[str, _Message] = {}
        self._leases: Dict[str, str] = {}
        self._lock = asyncio.Lock()

        self._enqueued_total = 0
        self._acked_total = 0
        self._redelivered_total = 0
        self._discarded_total = 0

    async def _write_journal(self, entries: List[Dict[str, Any]]) -> None:
        """Record state changes; called with the queue lock held."""

    async def enqueue(self, delivery: Delivery, delay: float = 0.0) -> str:
        if delay < 0:
            raise ValueError("delay cannot be negative")

        body = encode_descriptor(delivery)
        if len(body) > self.max_message_bytes:
            raise MessageTooLargeError(len(body), self.max_message_bytes)

        message_id = str(uuid.uuid4())
        async with self._lock:
            message = _Message(
                message_id=message_id,
                body=body,
                visible_at=self._clock() + delay,
            )
            await self._write_journal([message.journal_entry()])
            self._messages[message_id] = message
            self._enqueued_total += 1

        logger.debug(
            "Descriptor enqueued",
            message_id=message_id,
            delivery_id=delivery.delivery_id,
            delay_seconds=delay,
            size_bytes=len(body),
        )
        return message_id

    async def receive(self, max_batch: int, visibility_timeout: float) -> List[Lease]:
        if max_batch < 1:
            return []

        now = self._clock()
        leases: List[Lease] = []
        changes: List[Dict[str, Any]] = []
        async with self._lock:
            visible = sorted(
                (m for m in self._messages.values() if m.visible_at <= now),
                key=lambda m: m.visible_at,
            )
            for message in visible:
                if len(leases) >= max_batch:
                    break

                if message.lease_handle is not None:
                    # Lease expired without ack: the previous holder lost it.
                    self._leases.pop(message.lease_handle, None)
                    self._redelivered_total += 1

                try:
                    delivery = decode_descriptor(message.body)
                except DescriptorDecodeError as e:
                    logger.error(
                        "Discarding undecodable queue message",
                        message_id=message.message_id,
                        error=str(e),
                    )
                    del self._messages[message.message_id]
                    self._discarded_total += 1
                    changes.append({"op": "del", "id": message.message_id})
                    continue

                handle = uuid.uuid4().hex
                message.lease_handle = handle
                message.receive_count += 1
                message.visible_at = now + visibility_timeout
                self._leases[handle] = message.message_id
                changes.append(
                    {
                        "op": "lease",
                        "id": message.message_id,
                        "visible_at": message.visible_at,
                        "receive_count": message.receive_count,
                    }
                )

                leases.append(
                    Lease(
                        handle=handle,
                        message_id=message.message_id,
                        delivery=delivery,
                        receive_count=message.receive_count,
                        leased_until=message.visible_at,
                    )
                )

            # A failed write leaves the leases held in memory; they expire
            # and are redelivered like any lost lease.
            await self._write_journal(changes)

        return leases

    def _held_message(self, handle: str) -> Optional[_Message]:
        message_id = self._leases.get(handle)
        if message_id is None:
            return None
        message = self._messages.get(message_id)
        if message is None or message.lease_handle != handle:
            return None
        if message.visible_at <= self._clock():
            # Visibility timeout elapsed; the message may go to someone else.
            return None
        return message

    async def ack(self, handle: str) -> bool:
        async with self._lock:
            message = self._held_message(handle)
            if message is None:
                logger.warning("Ack for lease no longer held", lease_handle=handle)
                return False
            await self._write_journal([{"op": "del", "id": message.message_id}])
            del self._messages[message.message_id]
            del self._leases[handle]
            self._acked_total += 1
            return True

    async def nack(self, handle: str, delay: float = 0.0) -> bool:
        async with self._lock:
            message = self._held_message(handle)
            if message is None:
                return False
            visible_at = self._clock() + max(delay, 0.0)
            await self._write_journal(
                [{"op": "release", "id": message.message_id, "visible_at": visible_at}]
            )
            del self._leases[handle]
            message.lease_handle = None
            message.visible_at = visible_at
            return True

    async def evacuate(self) -> List[Delivery]:
        """
        Remove every message, leased or delayed, and return its descriptor.

        Used at shutdown so that work held only in process memory can be
        parked somewhere durable instead of vanishing.
        """
        async with self._lock:
            messages = list(self._messages.values())
            await self._write_journal([{"op": "del", "id": m.message_id} for m in messages])
            self._messages.clear()
            self._leases.clear()

        deliveries = []
        for message in messages:
            try:
                deliveries.append(decode_descriptor(message.body))
            except DescriptorDecodeError as e:
                self._discarded_total += 1
                logger.error(
                    "Discarding undecodable queue message",
                    message_id=message.message_id,
                    error=str(e),
                )
        return deliveries

    async def depth(self) -> Dict[str, int]:
        """Counts of visible, delayed and leased messages."""
        now = self._clock()
        async with self._lock:
            leased = sum(
                1 for m in self._messages.values() if m.lease_handle is not None and m.visible_at > now
            )
            visible = sum(1 for m in self._messages.values() if m.visible_at <= now)
            delayed = len(self._messages) - leased - visible
        return {"visible": visible, "delayed": delayed, "leased": leased}

    def __len__(self) -> int:
        return len(self._messages)

    async def get_stats(self) -> Dict[str, Any]:
        return {
            **(await self.depth()),
            "total": len(self._messages),
            "enqueued_total": self._enqueued_total,
            "acked_total": self._acked_total,
            "redelivered_total": self._redelivered_total,
            "discarded_total": self._discarded_total,
            "max_message_bytes": self.max_message_bytes,
        }


class JournaledDispatchQueue(InMemoryDispatchQueue):
    """
    Lease queue whose state is journaled to a JSON-lines file.

    Every state change is appended to the journal while the queue lock is
    held, so queued descriptors, delayed retries included, survive a
    restart. ``open()`` replays and compacts the journal. Lease handles
    are not restored: a descriptor leased when the process died becomes
    visible again once its visibility timeout would have expired.
    Blocking file I/O runs in the default executor.
    """

    durable = True

    def __init__(
        self,
        path: Path,
        max_message_bytes: int = 256 * 1024,
        clock: Callable[[], float] = time.time,
        fsync: bool = False,
    ):
        super().__init__(max_message_bytes=max_message_bytes, clock=clock)
        self.path = Path(path)
        self.fsync = fsync
        self._opened = False
        self._restored = 0

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        async with self._lock:
            try:
                messages = await loop.run_in_executor(None, self._replay)
                await loop.run_in_executor(None, self._compact, messages)
            except OSError as e:
                raise DispatchQueueError(f"Failed to open queue journal {self.path}", e)
            self._messages = {m.message_id: m for m in messages}
            self._leases.clear()
            self._opened = True
            self._restored = len(messages)

        logger.info("Dispatch queue journal opened", path=str(self.path), restored=len(messages))

    async def close(self) -> None:
        if not self._opened:
            return
        loop = asyncio.get_running_loop()
        async with self._lock:
            try:
                await loop.run_in_executor(None, self._compact, list(self._messages.values()))
            except OSError as e:
                raise DispatchQueueError(f"Failed to compact queue journal {self.path}", e)
            self._opened = False

        logger.info("Dispatch queue journal closed", path=str(self.path), pending=len(self))

    async def _write_journal(self, entries: List[Dict[str, Any]]) -> None:
        if not entries:
            return
        if not self._opened:
            raise DispatchQueueError(f"Queue journal {self.path} is not open")

        data = "".join(json.dumps(entry, separators=(",", ":")) + "\n" for entry in entries)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._append, data)
        except OSError as e:
            logger.error("Queue journal write failed", path=str(self.path), error=str(e))
            raise DispatchQueueError(f"Failed to write queue journal {self.path}", e)

    def _append(self, data: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            if self.fsync:
                os.fsync(f.fileno())

    def _replay(self) -> List[_Message]:
        if not self.path.exists():
            return []

        messages: Dict[str, _Message] = {}
        with open(self.path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                    op, message_id = entry["op"], entry["id"]
                    if op == "put":
                        messages[message_id] = _Message(
                            message_id=message_id,
                            body=entry["body"].encode("utf-8"),
                            visible_at=float(entry["visible_at"]),
                            receive_count=int(entry.get("receive_count", 0)),
                        )
                    elif op == "del":
                        messages.pop(message_id, None)
                    elif op in ("lease", "release"):
                        message = messages.get(message_id)
                        if message is not None:
                            message.visible_at = float(entry["visible_at"])
                            if "receive_count" in entry:
                                message.receive_count = int(entry["receive_count"])
                    else:
                        raise ValueError(f"unknown journal op {op!r}")
                except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
                    # A crash can leave the last line half written.
                    logger.warning(
                        "Skipping unreadable queue journal line",
                        path=str(self.path),
                        line_number=line_number,
                        error=str(e),
                    )
        return list(messages.values())

    def _compact(self, messages: List[_Message]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            for message in messages:
                f.write(json.dumps(message.journal_entry(), separators=(",", ":")) + "\n")
            f.flush()
            if self.fsync:
                os.fsync(f.fileno())
        tmp_path.replace(self.path)

    async def get_stats(self) -> Dict[str, Any]:
        stats = await super().get_stats()
        stats.update(journal=str(self.path), restored=self._restored)
        return stats
