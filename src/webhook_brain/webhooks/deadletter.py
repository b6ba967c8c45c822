"""
Dead-letter sink for deliveries that will not be attempted again.

A record keeps the full descriptor, so an operator can inspect it and
redrive it onto the dispatch queue with a fresh retry window.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from .events import Delivery, DescriptorDecodeError

logger = structlog.get_logger(__name__)


class DeadLetterReason(str, Enum):
    """Why a delivery was dead-lettered."""

    PERMANENT_FAILURE = "permanent_failure"
    WINDOW_EXHAUSTED = "window_exhausted"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    SHUTDOWN = "shutdown"


class DeadLetterError(Exception):
    """Raised when the dead-letter sink cannot record or read entries."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


@dataclass(frozen=True)
class DeadLetterRecord:
    """A delivery parked after its last attempt."""

    delivery: Delivery
    reason: DeadLetterReason
    status_code: Optional[int] = None
    error: Optional[str] = None
    dead_lettered_at: float = field(default_factory=time.time)

    @property
    def delivery_id(self) -> str:
        return self.delivery.delivery_id

    @property
    def description(self) -> str:
        """Operator-facing reason, e.g. "window exhausted"."""
        return self.reason.value.replace("_", " ")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "delivery": self.delivery.to_dict(),
            "reason": self.reason.value,
            "status_code": self.status_code,
            "error": self.error,
            "dead_lettered_at": self.dead_lettered_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeadLetterRecord":
        status_code = data.get("status_code")
        return cls(
            delivery=Delivery.from_dict(data["delivery"]),
            reason=DeadLetterReason(data["reason"]),
            status_code=int(status_code) if status_code is not None else None,
            error=data.get("error"),
            dead_lettered_at=float(data.get("dead_lettered_at", 0.0)),
        )


class DeadLetterSink(ABC):
    """Where terminally failed deliveries go."""

    @abstractmethod
    async def put(self, record: DeadLetterRecord) -> None:
        """Record a dead-lettered delivery."""

    @abstractmethod
    async def list(self, limit: Optional[int] = None) -> List[DeadLetterRecord]:
        """Records in the order they were dead-lettered."""

    @abstractmethod
    async def pop(self, delivery_id: str) -> Optional[DeadLetterRecord]:
        """Remove and return a record, or None if it is not parked here."""

    async def get_stats(self) -> Dict[str, Any]:
        return {}


class InMemoryDeadLetterSink(DeadLetterSink):
    """Process-local sink, keyed by delivery id."""

    def __init__(self):
        self._records: "OrderedDict[str, DeadLetterRecord]" = OrderedDict()
        self._counts: Dict[str, int] = {reason.value: 0 for reason in DeadLetterReason}

    async def put(self, record: DeadLetterRecord) -> None:
        self._records[record.delivery_id] = record
        self._records.move_to_end(record.delivery_id)
        self._counts[record.reason.value] += 1

    async def list(self, limit: Optional[int] = None) -> List[DeadLetterRecord]:
        records = list(self._records.values())
        return records[:limit] if limit is not None else records

    async def pop(self, delivery_id: str) -> Optional[DeadLetterRecord]:
        return self._records.pop(delivery_id, None)

    def __len__(self) -> int:
        return len(self._records)

    async def get_stats(self) -> Dict[str, Any]:
        return {"parked": len(self._records), "by_reason": dict(self._counts)}


class JsonlDeadLetterSink(DeadLetterSink):
    """
    Append-only JSON-lines file.

    ``pop`` rewrites the file without the popped record. A line that
    cannot be parsed is logged and skipped on read.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def put(self, record: DeadLetterRecord) -> None:
        line = json.dumps(record.to_dict(), separators=(",", ":")) + "\n"
        loop = asyncio.get_running_loop()
        async with self._lock:
            try:
                await loop.run_in_executor(None, self._append, line)
            except OSError as e:
                raise DeadLetterError(f"Failed to write dead letter to {self.path}", e)
        logger.debug("Dead letter appended", delivery_id=record.delivery_id, path=str(self.path))

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)

    def _read_all(self) -> List[DeadLetterRecord]:
        if not self.path.exists():
            return []
        records = []
        with open(self.path, "r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(DeadLetterRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError, DescriptorDecodeError) as e:
                    logger.warning(
                        "Skipping unreadable dead letter line",
                        path=str(self.path),
                        line_number=line_number,
                        error=str(e),
                    )
        return records

    def _rewrite(self, records: List[DeadLetterRecord]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps(record.to_dict(), separators=(",", ":")) + "\n")
        tmp_path.replace(self.path)

    async def list(self, limit: Optional[int] = None) -> List[DeadLetterRecord]:
        loop = asyncio.get_running_loop()
        async with self._lock:
            try:
                records = await loop.run_in_executor(None, self._read_all)
            except OSError as e:
                raise DeadLetterError(f"Failed to read dead letters from {self.path}", e)
        return records[:limit] if limit is not None else records

    async def pop(self, delivery_id: str) -> Optional[DeadLetterRecord]:
        loop = asyncio.get_running_loop()
        async with self._lock:
            try:
                records = await loop.run_in_executor(None, self._read_all)
                found = None
                remaining = []
                for record in records:
                    if found is None and record.delivery_id == delivery_id:
                        found = record
                    else:
                        remaining.append(record)
                if found is not None:
                    await loop.run_in_executor(None, self._rewrite, remaining)
            except OSError as e:
                raise DeadLetterError(f"Failed to update dead letters in {self.path}", e)
        return found

    async def get_stats(self) -> Dict[str, Any]:
        records = await self.list()
        by_reason: Dict[str, int] = {reason.value: 0 for reason in DeadLetterReason}
        for record in records:
            by_reason[record.reason.value] += 1
        return {"parked": len(records), "by_reason": by_reason, "path": str(self.path)}
