"""
Line-oriented event transport.

Reads JSON event records, one per line, from a text stream (stdin by
default). Blocking reads run in the event loop's executor so the loop
stays free for dispatch work.
"""

import asyncio
import json
import sys
from typing import AsyncIterator, Optional, TextIO

import structlog

from ..webhooks.events import WebhookEvent
from .schemas import IngestError, parse_ingest_record

logger = structlog.get_logger(__name__)


class LineEventSource:
    """
    Async iterator of events read from JSON lines.

    Malformed lines are logged and skipped, as are records without an
    event id unless ``derive_event_ids`` is set. Iteration ends at EOF
    or after ``stop()``.
    """

    def __init__(self, stream: Optional[TextIO] = None, derive_event_ids: bool = False):
        self.stream = stream
        self.derive_event_ids = derive_event_ids
        self._running = False
        self._lines_read = 0
        self._events_parsed = 0
        self._lines_rejected = 0

    async def stop(self) -> None:
        self._running = False

    def __aiter__(self) -> AsyncIterator[WebhookEvent]:
        return self._iter_events()

    async def _iter_events(self) -> AsyncIterator[WebhookEvent]:
        self._running = True
        async for line in self._read_lines():
            event = self._parse_line(line)
            if event is not None:
                yield event

    async def _read_lines(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        stream = self.stream or sys.stdin

        while self._running:
            line = await loop.run_in_executor(None, stream.readline)
            if not line:  # EOF
                logger.info("Event stream reached EOF", lines_read=self._lines_read)
                break

            self._lines_read += 1
            line = line.strip()
            if line:
                yield line

        self._running = False

    def _parse_line(self, line: str) -> Optional[WebhookEvent]:
        try:
            data = json.loads(line)
            if not isinstance(data, dict):
                raise IngestError("Ingestion record must be a JSON object")
            event = parse_ingest_record(data, derive_event_id=self.derive_event_ids)
        except (json.JSONDecodeError, IngestError) as e:
            self._lines_rejected += 1
            logger.warning("Skipping malformed event record", error=str(e), line=line[:100])
            return None

        self._events_parsed += 1
        return event

    def get_stats(self):
        return {
            "lines_read": self._lines_read,
            "events_parsed": self._events_parsed,
            "lines_rejected": self._lines_rejected,
        }
