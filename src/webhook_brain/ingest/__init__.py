"""
Event ingestion for the webhook engine.
"""

from .schemas import IngestError, IngestRecord, parse_ingest_record
from .transport import LineEventSource

__all__ = [
    "IngestError",
    "IngestRecord",
    "LineEventSource",
    "parse_ingest_record",
]
