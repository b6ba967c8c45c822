"""Payload storage for deliveries whose payload exceeds the queue message limit."""

from .payloads import (
    FilesystemPayloadStore,
    InMemoryPayloadStore,
    PayloadNotFoundError,
    PayloadStore,
    PayloadStoreError,
    payload_ref_for,
)

__all__ = [
    "PayloadStore",
    "InMemoryPayloadStore",
    "FilesystemPayloadStore",
    "PayloadStoreError",
    "PayloadNotFoundError",
    "payload_ref_for",
]
