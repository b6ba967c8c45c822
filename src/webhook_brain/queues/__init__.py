"""Dispatch queue adapters."""

from .dispatch import (
    DispatchQueue,
    DispatchQueueError,
    InMemoryDispatchQueue,
    JournaledDispatchQueue,
    Lease,
    MessageTooLargeError,
)

__all__ = [
    "DispatchQueue",
    "InMemoryDispatchQueue",
    "JournaledDispatchQueue",
    "Lease",
    "DispatchQueueError",
    "MessageTooLargeError",
]
