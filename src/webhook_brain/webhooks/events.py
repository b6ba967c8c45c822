"""
Event and delivery definitions for the webhook engine.

Defines the inbound event record, the delivery descriptor that travels
through the dispatch queue, and the descriptor wire codec.
"""

import base64
import hashlib
import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional


class DeliveryState(str, Enum):
    """Lifecycle states of a delivery."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    DEAD_LETTERED = "dead_lettered"


TERMINAL_STATES = frozenset({DeliveryState.SUCCEEDED, DeliveryState.DEAD_LETTERED})

_TRANSITIONS = {
    DeliveryState.PENDING: {DeliveryState.IN_FLIGHT},
    DeliveryState.IN_FLIGHT: {
        DeliveryState.SUCCEEDED,
        DeliveryState.RETRYING,
        DeliveryState.DEAD_LETTERED,
        # lease given back by the bulkhead or lost to a crash
        DeliveryState.PENDING,
    },
    DeliveryState.RETRYING: {DeliveryState.PENDING, DeliveryState.DEAD_LETTERED},
    DeliveryState.SUCCEEDED: set(),
    DeliveryState.DEAD_LETTERED: set(),
}


class InvalidTransitionError(Exception):
    """Raised when a delivery is moved along an edge the state machine lacks."""

    def __init__(self, current: DeliveryState, requested: DeliveryState):
        super().__init__(f"Invalid delivery transition: {current.value} -> {requested.value}")
        self.current = current
        self.requested = requested


def transition(current: DeliveryState, requested: DeliveryState) -> DeliveryState:
    """Validate a state change and return the new state."""
    if requested not in _TRANSITIONS[current]:
        raise InvalidTransitionError(current, requested)
    return requested


class DescriptorDecodeError(ValueError):
    """Raised when a queue message is not a valid delivery descriptor."""


@dataclass(frozen=True)
class WebhookEvent:
    """Inbound occurrence with a type and an opaque payload."""

    event_type: str
    payload: bytes
    event_id: str

    @property
    def payload_size(self) -> int:
        return len(self.payload)


def derive_delivery_id(event_id: str, target_id: str) -> str:
    """
    Derive the delivery identity for an (event, target) pair.

    Redundant fan-out of the same event to the same target always yields
    the same id, which receivers use for deduplication.
    """
    digest = hashlib.sha256(f"{event_id}\x1f{target_id}".encode("utf-8")).hexdigest()
    return f"dlv_{digest[:32]}"


@dataclass(frozen=True)
class Delivery:
    """
    One (event, target) pairing awaiting or undergoing transport.

    Exactly one of ``payload`` (inline bytes) or ``payload_ref`` (payload
    store reference) is set, and it never changes for the lifetime of the
    delivery. ``attempt`` counts failed dispatch attempts so far.
    """

    delivery_id: str
    event_id: str
    event_type: str
    target_id: str
    subscription_id: str
    url: str
    first_attempt_at: float
    next_attempt_at: float
    deadline: float
    payload: Optional[bytes] = None
    payload_ref: Optional[str] = None
    attempt: int = 0
    last_error: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if (self.payload is None) == (self.payload_ref is None):
            raise ValueError("Delivery requires exactly one of payload or payload_ref")
        if self.attempt < 0:
            raise ValueError("Delivery attempt cannot be negative")

    @property
    def is_inline(self) -> bool:
        return self.payload is not None

    def with_retry(self, next_attempt_at: float, error: Optional[str]) -> "Delivery":
        """Return the descriptor for the next attempt."""
        return replace(
            self,
            attempt=self.attempt + 1,
            next_attempt_at=next_attempt_at,
            last_error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return {
            "delivery_id": self.delivery_id,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "target_id": self.target_id,
            "subscription_id": self.subscription_id,
            "url": self.url,
            "payload": (
                base64.b64encode(self.payload).decode("ascii") if self.payload is not None else None
            ),
            "payload_ref": self.payload_ref,
            "attempt": self.attempt,
            "first_attempt_at": self.first_attempt_at,
            "next_attempt_at": self.next_attempt_at,
            "deadline": self.deadline,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Delivery":
        """Build a delivery from its dictionary form."""
        try:
            inline = data.get("payload")
            return cls(
                delivery_id=data["delivery_id"],
                event_id=data["event_id"],
                event_type=data["event_type"],
                target_id=data["target_id"],
                subscription_id=data["subscription_id"],
                url=data["url"],
                payload=base64.b64decode(inline) if inline is not None else None,
                payload_ref=data.get("payload_ref"),
                attempt=int(data.get("attempt", 0)),
                first_attempt_at=float(data["first_attempt_at"]),
                next_attempt_at=float(data["next_attempt_at"]),
                deadline=float(data["deadline"]),
                last_error=data.get("last_error"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DescriptorDecodeError(f"Invalid delivery descriptor: {e}") from e


def encode_descriptor(delivery: Delivery) -> bytes:
    """Encode a delivery descriptor as compact JSON for the dispatch queue."""
    return json.dumps(delivery.to_dict(), separators=(",", ":")).encode("utf-8")


def decode_descriptor(body: bytes) -> Delivery:
    """Decode a queue message body back into a delivery descriptor."""
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DescriptorDecodeError(f"Queue message is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise DescriptorDecodeError("Queue message is not a JSON object")
    return Delivery.from_dict(data)
