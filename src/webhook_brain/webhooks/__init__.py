"""
Webhook delivery pipeline for the webhook engine.

Fan-out, dispatch, retry and the worker pool live in their own modules
(``webhooks.fanout``, ``webhooks.delivery``, ``webhooks.retry``,
``webhooks.workers``) and are imported from there.
"""

from .deadletter import (
    DeadLetterError,
    DeadLetterReason,
    DeadLetterRecord,
    DeadLetterSink,
    InMemoryDeadLetterSink,
    JsonlDeadLetterSink,
)
from .events import (
    Delivery,
    DeliveryState,
    DescriptorDecodeError,
    InvalidTransitionError,
    WebhookEvent,
    decode_descriptor,
    derive_delivery_id,
    encode_descriptor,
    transition,
)

__all__ = [
    "DeadLetterError",
    "DeadLetterReason",
    "DeadLetterRecord",
    "DeadLetterSink",
    "InMemoryDeadLetterSink",
    "JsonlDeadLetterSink",
    "Delivery",
    "DeliveryState",
    "DescriptorDecodeError",
    "InvalidTransitionError",
    "WebhookEvent",
    "decode_descriptor",
    "derive_delivery_id",
    "encode_descriptor",
    "transition",
]
