"""
Schema for inbound event records.

Events arrive as JSON objects, one per line. The payload is opaque to
the engine; it is carried as text or base64 and delivered as bytes.
"""

import base64
import binascii
import hashlib
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..webhooks.events import WebhookEvent


class IngestError(Exception):
    """Raised when an ingestion record cannot be turned into an event."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class IngestRecord(BaseModel):
    """One inbound event as it appears on the event transport."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event_type: str = Field(..., min_length=1, alias="eventType")
    payload: str = ""
    event_id: Optional[str] = Field(None, alias="eventId")
    payload_encoding: Literal["utf-8", "base64"] = Field("utf-8", alias="payloadEncoding")

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("event_type cannot be blank")
        return v

    @field_validator("event_id")
    @classmethod
    def validate_event_id(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            raise ValueError("event_id cannot be blank")
        return v

    def payload_bytes(self) -> bytes:
        if self.payload_encoding == "base64":
            try:
                return base64.b64decode(self.payload, validate=True)
            except (binascii.Error, ValueError) as e:
                raise IngestError(f"Payload is not valid base64: {e}", original_error=e)
        return self.payload.encode("utf-8")

    def to_event(self, derive_event_id: bool = False) -> WebhookEvent:
        """
        Build the engine's event.

        Receivers deduplicate on the event id, so a record without one is
        rejected unless ``derive_event_id`` is set. A derived id comes from
        the event type and payload: redelivery of the same record keeps its
        identity, but two distinct occurrences with identical bodies collapse
        into one.

        Raises:
            IngestError: If the record has no event id and none may be derived
        """
        payload = self.payload_bytes()
        event_id = self.event_id
        if event_id is None:
            if not derive_event_id:
                raise IngestError("Ingestion record has no event_id")
            digest = hashlib.sha256()
            digest.update(self.event_type.encode("utf-8"))
            digest.update(b"\x1f")
            digest.update(payload)
            event_id = f"evt_{digest.hexdigest()[:32]}"
        return WebhookEvent(event_type=self.event_type, payload=payload, event_id=event_id)


def parse_ingest_record(data: Dict[str, Any], derive_event_id: bool = False) -> WebhookEvent:
    """Validate a decoded JSON object and return the event it describes."""
    try:
        record = IngestRecord.model_validate(data)
    except ValidationError as e:
        raise IngestError(f"Invalid ingestion record: {e}", original_error=e)
    return record.to_event(derive_event_id=derive_event_id)
