"""Structural validation of untrusted sync payloads."""

import logging
from typing import Any
from pydantic import ValidationError

from .events import EVENT_MODELS, AnySyncEvent


logger = logging.getLogger(__name__)


class ValidationRejected(Exception):
    """Payload does not match the model for its event tag"""

    def __init__(self, event_type: str, reason: str):
        super().__init__(f"{event_type}: {reason}")
        self.event_type = event_type
        self.reason = reason


class UnknownEventType(Exception):
    """Event tag is not part of the sync protocol"""

    def __init__(self, event_type: Any):
        super().__init__(f"Unknown sync event type: {event_type!r}")
        self.event_type = event_type


def validate_sync_event(event_type: str, payload: Any) -> AnySyncEvent:
    """
    Turn an untrusted payload into a typed event.

    The tag the payload arrived under wins over any "type" field inside it.

    Args:
        event_type: Event tag from the channel frame
        payload: Decoded JSON payload

    Returns:
        Typed sync event

    Raises:
        UnknownEventType: If the tag is not a sync event
        ValidationRejected: If the payload is malformed
    """
    model = EVENT_MODELS.get(event_type) if isinstance(event_type, str) else None
    if model is None:
        raise UnknownEventType(event_type)
    if not isinstance(payload, dict):
        raise ValidationRejected(event_type, "payload is not an object")

    try:
        return model.model_validate({**payload, 'type': event_type})
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err['loc']) or "payload" for err in e.errors())
        raise ValidationRejected(event_type, f"invalid fields: {fields}") from None
