from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from billing_webhooks.core.exceptions import InvalidPayloadError


@dataclass(frozen=True)
class WebhookEnvelope:
    """Verified, parsed provider notification. Never mutated locally."""
    external_event_id: str
    event_type: str
    created_at: datetime
    object: Dict[str, Any] = field(default_factory=dict)

    @property
    def object_id(self) -> Optional[str]:
        return resolve_reference_id(self.object)


def resolve_reference_id(value: Any) -> Optional[str]:
    """
    Normalise a foreign-key field that may arrive either as a bare id
    ("sub_123") or as an expanded object ({"id": "sub_123", ...}).
    """
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        ref = value.get("id")
        if isinstance(ref, str) and ref:
            return ref
    return None


def from_timestamp(value: Any) -> datetime:
    """Provider timestamps are unix seconds."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidPayloadError("Invalid event timestamp")
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise InvalidPayloadError("Invalid event timestamp")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stores without timezone support hand back naive datetimes; they are UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def parse_envelope(event: Mapping[str, Any]) -> WebhookEnvelope:
    event_id = event.get("id")
    event_type = event.get("type")
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not event_type:
        raise InvalidPayloadError("Missing event id or type")

    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        obj = {}

    return WebhookEnvelope(
        external_event_id=event_id,
        event_type=event_type,
        created_at=from_timestamp(event.get("created")),
        object=dict(obj),
    )
