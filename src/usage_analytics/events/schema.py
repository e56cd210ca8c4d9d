"""
Typed event shapes for mobile usage telemetry.

Wire format is camelCase JSON; models expose snake_case attributes and
accept either spelling on input.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..utils.errors import ValidationError


class Platform(str, Enum):
    """Client platforms."""
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


class NetworkType(str, Enum):
    """Client network connectivity."""
    WIFI = "wifi"
    CELLULAR = "cellular"
    NONE = "none"
    UNKNOWN = "unknown"


class WireModel(BaseModel):
    """Base model with camelCase aliases."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with camelCase keys and JSON-compatible values."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DeviceInfo(WireModel):
    """Device details reported by the SDK."""
    platform: Platform
    os_version: Optional[str] = None
    app_version: Optional[str] = None
    model: Optional[str] = None
    screen_width: Optional[int] = Field(default=None, gt=0)
    screen_height: Optional[int] = Field(default=None, gt=0)
    locale: Optional[str] = None
    timezone: Optional[str] = None
    network_type: Optional[NetworkType] = None


class GeoInfo(WireModel):
    """Resolved location of the client address."""
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class Event(WireModel):
    """A single telemetry event as sent by a client."""
    type: str = Field(min_length=1)
    event_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    session_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    timestamp: datetime
    properties: Dict[str, Any] = Field(default_factory=dict)
    device: Optional[DeviceInfo] = None
    geo: Optional[GeoInfo] = None

    @field_validator('timestamp')
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator('properties', mode='before')
    @classmethod
    def default_properties(cls, v):
        return {} if v is None else v


class EventBatch(WireModel):
    """Batch envelope; events stay raw until validated one by one."""
    batch_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    events: List[Any]
    created_at: datetime
    sdk_version: Optional[str] = None

    @field_validator('created_at')
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return _as_utc(v)


class EventMeta(WireModel):
    """Server-side enrichment provenance."""
    version: str = "1.0"
    enriched: bool = False
    errors: Optional[List[str]] = None


class EnrichedEvent(Event):
    """An event after server-side enrichment. Immutable."""
    received_at: datetime
    geo: GeoInfo = Field(default_factory=GeoInfo)
    meta: EventMeta = Field(default_factory=EventMeta, alias="_meta")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    @field_validator('received_at')
    @classmethod
    def normalize_received_at(cls, v: datetime) -> datetime:
        return _as_utc(v)


def _first_error(exc: PydanticValidationError) -> ValidationError:
    error = exc.errors()[0]
    field = ".".join(str(x) for x in error.get("loc", ())) or "body"
    return ValidationError(field=field, value=error.get("input"), constraint=error.get("msg", "invalid"))


def validate_event(raw: Any) -> Event:
    """Validate a raw event mapping, raising ValidationError on failure."""
    if isinstance(raw, Event):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(field="event", value=raw, constraint="must be an object")
    try:
        return Event.model_validate(raw)
    except PydanticValidationError as e:
        raise _first_error(e) from e


def validate_batch_envelope(raw: Any) -> EventBatch:
    """Validate the batch envelope without touching individual events."""
    if isinstance(raw, EventBatch):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(field="batch", value=raw, constraint="must be an object")
    try:
        return EventBatch.model_validate(raw)
    except PydanticValidationError as e:
        raise _first_error(e) from e


__all__ = [
    'Platform',
    'NetworkType',
    'DeviceInfo',
    'GeoInfo',
    'Event',
    'EventBatch',
    'EventMeta',
    'EnrichedEvent',
    'validate_event',
    'validate_batch_envelope',
]
