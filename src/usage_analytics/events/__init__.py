"""
Event schema and validation.
"""

from .schema import (
    Platform,
    NetworkType,
    DeviceInfo,
    GeoInfo,
    Event,
    EventBatch,
    EventMeta,
    EnrichedEvent,
    validate_event,
    validate_batch_envelope,
)

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
