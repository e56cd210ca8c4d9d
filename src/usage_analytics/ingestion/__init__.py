"""
Ingestion pipeline for client telemetry.

Batches are validated, rate limited per project, enriched, buffered per
project and flushed to the configured storage adapter.
"""

from .rate_limiter import RateLimiter, RateLimitInfo
from .enrichment import Enricher, GeoResolver, NullGeoResolver, StaticGeoResolver, is_private_ip
from .buffer import BufferManager
from .service import IngestionService, IngestionResult, IngestionError

__all__ = [
    'RateLimiter',
    'RateLimitInfo',
    'Enricher',
    'GeoResolver',
    'NullGeoResolver',
    'StaticGeoResolver',
    'is_private_ip',
    'BufferManager',
    'IngestionService',
    'IngestionResult',
    'IngestionError',
]
