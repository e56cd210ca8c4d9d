"""
Server-side event enrichment.

Geo lookup is a pluggable capability. It is only consulted for public client
addresses, and a failed lookup marks the event as not enriched instead of
rejecting it.
"""

import ipaddress
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Dict, Callable, List

from ..events.schema import Event, EnrichedEvent, EventMeta, GeoInfo
from ..utils.logging import get_logger

logger = get_logger("usage-analytics.ingestion.enrichment")

GEO_ENRICHMENT_FAILED = "geo_enrichment_failed"

_PRIVATE_V4 = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
]


def is_private_ip(ip: str) -> bool:
    """Loopback and RFC 1918 ranges are private; unparsable input counts as private."""
    try:
        address = ipaddress.ip_address(ip.strip())
    except (ValueError, AttributeError):
        return True
    if address.version == 4:
        return any(address in network for network in _PRIVATE_V4)
    if address.ipv4_mapped is not None:
        return is_private_ip(str(address.ipv4_mapped))
    return address.is_loopback or address.is_link_local or address.is_private


class GeoResolver(ABC):
    """Resolves a public IP address to a location."""

    @abstractmethod
    async def lookup(self, ip: str) -> Optional[GeoInfo]:
        """Return the location, or None when it cannot be resolved."""


class NullGeoResolver(GeoResolver):
    """Resolver for deployments without a geo database."""

    async def lookup(self, ip: str) -> Optional[GeoInfo]:
        return None


class StaticGeoResolver(GeoResolver):
    """Resolver over a fixed ``ip -> GeoInfo`` mapping."""

    def __init__(self, mapping: Dict[str, GeoInfo]):
        self.mapping = dict(mapping)

    async def lookup(self, ip: str) -> Optional[GeoInfo]:
        return self.mapping.get(ip)


class Enricher:
    """Turns a validated event into an immutable enriched event."""

    def __init__(
        self,
        geo_resolver: Optional[GeoResolver] = None,
        enable_geo: bool = True,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.geo_resolver = geo_resolver or NullGeoResolver()
        self.enable_geo = enable_geo
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def enrich(self, event: Event, client_ip: Optional[str] = None) -> EnrichedEvent:
        errors: List[str] = []
        geo = GeoInfo()
        enriched = False

        if self.enable_geo and client_ip and not is_private_ip(client_ip):
            try:
                resolved = await self.geo_resolver.lookup(client_ip)
            except Exception as e:
                logger.warning("geo_lookup_failed", event_id=event.event_id, error=str(e))
                resolved = None
            if resolved is None:
                errors.append(GEO_ENRICHMENT_FAILED)
            else:
                geo = resolved
                enriched = True

        data = event.model_dump()
        data.update(
            received_at=self.clock(),
            geo=geo,
            meta=EventMeta(enriched=enriched, errors=errors or None),
        )
        return EnrichedEvent.model_validate(data)
