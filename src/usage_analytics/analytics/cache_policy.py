"""
Cache keys and TTLs for dashboard metrics.
"""

import hashlib
import json
from typing import Dict, Optional, Any

from .models import DateRange

DEFAULT_PREFIX = "analytics:dashboard"

# Seconds; slower-moving and more expensive metrics live longer
DEFAULT_TTLS: Dict[str, int] = {
    "overview": 300,
    "dau": 300,
    "mau": 300,
    "events": 300,
    "sessions": 600,
    "screens": 600,
    "retention": 3600,
    "funnel": 600,
}


class CachePolicy:
    """Maps a metric to its cache key and time-to-live."""

    def __init__(
        self,
        prefix: str = DEFAULT_PREFIX,
        ttl_overrides: Optional[Dict[str, int]] = None
    ):
        self.prefix = prefix
        self.ttls = dict(DEFAULT_TTLS)
        self.ttls.update(ttl_overrides or {})

    def ttl(self, metric: str) -> int:
        return self.ttls.get(metric, DEFAULT_TTLS["overview"])

    def key(
        self,
        metric: str,
        project_id: str,
        date_range: DateRange,
        params: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Deterministic key for a metric query.

        The suffix is the range granularity, or a short digest of the extra
        parameters when the query has any (funnel steps, retention offsets).
        """
        base = f"{self.prefix}:{metric}:{project_id}:{date_range.key()}"
        if not params:
            return base
        canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
        digest = hashlib.sha256(canonical.encode()).hexdigest()[:16]
        return f"{base}:{digest}"
