"""
Analytics for ingested usage events.

- Cache-aside dashboard aggregations
- Retention, funnel, session and screen computations
- AI cost tracking
- Scheduled hourly/daily/weekly roll-ups
"""

from .models import AggregationResult, DateRange, Granularity
from .cache_policy import CachePolicy
from .aggregations import AggregationEngine
from .cost_monitor import CostMonitor, CostBreakdown, TrackedCost, MODEL_PRICING
from .metrics_aggregator import MetricsAggregator, RollupResult

__all__ = [
    # Models
    'AggregationResult',
    'DateRange',
    'Granularity',

    # Aggregations
    'CachePolicy',
    'AggregationEngine',

    # Costs
    'CostMonitor',
    'CostBreakdown',
    'TrackedCost',
    'MODEL_PRICING',

    # Roll-ups
    'MetricsAggregator',
    'RollupResult',
]
