"""
Service wiring.

``build_context`` turns a loaded configuration into the running set of
components and registers each of them with the shutdown manager in the
order they must stop: stop ingesting, drain exports and buffers, then close
connections.
"""

from dataclasses import dataclass, field
from typing import Optional

from ..analytics.aggregations import AggregationEngine
from ..analytics.cache_policy import CachePolicy
from ..analytics.cost_monitor import CostMonitor
from ..analytics.metrics_aggregator import MetricsAggregator
from ..export.object_store import ObjectStore, create_object_store
from ..export.service import ExportService
from ..ingestion.enrichment import GeoResolver
from ..ingestion.service import IngestionService
from ..storage.adapters import SQLiteAdapter, create_storage_adapter
from ..storage.cache import CacheStore, create_cache_store
from ..utils.config import AnalyticsConfig
from ..utils.logging import get_logger
from ..utils.metrics import MetricsCollector, get_metrics_collector
from ..utils.notifications import EventBus, get_event_bus
from ..utils.shutdown import ShutdownManager, ShutdownPhase
from .auth import ApiKeyValidator, StaticApiKeyValidator

logger = get_logger("usage-analytics.api.context")


@dataclass
class AppContext:
    """Everything the HTTP handlers need."""
    config: AnalyticsConfig
    storage: object
    cache: CacheStore
    ingestion: IngestionService
    aggregations: AggregationEngine
    costs: CostMonitor
    rollups: MetricsAggregator
    exports: ExportService
    object_store: ObjectStore
    api_keys: ApiKeyValidator
    event_bus: EventBus
    metrics: MetricsCollector
    shutdown_manager: ShutdownManager = field(default_factory=ShutdownManager)

    async def close(self, reason: str = "app_cleanup") -> None:
        await self.shutdown_manager.shutdown(reason)


async def build_context(
    config: AnalyticsConfig,
    storage=None,
    cache: Optional[CacheStore] = None,
    object_store: Optional[ObjectStore] = None,
    api_keys: Optional[ApiKeyValidator] = None,
    geo_resolver: Optional[GeoResolver] = None,
    event_bus: Optional[EventBus] = None,
    metrics: Optional[MetricsCollector] = None
) -> AppContext:
    """
    Create every component from ``config``.

    Any collaborator may be passed in instead; tests use this to inject
    in-memory stores.
    """
    event_bus = event_bus or get_event_bus()
    metrics = metrics or get_metrics_collector()

    if storage is None:
        storage = create_storage_adapter(
            config.storage.backend,
            str(config.storage.path),
            config.storage.memory_max_size,
        )
    if isinstance(storage, SQLiteAdapter):
        await storage.initialize()

    cache = cache or create_cache_store(config.cache.backend, config.cache.redis_url)
    object_store = object_store or create_object_store(
        config.export.object_store,
        config.export.local_root,
        config.export.base_url,
        config.export.signing_secret,
    )
    api_keys = api_keys or StaticApiKeyValidator(config.api.api_keys)

    aggregations = AggregationEngine(
        storage,
        cache,
        policy=CachePolicy(config.aggregation.cache_prefix, config.aggregation.ttl_overrides),
        metrics=metrics,
        default_retention_days=config.aggregation.default_retention_days,
    )
    context = AppContext(
        config=config,
        storage=storage,
        cache=cache,
        ingestion=IngestionService(
            storage, cache, config.ingestion, geo_resolver=geo_resolver, metrics=metrics
        ),
        aggregations=aggregations,
        costs=CostMonitor(cache, ttl_days=config.costs.ttl_days, metrics=metrics),
        rollups=MetricsAggregator(storage, cache, event_bus=event_bus),
        exports=ExportService(
            aggregations, cache, object_store, config.export, event_bus=event_bus, metrics=metrics
        ),
        object_store=object_store,
        api_keys=api_keys,
        event_bus=event_bus,
        metrics=metrics,
        shutdown_manager=ShutdownManager(event_bus=event_bus),
    )

    manager = context.shutdown_manager
    # Buffered events are flushed before exports get their bounded drain
    drain_timeout = config.export.drain_timeout_seconds
    manager.register_component("ingestion", context.ingestion.shutdown, ShutdownPhase.STOP_WORKERS)
    manager.register_component(
        "exports",
        lambda: context.exports.shutdown(drain_timeout),
        ShutdownPhase.STOP_WORKERS,
        timeout=drain_timeout + 5,
    )
    manager.register_component("storage", storage.close, ShutdownPhase.CLOSE_CONNECTIONS)
    manager.register_component("cache", cache.close, ShutdownPhase.CLOSE_CONNECTIONS)

    logger.info(
        "context_built",
        storage=config.storage.backend,
        cache=config.cache.backend,
        object_store=config.export.object_store,
    )
    return context
