"""
Storage layer: durable event adapters and the shared cache store.
"""

from .cache import CacheStore, InMemoryCacheStore, RedisCacheStore, create_cache_store
from .database import Database
from .adapters import (
    StorageAdapter,
    EventQueryStore,
    InMemoryAdapter,
    SQLiteAdapter,
    create_storage_adapter,
)

__all__ = [
    'CacheStore',
    'InMemoryCacheStore',
    'RedisCacheStore',
    'create_cache_store',
    'Database',
    'StorageAdapter',
    'EventQueryStore',
    'InMemoryAdapter',
    'SQLiteAdapter',
    'create_storage_adapter',
]
