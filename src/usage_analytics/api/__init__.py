"""
HTTP boundary: ingestion, dashboard, export, cost and health routes.
"""

from .app import create_app, error_middleware, main
from .auth import ApiKeyValidator, StaticApiKeyValidator
from .context import AppContext, build_context

__all__ = [
    'create_app',
    'error_middleware',
    'main',
    'ApiKeyValidator',
    'StaticApiKeyValidator',
    'AppContext',
    'build_context',
]
