"""
Usage Analytics - event ingestion and analytics service for mobile apps.

This package provides:
- Batched event ingestion with validation, rate limiting and enrichment
- Cached dashboard aggregations (overview, DAU/MAU, retention, funnels)
- AI generation cost tracking and scheduled metric roll-ups
- Asynchronous report exports (CSV, JSON, PDF, XLSX)
"""

__version__ = "0.1.0"

__all__ = [
    '__version__',
]
