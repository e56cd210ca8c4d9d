"""
Test fixtures for usage analytics.
"""

from .event_fixtures import EventFixtures, FIXED_NOW, PROJECT_ID

__all__ = [
    "EventFixtures",
    "FIXED_NOW",
    "PROJECT_ID",
]
