"""
In-process notification bus.

Components publish lifecycle notifications (buffer flushes, completed
exports, weekly reports, shutdown phases) and interested parties subscribe
by category or event name.
"""

from typing import Optional, Dict, Any, List, Callable, Set, Union
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import asyncio

from .logging import get_logger


logger = get_logger("usage-analytics.notifications")


class EventPriority(Enum):
    """Notification priority levels."""
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


class EventCategory(Enum):
    """Notification categories for routing."""
    SYSTEM = "system"
    INGESTION = "ingestion"
    ANALYTICS = "analytics"
    EXPORT = "export"
    ERROR = "error"


@dataclass
class Notification:
    """Notification data structure."""
    name: str
    category: EventCategory
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.utcnow)
    priority: EventPriority = EventPriority.NORMAL
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "category": self.category.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "priority": self.priority.value,
            "source": self.source,
        }


@dataclass
class Subscription:
    """Notification subscription."""
    handler: Callable[[Notification], Any]
    categories: Optional[Set[EventCategory]] = None
    event_names: Optional[Set[str]] = None
    priority_min: EventPriority = EventPriority.LOW
    is_async: bool = True

    def matches(self, notification: Notification) -> bool:
        """Check if subscription matches a notification."""
        if notification.priority.value < self.priority_min.value:
            return False
        if self.categories and notification.category not in self.categories:
            return False
        if self.event_names and notification.name not in self.event_names:
            return False
        return True


class EventBus:
    """Central bus for notifications.

    Handlers run inline with ``emit``; a failing handler is logged and never
    affects the publisher.
    """

    def __init__(self, max_history: int = 1000):
        self._subscriptions: List[Subscription] = []
        self._history: List[Notification] = []
        self._max_history = max_history

    def subscribe(
        self,
        handler: Callable[[Notification], Any],
        categories: Optional[Union[EventCategory, List[EventCategory]]] = None,
        event_names: Optional[Union[str, List[str]]] = None,
        priority_min: EventPriority = EventPriority.LOW,
    ) -> Subscription:
        """
        Subscribe to notifications.

        Args:
            handler: Handler function, sync or async
            categories: Categories to subscribe to
            event_names: Specific notification names to subscribe to
            priority_min: Minimum priority level

        Returns:
            Subscription object
        """
        if isinstance(categories, EventCategory):
            categories = {categories}
        elif isinstance(categories, list):
            categories = set(categories)

        if isinstance(event_names, str):
            event_names = {event_names}
        elif isinstance(event_names, list):
            event_names = set(event_names)

        subscription = Subscription(
            handler=handler,
            categories=categories,
            event_names=event_names,
            priority_min=priority_min,
            is_async=asyncio.iscoroutinefunction(handler),
        )
        self._subscriptions.append(subscription)

        logger.debug(
            "subscription_added",
            categories=[c.value for c in categories] if categories else None,
            event_names=sorted(event_names) if event_names else None,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a subscription; returns False if it was not registered."""
        try:
            self._subscriptions.remove(subscription)
            return True
        except ValueError:
            return False

    async def emit(
        self,
        name: str,
        category: EventCategory,
        data: Dict[str, Any],
        priority: EventPriority = EventPriority.NORMAL,
        source: Optional[str] = None,
    ) -> Notification:
        """Publish a notification to every matching subscriber."""
        notification = Notification(
            name=name,
            category=category,
            data=data,
            priority=priority,
            source=source,
        )

        self._history.append(notification)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        for subscription in [s for s in self._subscriptions if s.matches(notification)]:
            try:
                if subscription.is_async:
                    await subscription.handler(notification)
                else:
                    subscription.handler(notification)
            except Exception as e:
                logger.error(
                    "notification_handler_error",
                    handler=getattr(subscription.handler, '__name__', 'unknown'),
                    notification=name,
                    error=str(e),
                )

        logger.debug("notification_emitted", notification=name, category=category.value)
        return notification

    def get_history(
        self,
        category: Optional[EventCategory] = None,
        event_name: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Notification]:
        """Return recorded notifications, oldest first."""
        notifications = self._history
        if category:
            notifications = [n for n in notifications if n.category == category]
        if event_name:
            notifications = [n for n in notifications if n.name == event_name]
        if limit:
            notifications = notifications[-limit:]
        return list(notifications)

    def clear(self) -> None:
        """Drop subscriptions and history."""
        self._subscriptions.clear()
        self._history.clear()


_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get global event bus instance."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


__all__ = [
    'Notification',
    'EventCategory',
    'EventPriority',
    'EventBus',
    'Subscription',
    'get_event_bus',
]
