"""
Notification system for LagZero Core.

This module provides the observer interface between the core managers and
the surrounding application:
- Publish/subscribe pattern
- Synchronous delivery on state transitions
- Coroutine handlers scheduled as tasks
- Event filtering by category, name and predicate
- Bounded event history
"""

from typing import Optional, Dict, Any, List, Callable, Set, Union
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import asyncio

from .logging import get_logger


logger = get_logger("lagzero.notifications")


class EventPriority(Enum):
    """Event priority levels."""
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


class EventCategory(Enum):
    """Event categories for routing."""
    INSTALLER = "installer"
    CORE = "core"
    RULES = "rules"
    MONITOR = "monitor"
    LOG = "log"
    ERROR = "error"
    SYSTEM = "system"


@dataclass
class Event:
    """Event data structure."""
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
    """Event subscription."""
    handler: Callable[[Event], Any]
    categories: Optional[Set[EventCategory]] = None
    event_names: Optional[Set[str]] = None
    priority_min: EventPriority = EventPriority.LOW
    is_async: bool = False
    filter_func: Optional[Callable[[Event], bool]] = None

    def matches(self, event: Event) -> bool:
        """Check if subscription matches event."""
        if event.priority.value < self.priority_min.value:
            return False

        if self.categories and event.category not in self.categories:
            return False

        if self.event_names and event.name not in self.event_names:
            return False

        if self.filter_func and not self.filter_func(event):
            return False

        return True


class EventBus:
    """Event bus shared by the managers of one core session."""

    def __init__(self, max_history: int = 1000):
        self._subscriptions: List[Subscription] = []
        self._event_history: List[Event] = []
        self._max_history = max_history
        self._pending: Set[asyncio.Task] = set()

    def subscribe(
        self,
        handler: Callable[[Event], Any],
        categories: Optional[Union[EventCategory, List[EventCategory]]] = None,
        event_names: Optional[Union[str, List[str]]] = None,
        priority_min: EventPriority = EventPriority.LOW,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Subscription:
        """
        Subscribe to events.

        Args:
            handler: Event handler, plain function or coroutine function
            categories: Event categories to subscribe to
            event_names: Specific event names to subscribe to
            priority_min: Minimum priority level
            filter_func: Custom filter function

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
            filter_func=filter_func,
        )
        self._subscriptions.append(subscription)

        logger.debug(
            "subscription_added",
            categories=[c.value for c in categories] if categories else None,
            event_names=sorted(event_names) if event_names else None,
            handler=getattr(handler, '__name__', str(handler))
        )

        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a subscription. Returns False if it was not registered."""
        try:
            self._subscriptions.remove(subscription)
            return True
        except ValueError:
            return False

    def emit(
        self,
        name: str,
        category: EventCategory,
        data: Optional[Dict[str, Any]] = None,
        priority: EventPriority = EventPriority.NORMAL,
        source: Optional[str] = None,
    ) -> Event:
        """
        Emit an event to all matching subscribers.

        Plain handlers run before this returns. Coroutine handlers are
        scheduled on the running loop; handler failures are logged and
        never reach the emitter.
        """
        event = Event(
            name=name,
            category=category,
            data=data or {},
            priority=priority,
            source=source,
        )
        self._add_to_history(event)

        for subscription in list(self._subscriptions):
            try:
                if not subscription.matches(event):
                    continue
                if subscription.is_async:
                    task = asyncio.get_running_loop().create_task(
                        self._call_async_handler(subscription.handler, event)
                    )
                    self._pending.add(task)
                    task.add_done_callback(self._pending.discard)
                else:
                    subscription.handler(event)
            except Exception as e:
                logger.error(
                    "handler_dispatch_error",
                    handler=getattr(subscription.handler, '__name__', 'unknown'),
                    event_name=event.name,
                    error=str(e),
                    exc_info=True
                )

        return event

    async def _call_async_handler(
        self,
        handler: Callable[[Event], Any],
        event: Event
    ) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error(
                "async_handler_error",
                handler=getattr(handler, '__name__', 'unknown'),
                event_name=event.name,
                error=str(e),
                exc_info=True
            )

    def _add_to_history(self, event: Event) -> None:
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history:]

    def get_history(
        self,
        category: Optional[EventCategory] = None,
        event_name: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Event]:
        """
        Get event history.

        Args:
            category: Filter by category
            event_name: Filter by event name
            since: Filter by timestamp
            limit: Maximum events to return

        Returns:
            List of events, oldest first
        """
        events = self._event_history

        if category:
            events = [e for e in events if e.category == category]

        if event_name:
            events = [e for e in events if e.name == event_name]

        if since:
            events = [e for e in events if e.timestamp >= since]

        if limit:
            events = events[-limit:]

        return list(events)

    async def wait_for(
        self,
        event_name: str,
        category: Optional[EventCategory] = None,
        timeout: Optional[float] = None,
        filter_func: Optional[Callable[[Event], bool]] = None
    ) -> Optional[Event]:
        """
        Wait for a specific event.

        Returns:
            Event if received, None if timeout
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def handler(event: Event) -> None:
            if not future.done():
                future.set_result(event)

        subscription = self.subscribe(
            handler=handler,
            event_names=[event_name],
            categories=[category] if category else None,
            filter_func=filter_func,
        )

        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self.unsubscribe(subscription)

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def shutdown(self) -> None:
        """Shutdown event bus."""
        await self.drain()
        self._subscriptions.clear()
        self._event_history.clear()
        logger.info("event_bus_shutdown")


__all__ = [
    'Event',
    'EventCategory',
    'EventPriority',
    'EventBus',
    'Subscription',
]
