"""
Base manager abstract class for LagZero Core.

This module provides the foundation for all manager components with:
- Common initialization and shutdown patterns
- Event bus notifications
- Background task ownership
- Health checking
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Coroutine, TypeVar, Generic
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from ..utils.logging import get_logger
from ..utils.notifications import EventBus, EventCategory, EventPriority


T = TypeVar('T')


class ManagerState(Enum):
    """Manager lifecycle states."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class ManagerError(Exception):
    """Base exception for manager lifecycle errors."""
    pass


@dataclass
class ManagerConfig:
    """Base configuration for all managers."""
    name: str
    enable_notifications: bool = True
    custom_config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthStatus:
    """Health status information."""
    healthy: bool
    last_check: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "last_check": self.last_check.isoformat(),
            "details": self.details,
            "error": self.error,
        }


class BaseManager(ABC, Generic[T]):
    """
    Abstract base class for all manager components.

    ``T`` is the manager's settings model. Provides common functionality for:
    - Lifecycle management
    - Event notifications
    - Background task tracking
    - Health reporting
    """

    category: EventCategory = EventCategory.SYSTEM

    def __init__(self, config: ManagerConfig, settings: T, events: EventBus):
        self.config = config
        self.settings = settings
        self.events = events
        self.logger = get_logger(f"lagzero.managers.{config.name}")
        self.state = ManagerState.UNINITIALIZED
        self._health_status = HealthStatus(healthy=True, last_check=datetime.utcnow())
        self._tasks: List[asyncio.Task] = []

    async def initialize(self) -> None:
        """Run component setup and transition to READY."""
        if self.state not in (ManagerState.UNINITIALIZED, ManagerState.STOPPED):
            raise ManagerError(f"Cannot initialize {self.config.name} from state: {self.state.value}")

        self.state = ManagerState.INITIALIZING
        self.logger.info("initializing_manager", manager=self.config.name)

        try:
            await self._initialize()
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("initialization_failed", error=str(e), exc_info=True)
            raise ManagerError(f"Failed to initialize {self.config.name}: {e}") from e

        self.state = ManagerState.READY
        self.logger.info("manager_initialized", manager=self.config.name)
        self._notify_event("manager_initialized", {"manager": self.config.name}, EventCategory.SYSTEM)

    async def shutdown(self) -> None:
        """Stop component work, cancel owned tasks and transition to STOPPED."""
        if self.state in (ManagerState.UNINITIALIZED, ManagerState.STOPPED):
            return

        self.state = ManagerState.STOPPING
        self.logger.info("stopping_manager", manager=self.config.name)

        try:
            await self._shutdown()
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("shutdown_failed", error=str(e), exc_info=True)
            raise ManagerError(f"Failed to stop {self.config.name}: {e}") from e
        finally:
            await self._cancel_tasks()

        self.state = ManagerState.STOPPED
        self.logger.info("manager_stopped", manager=self.config.name)
        self._notify_event("manager_shutdown", {"manager": self.config.name}, EventCategory.SYSTEM)

    async def health_check(self) -> HealthStatus:
        """Return current health; never raises."""
        try:
            details = await self._health_check()
            details.setdefault("state", self.state.value)
            self._health_status = HealthStatus(
                healthy=self.state == ManagerState.READY,
                last_check=datetime.utcnow(),
                details=details
            )
        except Exception as e:
            self._health_status = HealthStatus(
                healthy=False,
                last_check=datetime.utcnow(),
                error=str(e)
            )
            self.logger.error("health_check_failed", error=str(e))

        return self._health_status

    def _notify_event(
        self,
        name: str,
        data: Dict[str, Any],
        category: Optional[EventCategory] = None,
        priority: EventPriority = EventPriority.NORMAL,
    ) -> None:
        """Publish an event on the shared bus."""
        if not self.config.enable_notifications:
            return
        self.events.emit(
            name,
            category or self.category,
            data,
            priority=priority,
            source=self.config.name,
        )

    def _spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Start a background task owned by this manager."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.append(task)
        task.add_done_callback(self._forget_task)
        return task

    def _forget_task(self, task: asyncio.Task) -> None:
        try:
            self._tasks.remove(task)
        except ValueError:
            pass
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(
                "background_task_failed",
                task=task.get_name(),
                error=str(task.exception()),
            )

    async def _cancel_tasks(self) -> None:
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tasks.clear()

    # Abstract methods to be implemented by subclasses

    @abstractmethod
    async def _initialize(self) -> None:
        """Component-specific initialization logic."""
        pass

    @abstractmethod
    async def _shutdown(self) -> None:
        """Component-specific shutdown logic."""
        pass

    @abstractmethod
    async def _health_check(self) -> Dict[str, Any]:
        """Component-specific health details."""
        pass


__all__ = [
    'BaseManager',
    'ManagerConfig',
    'ManagerState',
    'ManagerError',
    'HealthStatus',
]
