"""
LagZero Core application object.

One ``LagZeroCore`` is created per application session. It owns the event
bus and every manager and hands them to each other by reference.
"""

from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from .core.process_tree import ProcessTreeProvider
from .core.release_feed import PlatformTarget, ReleaseFeed
from .core.validator import ConfigValidator
from .managers.base import BaseManager
from .managers.installer import CoreInstaller
from .managers.monitor import ProcessTreeMonitor
from .managers.rules import RuleUpdateCoordinator
from .managers.supervisor import CoreSupervisor
from .utils.config import LagZeroSettings
from .utils.logging import get_logger
from .utils.notifications import EventBus


logger = get_logger("lagzero.app")


class LagZeroCore:
    """Wires the installer, supervisor, rule coordinator and monitor together."""

    def __init__(
        self,
        settings: Optional[LagZeroSettings] = None,
        events: Optional[EventBus] = None,
        feed: Optional[ReleaseFeed] = None,
        target: Optional[PlatformTarget] = None,
        provider: Optional[ProcessTreeProvider] = None,
        validator: Optional[ConfigValidator] = None,
    ):
        self.settings = settings or LagZeroSettings()
        self.events = events or EventBus()

        self.installer = CoreInstaller(self.settings.installer, self.events, feed=feed, target=target)
        self.validator = validator or ConfigValidator()
        self.supervisor = CoreSupervisor(
            self.settings.supervisor, self.events, self.installer, self.validator
        )
        self.rules = RuleUpdateCoordinator(self.settings.rules, self.events, self.supervisor)
        self.monitor = ProcessTreeMonitor(self.settings.monitor, self.events, self.rules, provider)

        self.initialized = False

    @property
    def managers(self) -> Dict[str, BaseManager]:
        """Managers in start order; shutdown runs in reverse."""
        return {
            'installer': self.installer,
            'supervisor': self.supervisor,
            'rules': self.rules,
            'monitor': self.monitor,
        }

    async def initialize(self) -> None:
        """Initialize all manager components."""
        if self.initialized:
            return

        logger.info("initializing_lagzero_core", data_dir=str(self.settings.data_dir))
        for name, manager in self.managers.items():
            await manager.initialize()
            logger.debug("manager_ready", manager=name)

        self.initialized = True
        logger.info("lagzero_core_initialized")

    async def shutdown(self) -> None:
        """Graceful shutdown: stop monitoring, then the core, then the rest."""
        if not self.initialized:
            return

        logger.info("shutting_down_lagzero_core")
        for name, manager in reversed(list(self.managers.items())):
            await manager.shutdown()
            logger.debug("manager_stopped", manager=name)

        await self.events.shutdown()
        self.initialized = False
        logger.info("lagzero_core_shutdown_complete")

    async def start_core(self, config_path: Optional[Union[str, Path]] = None) -> None:
        """Start the core with ``config_path`` or the configured document."""
        await self.supervisor.start(config_path or self.settings.core_config_path)

    async def stop_core(self) -> None:
        await self.supervisor.stop()

    async def start_monitoring(self, session_id: str, root_names: Iterable[str]) -> None:
        await self.monitor.start_monitoring(session_id, root_names)

    async def stop_monitoring(self) -> None:
        await self.monitor.stop_monitoring()

    async def health(self) -> Dict[str, Any]:
        """Health of every manager keyed by name."""
        report = {}
        for name, manager in self.managers.items():
            status = await manager.health_check()
            report[name] = status.to_dict()
        return report

    async def __aenter__(self) -> "LagZeroCore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()


__all__ = [
    'LagZeroCore',
]
