"""
Process-tree monitor for LagZero Core.

Polls the OS process tree while a session is active and applies the chain
proxy policy: every descendant of a monitored process is monitored too.
Newly discovered names are merged into the session and the full set is
pushed to the rule coordinator.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .base import BaseManager, ManagerConfig
from .rules import RuleUpdateCoordinator
from ..core.process_names import name_key, normalize_process_names
from ..core.process_tree import (
    ProcessTreeProvider,
    PsutilProcessTreeProvider,
    find_chain_proxy_children,
)
from ..utils.config import MonitorConfig
from ..utils.logging import get_logger
from ..utils.notifications import EventBus, EventCategory


logger = get_logger("lagzero.monitor")


@dataclass
class MonitorSession:
    """State of one monitoring session."""
    session_id: str
    # Insertion ordered; original casing kept next to lowercase variants
    monitored: Dict[str, None] = field(default_factory=dict)
    detected_children: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    ticks: int = 0

    @property
    def monitored_names(self) -> List[str]:
        return list(self.monitored)

    def is_monitored(self, name: str) -> bool:
        key = name_key(name)
        return any(name_key(existing) == key for existing in self.monitored)

    def add(self, names: Iterable[str]) -> List[str]:
        """Add names not already present; return the ones added."""
        added = []
        for name in names:
            if name not in self.monitored:
                self.monitored[name] = None
                added.append(name)
        return added

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "monitored_names": self.monitored_names,
            "detected_children": list(self.detected_children),
            "started_at": self.started_at.isoformat(),
            "ticks": self.ticks,
        }


class ProcessTreeMonitor(BaseManager[MonitorConfig]):
    """Chain-proxy detection over periodic process-tree snapshots."""

    category = EventCategory.MONITOR

    def __init__(
        self,
        settings: MonitorConfig,
        events: EventBus,
        rules: RuleUpdateCoordinator,
        provider: Optional[ProcessTreeProvider] = None,
    ):
        super().__init__(ManagerConfig(name="monitor"), settings, events)
        self.rules = rules
        self.provider: ProcessTreeProvider = provider or PsutilProcessTreeProvider()
        self.session: Optional[MonitorSession] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def active_session_id(self) -> Optional[str]:
        return self.session.session_id if self.session else None

    @property
    def monitored_names(self) -> List[str]:
        return self.session.monitored_names if self.session else []

    async def start_monitoring(self, session_id: str, root_names: Iterable[str]) -> None:
        """
        Begin a new session, replacing any active one.

        The initial names are pushed to the rule coordinator right away and
        polling starts on the configured interval.
        """
        await self.stop_monitoring()

        session = MonitorSession(session_id=session_id)
        session.monitored = _keyed(normalize_process_names(root_names))
        self.session = session

        logger.info(
            "monitoring_started",
            session_id=session_id,
            names=session.monitored_names,
            interval=self.settings.poll_interval,
        )
        self._notify_event("monitor_status", {"status": "active", "session_id": session_id})

        self._spawn(self._push(session.monitored_names), name=f"monitor-seed:{session_id}")
        self._poll_task = self._spawn(self._poll(session_id), name=f"monitor-poll:{session_id}")

    async def stop_monitoring(self) -> None:
        """End the active session; a tick already in flight becomes a no-op."""
        task, self._poll_task = self._poll_task, None
        session, self.session = self.session, None

        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._notify_event("monitor_status", {"status": "idle"})
        if session is not None:
            logger.info(
                "monitoring_stopped",
                session_id=session.session_id,
                detected=len(session.detected_children),
            )

    async def _poll(self, session_id: str) -> None:
        while self.active_session_id == session_id:
            await asyncio.sleep(self.settings.poll_interval)
            try:
                await self.tick(session_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("monitor_tick_failed", session_id=session_id, error=str(e), exc_info=True)

    async def tick(self, session_id: Optional[str] = None) -> List[str]:
        """
        Run one detection pass.

        Returns:
            Names added to the session by this pass
        """
        session_id = session_id or self.active_session_id
        if session_id is None or self.active_session_id != session_id:
            return []

        forest = await self.provider.get_process_tree()

        # The session may have been stopped or replaced during the snapshot
        session = self.session
        if session is None or session.session_id != session_id:
            return []
        session.ticks += 1

        found = find_chain_proxy_children(forest, session.monitored_names)
        new_names = [
            name for name in normalize_process_names(found)
            if not session.is_monitored(name)
        ]
        if not new_names:
            return []

        added = session.add(new_names)
        session.detected_children.extend(added)
        logger.info("chain_proxy_detected", session_id=session_id, names=added)
        self._notify_event("monitor_detected", {"session_id": session_id, "names": added})

        await self._push(session.monitored_names)
        return added

    async def _push(self, names: List[str]) -> None:
        try:
            await self.rules.update_process_names(names)
        except Exception as e:
            logger.error("rule_push_failed", names=len(names), error=str(e))

    async def _initialize(self) -> None:
        pass

    async def _shutdown(self) -> None:
        await self.stop_monitoring()

    async def _health_check(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {
            "session_id": self.active_session_id,
            "polling": self._poll_task is not None and not self._poll_task.done(),
        }
        if self.session is not None:
            details.update({
                "monitored": len(self.session.monitored),
                "detected": len(self.session.detected_children),
                "ticks": self.session.ticks,
            })
        return details


def _keyed(names: Iterable[str]) -> Dict[str, None]:
    return dict.fromkeys(names)


__all__ = [
    'MonitorSession',
    'ProcessTreeMonitor',
]
