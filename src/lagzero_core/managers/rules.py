"""
Process-name rule coordinator for LagZero Core.

Keeps the managed routing/DNS rules of the persisted core configuration in
sync with a set of process names. Every update runs on one serial queue so
two updates never read-modify-write the document at the same time; a
supervised restart is requested only when the stored set actually changed.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiofiles

from .base import BaseManager, ManagerConfig
from .supervisor import CoreSupervisor
from ..core.process_names import normalize_process_names
from ..core.rule_fragment import apply_process_names, managed_process_names
from ..utils.config import RulesConfig
from ..utils.logging import get_logger
from ..utils.notifications import EventBus, EventCategory
from ..utils.serial_queue import SerialTaskQueue


logger = get_logger("lagzero.rules")


class RuleUpdateCoordinator(BaseManager[RulesConfig]):
    """Serializes process-name rule updates and triggers restarts."""

    category = EventCategory.RULES

    def __init__(
        self,
        settings: RulesConfig,
        events: EventBus,
        supervisor: CoreSupervisor,
    ):
        super().__init__(ManagerConfig(name="rules"), settings, events)
        self.supervisor = supervisor
        self.updates = SerialTaskQueue("rules")
        self.update_count = 0
        self.restart_count = 0
        self._last_names: List[str] = []

    async def update_process_names(self, names: Iterable[str]) -> bool:
        """
        Point the managed rules at ``names``.

        Calls are applied one at a time in call order. Nothing happens when
        the normalized set is empty or the core is not running.

        Returns:
            True when the document was rewritten and a restart was requested
        """
        return await self.updates.submit(self._apply, list(names))

    async def _apply(self, names: List[str]) -> bool:
        normalized = normalize_process_names(names)
        if not normalized:
            logger.debug("rule_update_skipped", reason="empty")
            return False

        if not self.supervisor.is_running:
            logger.debug("rule_update_skipped", reason="core_not_running", names=len(normalized))
            return False

        config_path = self.supervisor.process_state.config_path
        if config_path is None:
            return False

        document = await self._load_document(config_path)
        if document is None:
            return False

        update = apply_process_names(
            document,
            normalized,
            remote_dns_tag=self.settings.remote_dns_tag,
            outbound=self.settings.proxy_outbound,
        )
        if not update.changed:
            logger.debug("rule_update_unchanged", names=len(normalized))
            return False

        await self._write_document(config_path, document)
        self.update_count += 1
        self._last_names = normalized
        logger.info(
            "rules_updated",
            names=len(normalized),
            route_changed=update.route_changed,
            dns_changed=update.dns_changed,
        )
        self._notify_event("rules_updated", {
            "config_path": str(config_path),
            "process_names": normalized,
            "route_changed": update.route_changed,
            "dns_changed": update.dns_changed,
            "dns_managed": update.dns_managed,
        })

        # Enqueued on the lifecycle queue behind any pending manual action
        self.restart_count += 1
        await self.supervisor.restart(config_path)
        return True

    async def _load_document(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                content = await f.read()
        except FileNotFoundError:
            logger.warning("core_config_missing", path=str(path))
            return None

        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error("core_config_unreadable", path=str(path), error=str(e))
            return None

        if not isinstance(document, dict):
            logger.error("core_config_unreadable", path=str(path), error="top level is not an object")
            return None
        return document

    async def _write_document(self, path: Path, document: Dict[str, Any]) -> None:
        temp_path = path.with_name(f".{path.name}.tmp")
        async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(document, indent=2, ensure_ascii=False))
        os.replace(temp_path, path)

    async def current_process_names(self) -> List[str]:
        """Names held by the managed routing rule of the persisted document."""
        path = self.supervisor.process_state.config_path
        if path is None:
            return []
        document = await self._load_document(path)
        if document is None:
            return []
        return managed_process_names(document, self.settings.proxy_outbound)

    async def _initialize(self) -> None:
        pass

    async def _shutdown(self) -> None:
        await self.updates.close()

    async def _health_check(self) -> Dict[str, Any]:
        return {
            "pending_updates": self.updates.pending,
            "update_count": self.update_count,
            "restart_count": self.restart_count,
            "managed_names": len(self._last_names),
        }


__all__ = [
    'RuleUpdateCoordinator',
]
