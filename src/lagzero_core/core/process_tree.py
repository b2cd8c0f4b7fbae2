"""
Process tree model and chain-proxy detection.

This module provides:
- ProcessNode, a node of the OS process forest
- build_process_forest, turning flat (pid, ppid) records into a forest
- find_chain_proxy_children, the pure chain-proxy detection pass
- PsutilProcessTreeProvider, the default process-tree provider
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Protocol, Union

import psutil

from .process_names import name_key, normalize_process_name
from ..utils.logging import get_logger


logger = get_logger("lagzero.process_tree")


@dataclass
class ProcessNode:
    """One process in the OS process forest."""
    pid: int
    ppid: Optional[int]
    name: str
    path: str = ""
    children: List["ProcessNode"] = field(default_factory=list)

    def walk(self) -> Iterable["ProcessNode"]:
        """Pre-order iteration over this subtree."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "ppid": self.ppid,
            "name": self.name,
            "path": self.path,
            "children": [child.to_dict() for child in self.children],
        }


class ProcessTreeProvider(Protocol):
    """Anything that can return the current process forest."""

    async def get_process_tree(self) -> List[ProcessNode]:
        ...


Record = Union[ProcessNode, Mapping[str, Any]]


def _as_node(record: Record) -> Optional[ProcessNode]:
    if isinstance(record, ProcessNode):
        return ProcessNode(pid=record.pid, ppid=record.ppid, name=record.name, path=record.path)
    pid = record.get("pid")
    if not pid:
        return None
    ppid = record.get("ppid", record.get("parent_pid"))
    return ProcessNode(
        pid=int(pid),
        ppid=int(ppid) if ppid is not None else None,
        name=str(record.get("name") or ""),
        path=str(record.get("path") or record.get("exe") or ""),
    )


def build_process_forest(records: Iterable[Record]) -> List[ProcessNode]:
    """
    Link flat process records into a forest.

    A record whose parent pid is unknown, missing, or its own pid becomes
    a root. Records without a pid are dropped. Input order is kept among
    siblings and roots.
    """
    nodes: Dict[int, ProcessNode] = {}
    for record in records:
        node = _as_node(record)
        if node is not None:
            nodes[node.pid] = node

    roots: List[ProcessNode] = []
    for node in nodes.values():
        parent = nodes.get(node.ppid) if node.ppid else None
        if parent is None or parent is node:
            roots.append(node)
        else:
            parent.children.append(node)

    # A ppid cycle leaves nodes unreachable from any root; promote one per cycle
    reachable = {n.pid for root in roots for n in root.walk()}
    for node in nodes.values():
        if node.pid not in reachable:
            parent = nodes.get(node.ppid)
            if parent is not None and node in parent.children:
                parent.children.remove(node)
            roots.append(node)
            reachable.update(n.pid for n in node.walk())

    return roots


def find_chain_proxy_children(
    forest: Iterable[ProcessNode],
    monitored: Collection[str],
) -> List[str]:
    """
    Names of processes that should be proxied but are not monitored yet.

    A node should be proxied when its own name is monitored or its parent
    should be proxied. Names are returned normalized (bare filename,
    original casing), deduplicated in discovery order. Comparisons against
    ``monitored`` are case-insensitive.
    """
    monitored_keys = {name_key(n) for n in monitored}
    found: Dict[str, str] = {}

    stack = [(root, False) for root in reversed(list(forest))]
    while stack:
        node, parent_proxied = stack.pop()
        normalized = normalize_process_name(node.name)
        if not normalized:
            # Unreadable name: nothing to add, the subtree keeps the parent's state
            for child in reversed(node.children):
                stack.append((child, parent_proxied))
            continue

        key = normalized.casefold()
        is_monitored = key in monitored_keys
        should_proxy = parent_proxied or is_monitored

        if should_proxy and not is_monitored and key not in found:
            found[key] = normalized

        for child in reversed(node.children):
            stack.append((child, should_proxy))

    return list(found.values())


class PsutilProcessTreeProvider:
    """Process-tree provider backed by psutil."""

    def _snapshot(self) -> List[ProcessNode]:
        records = []
        for proc in psutil.process_iter(["pid", "ppid", "name", "exe"]):
            info = proc.info
            records.append({
                "pid": info.get("pid"),
                "ppid": info.get("ppid"),
                "name": info.get("name") or "",
                "exe": info.get("exe") or "",
            })
        return build_process_forest(records)

    async def get_process_tree(self) -> List[ProcessNode]:
        forest = await asyncio.to_thread(self._snapshot)
        logger.debug("process_tree_snapshot", roots=len(forest))
        return forest


__all__ = [
    'ProcessNode',
    'ProcessTreeProvider',
    'PsutilProcessTreeProvider',
    'build_process_forest',
    'find_chain_proxy_children',
]
