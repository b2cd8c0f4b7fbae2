"""
Managed process-name rule fragment of the core configuration document.

Only two rules in the document belong to LagZero:
- the routing rule ``{"process_name": [...], "outbound": "proxy"}``
- the DNS rule ``{"process_name": [...], "server": <remote tag>}``, managed
  only when ``dns.servers`` declares that remote tag

Both are found by shape, not position. Everything else in the document is
left as it was.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .process_names import same_name_set


@dataclass
class FragmentUpdate:
    """What ``apply_process_names`` changed."""
    route_changed: bool = False
    dns_changed: bool = False
    dns_managed: bool = False

    @property
    def changed(self) -> bool:
        return self.route_changed or self.dns_changed


def _section(document: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    value = document.get(key)
    return value if isinstance(value, dict) else None


def find_route_rule(document: Dict[str, Any], outbound: str = "proxy") -> Optional[Dict[str, Any]]:
    route = _section(document, "route")
    rules = route.get("rules") if route else None
    if not isinstance(rules, list):
        return None
    for rule in rules:
        if isinstance(rule, dict) and isinstance(rule.get("process_name"), list) \
                and rule.get("outbound") == outbound:
            return rule
    return None


def has_dns_server(document: Dict[str, Any], tag: str) -> bool:
    dns = _section(document, "dns")
    servers = dns.get("servers") if dns else None
    if not isinstance(servers, list):
        return False
    return any(isinstance(s, dict) and s.get("tag") == tag for s in servers)


def find_dns_rule(document: Dict[str, Any], server_tag: str) -> Optional[Dict[str, Any]]:
    dns = _section(document, "dns")
    rules = dns.get("rules") if dns else None
    if not isinstance(rules, list):
        return None
    for rule in rules:
        if isinstance(rule, dict) and isinstance(rule.get("process_name"), list) \
                and rule.get("server") == server_tag:
            return rule
    return None


def managed_process_names(document: Dict[str, Any], outbound: str = "proxy") -> List[str]:
    """Names currently held by the managed routing rule."""
    rule = find_route_rule(document, outbound)
    return [str(n) for n in rule["process_name"]] if rule else []


def apply_process_names(
    document: Dict[str, Any],
    names: Sequence[str],
    remote_dns_tag: str = "remote-primary",
    outbound: str = "proxy",
) -> FragmentUpdate:
    """
    Point the managed rules at ``names``, mutating ``document`` in place.

    A rule is rewritten only when its name set differs (ignoring order and
    case). A missing routing rule is appended to ``route.rules``; a missing
    DNS rule is inserted at the front of ``dns.rules``.
    """
    update = FragmentUpdate()
    names = list(names)

    rule = find_route_rule(document, outbound)
    if rule is not None:
        if not same_name_set(rule["process_name"], names):
            rule["process_name"] = list(names)
            update.route_changed = True
    else:
        route = _section(document, "route")
        if route is None:
            route = document["route"] = {}
        if not isinstance(route.get("rules"), list):
            route["rules"] = []
        route["rules"].append({"process_name": list(names), "outbound": outbound})
        update.route_changed = True

    if has_dns_server(document, remote_dns_tag):
        update.dns_managed = True
        dns_rule = find_dns_rule(document, remote_dns_tag)
        if dns_rule is not None:
            if not same_name_set(dns_rule["process_name"], names):
                dns_rule["process_name"] = list(names)
                update.dns_changed = True
        else:
            dns = document["dns"]
            if not isinstance(dns.get("rules"), list):
                dns["rules"] = []
            dns["rules"].insert(0, {"process_name": list(names), "server": remote_dns_tag})
            update.dns_changed = True

    return update


__all__ = [
    'FragmentUpdate',
    'apply_process_names',
    'find_route_rule',
    'find_dns_rule',
    'has_dns_server',
    'managed_process_names',
]
