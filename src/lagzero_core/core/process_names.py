"""
Process image name normalization.

Rules match on bare executable names. Users type names with or without a
path, with any casing, and sometimes without the ``.exe`` suffix; these
helpers fold all of that into one canonical list.
"""

from typing import Iterable, List, Set


def normalize_process_name(name: str) -> str:
    """Strip whitespace and any directory prefix: ``C:\\Games\\x.exe`` -> ``x.exe``."""
    raw = str(name or "").strip()
    if not raw:
        return ""
    raw = raw.replace("\\", "/")
    return raw.rsplit("/", 1)[-1].strip()


def expand_process_aliases(name: str) -> List[str]:
    """``game`` also matches ``game.exe``; names with a dot or path are left alone."""
    value = str(name or "").strip()
    if not value:
        return []
    aliases = [value]
    if "." not in value and "/" not in value and "\\" not in value:
        aliases.append(f"{value}.exe")
    return aliases


def normalize_process_names(names: Iterable[str]) -> List[str]:
    """
    Normalize, alias-expand and dedupe ``names``.

    Each entry keeps its original casing and gains a lowercase sibling
    when that differs. First-seen order is preserved.
    """
    seen: dict = {}
    for item in names:
        normalized = normalize_process_name(item)
        if not normalized:
            continue
        for alias in expand_process_aliases(normalized):
            seen.setdefault(alias, None)
            seen.setdefault(alias.lower(), None)
    return list(seen)


def name_key(name: str) -> str:
    """Case-insensitive comparison key for a process name."""
    return normalize_process_name(name).casefold()


def name_keys(names: Iterable[str]) -> Set[str]:
    return {name_key(n) for n in names if name_key(n)}


def same_name_set(left: Iterable[str], right: Iterable[str]) -> bool:
    """Order- and case-insensitive set equality."""
    return name_keys(left) == name_keys(right)


__all__ = [
    'normalize_process_name',
    'expand_process_aliases',
    'normalize_process_names',
    'name_key',
    'name_keys',
    'same_name_set',
]
