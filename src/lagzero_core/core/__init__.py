"""
Leaf domain logic for LagZero Core.

These modules hold no long-lived state: process-name normalization, the
process tree model and chain-proxy detection, the managed rule fragment,
the release feed, and the configuration validator.
"""

from .process_names import normalize_process_name, normalize_process_names
from .process_tree import ProcessNode, build_process_forest, find_chain_proxy_children
from .rule_fragment import apply_process_names
from .release_feed import GitHubReleaseFeed, PlatformTarget, ReleaseInfo
from .validator import ConfigValidator, ValidationResult

__all__ = [
    'normalize_process_name',
    'normalize_process_names',
    'ProcessNode',
    'build_process_forest',
    'find_chain_proxy_children',
    'apply_process_names',
    'GitHubReleaseFeed',
    'PlatformTarget',
    'ReleaseInfo',
    'ConfigValidator',
    'ValidationResult',
]
