"""
LagZero Core - supervision layer for the game-acceleration proxy core.

This package keeps an externally supplied sing-box core binary installed,
validated and running, and keeps its process-name routing rules in sync
with the live process tree:
- Core binary installation (download, extract, adopt)
- Configuration validation with operator-facing diagnostics
- Supervised start/stop/restart with crash-loop retry
- Serialized process-name rule updates
- Chain-proxy detection over the OS process tree
"""

__version__ = "0.1.0"
__author__ = "LagZero Team"

__all__ = [
    '__version__',
]
