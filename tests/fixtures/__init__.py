"""
Test fixtures for LagZero Core.

Provides fake core binaries, release archives and process trees.
"""

from .core_fixtures import (
    CoreFixtures,
    EventRecorder,
    StaticProcessTreeProvider,
    StaticReleaseFeed,
)

__all__ = [
    "CoreFixtures",
    "EventRecorder",
    "StaticProcessTreeProvider",
    "StaticReleaseFeed",
]
