"""Core process output streaming."""

from .buffer import (
    StreamBuffer,
    LogRing,
    LogLine,
    strip_ansi,
    detect_level,
)

__all__ = [
    'StreamBuffer',
    'LogRing',
    'LogLine',
    'strip_ansi',
    'detect_level',
]
