"""
Stream buffering for core process output.

This module provides:
- Chunked reading of child process pipes with line extraction
- Partial line handling across reads
- ANSI escape stripping
- A bounded ring of the most recent output lines
- Log level detection for core output lines
"""

import asyncio
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Deque, Iterable, List, Optional

from ..utils.logging import get_logger

logger = get_logger("lagzero.buffer")

ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*m")
_LEVEL_PATTERN = re.compile(r"\b(TRACE|DEBUG|INFO|WARN|WARNING|ERROR|FATAL|PANIC)\b")
_LEVEL_MAP = {
    "TRACE": "debug",
    "DEBUG": "debug",
    "INFO": "info",
    "WARN": "warning",
    "WARNING": "warning",
    "ERROR": "error",
    "FATAL": "error",
    "PANIC": "error",
}


def strip_ansi(text: str) -> str:
    """Remove ANSI color sequences."""
    return ANSI_PATTERN.sub("", text)


def detect_level(line: str, stream: str = "stdout") -> str:
    """Guess the log level of a core output line.

    Falls back to ``error`` for stderr and ``info`` for stdout.
    """
    match = _LEVEL_PATTERN.search(line)
    if match:
        return _LEVEL_MAP[match.group(1)]
    return "error" if stream == "stderr" else "info"


@dataclass
class LogLine:
    """One ANSI-stripped line of core output."""
    line: str
    stream: str = "stdout"
    level: str = "info"
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self, **extra) -> dict:
        return {
            "line": self.line,
            "stream": self.stream,
            "level": self.level,
            "timestamp": self.timestamp.isoformat(),
            **extra,
        }


class LogRing:
    """Bounded buffer keeping only the newest lines."""

    def __init__(self, capacity: int = 80):
        self.capacity = capacity
        self._lines: Deque[str] = deque(maxlen=capacity)

    def append(self, line: str) -> None:
        self._lines.append(line)

    def extend(self, lines: Iterable[str]) -> None:
        self._lines.extend(lines)

    def tail(self, count: Optional[int] = None) -> List[str]:
        """Newest ``count`` lines, oldest first."""
        lines = list(self._lines)
        if count is None:
            return lines
        return lines[-count:] if count > 0 else []

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self):
        return iter(list(self._lines))


class StreamBuffer:
    """Buffers stream data and extracts complete lines."""

    def __init__(
        self,
        stream: asyncio.StreamReader,
        max_line_length: int = 64 * 1024
    ):
        """
        Initialize stream buffer.

        Args:
            stream: Async stream to read from
            max_line_length: Lines longer than this are truncated
        """
        self.stream = stream
        self.max_line_length = max_line_length

        self._buffer = bytearray()
        self._lines: Deque[str] = deque()

        self._total_bytes = 0
        self._total_lines = 0

    @property
    def line_count(self) -> int:
        """Number of complete lines buffered."""
        return len(self._lines)

    async def read(self, chunk_size: int = 8192) -> bytes:
        """
        Read one chunk from the stream into the buffer.

        Returns:
            Bytes read (empty if EOF)
        """
        chunk = await self.stream.read(chunk_size)
        if chunk:
            self._buffer.extend(chunk)
            self._total_bytes += len(chunk)
            self._extract_lines()
        return chunk

    def _extract_lines(self) -> None:
        """Extract complete lines from buffer."""
        while True:
            line_end = self._buffer.find(b'\n')
            if line_end < 0:
                break

            line_bytes = bytes(self._buffer[:line_end])
            del self._buffer[:line_end + 1]
            self._push(line_bytes)

        # A line with no newline yet can still be cut at the length limit
        if len(self._buffer) > self.max_line_length * 4:
            line_bytes = bytes(self._buffer)
            self._buffer.clear()
            self._push(line_bytes)

    def _push(self, line_bytes: bytes) -> None:
        line = line_bytes.decode('utf-8', errors='replace').rstrip('\r')

        if len(line) > self.max_line_length:
            logger.warning(
                "line_too_long",
                length=len(line),
                max_length=self.max_line_length
            )
            line = line[:self.max_line_length] + "... [truncated]"

        self._lines.append(line)
        self._total_lines += 1

    def get_line(self) -> Optional[str]:
        """Get next complete line, or None."""
        if self._lines:
            return self._lines.popleft()
        return None

    async def read_all_lines(self) -> AsyncIterator[str]:
        """
        Read all lines from stream.

        Yields:
            Complete lines as they become available; the trailing partial
            line is yielded at EOF
        """
        while True:
            while self._lines:
                yield self._lines.popleft()

            chunk = await self.read()
            if not chunk:
                for line in self.flush():
                    yield line
                break

    def flush(self) -> List[str]:
        """Return buffered lines plus any partial data."""
        lines = list(self._lines)
        self._lines.clear()

        if self._buffer:
            lines.append(bytes(self._buffer).decode('utf-8', errors='replace').rstrip('\r'))
            self._buffer.clear()

        return lines

    def get_stats(self) -> dict:
        """Get buffer statistics."""
        return {
            "line_count": self.line_count,
            "total_bytes": self._total_bytes,
            "total_lines": self._total_lines,
            "has_partial": bool(self._buffer)
        }
