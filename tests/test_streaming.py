"""
Tests for core output buffering.
"""

import asyncio

import pytest

from lagzero_core.streaming.buffer import LogLine, LogRing, StreamBuffer, detect_level, strip_ansi


def feed(*chunks: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    if eof:
        reader.feed_eof()
    return reader


class TestLineHelpers:
    """Test ANSI stripping and level detection."""

    def test_strip_ansi(self):
        assert strip_ansi("\x1b[36mINFO\x1b[0m[0000] started") == "INFO[0000] started"

    def test_strip_ansi_leaves_plain_text(self):
        assert strip_ansi("plain [brackets]") == "plain [brackets]"

    @pytest.mark.parametrize("line,expected", [
        ("DEBUG[0001] dns: exchange", "debug"),
        ("INFO[0000] sing-box started", "info"),
        ("WARN[0002] outbound/proxy: slow", "warning"),
        ("ERROR[0003] connection reset", "error"),
        ("FATAL[0000] start service", "error"),
        ("panic: runtime error", "info"),
    ])
    def test_detect_level(self, line, expected):
        assert detect_level(line) == expected

    def test_unmarked_stderr_is_error(self):
        assert detect_level("goroutine 1 [running]:", stream="stderr") == "error"

    def test_log_line_to_dict(self):
        data = LogLine("hello", stream="stderr", level="error").to_dict(pid=7)

        assert data["line"] == "hello"
        assert data["pid"] == 7
        assert data["stream"] == "stderr"
        assert "timestamp" in data


class TestLogRing:
    """Test the bounded output ring."""

    def test_keeps_newest_lines(self):
        ring = LogRing(capacity=3)
        ring.extend(["a", "b", "c", "d", "e"])

        assert list(ring) == ["c", "d", "e"]
        assert len(ring) == 3

    def test_tail(self):
        ring = LogRing(capacity=10)
        ring.extend(["a", "b", "c"])

        assert ring.tail(2) == ["b", "c"]
        assert ring.tail(0) == []
        assert ring.tail() == ["a", "b", "c"]
        assert ring.tail(50) == ["a", "b", "c"]

    def test_clear(self):
        ring = LogRing()
        ring.append("a")
        ring.clear()

        assert ring.tail() == []


class TestStreamBuffer:
    """Test line extraction from process pipes."""

    @pytest.mark.asyncio
    async def test_lines_split_across_chunks(self):
        buffer = StreamBuffer(feed(b"INFO star", b"ted\r\nWARN sl", b"ow\n"))

        lines = [line async for line in buffer.read_all_lines()]

        assert lines == ["INFO started", "WARN slow"]

    @pytest.mark.asyncio
    async def test_trailing_partial_line_flushed_at_eof(self):
        buffer = StreamBuffer(feed(b"one\ntwo"))

        lines = [line async for line in buffer.read_all_lines()]

        assert lines == ["one", "two"]
        assert buffer.get_stats()["total_bytes"] == 7

    @pytest.mark.asyncio
    async def test_partial_line_waits_for_newline(self):
        reader = feed(b"par", eof=False)
        buffer = StreamBuffer(reader)

        await buffer.read()
        assert buffer.get_line() is None
        assert buffer.get_stats()["has_partial"]

        reader.feed_data(b"tial\n")
        await buffer.read()
        assert buffer.get_line() == "partial"

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_replaced(self):
        buffer = StreamBuffer(feed(b"bad \xff byte\n"))

        lines = [line async for line in buffer.read_all_lines()]

        assert lines == ["bad � byte"]

    @pytest.mark.asyncio
    async def test_long_lines_truncated(self):
        buffer = StreamBuffer(feed(b"x" * 100 + b"\n"), max_line_length=10)

        lines = [line async for line in buffer.read_all_lines()]

        assert lines == ["x" * 10 + "... [truncated]"]
