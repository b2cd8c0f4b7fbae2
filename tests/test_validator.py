"""
Tests for the core configuration validator.
"""

import pytest

from lagzero_core.core.validator import (
    COMPAT_ENV,
    SPAWN_FAILED_OUTPUT,
    ConfigValidator,
    ValidationResult,
    classify_runtime_line,
    clean_output,
    core_environment,
    diagnose,
    output_window,
    summarize,
)
from lagzero_core.utils.errors import ConfigInvalidError
from tests.conftest import posix_only
from tests.fixtures.core_fixtures import CoreFixtures


PORT_IN_USE = "\x1b[31mFATAL\x1b[0m[0000] start service: listen tcp 127.0.0.1:2080: bind: address already in use"


class TestOutputHelpers:
    """Test pure output shaping."""

    def test_clean_output_strips_ansi_and_blank_lines(self):
        lines = clean_output("first\r\n\x1b[32m  second \x1b[0m\n\n   \nthird")

        assert lines == ["first", "second", "third"]

    def test_short_output_is_kept_whole(self):
        lines = [f"line {i}" for i in range(12)]

        assert output_window(lines) == lines

    def test_long_output_keeps_head_and_tail(self):
        lines = [f"line {i}" for i in range(20)]

        window = output_window(lines)

        assert window[:4] == ["line 0", "line 1", "line 2", "line 3"]
        assert window[4] == "... (8 lines omitted)"
        assert window[5:] == [f"line {i}" for i in range(12, 20)]

    def test_summary_prefers_error_lines(self):
        assert summarize(["starting", "loading rules", "ERROR decode config: bad"]) == "ERROR decode config: bad"

    def test_summary_skips_stack_frames(self):
        lines = ["goroutine 1 [running]:", "main.go:42", "exit status 2", "outbound not found: proxy"]

        assert summarize(lines) == "outbound not found: proxy"

    def test_summary_of_nothing_is_empty(self):
        assert summarize([]) == ""

    def test_summary_of_long_trace_is_last_real_line(self):
        lines = clean_output("\n".join(f"goroutine {i} [running]:" for i in range(20)))

        assert summarize(lines) == "goroutine 19 [running]:"
        assert "... (8 lines omitted)" in output_window(lines)


class TestDiagnose:
    """Test failure signature hints."""

    def test_port_in_use(self):
        hints = diagnose(clean_output(PORT_IN_USE))

        assert len(hints) == 1
        assert "port is already in use" in hints[0]

    def test_hints_are_deduplicated(self):
        hints = diagnose(["Access is denied.", "permission denied", "operation not permitted"])

        assert len(hints) == 1
        assert "administrator" in hints[0]

    def test_multiple_signatures(self):
        hints = diagnose("configure tun: create tun: wintun not found\nudp: quic handshake timeout")

        assert any("TUN" in h for h in hints)
        assert any("UDP/QUIC" in h for h in hints)

    def test_unknown_output_has_no_hints(self):
        assert diagnose(["something odd happened"]) == []

    def test_runtime_rule_set_failure(self):
        category, advice = classify_runtime_line("ERROR rule-set[geosite-cn]: fetch failed: i/o timeout")

        assert category == "rule_set"
        assert "rule-set" in advice

    def test_runtime_download_failure(self):
        assert classify_runtime_line("download geoip.db: connection refused")[0] == "download"

    def test_ordinary_runtime_line(self):
        assert classify_runtime_line("INFO inbound/tun[0]: started") is None


class TestCompatEnvironment:
    """Test the environment handed to every core invocation."""

    def test_compat_switches_added(self):
        env = core_environment({"PATH": "/usr/bin"})

        assert env["PATH"] == "/usr/bin"
        for key, value in COMPAT_ENV.items():
            assert env[key] == value
        assert len(COMPAT_ENV) == 4

    def test_compat_switches_override_parent(self):
        env = core_environment({"ENABLE_DEPRECATED_TUN_ADDRESS_X": "false"})

        assert env["ENABLE_DEPRECATED_TUN_ADDRESS_X"] == "true"


@posix_only
class TestConfigValidator:
    """Test running the core in check mode."""

    @pytest.mark.asyncio
    async def test_passing_config(self, bin_dir, core_config):
        binary = CoreFixtures.create_fake_core(bin_dir)

        result = await ConfigValidator().validate(binary, core_config)

        assert result.ok
        assert result.code == 0
        assert result.lines == []

    @pytest.mark.asyncio
    async def test_failing_config_is_explained(self, bin_dir, core_config):
        binary = CoreFixtures.create_fake_core(bin_dir, check_exit=1, check_output=PORT_IN_USE)

        result = await ConfigValidator().validate(binary, core_config)

        assert not result.ok
        assert result.code == 1
        assert "\x1b" not in result.summary
        assert result.summary.startswith("FATAL")
        assert any("port is already in use" in h for h in result.hints)
        assert "config check failed (code=1)" in result.message

    @pytest.mark.asyncio
    async def test_omission_marker_never_becomes_summary(self, bin_dir, core_config):
        trace = "\n".join(f"goroutine {i} [running]:" for i in range(20))
        binary = CoreFixtures.create_fake_core(bin_dir, check_exit=2, check_output=trace)

        result = await ConfigValidator().validate(binary, core_config)

        assert result.summary == "goroutine 19 [running]:"
        assert result.lines[4] == "... (8 lines omitted)"
        assert len(result.lines) == 13

    @pytest.mark.asyncio
    async def test_ensure_valid_raises(self, bin_dir, core_config):
        binary = CoreFixtures.create_fake_core(bin_dir, check_exit=2, check_output="decode config: unknown field")

        with pytest.raises(ConfigInvalidError) as exc_info:
            await ConfigValidator().ensure_valid(binary, core_config)

        error = exc_info.value
        assert error.exit_code == 2
        assert error.log_tail == ["decode config: unknown field"]
        assert error.suggestions()

    @pytest.mark.asyncio
    async def test_missing_binary_reports_spawn_failure(self, temp_dir, core_config):
        result = await ConfigValidator().validate(temp_dir / "nope" / "sing-box", core_config)

        assert not result.ok
        assert result.code == -1
        assert result.lines == [SPAWN_FAILED_OUTPUT]
        assert result.summary == SPAWN_FAILED_OUTPUT


class TestValidationResult:
    """Test result payloads."""

    def test_to_dict(self):
        result = ValidationResult(ok=False, code=3, lines=["x"], summary="x", hints=["try y"])

        data = result.to_dict()

        assert data["ok"] is False
        assert data["message"] == "config check failed (code=3): x\n\ntry y"

    def test_passing_message(self):
        assert ValidationResult(ok=True, code=0).message == "config check passed"
