"""
Core configuration validator.

Runs the core binary in ``check`` mode against a candidate configuration
and turns a failure into something an operator can act on:
- a bounded window of the (ANSI-stripped) output
- a one-line summary
- deduplicated hints for known failure signatures
"""

import asyncio
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from ..streaming.buffer import strip_ansi
from ..utils.errors import ConfigInvalidError
from ..utils.logging import get_logger, log_function_call


logger = get_logger("lagzero.validator")

# Switches newer core releases require for legacy config shapes
COMPAT_ENV: Dict[str, str] = {
    "ENABLE_DEPRECATED_SPECIAL_OUTBOUNDS": "true",
    "ENABLE_DEPRECATED_LEGACY_DNS_SERVERS": "true",
    "ENABLE_DEPRECATED_MISSING_DOMAIN_RESOLVER": "true",
    "ENABLE_DEPRECATED_TUN_ADDRESS_X": "true",
}

SPAWN_FAILED_OUTPUT = "unable to execute the core binary; check that the executable is complete"


def core_environment(base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Environment for every core invocation: the parent env plus compat switches."""
    env = dict(os.environ if base is None else base)
    env.update(COMPAT_ENV)
    return env


_HINT_RULES: Tuple[Tuple[str, re.Pattern], ...] = (
    (
        "TUN mode usually needs administrator rights and working TUN/Wintun "
        "support. Try running LagZero as administrator.",
        re.compile(r"create tun|\btun\b|wintun|tunnel"),
    ),
    (
        "Startup looks blocked by insufficient privileges. Try running LagZero "
        "as administrator.",
        re.compile(r"access is denied|permission denied|operation not permitted"),
    ),
    (
        "A node or config parameter may be incompatible with this core version. "
        "Report the last error line shown above.",
        re.compile(r"invalid|unknown field|parse|json"),
    ),
    (
        "This core version requires a compatibility switch; "
        "ENABLE_DEPRECATED_SPECIAL_OUTBOUNDS=true is injected automatically.",
        re.compile(r"deprecated[_ ]special[_ ]outbounds"),
    ),
    (
        "This core version requires the TUN compatibility switch; "
        "ENABLE_DEPRECATED_TUN_ADDRESS_X=true is injected automatically.",
        re.compile(r"deprecated[_ ]tun[_ ]address[_ ]x"),
    ),
    (
        "This may be an MTU or fragmentation problem. Try lowering the session "
        "MTU to 1280 or 1240.",
        re.compile(r"mtu|fragment|message too long|packet too large"),
    ),
    (
        "UDP/QUIC errors detected. Set the UDP mode to automatic or prefer TCP, "
        "and disable the xudp override if needed.",
        re.compile(r"udp|quic"),
    ),
    (
        "A local port is already in use. Change the system/local proxy port or "
        "close the program holding it, then retry.",
        re.compile(r"address already in use|only one usage of each socket address|bind:"),
    ),
)

_SUMMARY_PATTERN = re.compile(r"\b(panic|fatal|error)\b", re.IGNORECASE)
_STACK_PATTERN = re.compile(
    r"^(goroutine \d+ \[|created by |at |\S+\.go:\d+|[\w./*()-]+\(.*\)$|\[signal |exit status )"
)

_RUNTIME_RULES: Tuple[Tuple[str, re.Pattern, str], ...] = (
    (
        "rule_set",
        re.compile(r"rule[-_ ]?set.*(fail|error|timeout|refused|reset)", re.IGNORECASE),
        "A remote rule-set could not be loaded. Check that the rule-set source "
        "is reachable or switch its download detour.",
    ),
    (
        "download",
        re.compile(r"download.*(fail|error|timeout|refused|reset)", re.IGNORECASE),
        "The core failed to download a remote resource. Check network "
        "connectivity and the download detour.",
    ),
)


def diagnose(lines: Union[str, Sequence[str]]) -> List[str]:
    """Hints for every known failure signature found in ``lines``, deduplicated."""
    text = lines if isinstance(lines, str) else "\n".join(lines)
    text = text.lower()
    hints: List[str] = []
    for hint, pattern in _HINT_RULES:
        if pattern.search(text) and hint not in hints:
            hints.append(hint)
    return hints


def output_window(lines: Sequence[str], head: int = 4, tail: int = 8) -> List[str]:
    """Keep the first ``head`` and last ``tail`` lines of long output."""
    if len(lines) <= head + tail:
        return list(lines)
    omitted = len(lines) - head - tail
    return list(lines[:head]) + [f"... ({omitted} lines omitted)"] + list(lines[-tail:])


def summarize(lines: Sequence[str]) -> str:
    """Pick the line that best explains a failure."""
    if not lines:
        return ""
    for line in lines:
        if _SUMMARY_PATTERN.search(line):
            return line
    for line in lines:
        if not _STACK_PATTERN.match(line):
            return line
    return lines[-1]


def clean_output(output: str) -> List[str]:
    """Split raw output into trimmed, ANSI-free, non-empty lines."""
    lines = []
    for raw in re.split(r"\r?\n", output):
        line = strip_ansi(raw.strip()).strip()
        if line:
            lines.append(line)
    return lines


def classify_runtime_line(line: str) -> Optional[Tuple[str, str]]:
    """Return ``(category, advice)`` for rule-set/download trouble in a runtime line."""
    for category, pattern, advice in _RUNTIME_RULES:
        if pattern.search(line):
            return category, advice
    return None


def format_failure(headline: str, summary: str, hints: Sequence[str]) -> str:
    message = f"{headline}: {summary}" if summary else headline
    if hints:
        message += "\n\n" + "\n".join(hints)
    return message


@dataclass
class ValidationResult:
    """Outcome of a ``check`` run."""
    ok: bool
    code: int
    lines: List[str] = field(default_factory=list)
    summary: str = ""
    hints: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.ok:
            return "config check passed"
        return format_failure(f"config check failed (code={self.code})", self.summary, self.hints)

    def to_error(self) -> ConfigInvalidError:
        return ConfigInvalidError(
            self.message,
            exit_code=self.code,
            hints=self.hints,
            log_tail=self.lines,
        )

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "code": self.code,
            "summary": self.summary,
            "hints": self.hints,
            "lines": self.lines,
            "message": self.message,
        }


class ConfigValidator:
    """Runs ``<binary> check -c <config>`` and explains failures."""

    def __init__(
        self,
        head_lines: int = 4,
        tail_lines: int = 8,
        timeout: float = 30.0,
    ):
        self.head_lines = head_lines
        self.tail_lines = tail_lines
        self.timeout = timeout

    @log_function_call(logger)
    async def validate(self, binary_path: Union[str, Path], config_path: Union[str, Path]) -> ValidationResult:
        """
        Check ``config_path`` with the core binary.

        Returns:
            ValidationResult; ``ok`` is True only for exit code 0
        """
        code, output = await self._run_check(str(binary_path), str(config_path))
        if code == 0:
            logger.debug("config_check_passed", config=str(config_path))
            return ValidationResult(ok=True, code=0)

        all_lines = clean_output(output)
        result = ValidationResult(
            ok=False,
            code=code,
            lines=output_window(all_lines, self.head_lines, self.tail_lines),
            summary=summarize(all_lines),
            hints=diagnose(all_lines),
        )
        logger.error(
            "config_check_failed",
            config=str(config_path),
            code=code,
            summary=result.summary,
            hints=len(result.hints),
        )
        return result

    async def ensure_valid(self, binary_path: Union[str, Path], config_path: Union[str, Path]) -> None:
        """Raise ConfigInvalidError unless the config passes ``check``."""
        result = await self.validate(binary_path, config_path)
        if not result.ok:
            raise result.to_error()

    async def _run_check(self, binary_path: str, config_path: str) -> Tuple[int, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                binary_path, "check", "-c", config_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=core_environment(),
            )
        except OSError as e:
            logger.error("config_check_spawn_failed", binary=binary_path, error=str(e))
            return -1, SPAWN_FAILED_OUTPUT

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return -1, f"core check timed out after {self.timeout:g}s"

        code = process.returncode if process.returncode is not None else -1
        return code, stdout.decode("utf-8", errors="replace")


__all__ = [
    'COMPAT_ENV',
    'ConfigValidator',
    'ValidationResult',
    'core_environment',
    'diagnose',
    'summarize',
    'output_window',
    'clean_output',
    'classify_runtime_line',
    'format_failure',
]
