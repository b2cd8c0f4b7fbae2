"""
Core process supervisor for LagZero Core.

This module owns the single running core process:
- start/stop/restart serialized on one FIFO lifecycle queue
- config validation before every spawn
- startup adjudicated by a short survival window
- bounded crash-loop retry with fixed backoff
- graceful stop escalated to a forced kill of the same handle
- output capture into a bounded ring, the core log file and the event bus
"""

import asyncio
import signal
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from .base import BaseManager, ManagerConfig
from .installer import CoreInstaller
from ..core.validator import (
    ConfigValidator,
    classify_runtime_line,
    core_environment,
    diagnose,
    format_failure,
)
from ..streaming.buffer import LogLine, LogRing, StreamBuffer, detect_level, strip_ansi
from ..utils.config import SupervisorConfig
from ..utils.errors import (
    CoreProcessError,
    CrashLoopExhaustedError,
    EarlyExitError,
    LagZeroError,
    RuntimeCrashError,
    SpawnFailureError,
)
from ..utils.logging import get_core_output_logger, get_logger
from ..utils.notifications import EventBus, EventCategory, EventPriority
from ..utils.retry import RetryPolicy
from ..utils.serial_queue import QueueClosedError, SerialTaskQueue


logger = get_logger("lagzero.supervisor")

IS_WINDOWS = sys.platform == "win32"
_LOG_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


class ProcessStatus(Enum):
    """Lifecycle of the core process."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


@dataclass
class ManagedProcessState:
    """Everything the supervisor knows about the current core process."""
    status: ProcessStatus = ProcessStatus.STOPPED
    handle: Optional[asyncio.subprocess.Process] = None
    retry_count: int = 0
    last_log_lines: LogRing = field(default_factory=LogRing)
    config_path: Optional[Path] = None
    started_at: Optional[datetime] = None

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid if self.handle is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "pid": self.pid,
            "retry_count": self.retry_count,
            "config_path": str(self.config_path) if self.config_path else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_log_lines": self.last_log_lines.tail(),
        }


class CoreSupervisor(BaseManager[SupervisorConfig]):
    """Supervises the core binary through its whole lifecycle."""

    category = EventCategory.CORE

    def __init__(
        self,
        settings: SupervisorConfig,
        events: EventBus,
        installer: CoreInstaller,
        validator: Optional[ConfigValidator] = None,
    ):
        super().__init__(ManagerConfig(name="supervisor"), settings, events)
        self.installer = installer
        self.validator = validator or ConfigValidator()
        self.lifecycle = SerialTaskQueue("lifecycle")
        self.process_state = ManagedProcessState(
            last_log_lines=LogRing(settings.log_buffer_lines)
        )
        self.retry_policy = RetryPolicy.fixed(settings.max_retries, settings.retry_backoff)
        self.output_logger = get_core_output_logger()

        self.spawn_count = 0
        self.kill_count = 0

        self._stopping = False
        self._suppress_next_stopped = False
        self._retry_timer: Optional[asyncio.TimerHandle] = None
        self._retry_generation = 0
        self._kill_timer: Optional[asyncio.TimerHandle] = None
        self._exit_tasks: Dict[asyncio.subprocess.Process, asyncio.Task] = {}
        self._diagnosed: Set[str] = set()

    # Public API

    @property
    def status(self) -> ProcessStatus:
        return self.process_state.status

    @property
    def is_running(self) -> bool:
        handle = self.process_state.handle
        return (
            self.process_state.status == ProcessStatus.RUNNING
            and handle is not None
            and handle.returncode is None
        )

    def last_log_lines(self, count: Optional[int] = None) -> List[str]:
        return self.process_state.last_log_lines.tail(count)

    async def start(self, config_path: Union[str, Path]) -> None:
        """
        Start the core with ``config_path``; no-op when already running.

        Raises:
            ConfigInvalidError: The config failed ``check``
            SpawnFailureError: The binary could not be executed
            EarlyExitError: The core exited inside the startup window
            InstallFailureError: No binary and installation failed
        """
        await self.lifecycle.submit(self._start_job, Path(config_path))

    async def stop(self) -> None:
        """Stop the core and wait (bounded) for it to exit."""
        await self.lifecycle.submit(self._stop_job)

    async def restart(self, config_path: Union[str, Path]) -> None:
        """
        Stop, then start with ``config_path``.

        Neither ``core_status`` nor ``core_state_changed`` reports ``stopped``
        in between; the state moves from ``stopping`` to ``starting``.
        """
        await self.lifecycle.submit(self._restart_job, Path(config_path))

    # Manager hooks

    async def _initialize(self) -> None:
        logger.info(
            "supervisor_ready",
            startup_window=self.settings.startup_window,
            max_retries=self.settings.max_retries,
        )

    async def _shutdown(self) -> None:
        self._cancel_retry()
        try:
            await self.lifecycle.submit(self._stop_job)
        except QueueClosedError:
            pass
        await self.lifecycle.close()
        for task in list(self._exit_tasks.values()):
            task.cancel()
        self._exit_tasks.clear()

    async def _health_check(self) -> Dict[str, Any]:
        details = self.process_state.to_dict()
        details.pop("last_log_lines")
        details.update({
            "running": self.is_running,
            "spawn_count": self.spawn_count,
            "pending_jobs": self.lifecycle.pending,
            "retry_scheduled": self._retry_timer is not None,
        })
        return details

    # Lifecycle jobs; these only ever run on the lifecycle queue worker

    async def _start_job(self, config_path: Path, from_retry: bool = False) -> None:
        state = self.process_state
        if state.handle is not None and state.handle.returncode is None:
            logger.info("core_already_running", pid=state.pid)
            return

        if not from_retry:
            self._cancel_retry()
        self._stopping = False
        state.config_path = config_path
        self._set_status(ProcessStatus.STARTING)

        try:
            binary = await self.installer.ensure_binary()
            if self.settings.validate_before_start:
                await self.validator.ensure_valid(binary, config_path)
        except LagZeroError as e:
            self._set_status(ProcessStatus.STOPPED)
            self._emit_error(e)
            raise

        handle = await self._spawn_core(binary, config_path)
        exit_task = self._exit_tasks[handle]

        done, _ = await asyncio.wait({exit_task}, timeout=self.settings.startup_window)
        if exit_task in done:
            code = handle.returncode
            tail = state.last_log_lines.tail()
            error = EarlyExitError(
                format_failure(
                    f"core exited during startup (code={code})",
                    tail[-1] if tail else "",
                    diagnose(tail),
                ),
                exit_code=code,
                log_tail=tail,
                hints=diagnose(tail),
            )
            logger.error("core_early_exit", code=code, pid=handle.pid)
            self._emit_error(error)
            self._handle_exit(handle)
            raise error

        state.retry_count = 0
        state.started_at = datetime.utcnow()
        self._set_status(ProcessStatus.RUNNING)
        self._notify_event("core_status", {"status": "running", "pid": handle.pid})
        logger.info("core_started", pid=handle.pid, config=str(config_path))
        exit_task.add_done_callback(lambda _t, h=handle: self._exit_observed(h))

    async def _stop_job(self) -> None:
        self._cancel_retry()
        self.process_state.retry_count = 0
        await self._stop_and_wait(suppress=False)
        if self.process_state.status == ProcessStatus.CRASHED:
            self._set_status(ProcessStatus.STOPPED)

    async def _restart_job(self, config_path: Path) -> None:
        self._cancel_retry()
        await self._stop_and_wait(suppress=True)
        await self._start_job(config_path)

    async def _retry_job(self, config_path: Path, generation: int) -> None:
        if generation != self._retry_generation or self._stopping:
            return
        self._retry_timer = None
        logger.info(
            "core_retry_start",
            attempt=self.process_state.retry_count,
            max_retries=self.settings.max_retries,
        )
        try:
            await self._start_job(config_path, from_retry=True)
        except LagZeroError as e:
            # Already surfaced through core_error and the crash policy
            logger.debug("core_retry_failed", code=e.code)

    async def _exit_job(self, handle: asyncio.subprocess.Process) -> None:
        self._handle_exit(handle)

    # Process plumbing

    async def _spawn_core(self, binary: Path, config_path: Path) -> asyncio.subprocess.Process:
        state = self.process_state
        kwargs: Dict[str, Any] = {}
        if IS_WINDOWS:
            kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)
        else:
            # Own process group: terminal Ctrl-C reaches the supervisor, not the core
            kwargs["start_new_session"] = True

        try:
            handle = await asyncio.create_subprocess_exec(
                str(binary), "run", "-c", str(config_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=core_environment(),
                **kwargs,
            )
        except OSError as e:
            error = SpawnFailureError(f"Failed to start the core: {e}", cause=e)
            logger.error("core_spawn_failed", binary=str(binary), error=str(e))
            self._set_status(ProcessStatus.STOPPED)
            self._emit_error(error)
            raise error from e

        self.spawn_count += 1
        state.handle = handle
        state.last_log_lines.clear()
        self._diagnosed.clear()
        logger.info("core_spawned", pid=handle.pid, binary=str(binary))

        readers = [
            asyncio.get_running_loop().create_task(self._pump(handle, handle.stdout, "stdout")),
            asyncio.get_running_loop().create_task(self._pump(handle, handle.stderr, "stderr")),
        ]
        self._exit_tasks[handle] = asyncio.get_running_loop().create_task(
            self._wait_exit(handle, readers), name=f"core-exit:{handle.pid}"
        )
        return handle

    async def _wait_exit(self, handle: asyncio.subprocess.Process, readers: List[asyncio.Task]) -> int:
        code = await handle.wait()
        # Let the pipes drain so the final lines land in the ring first
        _, pending = await asyncio.wait(readers, timeout=1.0)
        for task in pending:
            task.cancel()
        return code

    async def _pump(self, handle, stream: Optional[asyncio.StreamReader], name: str) -> None:
        if stream is None:
            return
        buffer = StreamBuffer(stream)
        async for line in buffer.read_all_lines():
            self._on_output(handle, line, name)

    def _on_output(self, handle, raw: str, stream: str) -> None:
        text = strip_ansi(raw.strip()).strip()
        if not text:
            return

        self.process_state.last_log_lines.append(text)
        entry = LogLine(text, stream=stream, level=detect_level(text, stream))
        self.output_logger.log(_LOG_LEVELS[entry.level], text)
        self._notify_event(
            "core_log",
            entry.to_dict(pid=handle.pid),
            EventCategory.LOG,
            EventPriority.LOW,
        )

        finding = classify_runtime_line(text)
        if finding is not None and finding[0] not in self._diagnosed:
            category, advice = finding
            self._diagnosed.add(category)
            logger.warning("core_runtime_diagnostic", category=category, line=text)
            self._notify_event(
                "core_diagnostic",
                {"category": category, "line": text, "advice": advice},
            )

    def _exit_observed(self, handle: asyncio.subprocess.Process) -> None:
        """Background watcher saw an exit; do the bookkeeping on the queue."""
        if self.process_state.handle is not handle:
            self._exit_tasks.pop(handle, None)
            return
        try:
            future = self.lifecycle.submit(self._exit_job, handle)
        except QueueClosedError:
            return
        future.add_done_callback(_consume_result)

    def _handle_exit(self, handle: asyncio.subprocess.Process) -> None:
        """Exit bookkeeping; idempotent per handle."""
        state = self.process_state
        self._exit_tasks.pop(handle, None)
        if state.handle is not handle:
            return

        code = handle.returncode
        was_running = state.started_at is not None
        state.handle = None
        state.started_at = None
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None

        logger.info("core_exited", pid=handle.pid, code=code, intentional=self._stopping)

        suppressed = self._suppress_next_stopped
        if suppressed:
            self._suppress_next_stopped = False
        else:
            self._notify_event("core_status", {"status": "stopped", "code": code})

        if self._stopping or code == 0:
            # A restart goes straight from stopping to starting
            if not suppressed:
                self._set_status(ProcessStatus.STOPPED)
            return

        tail = state.last_log_lines.tail()
        hints = diagnose(tail)
        if was_running:
            self._emit_error(RuntimeCrashError(
                format_failure(f"core exited unexpectedly (code={code})", tail[-1] if tail else "", hints),
                exit_code=code,
                log_tail=tail,
                hints=hints,
            ))

        if self.retry_policy.can_retry(state.retry_count):
            state.retry_count += 1
            delay = self.retry_policy.delay_for(state.retry_count)
            self._set_status(ProcessStatus.CRASHED)
            logger.warning(
                "core_crashed_retrying",
                code=code,
                attempt=state.retry_count,
                max_retries=self.settings.max_retries,
                delay=delay,
            )
            self._schedule_retry(state.config_path, delay)
            return

        self._set_status(ProcessStatus.STOPPED)
        error = CrashLoopExhaustedError(
            format_failure(
                f"core failed to stay up (retried {self.settings.max_retries} times, code={code})",
                tail[-1] if tail else "",
                hints,
            ),
            exit_code=code,
            log_tail=tail,
            hints=hints,
        )
        logger.error("core_crash_loop_exhausted", code=code, retries=state.retry_count)
        self._emit_error(error)

    async def _stop_and_wait(self, suppress: bool) -> None:
        handle = self.process_state.handle
        if handle is None:
            return

        exit_task = self._exit_tasks.get(handle)
        if handle.returncode is not None:
            if exit_task is not None:
                await asyncio.wait({exit_task}, timeout=self.settings.stop_timeout)
            self._stopping = True
            self._handle_exit(handle)
            return

        self._stopping = True
        if suppress:
            self._suppress_next_stopped = True
        self._set_status(ProcessStatus.STOPPING)
        self._signal_graceful(handle)
        self._kill_timer = asyncio.get_running_loop().call_later(
            self.settings.kill_grace, self._kill_if_current, handle
        )

        if exit_task is not None:
            done, _ = await asyncio.wait({exit_task}, timeout=self.settings.stop_timeout)
            if exit_task not in done:
                logger.warning("core_stop_timeout", pid=handle.pid, timeout=self.settings.stop_timeout)
                return
        self._handle_exit(handle)

    def _signal_graceful(self, handle: asyncio.subprocess.Process) -> None:
        try:
            if IS_WINDOWS:
                handle.terminate()
            else:
                handle.send_signal(signal.SIGINT)
        except ProcessLookupError:
            pass
        logger.info("core_stop_requested", pid=handle.pid)

    def _kill_if_current(self, handle: asyncio.subprocess.Process) -> None:
        self._kill_timer = None
        if self.process_state.handle is not handle or handle.returncode is not None:
            return
        self.kill_count += 1
        logger.warning("core_force_kill", pid=handle.pid)
        self._force_kill(handle)

    def _force_kill(self, handle: asyncio.subprocess.Process) -> None:
        if IS_WINDOWS:
            self._spawn(self._taskkill(handle.pid), name=f"taskkill:{handle.pid}")
            return
        try:
            handle.kill()
        except ProcessLookupError:
            pass

    async def _taskkill(self, pid: int) -> None:
        process = await asyncio.create_subprocess_exec(
            "taskkill", "/PID", str(pid), "/T", "/F",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
        await process.wait()

    # Retry timer

    def _schedule_retry(self, config_path: Optional[Path], delay: float) -> None:
        if config_path is None:
            return
        self._cancel_retry()
        generation = self._retry_generation
        self._retry_timer = asyncio.get_running_loop().call_later(
            delay, self._retry_due, config_path, generation
        )

    def _retry_due(self, config_path: Path, generation: int) -> None:
        try:
            future = self.lifecycle.submit(self._retry_job, config_path, generation)
        except QueueClosedError:
            return
        future.add_done_callback(_consume_result)

    def _cancel_retry(self) -> None:
        self._retry_generation += 1
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    # Notifications

    def _set_status(self, status: ProcessStatus) -> None:
        previous = self.process_state.status
        if previous == status:
            return
        self.process_state.status = status
        self._notify_event(
            "core_state_changed",
            {"status": status.value, "previous": previous.value, "pid": self.process_state.pid},
        )

    def _emit_error(self, error: LagZeroError) -> None:
        if isinstance(error, CoreProcessError) and not error.log_tail:
            error.log_tail = self.process_state.last_log_lines.tail()
        self._notify_event("core_error", error.to_dict(), EventCategory.ERROR, EventPriority.HIGH)


def _consume_result(future: asyncio.Future) -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.error("lifecycle_job_failed", error=str(future.exception()))


__all__ = [
    'CoreSupervisor',
    'ManagedProcessState',
    'ProcessStatus',
]
