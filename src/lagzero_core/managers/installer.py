"""
Core binary installer for LagZero Core.

This module keeps the core executable available at its canonical path:
- Immediate return when the binary is already installed
- Adoption of a binary manually placed anywhere under the install dir
- Latest-release download with bounded redirects and progress reporting
- zip / tar.gz extraction with recursive executable lookup
- Network failures retried with linear backoff, everything else fatal
- Concurrent callers coalesced onto one in-flight attempt
"""

import asyncio
import os
import re
import shutil
import stat
import sys
import tarfile
import uuid
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import aiofiles
import aiohttp
from packaging import version as pkg_version

from .base import BaseManager, ManagerConfig
from ..core.release_feed import (
    GitHubReleaseFeed,
    PlatformTarget,
    ReleaseFeed,
    ReleaseInfo,
    network_errors,
)
from ..core.validator import core_environment
from ..utils.config import InstallerConfig
from ..utils.errors import (
    ArchiveError,
    BinaryNotFoundError,
    HttpStatusError,
    InstallFailureError,
    LagZeroError,
    NetworkError,
    RedirectLimitError,
    error_context,
)
from ..utils.logging import get_logger
from ..utils.notifications import EventBus, EventCategory
from ..utils.retry import RetryPolicy, retry


logger = get_logger("lagzero.installer")

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
CHUNK_SIZE = 64 * 1024
_VERSION_PATTERN = re.compile(r"(\d+\.\d+\.\d+(?:-[\w.]+)?)")


class InstallPhase(Enum):
    """Installer progress phases."""
    CHECKING = "checking"
    READY = "ready"
    MISSING = "missing"
    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class InstallerState:
    """State of one install attempt."""
    phase: InstallPhase
    install_dir: Path
    binary_path: Path
    version: Optional[str] = None
    progress_bytes: Optional[int] = None
    total_bytes: Optional[int] = None
    percent: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    started_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.phase in (InstallPhase.COMPLETED, InstallPhase.FAILED, InstallPhase.READY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "install_dir": str(self.install_dir),
            "binary_path": str(self.binary_path),
            "version": self.version,
            "progress_bytes": self.progress_bytes,
            "total_bytes": self.total_bytes,
            "percent": self.percent,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
        }


def default_executable_name() -> str:
    return "sing-box.exe" if sys.platform == "win32" else "sing-box"


def find_file_recursive(root: Path, file_name: str, exclude: Optional[List[Path]] = None) -> Optional[Path]:
    """
    Depth-first search for ``file_name`` under ``root``.

    Files in a directory are checked before descending into its
    subdirectories; entries in ``exclude`` are skipped.
    """
    excluded = {p.resolve() for p in exclude or []}
    try:
        entries = sorted(root.iterdir(), key=lambda p: p.name)
    except OSError:
        return None

    for entry in entries:
        if entry.name == file_name and entry.is_file() and entry.resolve() not in excluded:
            return entry
    for entry in entries:
        if entry.is_dir() and not entry.is_symlink() and entry.resolve() not in excluded:
            found = find_file_recursive(entry, file_name, exclude)
            if found is not None:
                return found
    return None


class CoreInstaller(BaseManager[InstallerConfig]):
    """Ensures the core binary exists at its canonical path."""

    category = EventCategory.INSTALLER

    def __init__(
        self,
        settings: InstallerConfig,
        events: EventBus,
        feed: Optional[ReleaseFeed] = None,
        target: Optional[PlatformTarget] = None,
        executable_name: Optional[str] = None,
    ):
        super().__init__(ManagerConfig(name="installer"), settings, events)
        self.install_dir = Path(settings.bin_dir or Path.home() / ".lagzero" / "bin")
        self.feed: ReleaseFeed = feed or GitHubReleaseFeed(
            url=settings.release_feed_url,
            user_agent=settings.user_agent,
        )
        self._target = target
        self.executable_name = executable_name or (
            target.executable_name if target else default_executable_name()
        )
        self.retry_policy = RetryPolicy.linear(settings.network_retries, settings.retry_step)
        self._inflight: Optional[asyncio.Task] = None
        self._state: Optional[InstallerState] = None
        self._installed_version: Optional[str] = None

    @property
    def binary_path(self) -> Path:
        """Canonical path of the core executable."""
        return self.install_dir / self.executable_name

    @property
    def target(self) -> PlatformTarget:
        if self._target is None:
            self._target = PlatformTarget.detect()
        return self._target

    @property
    def install_state(self) -> Optional[InstallerState]:
        """State of the most recent install attempt."""
        return self._state

    def binary_exists(self) -> bool:
        return self.binary_path.is_file()

    async def _initialize(self) -> None:
        self.install_dir.mkdir(parents=True, exist_ok=True)
        logger.info(
            "installer_ready",
            install_dir=str(self.install_dir),
            binary_present=self.binary_exists(),
        )

    async def _shutdown(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
            try:
                await self._inflight
            except (asyncio.CancelledError, LagZeroError):
                pass
        self._inflight = None

    async def _health_check(self) -> Dict[str, Any]:
        return {
            "binary_present": self.binary_exists(),
            "binary_path": str(self.binary_path),
            "version": self._installed_version,
            "installing": self._inflight is not None and not self._inflight.done(),
            "last_phase": self._state.phase.value if self._state else None,
        }

    async def ensure_binary(self) -> Path:
        """
        Return the canonical binary path, installing it first if needed.

        Safe to call concurrently: callers arriving while an install is in
        flight await the same attempt and get the same path or error.

        Raises:
            InstallFailureError: If the binary could not be installed
        """
        if self.binary_exists():
            return self.binary_path

        if self._inflight is None:
            self._inflight = asyncio.get_running_loop().create_task(
                self._install(), name="core-install"
            )
            self._inflight.add_done_callback(self._install_finished)

        return await asyncio.shield(self._inflight)

    def _install_finished(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        # Mark the outcome retrieved when every awaiting caller was cancelled
        if not task.cancelled():
            task.exception()

    def _set_phase(self, phase: InstallPhase, **changes) -> None:
        state = self._state
        state.phase = phase
        for key, value in changes.items():
            setattr(state, key, value)
        self._notify_event("installer_phase", state.to_dict())
        logger.debug("installer_phase", phase=phase.value, **{k: v for k, v in changes.items() if k != "error"})

    async def _install(self) -> Path:
        self._state = InstallerState(
            phase=InstallPhase.CHECKING,
            install_dir=self.install_dir,
            binary_path=self.binary_path,
        )
        self._set_phase(InstallPhase.CHECKING)

        try:
            with error_context("installer", "ensure_binary", install_dir=str(self.install_dir)):
                await asyncio.to_thread(self.install_dir.mkdir, parents=True, exist_ok=True)

                if self.binary_exists():
                    self._set_phase(InstallPhase.READY)
                    return self.binary_path

                adopted = await self._adopt_local_binary()
                if adopted is not None:
                    self._set_phase(InstallPhase.COMPLETED)
                    return adopted

                self._set_phase(InstallPhase.MISSING)
                logger.info("core_binary_missing", path=str(self.binary_path))
                path = await self._download_and_install()
                self._set_phase(InstallPhase.COMPLETED, version=self._installed_version)
                return path
        except LagZeroError as e:
            if not isinstance(e, InstallFailureError):
                e = InstallFailureError(f"Core installation failed: {e.message}", cause=e)
            self._set_phase(InstallPhase.FAILED, error=e.to_dict())
            raise e

    async def _adopt_local_binary(self) -> Optional[Path]:
        """Copy a manually placed executable into the canonical location."""
        candidate = await asyncio.to_thread(
            find_file_recursive, self.install_dir, self.executable_name, [self.binary_path]
        )
        if candidate is None:
            return None

        logger.info("adopting_local_binary", source=str(candidate), target=str(self.binary_path))
        try:
            await asyncio.to_thread(self._install_executable, candidate)
        except OSError as e:
            raise InstallFailureError(f"Failed to adopt {candidate}: {e}", cause=e) from e
        return self.binary_path

    def _install_executable(self, source: Path) -> None:
        """Copy ``source`` plus adjacent shared libraries into place and mark it executable."""
        shutil.copyfile(source, self.binary_path)

        if self.executable_name.lower().endswith(".exe"):
            for sibling in source.parent.iterdir():
                if sibling.is_file() and sibling.name.lower().endswith(".dll"):
                    shutil.copyfile(sibling, self.install_dir / sibling.name)

        mode = self.binary_path.stat().st_mode
        os.chmod(self.binary_path, mode | stat.S_IRWXU | stat.S_IRGRP | stat.S_IXGRP | stat.S_IROTH | stat.S_IXOTH)

    def _session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.settings.request_timeout,
            sock_read=self.settings.request_timeout,
        )
        return aiohttp.ClientSession(timeout=timeout)

    async def _download_and_install(self) -> Path:
        async with self._session() as session:
            self._set_phase(InstallPhase.RESOLVING)
            release: ReleaseInfo = await retry(
                lambda attempt: self.feed.resolve(session, self.target),
                self.retry_policy,
                retry_on=(NetworkError,),
            )
            self._state.version = release.version

            archive_path = self.install_dir / f"sing-box-{release.version}{release.archive_ext}"
            extract_dir = self.install_dir / f"tmp-{uuid.uuid4().hex[:12]}"

            try:
                await retry(
                    lambda attempt: self._download(session, release.download_url, archive_path),
                    self.retry_policy,
                    retry_on=(NetworkError,),
                )

                self._set_phase(InstallPhase.EXTRACTING)
                await asyncio.to_thread(
                    self._extract_and_install, archive_path, release.archive_ext, extract_dir
                )
            finally:
                await asyncio.to_thread(shutil.rmtree, extract_dir, True)
                await asyncio.to_thread(_unlink_quietly, archive_path)

        if not self.binary_exists():
            raise BinaryNotFoundError("Core executable still missing after installation")

        self._installed_version = release.version
        logger.info("core_binary_installed", path=str(self.binary_path), version=release.version)
        return self.binary_path

    async def _download(self, session: aiohttp.ClientSession, url: str, dest: Path) -> str:
        """
        Stream ``url`` into ``dest`` following at most ``max_redirects`` hops.

        Returns:
            The final URL the archive was downloaded from
        """
        headers = {"User-Agent": self.settings.user_agent}
        current = url
        step = self.settings.progress_step_percent

        for _ in range(self.settings.max_redirects + 1):
            with network_errors(current):
                async with session.get(current, headers=headers, allow_redirects=False) as response:
                    location = response.headers.get("Location")
                    if response.status in REDIRECT_STATUSES and location:
                        logger.debug("download_redirect", status=response.status, location=location)
                        current = urljoin(current, location)
                        continue
                    if response.status >= 300:
                        raise HttpStatusError(response.status, current)

                    total = response.content_length or 0
                    received = 0
                    last_bucket = -1
                    self._set_phase(
                        InstallPhase.DOWNLOADING,
                        progress_bytes=0,
                        total_bytes=total or None,
                        percent=0 if total else None,
                    )

                    async with aiofiles.open(dest, "wb") as handle:
                        async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                            await handle.write(chunk)
                            received += len(chunk)
                            if total > 0:
                                percent = min(100, received * 100 // total)
                                bucket = percent // step * step
                                if bucket != last_bucket:
                                    last_bucket = bucket
                                    self._set_phase(
                                        InstallPhase.DOWNLOADING,
                                        progress_bytes=received,
                                        percent=bucket,
                                    )

                    self._state.progress_bytes = received
                    logger.info("download_complete", url=current, bytes=received)
                    return current

        raise RedirectLimitError(url, self.settings.max_redirects)

    def _extract_and_install(self, archive_path: Path, archive_ext: str, extract_dir: Path) -> None:
        extract_dir.mkdir(parents=True, exist_ok=True)
        try:
            if archive_ext == ".zip":
                with zipfile.ZipFile(archive_path) as archive:
                    archive.extractall(extract_dir)
            elif archive_ext == ".tar.gz":
                with tarfile.open(archive_path, "r:gz") as archive:
                    if hasattr(tarfile, "data_filter"):
                        archive.extractall(extract_dir, filter="data")
                    else:
                        archive.extractall(extract_dir)
            else:
                raise ArchiveError(f"Unsupported archive format: {archive_ext}")
        except (zipfile.BadZipFile, tarfile.TarError, EOFError, OSError) as e:
            raise ArchiveError(f"Failed to extract {archive_path.name}: {e}", cause=e) from e

        executable = find_file_recursive(extract_dir, self.executable_name)
        if executable is None:
            raise BinaryNotFoundError(f"{self.executable_name} not found in {archive_path.name}")

        try:
            self._install_executable(executable)
        except OSError as e:
            raise InstallFailureError(f"Failed to install {executable.name}: {e}", cause=e) from e

    async def binary_version(self) -> Optional[str]:
        """Ask the installed binary for its version."""
        if not self.binary_exists():
            return None
        try:
            process = await asyncio.create_subprocess_exec(
                str(self.binary_path), "version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env=core_environment(),
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=10)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("version_check_failed", path=str(self.binary_path), error=str(e))
            return None

        match = _VERSION_PATTERN.search(stdout.decode("utf-8", errors="replace"))
        if process.returncode == 0 and match:
            self._installed_version = match.group(1)
        return self._installed_version

    async def check_for_update(self) -> Optional[str]:
        """Return the latest release version when it is newer than the installed one."""
        current = await self.binary_version()
        async with self._session() as session:
            release = await retry(
                lambda attempt: self.feed.resolve(session, self.target),
                self.retry_policy,
                retry_on=(NetworkError,),
            )

        try:
            newer = current is None or pkg_version.parse(release.version) > pkg_version.parse(current)
        except pkg_version.InvalidVersion:
            newer = release.version != current

        logger.info("update_check", current=current, latest=release.version, newer=newer)
        return release.version if newer else None


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


__all__ = [
    'CoreInstaller',
    'InstallPhase',
    'InstallerState',
    'find_file_recursive',
    'REDIRECT_STATUSES',
]
