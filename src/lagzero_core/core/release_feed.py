"""
Release feed for the core binary.

Maps the running platform onto the core's release asset naming scheme
and resolves the download URL of the latest release from the GitHub
releases API.
"""

import asyncio
import platform as _platform
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import aiohttp

from ..utils.config import DEFAULT_RELEASE_FEED
from ..utils.errors import (
    AssetNotFoundError,
    HttpStatusError,
    InstallFailureError,
    NetworkError,
    UnsupportedPlatformError,
)
from ..utils.logging import get_logger


logger = get_logger("lagzero.release_feed")

_PLATFORMS = {
    "windows": "windows",
    "win32": "windows",
    "darwin": "darwin",
    "linux": "linux",
}

_ARCHES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "x64": "amd64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "ia32": "386",
}

NETWORK_EXCEPTIONS = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    asyncio.TimeoutError,
    socket.gaierror,
    ConnectionResetError,
)


@contextmanager
def network_errors(url: str):
    """Re-raise transport failures as retryable NetworkError."""
    try:
        yield
    except NETWORK_EXCEPTIONS as e:
        raise NetworkError(
            f"Network error while fetching {url}: {e or type(e).__name__}",
            cause=e,
        ) from e


@dataclass(frozen=True)
class PlatformTarget:
    """Release naming components for one OS/architecture pair."""
    os_name: str
    arch: str

    @property
    def is_windows(self) -> bool:
        return self.os_name == "windows"

    @property
    def archive_ext(self) -> str:
        return ".zip" if self.is_windows else ".tar.gz"

    @property
    def executable_name(self) -> str:
        return "sing-box.exe" if self.is_windows else "sing-box"

    def asset_name(self, version: str) -> str:
        return f"sing-box-{version}-{self.os_name}-{self.arch}{self.archive_ext}"

    @classmethod
    def detect(cls, system: Optional[str] = None, machine: Optional[str] = None) -> "PlatformTarget":
        """Target for the given (or running) system, failing fast when unsupported."""
        system = (system or _platform.system()).lower()
        machine = (machine or _platform.machine()).lower()

        os_name = _PLATFORMS.get(system)
        if os_name is None:
            raise UnsupportedPlatformError(f"Unsupported platform: {system}")
        arch = _ARCHES.get(machine)
        if arch is None:
            raise UnsupportedPlatformError(f"Unsupported architecture: {machine}")
        return cls(os_name=os_name, arch=arch)


@dataclass(frozen=True)
class ReleaseInfo:
    """A resolved release archive."""
    version: str
    asset_name: str
    download_url: str
    archive_ext: str


class ReleaseFeed(Protocol):
    """Resolves the latest release archive for a platform."""

    async def resolve(self, session: aiohttp.ClientSession, target: PlatformTarget) -> ReleaseInfo:
        ...


def parse_version(tag: str) -> str:
    """``v1.2.3`` -> ``1.2.3``."""
    tag = str(tag or "").strip()
    return tag[1:] if tag.startswith("v") else tag


class GitHubReleaseFeed:
    """Latest-release lookup against the GitHub releases API."""

    def __init__(
        self,
        url: str = DEFAULT_RELEASE_FEED,
        user_agent: str = "LagZero",
    ):
        self.url = url
        self.user_agent = user_agent

    async def fetch_release(self, session: aiohttp.ClientSession) -> Dict[str, Any]:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "application/vnd.github+json",
        }
        with network_errors(self.url):
            async with session.get(self.url, headers=headers) as response:
                body = await response.text()
                if response.status >= 300:
                    raise HttpStatusError(response.status, self.url, body=body[:200])
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise InstallFailureError(
                        f"Failed to parse release metadata from {self.url}",
                        cause=e,
                    ) from e

    async def resolve(self, session: aiohttp.ClientSession, target: PlatformTarget) -> ReleaseInfo:
        release = await self.fetch_release(session)
        if not isinstance(release, dict):
            raise InstallFailureError("Release metadata is not an object")

        version = parse_version(release.get("tag_name", ""))
        if not version:
            raise InstallFailureError("Unable to determine the core release version")

        name = target.asset_name(version)
        assets = release.get("assets")
        for asset in assets if isinstance(assets, list) else []:
            if isinstance(asset, dict) and asset.get("name") == name and asset.get("browser_download_url"):
                logger.info("release_resolved", version=version, asset=name)
                return ReleaseInfo(
                    version=version,
                    asset_name=name,
                    download_url=str(asset["browser_download_url"]),
                    archive_ext=target.archive_ext,
                )

        raise AssetNotFoundError(name, version)


__all__ = [
    'GitHubReleaseFeed',
    'NETWORK_EXCEPTIONS',
    'PlatformTarget',
    'ReleaseFeed',
    'ReleaseInfo',
    'network_errors',
    'parse_version',
]
