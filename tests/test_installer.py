"""
Tests for the core binary installer.
"""

import asyncio
import os
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from lagzero_core.core.release_feed import GitHubReleaseFeed, PlatformTarget, ReleaseInfo, parse_version
from lagzero_core.managers.installer import CoreInstaller, InstallPhase, find_file_recursive
from lagzero_core.utils.config import InstallerConfig
from lagzero_core.utils.errors import (
    AssetNotFoundError,
    BinaryNotFoundError,
    HttpStatusError,
    InstallFailureError,
    NetworkError,
    RedirectLimitError,
    UnsupportedPlatformError,
)
from tests.conftest import LINUX_AMD64
from tests.fixtures.core_fixtures import CoreFixtures, StaticReleaseFeed


VERSION = "1.10.7"
ASSET = LINUX_AMD64.asset_name(VERSION)


class ReleaseServer:
    """Local stand-in for the release API and download CDN."""

    def __init__(self, archive: bytes):
        self.archive = archive
        self.requests: list = []
        self.archive_status = 200
        self.app = web.Application()
        self.app.router.add_get("/releases/latest", self.latest)
        self.app.router.add_get("/redirect/{hops}", self.redirect)
        self.app.router.add_get("/download/" + ASSET, self.download)
        self.server = TestServer(self.app)

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))

    async def latest(self, request: web.Request) -> web.Response:
        self.requests.append(request.path)
        return web.json_response({
            "tag_name": f"v{VERSION}",
            "assets": [
                {"name": "sing-box-1.10.7-windows-amd64.zip", "browser_download_url": self.url("/nope")},
                {"name": ASSET, "browser_download_url": self.url("/redirect/3")},
            ],
        })

    async def redirect(self, request: web.Request) -> web.Response:
        self.requests.append(request.path)
        hops = int(request.match_info["hops"])
        if hops <= 0:
            raise web.HTTPFound("/download/" + ASSET)
        raise web.HTTPFound(f"/redirect/{hops - 1}")

    async def download(self, request: web.Request) -> web.Response:
        self.requests.append(request.path)
        if self.archive_status != 200:
            return web.Response(status=self.archive_status)
        return web.Response(body=self.archive, content_type="application/gzip")


@pytest.fixture
async def release_server():
    server = ReleaseServer(CoreFixtures.create_release_archive(LINUX_AMD64, VERSION))
    await server.server.start_server()
    yield server
    await server.server.close()


def make_installer(bin_dir: Path, events, feed, **overrides) -> CoreInstaller:
    config = InstallerConfig(bin_dir=bin_dir, retry_step=0.0, **overrides)
    return CoreInstaller(config, events, feed=feed, target=LINUX_AMD64)


def release_via(server: ReleaseServer, path: str) -> ReleaseInfo:
    return ReleaseInfo(
        version=VERSION,
        asset_name=ASSET,
        download_url=server.url(path),
        archive_ext=LINUX_AMD64.archive_ext,
    )


class TestFastPaths:
    """Test paths that never touch the network."""

    @pytest.mark.asyncio
    async def test_existing_binary_returned_immediately(self, temp_dir, events, recorder):
        bin_dir = temp_dir / "bin"
        binary = CoreFixtures.create_fake_core(bin_dir)
        feed = StaticReleaseFeed(ReleaseInfo(VERSION, ASSET, "http://invalid.test/x", ".tar.gz"))
        installer = make_installer(bin_dir, events, feed)

        assert await installer.ensure_binary() == binary
        assert feed.calls == 0
        assert recorder.of("installer_phase") == []

    @pytest.mark.asyncio
    async def test_manually_placed_binary_is_adopted(self, temp_dir, events, recorder):
        """Test a binary dropped in a subfolder is adopted with zero network calls."""
        bin_dir = temp_dir / "bin"
        manual = bin_dir / "sing-box-1.10.7-linux-amd64" / "nested"
        CoreFixtures.create_fake_core(manual)
        (manual / "sing-box").chmod(0o644)
        feed = StaticReleaseFeed(ReleaseInfo(VERSION, ASSET, "http://invalid.test/x", ".tar.gz"))
        installer = make_installer(bin_dir, events, feed)

        path = await installer.ensure_binary()

        assert path == bin_dir / "sing-box"
        assert path.read_text() == (manual / "sing-box").read_text()
        assert os.access(path, os.X_OK)
        assert feed.calls == 0
        assert [d["phase"] for d in recorder.data("installer_phase")] == ["checking", "completed"]


class TestDownload:
    """Test downloading and extracting releases."""

    @pytest.mark.asyncio
    async def test_install_from_release_feed(self, temp_dir, events, recorder, release_server):
        """Test a full install via the release API, redirects and extraction."""
        bin_dir = temp_dir / "bin"
        feed = GitHubReleaseFeed(url=release_server.url("/releases/latest"))
        installer = make_installer(bin_dir, events, feed)

        path = await installer.ensure_binary()

        assert path == bin_dir / "sing-box"
        assert path.read_text().startswith("#!/bin/sh")
        assert os.access(path, os.X_OK)
        assert release_server.requests[-1] == "/download/" + ASSET
        assert installer.install_state.phase == InstallPhase.COMPLETED
        assert installer.install_state.version == VERSION

        phases = [d["phase"] for d in recorder.data("installer_phase")]
        assert phases[:4] == ["checking", "missing", "resolving", "downloading"]
        assert phases[-2:] == ["extracting", "completed"]

        percents = [d["percent"] for d in recorder.data("installer_phase") if d["phase"] == "downloading"]
        assert percents[-1] == 100
        assert all(p % 20 == 0 for p in percents)

        # Temp archive and extraction dir are gone
        assert sorted(p.name for p in bin_dir.iterdir()) == ["sing-box"]

    @pytest.mark.asyncio
    async def test_redirects_within_limit_succeed(self, temp_dir, events, release_server):
        feed = StaticReleaseFeed(release_via(release_server, "/redirect/4"))
        installer = make_installer(temp_dir / "bin", events, feed, max_redirects=5)

        await installer.ensure_binary()

        # 5 hops then the archive
        assert release_server.requests.count("/download/" + ASSET) == 1
        assert len(release_server.requests) == 6

    @pytest.mark.asyncio
    async def test_redirect_limit_exceeded(self, temp_dir, events, recorder, release_server):
        bin_dir = temp_dir / "bin"
        feed = StaticReleaseFeed(release_via(release_server, "/redirect/5"))
        installer = make_installer(bin_dir, events, feed, max_redirects=5)

        with pytest.raises(RedirectLimitError):
            await installer.ensure_binary()

        assert "/download/" + ASSET not in release_server.requests
        assert recorder.data("installer_phase")[-1]["phase"] == "failed"
        assert recorder.data("installer_phase")[-1]["error"]["code"] == "REDIRECT_LIMIT"
        assert list(bin_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_bad_status_is_not_retried(self, temp_dir, events, release_server):
        release_server.archive_status = 404
        feed = StaticReleaseFeed(release_via(release_server, "/download/" + ASSET))
        installer = make_installer(temp_dir / "bin", events, feed)

        with pytest.raises(HttpStatusError) as exc_info:
            await installer.ensure_binary()

        assert exc_info.value.status == 404
        assert release_server.requests == ["/download/" + ASSET]

    @pytest.mark.asyncio
    async def test_archive_without_binary(self, temp_dir, events, release_server):
        release_server.archive = CoreFixtures.create_release_archive(LINUX_AMD64, VERSION, include_binary=False)
        feed = StaticReleaseFeed(release_via(release_server, "/download/" + ASSET))
        bin_dir = temp_dir / "bin"
        installer = make_installer(bin_dir, events, feed)

        with pytest.raises(BinaryNotFoundError):
            await installer.ensure_binary()

        assert list(bin_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_asset_fails_fast(self, temp_dir, events, release_server):
        feed = GitHubReleaseFeed(url=release_server.url("/releases/latest"))
        installer = CoreInstaller(
            InstallerConfig(bin_dir=temp_dir / "bin", retry_step=0.0),
            events,
            feed=feed,
            target=PlatformTarget(os_name="darwin", arch="arm64"),
        )

        with pytest.raises(AssetNotFoundError) as exc_info:
            await installer.ensure_binary()

        assert exc_info.value.asset_name == "sing-box-1.10.7-darwin-arm64.tar.gz"
        assert release_server.requests == ["/releases/latest"]


class TestRetryAndCoalescing:
    """Test network retries and concurrent callers."""

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(self, temp_dir, events, release_server):
        feed = StaticReleaseFeed(release_via(release_server, "/download/" + ASSET), failures=2)
        installer = make_installer(temp_dir / "bin", events, feed, network_retries=3)

        await installer.ensure_binary()

        assert feed.calls == 3

    @pytest.mark.asyncio
    async def test_network_retries_exhausted(self, temp_dir, events):
        feed = StaticReleaseFeed(ReleaseInfo(VERSION, ASSET, "http://invalid.test/x", ".tar.gz"), failures=10)
        installer = make_installer(temp_dir / "bin", events, feed, network_retries=3)

        with pytest.raises(NetworkError):
            await installer.ensure_binary()

        assert feed.calls == 3

    @pytest.mark.asyncio
    async def test_non_network_error_not_retried(self, temp_dir, events):
        feed = StaticReleaseFeed(
            ReleaseInfo(VERSION, ASSET, "http://invalid.test/x", ".tar.gz"),
            error=AssetNotFoundError(ASSET, VERSION),
        )
        installer = make_installer(temp_dir / "bin", events, feed, network_retries=3)

        with pytest.raises(AssetNotFoundError):
            await installer.ensure_binary()

        assert feed.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_install(self, temp_dir, events, release_server):
        feed = StaticReleaseFeed(release_via(release_server, "/download/" + ASSET), delay=0.1)
        installer = make_installer(temp_dir / "bin", events, feed)

        paths = await asyncio.gather(*(installer.ensure_binary() for _ in range(5)))

        assert len(set(paths)) == 1
        assert feed.calls == 1
        assert release_server.requests.count("/download/" + ASSET) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_error(self, temp_dir, events):
        feed = StaticReleaseFeed(
            ReleaseInfo(VERSION, ASSET, "http://invalid.test/x", ".tar.gz"),
            error=AssetNotFoundError(ASSET, VERSION),
            delay=0.1,
        )
        installer = make_installer(temp_dir / "bin", events, feed)

        results = await asyncio.gather(
            *(installer.ensure_binary() for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, InstallFailureError) for r in results)
        assert len({id(r) for r in results}) == 1
        assert feed.calls == 1


class TestHelpers:
    """Test installer helpers."""

    def test_find_file_prefers_shallow_matches(self, temp_dir):
        (temp_dir / "a" / "b").mkdir(parents=True)
        (temp_dir / "a" / "b" / "sing-box").write_text("deep")
        (temp_dir / "sing-box").write_text("shallow")

        assert find_file_recursive(temp_dir, "sing-box") == temp_dir / "sing-box"
        assert find_file_recursive(temp_dir, "sing-box", exclude=[temp_dir / "sing-box"]) == temp_dir / "a" / "b" / "sing-box"
        assert find_file_recursive(temp_dir, "missing") is None

    def test_platform_targets(self):
        assert PlatformTarget.detect("Windows", "AMD64").asset_name("1.0.0") == "sing-box-1.0.0-windows-amd64.zip"
        assert PlatformTarget.detect("Linux", "aarch64").asset_name("1.0.0") == "sing-box-1.0.0-linux-arm64.tar.gz"
        assert PlatformTarget.detect("Darwin", "x86_64").executable_name == "sing-box"

        with pytest.raises(UnsupportedPlatformError):
            PlatformTarget.detect("SunOS", "x86_64")
        with pytest.raises(UnsupportedPlatformError):
            PlatformTarget.detect("Linux", "mips")

    def test_parse_version(self):
        assert parse_version("v1.10.7") == "1.10.7"
        assert parse_version("1.11.0-beta.2") == "1.11.0-beta.2"


@pytest.mark.skipif(os.name == "nt", reason="fake core binaries are POSIX scripts")
class TestVersions:
    """Test version queries against the installed binary."""

    @pytest.mark.asyncio
    async def test_binary_version(self, temp_dir, events):
        bin_dir = temp_dir / "bin"
        CoreFixtures.create_fake_core(bin_dir, version="1.9.3")
        installer = make_installer(bin_dir, events, StaticReleaseFeed(ReleaseInfo(VERSION, ASSET, "", ".tar.gz")))

        assert await installer.binary_version() == "1.9.3"

    @pytest.mark.asyncio
    async def test_no_binary_no_version(self, temp_dir, events):
        installer = make_installer(temp_dir / "bin", events, StaticReleaseFeed(ReleaseInfo(VERSION, ASSET, "", ".tar.gz")))

        assert await installer.binary_version() is None

    @pytest.mark.asyncio
    async def test_newer_release_reported(self, temp_dir, events):
        bin_dir = temp_dir / "bin"
        CoreFixtures.create_fake_core(bin_dir, version="1.9.3")
        installer = make_installer(bin_dir, events, StaticReleaseFeed(ReleaseInfo(VERSION, ASSET, "", ".tar.gz")))

        assert await installer.check_for_update() == VERSION

    @pytest.mark.asyncio
    async def test_current_release_not_reported(self, temp_dir, events):
        bin_dir = temp_dir / "bin"
        CoreFixtures.create_fake_core(bin_dir, version=VERSION)
        feed = StaticReleaseFeed(ReleaseInfo(VERSION, ASSET, "", ".tar.gz"), failures=1)
        installer = make_installer(bin_dir, events, feed)

        assert await installer.check_for_update() is None
        assert feed.calls == 2
