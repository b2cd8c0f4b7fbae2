"""
Pytest configuration and shared fixtures for LagZero Core tests.
"""

import pytest
import shutil
import sys
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from lagzero_core.core.release_feed import PlatformTarget
from lagzero_core.core.validator import ConfigValidator
from lagzero_core.managers.installer import CoreInstaller
from lagzero_core.managers.supervisor import CoreSupervisor
from lagzero_core.utils.config import LagZeroSettings, SupervisorConfig
from lagzero_core.utils.notifications import EventBus
from tests.fixtures.core_fixtures import CoreFixtures, EventRecorder


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake core binaries are POSIX scripts")

LINUX_AMD64 = PlatformTarget(os_name="linux", arch="amd64")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def settings(temp_dir: Path) -> LagZeroSettings:
    """Settings rooted in the temp directory with test-friendly timings."""
    return LagZeroSettings(
        data_dir=temp_dir,
        installer={"retry_step": 0.0},
        supervisor={
            "startup_window": 0.5,
            "retry_backoff": 0.05,
            "kill_grace": 0.3,
            "stop_timeout": 3.0,
        },
        monitor={"poll_interval": 60.0},
    )


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(events: EventBus) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture
def bin_dir(settings: LagZeroSettings) -> Path:
    path = settings.installer.bin_dir
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def core_config(settings: LagZeroSettings) -> Path:
    """Persisted core configuration document."""
    CoreFixtures.create_core_document(settings.core_config_path)
    return settings.core_config_path


@pytest.fixture
def spawn_log(temp_dir: Path) -> Path:
    return temp_dir / "spawns.log"


@pytest.fixture
def installer(settings: LagZeroSettings, events: EventBus) -> CoreInstaller:
    return CoreInstaller(settings.installer, events, target=LINUX_AMD64)


@pytest.fixture
async def supervisor_factory(
    settings: LagZeroSettings,
    events: EventBus,
    installer: CoreInstaller,
) -> AsyncGenerator:
    """Build supervisors with optional setting overrides; all are shut down afterwards."""
    created = []

    async def factory(**overrides) -> CoreSupervisor:
        config = SupervisorConfig(**{**settings.supervisor.model_dump(), **overrides})
        supervisor = CoreSupervisor(config, events, installer, ConfigValidator(timeout=10.0))
        await supervisor.initialize()
        created.append(supervisor)
        return supervisor

    yield factory

    for supervisor in created:
        await supervisor.shutdown()
    await events.drain()
