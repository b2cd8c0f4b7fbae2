"""
Tests for settings loading.
"""

import json
import os

import pytest

from lagzero_core.utils.config import ConfigLoader, LagZeroSettings, load_settings
from lagzero_core.utils.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in list(os.environ):
        if key.startswith("LAGZERO_"):
            monkeypatch.delenv(key)


class TestLagZeroSettings:
    """Test defaults and derived paths."""

    def test_defaults(self, temp_dir):
        settings = LagZeroSettings(data_dir=temp_dir)

        assert settings.core_config_path == temp_dir / "config.json"
        assert settings.installer.bin_dir == temp_dir / "bin"
        assert settings.logging.directory == temp_dir / "logs"
        assert settings.supervisor.max_retries == 3
        assert settings.supervisor.retry_backoff == 2.0
        assert settings.supervisor.startup_window == 0.8
        assert settings.supervisor.log_buffer_lines == 80
        assert settings.installer.max_redirects == 5
        assert settings.monitor.poll_interval == 3.0
        assert settings.rules.remote_dns_tag == "remote-primary"

    def test_explicit_paths_win(self, temp_dir):
        settings = LagZeroSettings(
            data_dir=temp_dir,
            core_config_path=temp_dir / "custom.json",
            installer={"bin_dir": temp_dir / "cores"},
        )

        assert settings.core_config_path == temp_dir / "custom.json"
        assert settings.installer.bin_dir == temp_dir / "cores"

    def test_log_level_validated(self):
        settings = LagZeroSettings(logging={"level": "debug"})

        assert settings.logging.level == "DEBUG"


class TestConfigLoader:
    """Test merging of settings sources."""

    @pytest.mark.asyncio
    async def test_yaml_toml_and_json_sources(self, temp_dir):
        (temp_dir / "a.yaml").write_text("supervisor:\n  max_retries: 5\n  retry_backoff: 1.5\n")
        (temp_dir / "b.toml").write_text("[monitor]\npoll_interval = 1.0\n")
        (temp_dir / "c.json").write_text(json.dumps({"installer": {"user_agent": "Test"}}))

        loader = ConfigLoader()
        for name in ("a.yaml", "b.toml", "c.json"):
            loader.add_source(temp_dir / name)
        loader.add_source({"data_dir": str(temp_dir)})
        settings = await loader.load()

        assert settings.supervisor.max_retries == 5
        assert settings.supervisor.retry_backoff == 1.5
        assert settings.monitor.poll_interval == 1.0
        assert settings.installer.user_agent == "Test"
        assert loader.get_settings() is settings

    @pytest.mark.asyncio
    async def test_higher_priority_overrides(self, temp_dir):
        loader = ConfigLoader()
        loader.add_source({"supervisor": {"max_retries": 9, "kill_grace": 0.1}}, priority=50)
        loader.add_source({"supervisor": {"max_retries": 1}}, priority=10)

        settings = await loader.load()

        assert settings.supervisor.max_retries == 9
        assert settings.supervisor.kill_grace == 0.1

    @pytest.mark.asyncio
    async def test_environment_overrides_files(self, temp_dir, monkeypatch):
        (temp_dir / "settings.yaml").write_text("supervisor:\n  max_retries: 5\n")
        monkeypatch.setenv("LAGZERO_SUPERVISOR__MAX_RETRIES", "7")
        monkeypatch.setenv("LAGZERO_LOGGING__LEVEL", "warning")
        monkeypatch.setenv("LAGZERO_DEBUG", "true")

        settings = await load_settings([temp_dir / "settings.yaml"], include_defaults=False)

        assert settings.supervisor.max_retries == 7
        assert settings.logging.level == "WARNING"
        assert settings.debug is True

    @pytest.mark.asyncio
    async def test_missing_file_is_skipped(self, temp_dir):
        settings = await load_settings([temp_dir / "absent.yaml"], include_defaults=False)

        assert settings.supervisor.max_retries == 3

    @pytest.mark.asyncio
    async def test_invalid_values_rejected(self):
        loader = ConfigLoader()
        loader.add_source({"supervisor": {"max_retries": -1}})

        with pytest.raises(ConfigurationError) as exc_info:
            await loader.load()

        assert "supervisor.max_retries" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_malformed_file_rejected(self, temp_dir):
        (temp_dir / "broken.json").write_text("{ nope")
        loader = ConfigLoader()
        loader.add_source(temp_dir / "broken.json")

        with pytest.raises(ConfigurationError):
            await loader.load()

    def test_unknown_file_type_rejected(self, temp_dir):
        with pytest.raises(ConfigurationError):
            ConfigLoader().add_source(temp_dir / "settings.ini")

    def test_settings_before_load(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader().get_settings()
