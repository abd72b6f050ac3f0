"""Tests for Dockyard configuration loading."""

from __future__ import annotations

import pytest
import yaml

from dockyard.config import DockyardConfig, load_config


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path, monkeypatch):
        for var in ("DOCKYARD_PLATFORM_URL", "DOCKYARD_DATA_DIR", "DOCKYARD_READINESS_ATTEMPTS"):
            monkeypatch.delenv(var, raising=False)
        config = load_config(tmp_path)
        assert config.agent_server.port == 4096
        assert config.agent_server.readiness_attempts == 90
        assert config.retry.max_attempts == 5
        assert config.health.ttl_seconds == 15
        assert config.health.failure_threshold == 3
        assert config.sandbox.dependencies == ["git", "gh"]

    def test_yaml_values(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DOCKYARD_READINESS_ATTEMPTS", raising=False)
        (tmp_path / "config.yaml").write_text(
            yaml.safe_dump(
                {
                    "agent_server": {"port": 5000, "readiness_attempts": 10},
                    "retry": {"base_delay": 0.5},
                }
            )
        )
        config = load_config(tmp_path)
        assert config.agent_server.port == 5000
        assert config.agent_server.readiness_attempts == 10
        assert config.retry.base_delay == 0.5

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DOCKYARD_PLATFORM_URL", "https://platform.test/v1")
        monkeypatch.setenv("DOCKYARD_DATA_DIR", "/var/lib/dockyard")
        monkeypatch.setenv("DOCKYARD_READINESS_ATTEMPTS", "3")
        config = load_config(tmp_path)
        assert config.platform.base_url == "https://platform.test/v1"
        assert config.data_dir == "/var/lib/dockyard"
        assert config.agent_server.readiness_attempts == 3

    def test_bad_readiness_env_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DOCKYARD_READINESS_ATTEMPTS", "lots")
        assert load_config(tmp_path).agent_server.readiness_attempts == 90

    def test_relative_home_dir_rejected(self):
        with pytest.raises(ValueError):
            DockyardConfig(agent_server={"home_dir": "home/agent"})

    def test_platform_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("DOCKYARD_PLATFORM_API_KEY", "pk")
        assert DockyardConfig().platform.api_key == "pk"
