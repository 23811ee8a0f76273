"""Tests for board configuration loading."""

from pathlib import Path

import pytest

from agentboard.core.config import (
    BoardConfig,
    ConfigError,
    config_path,
    load_config,
    write_default_config,
)


class TestLoadConfig:
    """Tests for load_config()."""

    def test_defaults_without_file(self, tmp_path: Path):
        config = load_config(tmp_path)

        assert config.max_concurrency == 3
        assert config.branch_prefix == "feature/"
        assert config.protected_branches == ["main", "master"]
        assert config.provider.name == "claude"
        assert config.provider.cli_timeout is None

    def test_yaml_values(self, tmp_path: Path):
        """Values in config.yaml override defaults, nested sections included."""
        path = config_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text(
            "max_concurrency: 5\n"
            "reclaim_on_archive: true\n"
            "provider:\n"
            "  name: mock\n"
            "  model: sonnet\n"
        )

        config = load_config(tmp_path)

        assert config.max_concurrency == 5
        assert config.reclaim_on_archive is True
        assert config.provider.name == "mock"
        assert config.provider.model == "sonnet"
        assert "Read" in config.provider.allowed_tools

    def test_empty_file(self, tmp_path: Path):
        path = config_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text("")

        assert load_config(tmp_path) == BoardConfig()

    def test_invalid_yaml(self, tmp_path: Path):
        path = config_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text("max_concurrency: [1, 2\n")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(tmp_path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = config_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text("- one\n- two\n")

        with pytest.raises(ConfigError, match="must contain a mapping"):
            load_config(tmp_path)

    def test_validation_error(self, tmp_path: Path):
        """Concurrency below one is rejected."""
        path = config_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text("max_concurrency: 0\n")

        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(tmp_path)


class TestWriteDefaultConfig:
    """Tests for write_default_config()."""

    def test_writes_once(self, tmp_path: Path):
        """The default file is written once and never overwritten."""
        written = write_default_config(tmp_path)

        assert written == config_path(tmp_path)
        assert load_config(tmp_path) == BoardConfig()
        assert write_default_config(tmp_path) is None


class TestMockAgentFlag:
    """Tests for BoardConfig.use_mock_agent."""

    @pytest.mark.parametrize("value", ["1", "true", "YES"])
    def test_env_forces_mock(self, monkeypatch, value):
        monkeypatch.setenv("AGENTBOARD_MOCK_AGENT", value)
        assert BoardConfig().use_mock_agent is True

    def test_env_off(self, monkeypatch):
        monkeypatch.setenv("AGENTBOARD_MOCK_AGENT", "0")
        assert BoardConfig().use_mock_agent is False

    def test_provider_name(self, monkeypatch):
        monkeypatch.delenv("AGENTBOARD_MOCK_AGENT", raising=False)
        config = BoardConfig()
        config.provider.name = "mock"
        assert config.use_mock_agent is True
