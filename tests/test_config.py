"""Tests for configuration loading."""

import os

import pytest

from logrelay.config import Config, load_config, load_env_file, load_yaml_config
from logrelay.errors import ConfigError


class TestLoadConfig:
    def test_defaults(self):
        config = load_config(environ={}, yaml_data={})
        assert config == Config()
        assert config.game_name == "generic"
        assert config.sink == "log"
        assert config.allowed_extensions == ("log",)

    def test_env_overrides(self):
        env = {
            "WATCH_DIRECTORY": "/srv/logs",
            "GAME_NAME": "Minecraft",
            "USER_MAPPINGS": "u123=Alice",
            "ALLOWED_EXTENSIONS": "log, TXT",
            "IGNORE_PATTERNS": "backup,Tmp",
            "DEBOUNCE_MS": "250",
            "SKIP_EXISTING": "yes",
            "MAX_ATTEMPTS": "3",
            "LOG_LEVEL": "debug",
        }
        config = load_config(environ=env, yaml_data={})
        assert config.watch_directory == "/srv/logs"
        assert config.game_name == "minecraft"
        assert config.user_mappings_raw == "u123=Alice"
        assert config.allowed_extensions == ("log", "txt")
        assert config.ignore_patterns == ("backup", "tmp")
        assert config.debounce_ms == 250
        assert config.skip_existing is True
        assert config.max_attempts == 3
        assert config.log_level == "DEBUG"

    def test_webhook_url_selects_webhook_sink(self):
        config = load_config(environ={"DISCORD_WEBHOOK_URL": "https://example.com/hook"}, yaml_data={})
        assert config.sink == "webhook"

    def test_explicit_sink_wins(self):
        env = {"DISCORD_WEBHOOK_URL": "https://example.com/hook", "SINK": "NDJSON"}
        config = load_config(environ=env, yaml_data={})
        assert config.sink == "ndjson"

    def test_blank_env_value_ignored(self):
        config = load_config(environ={"DEBOUNCE_MS": "  "}, yaml_data={})
        assert config.debounce_ms == 500

    def test_yaml_values_applied(self):
        yaml_data = {
            "game_name": "deadside",
            "user_mappings": {"u123": "Alice"},
            "allowed_extensions": ["log", "csv"],
            "rescan_interval": 2,
        }
        config = load_config(environ={}, yaml_data=yaml_data)
        assert config.game_name == "deadside"
        assert config.user_mappings_raw == '{"u123": "Alice"}'
        assert config.allowed_extensions == ("log", "csv")
        assert config.rescan_interval == 2.0

    def test_env_beats_yaml(self):
        config = load_config(environ={"GAME_NAME": "generic"}, yaml_data={"game_name": "minecraft"})
        assert config.game_name == "generic"

    def test_invalid_number_raises(self):
        with pytest.raises(ConfigError, match="DEBOUNCE_MS"):
            load_config(environ={"DEBOUNCE_MS": "soon"}, yaml_data={})

    def test_invalid_log_level_raises(self):
        with pytest.raises(ConfigError):
            load_config(environ={"LOG_LEVEL": "LOUD"}, yaml_data={})

    def test_zero_capacity_raises(self):
        with pytest.raises(ConfigError):
            load_config(environ={"QUEUE_CAPACITY": "0"}, yaml_data={})

    @pytest.mark.parametrize("name", ["RESCAN_INTERVAL", "BACKOFF_BASE"])
    def test_non_positive_interval_raises(self, name):
        with pytest.raises(ConfigError, match=name):
            load_config(environ={name: "0"}, yaml_data={})
        with pytest.raises(ConfigError, match=name):
            load_config(environ={name: "-1.5"}, yaml_data={})

    def test_config_is_frozen(self):
        config = Config()
        with pytest.raises(AttributeError):
            config.game_name = "other"


class TestYamlConfig:
    def test_no_path_returns_empty(self):
        assert load_yaml_config(None) == {}

    def test_loads_mapping(self, tmp_path):
        path = tmp_path / "relay.yaml"
        path.write_text("game_name: minecraft\ndebounce_ms: 100\n")
        assert load_yaml_config(str(path)) == {"game_name": "minecraft", "debounce_ms": 100}

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigError):
            load_yaml_config(str(tmp_path / "missing.yaml"))

    def test_non_mapping_raises(self, tmp_path):
        path = tmp_path / "relay.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            load_yaml_config(str(path))

    def test_relay_config_env_points_at_file(self, tmp_path):
        path = tmp_path / "relay.yaml"
        path.write_text("game_name: deadside\n")
        config = load_config(environ={"RELAY_CONFIG": str(path)})
        assert config.game_name == "deadside"


class TestEnvFile:
    def test_skipped_when_required_vars_set(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("GAME_NAME=minecraft\n")
        environ = {"USER_MAPPINGS": "u1=A", "GAME_NAME": "generic"}
        assert load_env_file(str(env_file), environ=environ) is False

    def test_missing_file(self, tmp_path):
        assert load_env_file(str(tmp_path / ".env"), environ={}) is False

    def test_loads_without_overriding(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("USER_MAPPINGS=u123=Alice\nGAME_NAME=minecraft\n")
        monkeypatch.setenv("USER_MAPPINGS", "")
        monkeypatch.delenv("USER_MAPPINGS")
        monkeypatch.setenv("GAME_NAME", "deadside")

        assert load_env_file(str(env_file)) is True

        assert os.environ["USER_MAPPINGS"] == "u123=Alice"
        assert os.environ["GAME_NAME"] == "deadside"
