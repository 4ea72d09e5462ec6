"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from groupchat.core.config import (
    DATA_DIR_ENV,
    ConfigError,
    GroupChatConfig,
    load_config,
)
from groupchat.core.output_buffer import MAX_BUFFER_SIZE


class TestGroupChatConfig:
    def test_defaults(self):
        config = GroupChatConfig()
        assert config.data_dir == Path(".groupchat")
        assert config.history_limit == 20
        assert config.summary_length == 50
        assert config.max_buffer_size == MAX_BUFFER_SIZE
        assert config.process_timeout is None
        assert config.db_path == Path(".groupchat/state.db")
        assert config.chats_dir == Path(".groupchat/chats")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"history_limit": -1},
            {"summary_length": 0},
            {"max_buffer_size": 0},
            {"process_timeout": 0},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigError):
            GroupChatConfig(**kwargs)

    def test_env_for(self):
        config = GroupChatConfig(env={"codex": {"A": "1"}})
        assert config.env_for("codex") == {"A": "1"}
        assert config.env_for("gemini-cli") is None


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_default_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv(DATA_DIR_ENV, str(tmp_path / "nothing-here"))
        config = load_config()
        assert config.history_limit == 20
        assert config.data_dir == tmp_path / "nothing-here"

    def test_explicit_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.yaml")

    def test_loads_values(self, tmp_path, monkeypatch):
        monkeypatch.delenv(DATA_DIR_ENV, raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.dump(
                {
                    "data_dir": str(tmp_path / "store"),
                    "history_limit": 5,
                    "process_timeout": 30,
                    "agents": {"my-agent": {"command": "my-agent-cli"}},
                    "env": {"my-agent": {"TOKEN": "x"}},
                }
            )
        )
        config = load_config(path)
        assert config.data_dir == tmp_path / "store"
        assert config.history_limit == 5
        assert config.process_timeout == 30
        assert config.agents["my-agent"]["command"] == "my-agent-cli"
        assert config.env_for("my-agent") == {"TOKEN": "x"}

    def test_env_overrides_data_dir(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("data_dir: /from/file\n")
        monkeypatch.setenv(DATA_DIR_ENV, str(tmp_path / "from-env"))
        assert load_config(path).data_dir == tmp_path / "from-env"

    def test_empty_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv(DATA_DIR_ENV, raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(path).summary_length == 50

    def test_unknown_keys_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("history_limt: 5\n")
        with pytest.raises(ConfigError, match="history_limt"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("history_limit: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_invalid_value_in_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv(DATA_DIR_ENV, raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("summary_length: 0\n")
        with pytest.raises(ConfigError):
            load_config(path)
