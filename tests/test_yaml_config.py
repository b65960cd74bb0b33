"""Tests for the YAML config file: discovery, parsing, save and merge."""

from __future__ import annotations

import pytest
import yaml

from chatbridge.engine.config import BridgeConfig, RuntimeConfig
from chatbridge.engine.errors import ConfigError
from chatbridge.engine.models import PermissionMode
from chatbridge.engine.yaml_config import (
    CONFIG_FILE_NAME,
    build_bridge_config,
    find_config_path,
    generate_config_template,
    load_config_file,
    parse_config_value,
    save_config_file,
    saveable_config,
    write_config_file,
)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


# ── discovery / IO ──


class TestFindConfigPath:
    def test_explicit_path_wins(self, tmp_path):
        assert find_config_path(str(tmp_path / "x.yaml"), tmp_path) == (tmp_path / "x.yaml").resolve()

    def test_local_preferred_over_default(self, tmp_path, isolated_home):
        default = isolated_home / ".chatbridge" / "config.yaml"
        default.parent.mkdir()
        default.write_text("mode: plan\n")
        project = tmp_path / "project"
        project.mkdir()
        assert find_config_path(None, project) == default

        (project / CONFIG_FILE_NAME).write_text("mode: default\n")
        assert find_config_path(None, project) == (project / CONFIG_FILE_NAME).resolve()

    def test_falls_back_to_local_path(self, tmp_path):
        assert find_config_path(None, tmp_path) == (tmp_path / CONFIG_FILE_NAME).resolve()


class TestLoadWrite:
    def test_missing_file_is_empty(self, tmp_path):
        assert load_config_file(tmp_path / "nope.yaml") == {}

    def test_round_trip_keeps_key_order(self, tmp_path):
        path = tmp_path / "c.yaml"
        write_config_file(path, {"whitelist": ["+1555"], "mode": "plan", "max_turns": 3})
        assert list(load_config_file(path)) == ["whitelist", "mode", "max_turns"]

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("whitelist: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config_file(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_config_file(path)


# ── saving ──


class TestSave:
    def test_runtime_only_keys_never_saved(self, tmp_path):
        bridge = BridgeConfig.from_layers({
            "whitelist": ["+1555"],
            "directory": str(tmp_path),
            "resume_session_id": "sess-1",
            "fork_session": True,
            "allow_all_group_participants": True,
            "port": 9999,
            "agent_name": "Robin",
        })
        data = saveable_config(bridge)
        for key in ("resume_session_id", "fork_session", "allow_all_group_participants", "port", "host"):
            assert key not in data
        assert data["whitelist"] == ["+1555"]
        assert data["agent_name"] == "Robin"

    def test_save_uses_conversation_runtime(self, tmp_path):
        bridge = BridgeConfig.from_layers({"whitelist": ["+1555"], "directory": str(tmp_path)})
        runtime = bridge.runtime.copy()
        runtime.permission_mode = PermissionMode.PLAN
        runtime.system_prompt_append = "be brief"

        path = save_config_file(bridge, runtime=runtime)
        assert path == (tmp_path / CONFIG_FILE_NAME).resolve()
        saved = yaml.safe_load(path.read_text())
        assert saved["mode"] == "plan"
        assert saved["system_prompt_append"] == "be brief"
        assert "system_prompt" not in saved

    def test_template_is_valid_yaml(self):
        text = generate_config_template(
            ["+1555"], RuntimeConfig(working_directory="/srv/app", model="sonnet"),
        )
        assert text.startswith("# chatbridge configuration")
        data = yaml.safe_load(text)
        assert data["whitelist"] == ["+1555"]
        assert data["directory"] == "/srv/app"
        assert data["model"] == "sonnet"
        assert "agent_name" not in data


# ── config set parsing ──


class TestParseConfigValue:
    def test_list_comma_and_json(self):
        assert parse_config_value("whitelist", "+1, +2") == ["+1", "+2"]
        assert parse_config_value("whitelist", '["+1", "+2"]') == ["+1", "+2"]

    def test_bad_json_list(self):
        with pytest.raises(ConfigError):
            parse_config_value("claude_md_sources", "[user,")

    def test_numbers_and_bools(self):
        assert parse_config_value("max_turns", "5") == 5
        assert parse_config_value("permission_timeout_seconds", "90") == 90.0
        assert parse_config_value("verbose", "yes") is True
        assert parse_config_value("verbose", "off") is False
        with pytest.raises(ConfigError):
            parse_config_value("max_turns", "lots")

    def test_model_shorthand_resolved(self):
        assert parse_config_value("model", "opus") == "claude-opus-4-5-20251101"
        assert parse_config_value("model", "custom-model") == "custom-model"

    def test_invalid_key(self):
        with pytest.raises(ConfigError) as exc_info:
            parse_config_value("resume_session_id", "abc")
        assert "Invalid key" in str(exc_info.value)


# ── layering ──


class TestBuildBridgeConfig:
    def test_file_env_cli_precedence(self, tmp_path):
        (tmp_path / CONFIG_FILE_NAME).write_text(
            "whitelist: ['+1555']\nmode: plan\nmodel: haiku\nagent_name: FileName\n"
        )
        config = build_bridge_config(
            {"directory": str(tmp_path), "model": "opus"},
            environ={"CHATBRIDGE_MODE": "acceptEdits"},
        )
        assert config.whitelist == ["+1555"]
        assert config.runtime.permission_mode is PermissionMode.ACCEPT_EDITS
        assert config.runtime.model == "claude-opus-4-5-20251101"
        assert config.runtime.agent_name == "FileName"
        assert config.config_path == str((tmp_path / CONFIG_FILE_NAME).resolve())

    def test_explicit_config_path(self, tmp_path):
        custom = tmp_path / "custom.yaml"
        custom.write_text("whitelist: ['+1777']\n")
        config = build_bridge_config({"config": str(custom)}, environ={})
        assert config.whitelist == ["+1777"]

    def test_generates_agent_name_when_unset(self, tmp_path):
        from chatbridge.shared.identity import SUPERHERO_NAMES

        config = build_bridge_config({"directory": str(tmp_path)}, environ={})
        assert config.runtime.agent_name in SUPERHERO_NAMES
        assert config.config_path is None

    def test_invalid_file_value_raises(self, tmp_path):
        (tmp_path / CONFIG_FILE_NAME).write_text("max_turns: -2\n")
        with pytest.raises(ConfigError):
            build_bridge_config({"directory": str(tmp_path)}, environ={})
