"""Tests for YAML configuration loading."""

import pathlib

from agentrelay.config import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG,
    load_settings,
    merge_dict,
    resolve_config_path,
)


class TestMergeDict:

    def test_nested_merge(self):
        merged = merge_dict({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1}

    def test_base_not_mutated(self):
        base = {"a": {"x": 1}}
        merge_dict(base, {"a": {"x": 2}})
        assert base == {"a": {"x": 1}}


class TestResolvePath:

    def test_explicit_path(self, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, "/env/config.yaml")
        assert resolve_config_path("/x/c.yaml") == pathlib.Path("/x/c.yaml")

    def test_env_var(self, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, "/env/config.yaml")
        assert resolve_config_path() == pathlib.Path("/env/config.yaml")

    def test_default(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        assert resolve_config_path().name == "config.yaml"


class TestLoadSettings:

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "missing.yaml"))
        assert settings.data_dir == DEFAULT_CONFIG["data_dir"]
        assert settings.summary_max_chars == 150
        assert settings.history_context == 20

    def test_partial_file_merged(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "log_level: debug\n"
            "batch:\n"
            "  summary_max_chars: 80\n"
            "agents:\n"
            "  codex:\n"
            "    custom_args: --foo\n"
            "    model: o3\n"
            "    env:\n"
            "      OPENAI_BASE_URL: http://localhost\n"
        )
        settings = load_settings(str(path))
        assert settings.log_level == "DEBUG"
        assert settings.summary_max_chars == 80
        assert settings.history_context == 20
        assert settings.agent("codex").model == "o3"
        assert settings.agent("codex").env == {"OPENAI_BASE_URL": "http://localhost"}
        assert settings.agent("opencode").model == ""

    def test_malformed_yaml_falls_back(self, tmp_path, caplog):
        path = tmp_path / "config.yaml"
        path.write_text("agents: [unclosed\n")
        settings = load_settings(str(path))
        assert settings.default_shell == "bash"
        assert "using defaults" in caplog.text

    def test_non_mapping_falls_back(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        assert load_settings(str(path)).log_level == "INFO"

    def test_invalid_value_falls_back(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("batch:\n  summary_max_chars: lots\n")
        assert load_settings(str(path)).summary_max_chars == 150

    def test_env_var_used(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text(f"data_dir: {tmp_path}\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        settings = load_settings()
        assert settings.group_chats_dir == tmp_path / "group-chats"
        assert settings.sessions_path == tmp_path / "sessions.json"
