"""Tests for agent definitions, argument assembly and detection."""

import os
import stat

from agentrelay.agents import (
    AgentCapabilities,
    AgentDefinition,
    AgentDetector,
    append_prompt,
    build_agent_args,
    get_agent_capabilities,
    get_agent_definition,
)
from agentrelay.config import AgentSettings, Settings


class TestDefinitions:

    def test_known_agents(self):
        for agent_id in ("terminal", "claude-code", "codex", "opencode"):
            assert get_agent_definition(agent_id) is not None

    def test_unknown_agent(self):
        assert get_agent_definition("nope") is None
        assert get_agent_capabilities("nope") == AgentCapabilities()

    def test_capabilities(self):
        caps = get_agent_capabilities("opencode")
        assert caps.supports_resume
        assert caps.supports_batch_mode
        assert not get_agent_capabilities("terminal").supports_json_output


class TestBuildArgs:

    def test_none_agent_passes_base_args(self):
        assert build_agent_args(None, ["-x"]) == ["-x"]
        assert build_agent_args(None) == []

    def test_opencode_batch(self):
        agent = get_agent_definition("opencode")
        args = build_agent_args(agent, prompt="hi", agent_session_id="ses_1",
                                model="anthropic/sonnet", read_only=True)
        assert args[0] == "run"
        assert args[1:3] == ["--format", "json"]
        assert "--agent" in args and "plan" in args
        assert args[-2:] == ["--session", "ses_1"]
        assert "--model" in args and "anthropic/sonnet" in args

    def test_codex_working_dir_and_resume(self):
        agent = get_agent_definition("codex")
        args = build_agent_args(agent, prompt="hi", cwd="/tmp/p", agent_session_id="t-1")
        assert args[0] == "exec"
        assert "--skip-git-repo-check" in args
        assert args.index("-C") + 1 == args.index("/tmp/p")
        assert args[-2:] == ["resume", "t-1"]

    def test_batch_prefix_only_with_prompt(self):
        agent = get_agent_definition("codex")
        args = build_agent_args(agent)
        assert "exec" not in args
        assert "--json" in args

    def test_unsupplied_options_are_omitted(self):
        agent = get_agent_definition("claude-code")
        args = build_agent_args(agent, prompt="hi")
        assert "--resume" not in args
        assert "--model" not in args
        assert "--permission-mode" not in args

    def test_json_args_not_duplicated(self):
        agent = get_agent_definition("codex")
        args = build_agent_args(agent, ["--json"])
        assert args.count("--json") == 1

    def test_option_without_template_is_ignored(self):
        agent = AgentDefinition(id="bare", name="Bare", binary_name="bare")
        assert build_agent_args(agent, prompt="p", cwd="/x", read_only=True,
                                model="m", agent_session_id="s") == []

    def test_append_prompt_separator(self):
        assert append_prompt(get_agent_definition("claude-code"), ["-p"], "go") == ["-p", "--", "go"]
        assert append_prompt(get_agent_definition("opencode"), ["run"], "go") == ["run", "go"]
        assert append_prompt(None, [], "go") == ["--", "go"]


class TestAgentDetector:

    def _make_executable(self, tmp_path, name="fake-agent"):
        path = tmp_path / name
        path.write_text("#!/bin/sh\nexit 0\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR)
        return str(path)

    def test_custom_path_wins(self, tmp_path):
        exe = self._make_executable(tmp_path)
        settings = Settings(agents={"opencode": AgentSettings(
            custom_path=exe, custom_args="--verbose --log 'a b'", env={"K": "V"})})
        agent = AgentDetector(settings).get_agent("opencode")
        assert agent.available
        assert agent.path == exe
        assert agent.custom_args == ["--verbose", "--log", "a b"]
        assert agent.custom_env == {"K": "V"}

    def test_missing_binary_unavailable(self, monkeypatch):
        monkeypatch.setenv("PATH", "/nonexistent")
        agent = AgentDetector(Settings()).get_agent("codex")
        assert agent is not None
        assert not agent.available
        assert agent.path == ""

    def test_non_executable_custom_path_falls_back(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PATH", "/nonexistent")
        plain = tmp_path / "plain"
        plain.write_text("")
        settings = Settings(agents={"codex": AgentSettings(custom_path=str(plain))})
        assert not AgentDetector(settings).get_agent("codex").available

    def test_terminal_uses_default_shell(self):
        agent = AgentDetector(Settings(default_shell="sh")).get_agent("terminal")
        assert agent.available
        assert os.path.basename(agent.path) == "sh"

    def test_cache_and_refresh(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PATH", str(tmp_path))
        detector = AgentDetector(Settings())
        assert not detector.get_agent("opencode").available

        self._make_executable(tmp_path, "opencode")
        assert not detector.get_agent("opencode").available
        detector.refresh()
        assert detector.get_agent("opencode").available

    def test_unknown_agent(self):
        assert AgentDetector(Settings()).get_agent("nope") is None
