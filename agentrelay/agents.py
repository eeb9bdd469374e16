"""Agent definitions, capability flags and command-line assembly."""

import logging
import os
import shlex
import shutil
from dataclasses import dataclass, field, replace
from typing import Optional

from agentrelay.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentCapabilities:
    supports_resume: bool = False
    supports_read_only_mode: bool = False
    supports_json_output: bool = False
    supports_session_id: bool = False
    supports_image_input: bool = False
    supports_slash_commands: bool = False
    supports_session_storage: bool = False
    supports_cost_tracking: bool = False
    supports_usage_stats: bool = False
    supports_batch_mode: bool = False
    supports_streaming: bool = False
    supports_result_messages: bool = False
    supports_model_selection: bool = False


@dataclass
class AgentDefinition:
    """Static description of one agent CLI.

    Argument templates may contain ``{session_id}``, ``{model}`` or
    ``{cwd}``; they are filled in by build_agent_args.
    """
    id: str
    name: str
    binary_name: str
    args: list[str] = field(default_factory=list)
    capabilities: AgentCapabilities = field(default_factory=AgentCapabilities)
    batch_mode_prefix: list[str] = field(default_factory=list)
    batch_mode_args: list[str] = field(default_factory=list)
    json_output_args: list[str] = field(default_factory=list)
    working_dir_args: list[str] = field(default_factory=list)
    read_only_args: list[str] = field(default_factory=list)
    model_args: list[str] = field(default_factory=list)
    resume_args: list[str] = field(default_factory=list)
    no_prompt_separator: bool = False

    # Filled by AgentDetector
    available: bool = False
    path: str = ""
    custom_args: list[str] = field(default_factory=list)
    custom_env: dict[str, str] = field(default_factory=dict)


AGENT_DEFINITIONS: list[AgentDefinition] = [
    AgentDefinition(
        id="terminal",
        name="Terminal",
        binary_name="bash",
    ),
    AgentDefinition(
        id="claude-code",
        name="Claude Code",
        binary_name="claude",
        args=["--print", "--verbose", "--output-format", "stream-json",
              "--dangerously-skip-permissions"],
        resume_args=["--resume", "{session_id}"],
        read_only_args=["--permission-mode", "plan"],
        model_args=["--model", "{model}"],
        capabilities=AgentCapabilities(
            supports_resume=True, supports_read_only_mode=True,
            supports_json_output=True, supports_session_id=True,
            supports_image_input=True, supports_slash_commands=True,
            supports_session_storage=True, supports_cost_tracking=True,
            supports_usage_stats=True, supports_batch_mode=True,
            supports_streaming=True, supports_result_messages=True,
            supports_model_selection=True,
        ),
    ),
    AgentDefinition(
        id="codex",
        name="Codex",
        binary_name="codex",
        batch_mode_prefix=["exec"],
        batch_mode_args=["--dangerously-bypass-approvals-and-sandbox", "--skip-git-repo-check"],
        json_output_args=["--json"],
        working_dir_args=["-C", "{cwd}"],
        read_only_args=["--sandbox", "read-only"],
        model_args=["-m", "{model}"],
        resume_args=["resume", "{session_id}"],
        capabilities=AgentCapabilities(
            supports_resume=True, supports_read_only_mode=True,
            supports_json_output=True, supports_session_id=True,
            supports_image_input=True, supports_usage_stats=True,
            supports_batch_mode=True, supports_streaming=True,
            supports_result_messages=True, supports_model_selection=True,
        ),
    ),
    AgentDefinition(
        id="opencode",
        name="OpenCode",
        binary_name="opencode",
        batch_mode_prefix=["run"],
        json_output_args=["--format", "json"],
        read_only_args=["--agent", "plan"],
        model_args=["--model", "{model}"],
        resume_args=["--session", "{session_id}"],
        no_prompt_separator=True,
        capabilities=AgentCapabilities(
            supports_resume=True, supports_read_only_mode=True,
            supports_json_output=True, supports_session_id=True,
            supports_image_input=True, supports_session_storage=True,
            supports_cost_tracking=True, supports_usage_stats=True,
            supports_batch_mode=True, supports_streaming=True,
            supports_result_messages=True, supports_model_selection=True,
        ),
    ),
]


def get_agent_definition(agent_id: str) -> Optional[AgentDefinition]:
    for definition in AGENT_DEFINITIONS:
        if definition.id == agent_id:
            return definition
    return None


def get_agent_capabilities(agent_id: str) -> AgentCapabilities:
    """Capabilities for an agent id; unknown ids get everything disabled."""
    definition = get_agent_definition(agent_id)
    return definition.capabilities if definition else AgentCapabilities()


def _fill(template: list[str], **values: str) -> list[str]:
    return [part.format(**values) for part in template]


def build_agent_args(
    agent: Optional[AgentDefinition],
    base_args: Optional[list[str]] = None,
    *,
    prompt: Optional[str] = None,
    cwd: Optional[str] = None,
    read_only: bool = False,
    model: Optional[str] = None,
    agent_session_id: Optional[str] = None,
) -> list[str]:
    """Compose the argument vector (without the prompt itself).

    Each flag family is applied only when the option is supplied and the
    agent defines it; anything else is left out without complaint.
    """
    if agent is None:
        return list(base_args or [])
    args = list(agent.args if base_args is None else base_args)

    if prompt and agent.batch_mode_prefix:
        args = agent.batch_mode_prefix + args

    if prompt and agent.batch_mode_args:
        args = args + agent.batch_mode_args

    if agent.json_output_args and not any(a in args for a in agent.json_output_args):
        args = args + agent.json_output_args

    if cwd and agent.working_dir_args:
        args = args + _fill(agent.working_dir_args, cwd=cwd)

    if read_only and agent.read_only_args:
        args = args + agent.read_only_args

    if model and agent.model_args:
        args = args + _fill(agent.model_args, model=model)

    if agent_session_id and agent.resume_args:
        args = args + _fill(agent.resume_args, session_id=agent_session_id)

    return args


def append_prompt(agent: Optional[AgentDefinition], args: list[str], prompt: str) -> list[str]:
    """Append the prompt, behind ``--`` unless the agent rejects the separator."""
    if agent is not None and agent.no_prompt_separator:
        return args + [prompt]
    return args + ["--", prompt]


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

class AgentDetector:
    """Resolve which agent binaries are installed.

    Results are cached until refresh() is called. A custom path from the
    settings wins over a PATH lookup.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or Settings()
        self._cache: Optional[dict[str, AgentDefinition]] = None

    @property
    def settings(self) -> Settings:
        return self._settings

    def detect(self) -> list[AgentDefinition]:
        if self._cache is None:
            self._cache = {d.id: self._detect_one(d) for d in AGENT_DEFINITIONS}
            found = [a.id for a in self._cache.values() if a.available]
            logger.info("Detected agents: %s", ", ".join(found) or "none")
        return list(self._cache.values())

    def refresh(self) -> list[AgentDefinition]:
        self._cache = None
        return self.detect()

    def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        self.detect()
        assert self._cache is not None
        return self._cache.get(agent_id)

    def _detect_one(self, definition: AgentDefinition) -> AgentDefinition:
        overrides = self._settings.agent(definition.id)
        custom_args = shlex.split(overrides.custom_args) if overrides.custom_args else []
        binary = definition.binary_name
        if definition.id == "terminal":
            binary = self._settings.default_shell or binary

        path = ""
        if overrides.custom_path:
            candidate = os.path.expanduser(overrides.custom_path)
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                path = candidate
            else:
                logger.warning("Custom path for %s is not executable: %s",
                               definition.id, overrides.custom_path)
        if not path:
            path = shutil.which(binary) or ""

        return replace(
            definition,
            available=bool(path),
            path=path,
            custom_args=custom_args,
            custom_env=dict(overrides.env),
        )
