"""YAML configuration for agentrelay.

Lookup order: explicit path, ``$AGENTRELAY_CONFIG``, then
``~/.config/agentrelay/config.yaml``. Missing keys fall back to
DEFAULT_CONFIG; a missing or unreadable file yields the defaults.
"""

import copy
import logging
import os
import pathlib
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "AGENTRELAY_CONFIG"
DEFAULT_CONFIG_PATH = pathlib.Path.home() / ".config" / "agentrelay" / "config.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "data_dir": str(pathlib.Path.home() / ".local" / "share" / "agentrelay"),
    "log_level": "INFO",
    "default_shell": "bash",
    "agents": {},
    "batch": {
        "summary_max_chars": 150,
    },
    "chat": {
        "history_context": 20,
    },
}


@dataclass
class AgentSettings:
    """Per-agent overrides."""
    custom_path: str = ""
    custom_args: str = ""
    env: dict[str, str] = field(default_factory=dict)
    model: str = ""


@dataclass
class Settings:
    data_dir: str = DEFAULT_CONFIG["data_dir"]
    log_level: str = "INFO"
    default_shell: str = "bash"
    agents: dict[str, AgentSettings] = field(default_factory=dict)
    summary_max_chars: int = 150
    history_context: int = 20

    def agent(self, agent_id: str) -> AgentSettings:
        return self.agents.get(agent_id) or AgentSettings()

    @property
    def group_chats_dir(self) -> pathlib.Path:
        return pathlib.Path(self.data_dir).expanduser() / "group-chats"

    @property
    def sessions_path(self) -> pathlib.Path:
        return pathlib.Path(self.data_dir).expanduser() / "sessions.json"

    @property
    def history_dir(self) -> pathlib.Path:
        return pathlib.Path(self.data_dir).expanduser() / "history"

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        agents = {}
        for agent_id, raw in (data.get("agents") or {}).items():
            if not isinstance(raw, dict):
                logger.warning("Ignoring malformed settings for agent %s", agent_id)
                continue
            agents[str(agent_id)] = AgentSettings(
                custom_path=str(raw.get("custom_path") or ""),
                custom_args=str(raw.get("custom_args") or ""),
                env={str(k): str(v) for k, v in (raw.get("env") or {}).items()},
                model=str(raw.get("model") or ""),
            )
        return cls(
            data_dir=str(data["data_dir"]),
            log_level=str(data["log_level"]).upper(),
            default_shell=str(data["default_shell"]),
            agents=agents,
            summary_max_chars=int(data["batch"]["summary_max_chars"]),
            history_context=int(data["chat"]["history_context"]),
        )


def merge_dict(base: dict, override: dict) -> dict:
    """Recursively merge ``override`` into a copy of ``base``."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def resolve_config_path(path: Optional[str] = None) -> pathlib.Path:
    if path:
        return pathlib.Path(path).expanduser()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return pathlib.Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def load_settings(path: Optional[str] = None) -> Settings:
    config_path = resolve_config_path(path)

    if not config_path.exists():
        logger.debug("No config file at %s, using defaults", config_path)
        return Settings.from_dict(DEFAULT_CONFIG)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (yaml.YAMLError, OSError) as e:
        logger.warning("Could not read config %s: %s; using defaults", config_path, e)
        return Settings.from_dict(DEFAULT_CONFIG)

    if not data:
        return Settings.from_dict(DEFAULT_CONFIG)
    if not isinstance(data, dict):
        logger.warning("Config %s is not a mapping; using defaults", config_path)
        return Settings.from_dict(DEFAULT_CONFIG)

    try:
        settings = Settings.from_dict(merge_dict(DEFAULT_CONFIG, data))
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.warning("Invalid config %s: %s; using defaults", config_path, e)
        return Settings.from_dict(DEFAULT_CONFIG)

    logger.info("Loaded config from %s", config_path)
    return settings
