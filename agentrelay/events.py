"""Event model for agentrelay."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    INIT = "init"
    TEXT = "text"
    TOOL_USE = "tool_use"
    RESULT = "result"
    SYSTEM = "system"
    ERROR = "error"


class ToolStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class UsageStats:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    cost_usd: float = 0.0
    reasoning_tokens: int = 0
    context_window: int = 0

    def __add__(self, other: "UsageStats") -> "UsageStats":
        return UsageStats(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cost_usd=self.cost_usd + other.cost_usd,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
            context_window=other.context_window or self.context_window,
        )

    def to_dict(self) -> dict:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "costUsd": self.cost_usd,
            "reasoningTokens": self.reasoning_tokens,
            "contextWindow": self.context_window,
        }


@dataclass(slots=True)
class AgentEvent:
    """One normalized line of agent output."""
    type: EventType
    session_id: Optional[str] = None
    text: Optional[str] = None
    is_partial: bool = False
    tool_name: Optional[str] = None
    tool_state: Optional[dict] = None
    usage: Optional[UsageStats] = None
    slash_commands: Optional[list[str]] = None
    raw: Any = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AgentError:
    """Classified failure reported by an agent process."""
    type: str
    message: str
    recoverable: bool
    agent_id: str
    session_id: str = ""
    raw: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"


class InputMode(str, Enum):
    AI = "ai"
    SHELL = "shell"


@dataclass
class LogEntry:
    source: str            # "user", "stdout", "stderr", "system"
    text: str
    queued: bool = False
    timestamp: datetime = field(default_factory=datetime.now)


# ---------------------------------------------------------------------------
# Group chat
# ---------------------------------------------------------------------------

class GroupChatState(str, Enum):
    IDLE = "idle"
    MODERATOR_THINKING = "moderator-thinking"
    AGENT_WORKING = "agent-working"


class ParticipantState(str, Enum):
    IDLE = "idle"
    WORKING = "working"


@dataclass
class GroupChatParticipant:
    name: str
    agent_id: str
    session_id: str
    added_at: float
    last_activity: Optional[float] = None
    last_summary: str = ""
    message_count: int = 0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "agentId": self.agent_id,
            "sessionId": self.session_id,
            "addedAt": self.added_at,
            "lastActivity": self.last_activity,
            "lastSummary": self.last_summary,
            "messageCount": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GroupChatParticipant":
        return cls(
            name=data["name"],
            agent_id=data.get("agentId", ""),
            session_id=data.get("sessionId", ""),
            added_at=data.get("addedAt", 0.0),
            last_activity=data.get("lastActivity"),
            last_summary=data.get("lastSummary", ""),
            message_count=data.get("messageCount", 0),
        )


@dataclass
class ModeratorConfig:
    custom_path: str = ""
    custom_args: str = ""
    custom_env_vars: dict[str, str] = field(default_factory=dict)


@dataclass
class GroupChat:
    id: str
    name: str
    moderator_agent_id: str
    log_path: str
    images_dir: str
    created_at: float
    participants: list[GroupChatParticipant] = field(default_factory=list)
    moderator_config: ModeratorConfig = field(default_factory=ModeratorConfig)
    moderator_session_id: Optional[str] = None

    def participant(self, name: str) -> Optional[GroupChatParticipant]:
        for p in self.participants:
            if p.name == name:
                return p
        return None


@dataclass(slots=True)
class GroupChatMessage:
    timestamp: str
    sender: str
    content: str
    read_only: Optional[bool] = None


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

class HistoryEntryType(str, Enum):
    AUTO = "AUTO"
    USER = "USER"
    RESPONSE = "RESPONSE"


@dataclass
class HistoryEntry:
    id: str
    type: HistoryEntryType
    timestamp: float
    summary: str
    full_response: str = ""
    session_id: str = ""
    agent_session_id: str = ""
    participant_name: str = ""
    success: bool = True
    usage: Optional[UsageStats] = None
