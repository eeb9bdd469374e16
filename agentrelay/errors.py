"""Exceptions raised by the orchestration core.

Parse errors never appear here: parsers degrade malformed output to a
safe event instead of raising.
"""

from typing import Optional


class AgentRelayError(Exception):
    """Base class for all agentrelay errors."""


# ---------------------------------------------------------------------------
# Spawn errors
# ---------------------------------------------------------------------------

class SpawnError(AgentRelayError):
    """An agent or shell process could not be started."""

    def __init__(self, message: str, session_id: str = "", pid: int = -1):
        super().__init__(message)
        self.session_id = session_id
        self.pid = pid


class SpawnPairError(SpawnError):
    """One half of an agent/shell pair failed to start."""

    def __init__(self, message: str, session_id: str, ai_pid: int, terminal_pid: int):
        super().__init__(message, session_id=session_id)
        self.ai_pid = ai_pid
        self.terminal_pid = terminal_pid


# ---------------------------------------------------------------------------
# Protocol violations
# ---------------------------------------------------------------------------

class ProtocolError(AgentRelayError):
    """An operation was issued against a missing object or in the wrong state."""


class SessionNotFoundError(ProtocolError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ChatNotFoundError(ProtocolError):
    def __init__(self, chat_id: str):
        super().__init__(f"Group chat not found: {chat_id}")
        self.chat_id = chat_id


class ParticipantNotFoundError(ProtocolError):
    def __init__(self, name: str):
        super().__init__(f"Participant '{name}' not found in group chat")
        self.name = name


class DuplicateParticipantError(ProtocolError):
    def __init__(self, name: str):
        super().__init__(f"Participant with name '{name}' already exists in group chat")
        self.name = name


class ModeratorNotActiveError(ProtocolError):
    def __init__(self, chat_id: str):
        super().__init__(f"Moderator is not active for group chat: {chat_id}")
        self.chat_id = chat_id


class ModeratorAlreadyActiveError(ProtocolError):
    def __init__(self, chat_id: str):
        super().__init__(f"Moderator is already active for group chat: {chat_id}")
        self.chat_id = chat_id


class AgentUnavailableError(ProtocolError):
    def __init__(self, agent_id: str):
        super().__init__(f"Agent '{agent_id}' is not available")
        self.agent_id = agent_id


class BatchRunError(ProtocolError):
    """A batch run could not be started for a session."""


# ---------------------------------------------------------------------------
# Process communication
# ---------------------------------------------------------------------------

class ProcessCommunicationError(AgentRelayError):
    """Writing to or signalling a process failed."""

    def __init__(self, message: str, session_id: str, killed: Optional[bool] = None):
        super().__init__(message)
        self.session_id = session_id
        self.killed = killed
