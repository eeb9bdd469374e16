"""Session state machine: one agent process plus one shell per session.

States run ``idle -> busy -> idle``; spawn or write failures move a
session to ``error``, which only re-creation leaves. Input sent while
busy is queued and redriven, one message at a time, when the turn ends.
"""

import asyncio
import logging
import os
import pathlib
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from agentrelay.agents import AgentDefinition, AgentDetector
from agentrelay.errors import (
    AgentUnavailableError,
    ProcessCommunicationError,
    ProtocolError,
    SessionNotFoundError,
    SpawnError,
    SpawnPairError,
)
from agentrelay.events import (
    AgentError,
    AgentEvent,
    EventType,
    InputMode,
    LogEntry,
    SessionState,
    UsageStats,
)
from agentrelay.notifications import SESSION_STATE_CHANGED, USAGE_UPDATED, NotificationBus
from agentrelay.process import ProcessManager, SpawnConfig
from agentrelay.storage import read_json, write_json_atomic

logger = logging.getLogger(__name__)

AI_SUFFIX = "-ai"
TERMINAL_SUFFIX = "-terminal"
SHELL_SUFFIX = "-shell"


@dataclass
class ModeState:
    """Busy flag, log and command history of one input mode."""
    busy: bool = False
    logs: list[LogEntry] = field(default_factory=list)
    history: list[str] = field(default_factory=list)

    def log(self, source: str, text: str, queued: bool = False) -> LogEntry:
        entry = LogEntry(source, text, queued=queued)
        self.logs.append(entry)
        return entry


@dataclass
class Session:
    id: str
    name: str
    agent_id: str
    cwd: str
    state: SessionState = SessionState.IDLE
    agent_session_id: Optional[str] = None
    message_queue: deque[str] = field(default_factory=deque)
    input_mode: InputMode = InputMode.AI
    ai: ModeState = field(default_factory=ModeState)
    shell: ModeState = field(default_factory=ModeState)
    write_lock_tab: Optional[str] = None
    usage: UsageStats = field(default_factory=UsageStats)
    read_only: bool = False
    model: Optional[str] = None
    ai_pid: int = 0
    terminal_pid: int = 0
    created_at: float = field(default_factory=time.time)

    @property
    def ai_process_id(self) -> str:
        return f"{self.id}{AI_SUFFIX}"

    @property
    def terminal_process_id(self) -> str:
        return f"{self.id}{TERMINAL_SUFFIX}"

    @property
    def shell_process_id(self) -> str:
        return f"{self.id}{SHELL_SUFFIX}"

    def to_snapshot(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "agentId": self.agent_id,
            "cwd": self.cwd,
            "agentSessionId": self.agent_session_id,
            "messageQueue": list(self.message_queue),
            "aiCommandHistory": list(self.ai.history),
            "shellCommandHistory": list(self.shell.history),
            "readOnly": self.read_only,
            "model": self.model,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_snapshot(cls, data: dict) -> "Session":
        session = cls(
            id=data["id"],
            name=data.get("name", ""),
            agent_id=data["agentId"],
            cwd=data.get("cwd", ""),
            agent_session_id=data.get("agentSessionId"),
            message_queue=deque(data.get("messageQueue") or []),
            read_only=data.get("readOnly", False),
            model=data.get("model"),
            created_at=data.get("createdAt", time.time()),
        )
        session.ai.history = list(data.get("aiCommandHistory") or [])
        session.shell.history = list(data.get("shellCommandHistory") or [])
        return session


class SessionRegistry:
    """Owns the live Session objects; handed to every component that needs them."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> None:
        self._sessions[session.id] = session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def remove(self, session_id: str) -> Optional[Session]:
        return self._sessions.pop(session_id, None)

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


def split_process_id(process_id: str) -> tuple[str, str]:
    """Split ``<session>-ai`` style ids into (session id, suffix)."""
    for suffix in (AI_SUFFIX, TERMINAL_SUFFIX, SHELL_SUFFIX):
        if process_id.endswith(suffix):
            return process_id[:-len(suffix)], suffix
    return process_id, ""


class SessionManager:
    def __init__(
        self,
        registry: SessionRegistry,
        process_manager: ProcessManager,
        detector: AgentDetector,
        bus: Optional[NotificationBus] = None,
        shell: str = "bash",
    ):
        self.registry = registry
        self._pm = process_manager
        self._detector = detector
        self._bus = bus
        self._shell = shell
        self._tasks: set[asyncio.Task] = set()
        self._locks: dict[str, asyncio.Lock] = {}

        self._unsubscribers = [
            process_manager.on_data(self._on_data),
            process_manager.on_stderr(self._on_stderr),
            process_manager.on_exit(self._on_exit),
            process_manager.on_session_id(self._on_session_id),
            process_manager.on_usage(self._on_usage),
            process_manager.on_event(self._on_event),
            process_manager.on_agent_error(self._on_agent_error),
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def _agent(self, agent_id: str) -> AgentDefinition:
        agent = self._detector.get_agent(agent_id)
        if agent is None or not agent.available:
            raise AgentUnavailableError(agent_id)
        return agent

    # -- lifecycle -----------------------------------------------------------

    async def create_session(
        self,
        name: str,
        agent_id: str,
        cwd: str,
        *,
        read_only: bool = False,
        model: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        """Register a session and spawn its agent and shell processes.

        Batch-mode agents get a fresh process per prompt, so only the shell
        is started up front for them.
        """
        agent = self._agent(agent_id)
        session = Session(
            id=session_id or uuid.uuid4().hex[:12],
            name=name or agent.name,
            agent_id=agent_id,
            cwd=cwd,
            read_only=read_only,
            model=model or self._detector_model(agent_id),
        )
        self.registry.add(session)
        await self._spawn_pair(session, agent)
        logger.info("Created session %s (%s) in %s", session.id, agent_id, cwd)
        return session

    def _detector_model(self, agent_id: str) -> Optional[str]:
        return self._detector.settings.agent(agent_id).model or None

    async def _spawn_pair(self, session: Session, agent: AgentDefinition) -> None:
        ai_ok = True
        if not agent.capabilities.supports_batch_mode:
            result = await self._pm.spawn(SpawnConfig(
                session_id=session.ai_process_id, agent_id=session.agent_id,
                cwd=session.cwd, read_only=session.read_only, model=session.model,
                agent_session_id=session.agent_session_id, agent=agent,
            ))
            session.ai_pid = result.pid
            ai_ok = result.success and result.pid > 0

        result = await self._pm.spawn(SpawnConfig(
            session_id=session.terminal_process_id, agent_id="terminal",
            command=self._shell, cwd=session.cwd, args=[],
        ))
        session.terminal_pid = result.pid
        terminal_ok = result.success and result.pid > 0

        if ai_ok and terminal_ok:
            return

        # Never leave half a pair running
        if ai_ok:
            self._pm.kill(session.ai_process_id)
        if terminal_ok:
            self._pm.kill(session.terminal_process_id)
        self._set_state(session, SessionState.ERROR)
        session.ai.log("system", "Failed to start session processes")
        raise SpawnPairError(
            f"Failed to spawn process pair for session {session.id}",
            session_id=session.id, ai_pid=session.ai_pid, terminal_pid=session.terminal_pid,
        )

    async def delete_session(self, session_id: str) -> None:
        session = self.registry.require(session_id)
        for process_id in (session.ai_process_id, session.terminal_process_id,
                           session.shell_process_id):
            self._pm.kill(process_id)
        self.registry.remove(session_id)
        self._locks.pop(session_id, None)
        logger.info("Deleted session %s", session_id)

    # -- agent mode ----------------------------------------------------------

    async def send_input(self, session_id: str, text: str) -> bool:
        """Deliver ``text`` to the agent, or queue it while a turn is running.

        Returns True when delivered, False when queued.
        """
        session = self.registry.require(session_id)
        async with self._lock(session_id):
            if session.state == SessionState.ERROR:
                raise ProtocolError(f"Session {session_id} is in error state")

            if session.state == SessionState.BUSY:
                session.message_queue.append(text)
                session.ai.log("user", text, queued=True)
                logger.debug("Queued message for %s (%d waiting)",
                             session_id, len(session.message_queue))
                return False

            session.ai.history.append(text)
            session.ai.log("user", text)
            self._set_state(session, SessionState.BUSY)
            await self._deliver(session, text)
            return True

    async def _deliver(self, session: Session, text: str) -> None:
        agent = self._agent(session.agent_id)

        if agent.capabilities.supports_batch_mode:
            result = await self._pm.spawn(SpawnConfig(
                session_id=session.ai_process_id, agent_id=session.agent_id,
                cwd=session.cwd, prompt=text, read_only=session.read_only,
                model=session.model, agent_session_id=session.agent_session_id,
                agent=agent,
            ))
            session.ai_pid = result.pid
            if not result.success or result.pid <= 0:
                session.ai.log("system", "Failed to start agent process")
                self._set_state(session, SessionState.ERROR)
                raise SpawnError(f"Failed to spawn agent for session {session.id}",
                                 session_id=session.id, pid=result.pid)
            return

        if not self._pm.write(session.ai_process_id, text + "\n"):
            killed = self._pm.kill(session.ai_process_id)
            session.ai.log("system", "Write to agent failed; process "
                           + ("killed" if killed else "was not running"))
            self._set_state(session, SessionState.ERROR)
            raise ProcessCommunicationError(
                f"Could not write to agent for session {session.id}",
                session_id=session.id, killed=killed,
            )

    def _end_turn(self, session: Session) -> None:
        """Redrive the next queued message, or go idle."""
        if session.state != SessionState.BUSY:
            return
        if not session.message_queue:
            self._set_state(session, SessionState.IDLE)
            return

        text = session.message_queue.popleft()
        session.ai.history.append(text)
        logger.debug("Redriving queued message for %s", session.id)
        task = asyncio.get_running_loop().create_task(self._redrive(session, text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _redrive(self, session: Session, text: str) -> None:
        async with self._lock(session.id):
            try:
                await self._deliver(session, text)
            except (SpawnError, ProcessCommunicationError, AgentUnavailableError) as e:
                logger.error("Queued message for %s could not be delivered: %s", session.id, e)
                self._set_state(session, SessionState.ERROR)

    # -- shell mode ----------------------------------------------------------

    async def run_shell_command(self, session_id: str, command: str) -> int:
        session = self.registry.require(session_id)
        if session.shell.busy:
            raise ProtocolError(f"A shell command is already running in session {session_id}")

        session.shell.busy = True
        session.shell.history.append(command)
        session.shell.log("user", command)
        self._emit_state(session)
        try:
            code = await self._pm.run_command(session.shell_process_id, command,
                                              session.cwd, shell=self._shell)
        finally:
            session.shell.busy = False
            self._emit_state(session)
        if code != 0:
            session.shell.log("system", f"Command exited with code {code}")
        return code

    def set_input_mode(self, session_id: str, mode: InputMode) -> None:
        session = self.registry.require(session_id)
        session.input_mode = mode
        self._emit_state(session)

    # -- interrupt -----------------------------------------------------------

    def interrupt(self, session_id: str, mode: Optional[InputMode] = None) -> bool:
        """SIGINT the active process of ``mode``; kill it if the signal fails."""
        session = self.registry.require(session_id)
        mode = mode or session.input_mode
        target = session.ai_process_id if mode == InputMode.AI else session.shell_process_id
        mode_state = session.ai if mode == InputMode.AI else session.shell

        if self._pm.interrupt(target):
            mode_state.log("system", "Interrupt sent")
            return True

        killed = self._pm.kill(target)
        if killed:
            mode_state.log("system", "Interrupt failed; process killed")
            logger.warning("Interrupt of %s failed, killed the process", target)
        else:
            mode_state.log("system", "Interrupt failed; no running process")
            if mode == InputMode.AI and session.state == SessionState.BUSY:
                session.message_queue.clear()
                self._set_state(session, SessionState.IDLE)
        return killed

    # -- write lock ----------------------------------------------------------

    def acquire_write_lock(self, session_id: str, tab_id: str) -> bool:
        session = self.registry.require(session_id)
        if session.write_lock_tab not in (None, tab_id):
            return False
        session.write_lock_tab = tab_id
        return True

    def release_write_lock(self, session_id: str, tab_id: str) -> bool:
        session = self.registry.require(session_id)
        if session.write_lock_tab != tab_id:
            return False
        session.write_lock_tab = None
        return True

    def write_lock_owner(self, session_id: str) -> Optional[str]:
        return self.registry.require(session_id).write_lock_tab

    # -- snapshots -----------------------------------------------------------

    def save_snapshots(self, path: "os.PathLike | str") -> None:
        write_json_atomic(path, [s.to_snapshot() for s in self.registry.all()])

    async def restore_sessions(self, path: "os.PathLike | str") -> list[Session]:
        """Re-create sessions from a snapshot file, resuming their conversations."""
        restored = []
        for data in read_json(pathlib.Path(path), default=[]) or []:
            try:
                snapshot = Session.from_snapshot(data)
            except (KeyError, TypeError) as e:
                logger.warning("Skipping malformed session snapshot: %s", e)
                continue
            try:
                agent = self._agent(snapshot.agent_id)
            except AgentUnavailableError as e:
                logger.warning("Cannot restore session %s: %s", snapshot.id, e)
                continue

            self.registry.add(snapshot)
            try:
                await self._spawn_pair(snapshot, agent)
            except SpawnPairError as e:
                logger.error("Restored session %s failed to start: %s", snapshot.id, e)
                restored.append(snapshot)
                continue

            if snapshot.message_queue:
                text = snapshot.message_queue.popleft()
                snapshot.ai.log("user", text)
                self._set_state(snapshot, SessionState.BUSY)
                await self._redrive(snapshot, text)
            restored.append(snapshot)
        return restored

    # -- process callbacks ---------------------------------------------------

    def _lookup(self, process_id: str) -> tuple[Optional[Session], str]:
        session_id, suffix = split_process_id(process_id)
        if not suffix:
            return None, ""
        return self.registry.get(session_id), suffix

    def _on_data(self, process_id: str, text: str) -> None:
        session, suffix = self._lookup(process_id)
        if session is None:
            return
        mode_state = session.ai if suffix == AI_SUFFIX else session.shell
        mode_state.log("stdout", text)

    def _on_stderr(self, process_id: str, text: str) -> None:
        session, suffix = self._lookup(process_id)
        if session is None:
            return
        mode_state = session.ai if suffix == AI_SUFFIX else session.shell
        mode_state.log("stderr", text)

    def _on_session_id(self, process_id: str, agent_session_id: str) -> None:
        session, suffix = self._lookup(process_id)
        if session is None or suffix != AI_SUFFIX:
            return
        session.agent_session_id = agent_session_id
        logger.debug("Session %s bound to agent session %s", session.id, agent_session_id)

    def _on_usage(self, process_id: str, usage: UsageStats) -> None:
        session, suffix = self._lookup(process_id)
        if session is None or suffix != AI_SUFFIX:
            return
        session.usage = session.usage + usage
        if self._bus is not None:
            self._bus.emit(USAGE_UPDATED, session.id, session.usage)

    def _on_event(self, process_id: str, event: AgentEvent) -> None:
        session, suffix = self._lookup(process_id)
        if session is None or suffix != AI_SUFFIX or event.type != EventType.RESULT:
            return
        # Interactive agents keep running; their turn ends on the result
        agent = self._detector.get_agent(session.agent_id)
        if agent is not None and not agent.capabilities.supports_batch_mode:
            self._end_turn(session)

    def _on_agent_error(self, process_id: str, error: AgentError) -> None:
        session, suffix = self._lookup(process_id)
        if session is None or suffix != AI_SUFFIX:
            return
        session.ai.log("system", f"[{error.type}] {error.message}")

    def _on_exit(self, process_id: str, code: int) -> None:
        session, suffix = self._lookup(process_id)
        if session is None:
            return

        if suffix == TERMINAL_SUFFIX:
            session.shell.log("system", f"Shell exited with code {code}")
            return
        if suffix != AI_SUFFIX:
            return

        agent = self._detector.get_agent(session.agent_id)
        if agent is not None and agent.capabilities.supports_batch_mode:
            if code != 0:
                session.ai.log("system", f"Agent exited with code {code}")
            self._end_turn(session)
            return

        # An interactive agent exiting is a crash
        session.ai.log("system", f"Agent process exited unexpectedly (code {code})")
        self._set_state(session, SessionState.ERROR)

    # -- notifications -------------------------------------------------------

    def _set_state(self, session: Session, state: SessionState) -> None:
        if session.state == state:
            return
        logger.debug("Session %s: %s -> %s", session.id, session.state.value, state.value)
        session.state = state
        session.ai.busy = state == SessionState.BUSY
        self._emit_state(session)

    def _emit_state(self, session: Session) -> None:
        if self._bus is None:
            return
        self._bus.emit(SESSION_STATE_CHANGED, session.id, {
            "state": session.state.value,
            "aiBusy": session.ai.busy,
            "shellBusy": session.shell.busy,
            "inputMode": session.input_mode.value,
            "queued": len(session.message_queue),
        })
