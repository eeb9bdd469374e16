"""Group chat: one moderator directing named participant agents.

Every message goes through the shared transcript log. User input is
logged as ``user->moderator`` and handed to the moderator only; the
moderator's replies are never forwarded automatically. Forwarding to a
participant is an explicit send_to_participant call, logged as
``moderator-><name>``.

Delivery follows the agent's capabilities: interactive agents are written
to on stdin, batch-mode agents get a fresh process per message that
resumes their previous conversation.
"""

import asyncio
import logging
import os
import re
import shlex
import time
import uuid
from collections import deque
from dataclasses import replace
from typing import Iterable, Optional, Union

from agentrelay.agents import AgentDefinition, AgentDetector
from agentrelay.chatlog import ChatLog
from agentrelay.chatstore import GroupChatStore
from agentrelay.errors import (
    AgentUnavailableError,
    DuplicateParticipantError,
    ModeratorAlreadyActiveError,
    ModeratorNotActiveError,
    ParticipantNotFoundError,
    ProcessCommunicationError,
    ProtocolError,
    SpawnError,
)
from agentrelay.events import (
    AgentEvent,
    EventType,
    GroupChat,
    GroupChatMessage,
    GroupChatParticipant,
    GroupChatState,
    HistoryEntry,
    HistoryEntryType,
    ModeratorConfig,
    ParticipantState,
    UsageStats,
)
from agentrelay.history import make_summary, new_entry
from agentrelay.notifications import (
    HISTORY_ENTRY_ADDED,
    MESSAGE_APPENDED,
    PARTICIPANT_STATE_CHANGED,
    PARTICIPANTS_CHANGED,
    STATE_CHANGED,
    USAGE_UPDATED,
    NotificationBus,
)
from agentrelay.process import ProcessManager, SpawnConfig

logger = logging.getLogger(__name__)

_MENTION_RE = re.compile(r"@([\w.-]+)")
_BLANK_LINE_RE = re.compile(r"\n[ \t]*\n")
_SENTENCE_RE = re.compile(r"^(.+?[.!?])(?=\s|$)", re.DOTALL)


# ---------------------------------------------------------------------------
# Mentions and overviews
# ---------------------------------------------------------------------------

def normalize_mention_name(name: str) -> str:
    """Participant names are mentioned with whitespace runs as hyphens."""
    return re.sub(r"\s+", "-", name)


def mention_matches(mention: str, name: str) -> bool:
    return mention.lower() == normalize_mention_name(name).lower()


def extract_all_mentions(text: str) -> list[str]:
    mentions: list[str] = []
    for match in _MENTION_RE.finditer(text or ""):
        if match.group(1) not in mentions:
            mentions.append(match.group(1))
    return mentions


def extract_mentions(text: str,
                     participants: Iterable[Union[GroupChatParticipant, str]]) -> list[str]:
    """Participant names @mentioned in ``text``, in order of first mention."""
    names = [p if isinstance(p, str) else p.name for p in participants]
    found: list[str] = []
    for mention in extract_all_mentions(text):
        for name in names:
            if mention_matches(mention, name) and name not in found:
                found.append(name)
    return found


def extract_overview(text: str, max_chars: int = 300) -> str:
    """The plain-text overview a participant puts before its first blank line.

    Without a blank line, the first sentence is used instead.
    """
    text = (text or "").strip()
    if not text:
        return ""
    parts = _BLANK_LINE_RE.split(text, maxsplit=1)
    if len(parts) == 2:
        overview = " ".join(line.strip() for line in parts[0].splitlines())
    else:
        match = _SENTENCE_RE.match(text)
        overview = match.group(1) if match else text
        overview = " ".join(overview.split())
    return make_summary(overview, max_chars)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def moderator_system_prompt(chat_name: str, log_path: str) -> str:
    return f"""You are the moderator of a group chat named "{chat_name}".

You coordinate a team of AI agents on behalf of the user. You do not do the
work yourself; you break the user's request into tasks and assign them.

How to work:
1. Address a participant with an @mention of their name (spaces become
   hyphens, e.g. @Backend-Dev) followed by clear, self-contained instructions.
2. Mention several participants in one reply when their tasks are independent.
3. When every part of the request is answered, reply to the user directly,
   without any @mentions, summarizing the outcome.

The complete conversation, including every participant's reply, is in the
chat log at "{log_path}". Read it whenever you need context."""


def participant_system_prompt(name: str, chat_name: str, log_path: str) -> str:
    return f"""You are "{name}", a participant in the group chat "{chat_name}".

A moderator will send you instructions. Work on them, then answer with ONE
message in exactly this shape:

1. Overview (required): one to three sentences of plain text, with no
   markdown at all, saying what you did. It is copied into the group
   history on its own, so keep it short and concrete.
2. A blank line.
3. Details (optional): anything else, markdown welcome: code, lists,
   explanations.

Example:
Added input validation to the signup form and covered it with unit tests.

## Details
- ...

The chat log at "{log_path}" holds everything the others have said; read it
for context before you start. Stay within your role and keep the moderator
informed."""


def _format_history(messages: list[GroupChatMessage]) -> str:
    return "\n".join(f"[{m.sender}]: {m.content}" for m in messages)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class GroupChatManager:
    def __init__(
        self,
        store: GroupChatStore,
        process_manager: Optional[ProcessManager],
        detector: AgentDetector,
        bus: Optional[NotificationBus] = None,
        chat_log: Optional[ChatLog] = None,
        history_context: int = 20,
    ):
        self.store = store
        self._pm = process_manager
        self._detector = detector
        self._bus = bus
        self._log = chat_log or ChatLog()
        self._history_context = history_context

        self._moderators: dict[str, str] = {}                 # chat id -> session id
        self._participants: dict[str, dict[str, str]] = {}    # chat id -> name -> session id
        self._owners: dict[str, tuple[str, Optional[str]]] = {}  # session id -> (chat id, name)
        self._agents: dict[str, AgentDefinition] = {}         # session id -> agent
        self._cwds: dict[str, str] = {}
        self._agent_session_ids: dict[str, str] = {}          # session id -> upstream id
        self._streamed: dict[str, str] = {}
        self._responded: set[str] = set()
        self._queued: dict[str, deque[tuple[str, bool]]] = {}  # session id -> (message, read only)
        self._redriven: set[str] = set()
        self._working: dict[str, set[str]] = {}
        self._states: dict[str, GroupChatState] = {}
        self._read_only: dict[str, bool] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()

        self._unsubscribers = []
        if process_manager is not None:
            self._unsubscribers = [
                process_manager.on_event(self._on_event),
                process_manager.on_session_id(self._on_session_id),
                process_manager.on_usage(self._on_usage),
                process_manager.on_exit(self._on_exit),
            ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _lock(self, chat_id: str, key: str) -> asyncio.Lock:
        return self._locks.setdefault((chat_id, key), asyncio.Lock())

    def _emit(self, kind: str, chat_id: str, payload=None) -> None:
        if self._bus is not None:
            self._bus.emit(kind, chat_id, payload)

    def _set_state(self, chat_id: str, state: GroupChatState) -> None:
        self._states[chat_id] = state
        self._emit(STATE_CHANGED, chat_id, state.value)

    def _resolve_agent(self, agent_id: str,
                       config: Optional[ModeratorConfig] = None) -> AgentDefinition:
        agent = self._detector.get_agent(agent_id)
        if agent is None:
            raise AgentUnavailableError(agent_id)
        if config is not None:
            if config.custom_path:
                agent = replace(agent, path=os.path.expanduser(config.custom_path), available=True)
            if config.custom_args:
                agent = replace(agent, custom_args=shlex.split(config.custom_args))
            if config.custom_env_vars:
                agent = replace(agent, custom_env={**agent.custom_env, **config.custom_env_vars})
        if not agent.available:
            raise AgentUnavailableError(agent_id)
        return agent

    def _track(self, session_id: str, chat_id: str, name: Optional[str],
               agent: AgentDefinition, cwd: str) -> None:
        self._owners[session_id] = (chat_id, name)
        self._agents[session_id] = agent
        self._cwds[session_id] = cwd

    def _untrack(self, session_id: str) -> None:
        self._owners.pop(session_id, None)
        self._agents.pop(session_id, None)
        self._cwds.pop(session_id, None)
        self._responded.discard(session_id)
        self._agent_session_ids.pop(session_id, None)
        self._streamed.pop(session_id, None)
        self._queued.pop(session_id, None)
        self._redriven.discard(session_id)

    # -- moderator -----------------------------------------------------------

    async def spawn_moderator(self, chat_id: str, cwd: Optional[str] = None) -> str:
        """Start the moderator for a chat; a second start is rejected."""
        async with self._lock(chat_id, "\0moderator"):
            chat = self.store.require(chat_id)
            if chat_id in self._moderators:
                raise ModeratorAlreadyActiveError(chat_id)

            agent = self._resolve_agent(chat.moderator_agent_id, chat.moderator_config)
            session_id = f"group-chat-{chat_id}-moderator-{uuid.uuid4().hex[:8]}"

            # Batch-mode moderators are spawned per message
            if self._pm is not None and not agent.capabilities.supports_batch_mode:
                result = await self._pm.spawn(SpawnConfig(
                    session_id=session_id, agent_id=agent.id,
                    cwd=cwd or os.path.expanduser("~"),
                    initial_input=moderator_system_prompt(chat.name, chat.log_path) + "\n",
                    agent=agent,
                ))
                if not result.success:
                    raise SpawnError(f"Failed to spawn moderator for group chat {chat_id}",
                                     session_id=session_id, pid=result.pid)

            self._moderators[chat_id] = session_id
            self._track(session_id, chat_id, None, agent, cwd or os.path.expanduser("~"))
            self._set_state(chat_id, GroupChatState.IDLE)
            logger.info("Moderator %s started for group chat %s", session_id, chat_id)
            return session_id

    start_moderator = spawn_moderator

    async def stop_moderator(self, chat_id: str) -> bool:
        async with self._lock(chat_id, "\0moderator"):
            session_id = self._moderators.get(chat_id)
            if session_id is None:
                return False
            if self._pm is not None:
                self._pm.kill(session_id)
            del self._moderators[chat_id]
            self._untrack(session_id)
            self._set_state(chat_id, GroupChatState.IDLE)
            logger.info("Moderator stopped for group chat %s", chat_id)
            return True

    async def route_user_message(self, chat_id: str, message: str,
                                 read_only: bool = False) -> GroupChatMessage:
        chat = self.store.require(chat_id)
        session_id = self._moderators.get(chat_id)
        if session_id is None:
            raise ModeratorNotActiveError(chat_id)

        logged = await self._log.append(chat.log_path, "user->moderator", message,
                                        read_only=read_only or None)
        self._emit(MESSAGE_APPENDED, chat_id, logged)
        self._read_only[chat_id] = read_only
        self._set_state(chat_id, GroupChatState.MODERATOR_THINKING)

        if self._pm is not None:
            prompt = await self._moderator_prompt(chat, session_id, message, read_only)
            try:
                await self._deliver(session_id, chat, message, prompt, read_only=read_only)
            except (SpawnError, ProcessCommunicationError):
                self._set_state(chat_id, GroupChatState.IDLE)
                raise
        return logged

    send_to_moderator = route_user_message

    async def _moderator_prompt(self, chat: GroupChat, session_id: str, message: str,
                                read_only: bool) -> str:
        parts = []
        if session_id not in self._agent_session_ids:
            parts.append(moderator_system_prompt(chat.name, chat.log_path))
        if chat.participants:
            roster = "\n".join(f"- @{normalize_mention_name(p.name)} ({p.agent_id})"
                               for p in chat.participants)
            parts.append(f"## Participants\n{roster}")
        history = await self._log.read(chat.log_path)
        recent = history[-self._history_context:] if self._history_context else []
        if recent:
            parts.append(f"## Recent Chat History\n{_format_history(recent)}")
        header = "## User Request (READ-ONLY MODE - do not make changes)" if read_only \
            else "## User Request"
        parts.append(f"{header}\n{message}")
        return "\n\n".join(parts)

    async def route_moderator_response(self, chat_id: str, text: str) -> list[str]:
        """Log the moderator's reply; return the participants it @mentions."""
        chat = self.store.require(chat_id)
        logged = await self._log.append(chat.log_path, "moderator", text)
        self._emit(MESSAGE_APPENDED, chat_id, logged)
        mentions = extract_mentions(text, chat.participants)
        if not self._working.get(chat_id) and not self._has_queued_turn(self._moderators.get(chat_id)):
            self._set_state(chat_id, GroupChatState.IDLE)
        return mentions

    # -- participants --------------------------------------------------------

    async def add_participant(self, chat_id: str, name: str, agent_id: str,
                              cwd: Optional[str] = None,
                              env: Optional[dict[str, str]] = None) -> GroupChatParticipant:
        async with self._lock(chat_id, name):
            chat = self.store.require(chat_id)
            if chat_id not in self._moderators:
                raise ModeratorNotActiveError(chat_id)
            if chat.participant(name) is not None or name in self._participants.get(chat_id, {}):
                raise DuplicateParticipantError(name)

            agent = self._resolve_agent(agent_id)
            session_id = f"group-chat-{chat_id}-participant-{name}-{uuid.uuid4().hex[:8]}"
            cwd = cwd or os.path.expanduser("~")

            if self._pm is not None:
                prompt = participant_system_prompt(name, chat.name, chat.log_path)
                batch = agent.capabilities.supports_batch_mode
                result = await self._pm.spawn(SpawnConfig(
                    session_id=session_id, agent_id=agent_id, cwd=cwd,
                    prompt=prompt if batch else None,
                    initial_input=None if batch else prompt + "\n",
                    env=dict(env or {}), agent=agent,
                ))
                if not result.success:
                    raise SpawnError(f"Failed to spawn participant '{name}' for group chat {chat_id}",
                                     session_id=session_id, pid=result.pid)

            self._participants.setdefault(chat_id, {})[name] = session_id
            self._track(session_id, chat_id, name, agent, cwd)
            participant = GroupChatParticipant(name=name, agent_id=agent_id,
                                               session_id=session_id, added_at=time.time())
            chat = self.store.add_participant(chat_id, participant)
            self._emit(PARTICIPANTS_CHANGED, chat_id, [p.to_dict() for p in chat.participants])
            logger.info("Added participant %s (%s) to group chat %s", name, agent_id, chat_id)
            return participant

    async def send_to_participant(self, chat_id: str, name: str, message: str) -> GroupChatMessage:
        chat = self.store.require(chat_id)
        if chat.participant(name) is None:
            raise ParticipantNotFoundError(name)
        session_id = self._participants.get(chat_id, {}).get(name)
        if session_id is None and self._pm is not None:
            raise ProtocolError(f"No active session for participant '{name}'")

        logged = await self._log.append(chat.log_path, f"moderator->{name}", message)
        self._emit(MESSAGE_APPENDED, chat_id, logged)

        if self._pm is not None and session_id is not None:
            read_only = self._read_only.get(chat_id, False)
            prompt = self._participant_prompt(chat, name, session_id, message)
            await self._deliver(session_id, chat, message, prompt, read_only=read_only)

        self._working.setdefault(chat_id, set()).add(name)
        self._emit(PARTICIPANT_STATE_CHANGED, chat_id,
                   {"name": name, "state": ParticipantState.WORKING.value})
        self._set_state(chat_id, GroupChatState.AGENT_WORKING)
        return logged

    def _participant_prompt(self, chat: GroupChat, name: str, session_id: str, message: str) -> str:
        if session_id in self._agent_session_ids:
            return message
        return participant_system_prompt(name, chat.name, chat.log_path) + "\n\n" + message

    async def route_agent_response(self, chat_id: str, name: str, text: str) -> HistoryEntry:
        chat = self.store.require(chat_id)
        participant = chat.participant(name)
        if participant is None:
            raise ParticipantNotFoundError(name)

        logged = await self._log.append(chat.log_path, name, text)
        self._emit(MESSAGE_APPENDED, chat_id, logged)

        overview = extract_overview(text)
        self.store.update_participant(
            chat_id, name,
            last_activity=time.time(),
            last_summary=overview,
            message_count=participant.message_count + 1,
        )
        self._emit(PARTICIPANTS_CHANGED, chat_id,
                   [p.to_dict() for p in self.store.require(chat_id).participants])

        entry = self.store.add_history_entry(chat_id, new_entry(
            HistoryEntryType.RESPONSE, overview,
            full_response=text, session_id=chat_id, participant_name=name,
            agent_session_id=self._agent_session_ids.get(participant.session_id, ""),
        ))
        self._emit(HISTORY_ENTRY_ADDED, chat_id, entry)

        if not self._has_queued_turn(self._participants.get(chat_id, {}).get(name)):
            self._participant_idle(chat_id, name)
        return entry

    def _participant_idle(self, chat_id: str, name: str) -> None:
        working = self._working.get(chat_id, set())
        working.discard(name)
        self._emit(PARTICIPANT_STATE_CHANGED, chat_id,
                   {"name": name, "state": ParticipantState.IDLE.value})
        if not working and self._states.get(chat_id) == GroupChatState.AGENT_WORKING:
            self._set_state(chat_id, GroupChatState.IDLE)

    async def remove_participant(self, chat_id: str, name: str) -> None:
        """Kill the participant's process, stop tracking it, then persist."""
        async with self._lock(chat_id, name):
            chat = self.store.require(chat_id)
            if chat.participant(name) is None:
                raise ParticipantNotFoundError(name)

            session_id = self._participants.get(chat_id, {}).get(name)
            if self._pm is not None and session_id is not None:
                self._pm.kill(session_id)
            self._participants.get(chat_id, {}).pop(name, None)
            if session_id is not None:
                self._untrack(session_id)
            self._working.get(chat_id, set()).discard(name)

            chat = self.store.remove_participant(chat_id, name)
            self._emit(PARTICIPANTS_CHANGED, chat_id, [p.to_dict() for p in chat.participants])
            logger.info("Removed participant %s from group chat %s", name, chat_id)

    async def clear_all_participant_sessions(self, chat_id: str) -> None:
        """Kill every participant process of a chat; the roster is kept."""
        sessions = dict(self._participants.get(chat_id, {}))
        for name, session_id in sessions.items():
            async with self._lock(chat_id, name):
                if self._pm is not None:
                    self._pm.kill(session_id)
                self._participants.get(chat_id, {}).pop(name, None)
                self._untrack(session_id)
                chat = self.store.load(chat_id)
                if chat is not None and chat.participant(name) is not None:
                    self.store.update_participant(chat_id, name, session_id="")
        self._working.pop(chat_id, None)
        if sessions:
            logger.info("Cleared %d participant sessions for group chat %s", len(sessions), chat_id)

    async def delete_chat(self, chat_id: str) -> bool:
        await self.stop_moderator(chat_id)
        await self.clear_all_participant_sessions(chat_id)
        self._participants.pop(chat_id, None)
        self._states.pop(chat_id, None)
        self._read_only.pop(chat_id, None)
        return self.store.delete(chat_id)

    # -- accessors -----------------------------------------------------------

    def get_moderator_session_id(self, chat_id: str) -> Optional[str]:
        return self._moderators.get(chat_id)

    def is_moderator_active(self, chat_id: str) -> bool:
        return chat_id in self._moderators

    def get_active_participants(self, chat_id: str) -> list[str]:
        return list(self._participants.get(chat_id, {}))

    def get_participant_session_id(self, chat_id: str, name: str) -> Optional[str]:
        return self._participants.get(chat_id, {}).get(name)

    def is_participant_active(self, chat_id: str, name: str) -> bool:
        return name in self._participants.get(chat_id, {})

    def get_state(self, chat_id: str) -> GroupChatState:
        return self._states.get(chat_id, GroupChatState.IDLE)

    async def get_messages(self, chat_id: str) -> list[GroupChatMessage]:
        return await self._log.read(self.store.require(chat_id).log_path)

    def get_history(self, chat_id: str) -> list[HistoryEntry]:
        return self.store.get_history(chat_id)

    def add_history_entry(self, chat_id: str, entry: HistoryEntry) -> HistoryEntry:
        entry = self.store.add_history_entry(chat_id, entry)
        self._emit(HISTORY_ENTRY_ADDED, chat_id, entry)
        return entry

    def delete_history_entry(self, chat_id: str, entry_id: str) -> bool:
        return self.store.delete_history_entry(chat_id, entry_id)

    def clear_history(self, chat_id: str) -> None:
        self.store.clear_history(chat_id)

    # -- delivery ------------------------------------------------------------

    async def _deliver(self, session_id: str, chat: GroupChat, message: str, prompt: str,
                       read_only: bool = False) -> None:
        assert self._pm is not None
        agent = self._agents[session_id]
        if agent.capabilities.supports_batch_mode:
            # One turn per process: later messages wait for the running one to exit
            if self._pm.is_running(session_id) or session_id in self._queued:
                queue = self._queued.setdefault(session_id, deque())
                queue.append((message, read_only))
                logger.info("%s is busy; queued message (%d waiting)", session_id, len(queue))
                return
            await self._spawn_batch(session_id, chat, prompt, read_only)
            return

        if not self._pm.write(session_id, message + "\n"):
            killed = self._pm.kill(session_id)
            logger.warning("Write to %s failed; process %s", session_id,
                           "killed" if killed else "not running")
            raise ProcessCommunicationError(f"Could not write to {session_id}",
                                            session_id=session_id, killed=killed)

    async def _spawn_batch(self, session_id: str, chat: GroupChat, prompt: str,
                           read_only: bool) -> None:
        agent = self._agents[session_id]
        self._streamed.pop(session_id, None)
        result = await self._pm.spawn(SpawnConfig(
            session_id=session_id, agent_id=agent.id,
            cwd=self._cwds.get(session_id, os.path.expanduser("~")),
            prompt=prompt, read_only=read_only,
            agent_session_id=self._agent_session_ids.get(session_id), agent=agent,
        ))
        if not result.success:
            raise SpawnError(f"Failed to spawn {session_id} for group chat {chat.id}",
                             session_id=session_id, pid=result.pid)

    async def _deliver_queued(self, session_id: str) -> None:
        """Start the next queued turn of a batch-mode member."""
        queue = self._queued.get(session_id)
        owner = self._owners.get(session_id)
        if not queue or owner is None:
            self._queued.pop(session_id, None)
            self._redriven.discard(session_id)
            return

        chat_id, name = owner
        message, read_only = queue.popleft()
        chat = self.store.require(chat_id)
        if name is None:
            prompt = await self._moderator_prompt(chat, session_id, message, read_only)
        else:
            prompt = self._participant_prompt(chat, name, session_id, message)

        try:
            await self._spawn_batch(session_id, chat, prompt, read_only)
        except SpawnError:
            self._queued.pop(session_id, None)
            self._redriven.discard(session_id)
            if name is None:
                self._set_state(chat_id, GroupChatState.IDLE)
            else:
                self._participant_idle(chat_id, name)
            raise
        if not queue:
            self._queued.pop(session_id, None)

    def _has_queued_turn(self, session_id: Optional[str]) -> bool:
        return session_id is not None and (session_id in self._queued
                                           or session_id in self._redriven)

    # -- process callbacks ---------------------------------------------------

    def _spawn_task(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Routing agent output failed: %s", task.exception())

    def _on_event(self, session_id: str, event: AgentEvent) -> None:
        owner = self._owners.get(session_id)
        if owner is None:
            return
        if event.type == EventType.TEXT and event.text:
            self._streamed[session_id] = self._streamed.get(session_id, "") + event.text
            return
        if event.type != EventType.RESULT:
            return

        text = event.text or self._streamed.get(session_id, "")
        self._streamed.pop(session_id, None)
        if not text:
            return
        self._responded.add(session_id)
        self._redriven.discard(session_id)
        chat_id, name = owner
        if name is None:
            self._spawn_task(self.route_moderator_response(chat_id, text))
        else:
            self._spawn_task(self.route_agent_response(chat_id, name, text))

    def _on_session_id(self, session_id: str, agent_session_id: str) -> None:
        if session_id in self._owners:
            self._agent_session_ids[session_id] = agent_session_id

    def _on_usage(self, session_id: str, usage: UsageStats) -> None:
        owner = self._owners.get(session_id)
        if owner is not None and owner[1] is None:
            self._emit(USAGE_UPDATED, owner[0], usage)

    def _on_exit(self, session_id: str, code: int) -> None:
        owner = self._owners.get(session_id)
        if owner is None:
            return
        chat_id, name = owner
        agent = self._agents.get(session_id)
        batch = agent is not None and agent.capabilities.supports_batch_mode
        queued = batch and bool(self._queued.get(session_id))
        self._redriven.discard(session_id)

        if session_id in self._responded:
            self._responded.discard(session_id)
        elif queued:
            logger.warning("%s exited (code %s) without a response", session_id, code)
        elif name is not None and name in self._working.get(chat_id, set()):
            logger.warning("Participant %s exited (code %s) without a response", name, code)
            self._participant_idle(chat_id, name)
        elif name is None and self._states.get(chat_id) == GroupChatState.MODERATOR_THINKING:
            self._set_state(chat_id, GroupChatState.IDLE)

        if queued:
            self._redriven.add(session_id)
            self._spawn_task(self._deliver_queued(session_id))
        if batch:
            return

        # Interactive processes are gone for good once they exit
        logger.warning("Group chat process %s exited with code %s", session_id, code)
        if name is None:
            if self._moderators.get(chat_id) == session_id:
                del self._moderators[chat_id]
        else:
            self._participants.get(chat_id, {}).pop(name, None)
        self._untrack(session_id)
