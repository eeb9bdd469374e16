"""Batch (auto-run) controller: works through a markdown checklist task by task.

Each task runs in its own process, ``<session>-batch-<uuid>``, so the
session's interactive conversation is never touched. Stopping is
cooperative and only takes effect between tasks.
"""

import asyncio
import logging
import os
import re
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from agentrelay.agents import AgentDetector
from agentrelay.errors import AgentUnavailableError, BatchRunError, ProtocolError
from agentrelay.events import AgentEvent, EventType, HistoryEntryType, UsageStats
from agentrelay.history import DEFAULT_SUMMARY_CHARS, HistoryStore, make_summary, new_entry
from agentrelay.notifications import HISTORY_ENTRY_ADDED, NotificationBus
from agentrelay.process import ProcessManager, SpawnConfig
from agentrelay.session import SessionRegistry

logger = logging.getLogger(__name__)

SCRATCHPAD_PLACEHOLDER = "$$SCRATCHPAD$$"

_UNCHECKED_RE = re.compile(r"^[ \t]*[-*][ \t]+\[ \][ \t]*\S", re.MULTILINE)
_CHECKED_RE = re.compile(r"^[ \t]*[-*][ \t]+\[[xX]\][ \t]*\S", re.MULTILINE)


def count_unchecked_tasks(content: str) -> int:
    return len(_UNCHECKED_RE.findall(content or ""))


def count_checked_tasks(content: str) -> int:
    return len(_CHECKED_RE.findall(content or ""))


@dataclass
class BatchRunState:
    session_id: str
    running: bool = False
    stopping: bool = False
    total_tasks: int = 0
    completed_tasks: int = 0
    current_task_index: int = 0
    document_path: str = ""
    agent_session_ids: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    error: Optional[str] = None

    def snapshot(self) -> "BatchRunState":
        return BatchRunState(
            session_id=self.session_id, running=self.running, stopping=self.stopping,
            total_tasks=self.total_tasks, completed_tasks=self.completed_tasks,
            current_task_index=self.current_task_index, document_path=self.document_path,
            agent_session_ids=list(self.agent_session_ids), started_at=self.started_at,
            finished_at=self.finished_at, error=self.error,
        )


@dataclass
class _TaskOutput:
    result_text: str = ""
    streamed_text: str = ""
    agent_session_id: str = ""
    usage: Optional[UsageStats] = None


class BatchRunner:
    def __init__(
        self,
        process_manager: ProcessManager,
        registry: SessionRegistry,
        detector: AgentDetector,
        history: HistoryStore,
        bus: Optional[NotificationBus] = None,
        summary_max_chars: int = DEFAULT_SUMMARY_CHARS,
    ):
        self._pm = process_manager
        self._registry = registry
        self._detector = detector
        self._history = history
        self._bus = bus
        self._summary_max_chars = summary_max_chars
        self._states: dict[str, BatchRunState] = {}
        self._stop_events: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def get_state(self, session_id: str) -> Optional[BatchRunState]:
        state = self._states.get(session_id)
        return state.snapshot() if state else None

    def is_running(self, session_id: str) -> bool:
        state = self._states.get(session_id)
        return state is not None and state.running

    async def start(self, session_id: str, context_content: str, prompt: str) -> BatchRunState:
        """Start a run in the background and return its initial state."""
        if self.is_running(session_id):
            raise BatchRunError(f"A batch run is already active for session {session_id}")

        session = self._registry.require(session_id)
        agent = self._detector.get_agent(session.agent_id)
        if agent is None or not agent.available:
            raise AgentUnavailableError(session.agent_id)

        total = count_unchecked_tasks(context_content)
        if total == 0:
            raise BatchRunError("No unchecked tasks found in the document")

        fd, path = tempfile.mkstemp(prefix=f"agentrelay-{session_id}-", suffix=".md")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(context_content)

        state = BatchRunState(session_id=session_id, running=True, total_tasks=total,
                              document_path=path)
        self._states[session_id] = state
        self._stop_events[session_id] = asyncio.Event()
        logger.info("Batch run started for %s: %d tasks", session_id, total)

        task = asyncio.create_task(self._run(state, prompt.replace(SCRATCHPAD_PLACEHOLDER, path)))
        self._tasks[session_id] = task
        return state.snapshot()

    def stop(self, session_id: str) -> bool:
        """Ask the run to stop once the current task finishes."""
        state = self._states.get(session_id)
        if state is None or not state.running:
            return False
        state.stopping = True
        self._stop_events[session_id].set()
        logger.info("Batch stop requested for %s", session_id)
        return True

    async def wait(self, session_id: str) -> Optional[BatchRunState]:
        task = self._tasks.get(session_id)
        if task is not None:
            await task
        return self.get_state(session_id)

    # -- run loop ------------------------------------------------------------

    async def _run(self, state: BatchRunState, prompt: str) -> None:
        stop = self._stop_events[state.session_id]
        try:
            while not stop.is_set():
                before = self._read_document(state)
                remaining = count_unchecked_tasks(before)
                if remaining == 0:
                    break

                state.current_task_index = state.completed_tasks
                ok = await self._run_task(state, prompt)
                if not ok:
                    break
                state.completed_tasks += 1

                after = self._read_document(state)
                progressed = (count_unchecked_tasks(after) < remaining
                              or count_checked_tasks(after) > count_checked_tasks(before))
                if not progressed:
                    logger.warning("Batch task for %s made no progress; stopping", state.session_id)
                    state.error = "No progress on the task list"
                    break
        except ProtocolError as e:
            logger.error("Batch run for %s aborted: %s", state.session_id, e)
            state.error = str(e)
        finally:
            state.running = False
            state.stopping = False
            state.finished_at = time.time()
            try:
                os.unlink(state.document_path)
            except FileNotFoundError:
                pass
            logger.info("Batch run for %s finished: %d/%d tasks",
                        state.session_id, state.completed_tasks, state.total_tasks)

    def _read_document(self, state: BatchRunState) -> str:
        try:
            with open(state.document_path, "r", encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            logger.warning("Cannot read batch document %s: %s", state.document_path, e)
            return ""

    async def _run_task(self, state: BatchRunState, prompt: str) -> bool:
        session = self._registry.require(state.session_id)
        agent = self._detector.get_agent(session.agent_id)
        process_id = f"{session.id}-batch-{uuid.uuid4().hex}"
        output = _TaskOutput()

        def on_event(sid: str, event: AgentEvent) -> None:
            if sid != process_id:
                return
            if event.type == EventType.RESULT and event.text:
                output.result_text = event.text
            elif event.type == EventType.TEXT and event.text:
                output.streamed_text += event.text

        def on_session_id(sid: str, agent_session_id: str) -> None:
            if sid == process_id:
                output.agent_session_id = agent_session_id

        def on_usage(sid: str, usage: UsageStats) -> None:
            if sid == process_id:
                output.usage = usage if output.usage is None else output.usage + usage

        unsubscribers = [
            self._pm.on_event(on_event),
            self._pm.on_session_id(on_session_id),
            self._pm.on_usage(on_usage),
        ]
        try:
            waiter = self._pm.wait_for_exit(process_id)
            result = await self._pm.spawn(SpawnConfig(
                session_id=process_id, agent_id=session.agent_id, cwd=session.cwd,
                prompt=prompt, read_only=session.read_only, model=session.model,
                agent=agent,
            ))
            if not result.success:
                waiter.cancel()
                state.error = "Failed to spawn batch task"
                self._add_history(state, "Failed to start batch task", "", False, output)
                return False

            code = await waiter
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()

        if output.agent_session_id:
            state.agent_session_ids.append(output.agent_session_id)
        response = output.result_text or output.streamed_text
        summary = make_summary(response, self._summary_max_chars)
        if not summary:
            summary = f"Task {state.completed_tasks + 1} {'completed' if code == 0 else 'failed'}"
        self._add_history(state, summary, response, code == 0, output)
        return True

    def _add_history(self, state: BatchRunState, summary: str, response: str,
                     success: bool, output: _TaskOutput) -> None:
        entry = new_entry(
            HistoryEntryType.AUTO, summary,
            full_response=response,
            session_id=state.session_id,
            agent_session_id=output.agent_session_id,
            success=success,
            usage=output.usage,
        )
        self._history.add(state.session_id, entry)
        if self._bus is not None:
            self._bus.emit(HISTORY_ENTRY_ADDED, state.session_id, entry)
