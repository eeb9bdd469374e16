"""Tests for the batch controller, running a real ``sh`` stand-in agent."""

import asyncio
import os

import pytest

from agentrelay.agents import AgentCapabilities, AgentDefinition
from agentrelay.batch import (
    SCRATCHPAD_PLACEHOLDER,
    BatchRunner,
    count_checked_tasks,
    count_unchecked_tasks,
)
from agentrelay.errors import AgentUnavailableError, BatchRunError
from agentrelay.events import HistoryEntryType
from agentrelay.history import HistoryStore
from agentrelay.notifications import HISTORY_ENTRY_ADDED, NotificationBus
from agentrelay.process import ProcessManager
from agentrelay.session import Session, SessionRegistry

# Ticks the first unchecked box of the document given as $1, then reports
# like `opencode run --format json` would.
CHECK_ONE_TASK = r'''
f="${1##* }"
awk 'BEGIN{d=0} d==0 && /- \[ \]/ {sub(/- \[ \]/, "- [x]"); d=1} {print}' "$f" > "$f.tmp" && mv "$f.tmp" "$f"
printf '%s\n' \
  '{"type":"step_start","sessionID":"ses_b","part":{}}' \
  '{"type":"text","sessionID":"ses_b","part":{"text":"# Checked one box\nmore detail"}}' \
  '{"type":"step_finish","sessionID":"ses_b","part":{"reason":"stop","tokens":{"input":10,"output":5}}}'
'''

DO_NOTHING = r'''
printf '%s\n' '{"type":"step_finish","sessionID":"ses_b","part":{"reason":"stop"}}'
'''

DOCUMENT = """# Plan

- [ ] write the parser
- [ ] add tests
- [x] already done
- [ ] update docs
"""


class _Detector:
    def __init__(self, agent):
        self.agent = agent

    def get_agent(self, agent_id):
        return self.agent if agent_id == self.agent.id else None


def _make_agent(script, binary="sh", available=True):
    return AgentDefinition(
        id="opencode", name="OpenCode", binary_name=binary, path=binary,
        args=["-c", script, "sh"], no_prompt_separator=True,
        capabilities=AgentCapabilities(supports_batch_mode=True),
        available=available,
    )


def _make_runner(tmp_path, script, bus=None, **agent_kwargs):
    registry = SessionRegistry()
    registry.add(Session(id="s1", name="Work", agent_id="opencode", cwd=str(tmp_path)))
    history = HistoryStore(tmp_path / "history")
    runner = BatchRunner(ProcessManager(), registry, _Detector(_make_agent(script, **agent_kwargs)),
                         history, bus=bus)
    return runner, history


class TestTaskCounting:

    def test_counts(self):
        assert count_unchecked_tasks(DOCUMENT) == 3
        assert count_checked_tasks(DOCUMENT) == 1

    def test_ignores_empty_boxes_and_prose(self):
        text = "- [ ]\n* [ ] star item\nsome - [ ] inline\n  - [X] nested done\n"
        assert count_unchecked_tasks(text) == 1
        assert count_checked_tasks(text) == 1

    def test_empty(self):
        assert count_unchecked_tasks("") == 0
        assert count_unchecked_tasks(None) == 0


class TestBatchRun:

    @pytest.mark.asyncio
    async def test_runs_until_checklist_done(self, tmp_path):
        bus = NotificationBus()
        runner, history = _make_runner(tmp_path, CHECK_ONE_TASK, bus=bus)

        state = await runner.start("s1", DOCUMENT, f"Work through {SCRATCHPAD_PLACEHOLDER}")
        assert state.running
        assert state.total_tasks == 3
        assert runner.is_running("s1")
        assert os.path.exists(state.document_path)

        final = await asyncio.wait_for(runner.wait("s1"), 15)
        assert not final.running
        assert final.completed_tasks == 3
        assert final.error is None
        assert final.agent_session_ids == ["ses_b", "ses_b", "ses_b"]
        assert final.finished_at is not None
        assert not os.path.exists(final.document_path)

        entries = history.entries("s1")
        assert len(entries) == 3
        assert all(e.type == HistoryEntryType.AUTO for e in entries)
        assert entries[0].summary == "Checked one box"
        assert entries[0].full_response == "# Checked one box\nmore detail"
        assert entries[0].usage.input_tokens == 10
        assert entries[0].success

        assert len(bus.get_all(HISTORY_ENTRY_ADDED)) == 3

    @pytest.mark.asyncio
    async def test_no_progress_stops(self, tmp_path):
        runner, history = _make_runner(tmp_path, DO_NOTHING)
        await runner.start("s1", DOCUMENT, SCRATCHPAD_PLACEHOLDER)
        final = await asyncio.wait_for(runner.wait("s1"), 10)

        assert final.completed_tasks == 1
        assert final.error == "No progress on the task list"
        entries = history.entries("s1")
        assert len(entries) == 1
        assert entries[0].summary == "Task 1 completed"

    @pytest.mark.asyncio
    async def test_stop_between_tasks(self, tmp_path):
        runner, _ = _make_runner(tmp_path, "sleep 0.3\n" + CHECK_ONE_TASK)
        await runner.start("s1", DOCUMENT, SCRATCHPAD_PLACEHOLDER)
        await asyncio.sleep(0.1)

        assert runner.stop("s1") is True
        assert runner.get_state("s1").stopping
        final = await asyncio.wait_for(runner.wait("s1"), 10)

        assert final.completed_tasks == 1
        assert not final.running
        assert not final.stopping
        assert runner.stop("s1") is False

    @pytest.mark.asyncio
    async def test_spawn_failure_recorded(self, tmp_path):
        runner, history = _make_runner(tmp_path, CHECK_ONE_TASK, binary="/nonexistent/agent")
        await runner.start("s1", DOCUMENT, SCRATCHPAD_PLACEHOLDER)
        final = await asyncio.wait_for(runner.wait("s1"), 10)

        assert final.completed_tasks == 0
        assert final.error == "Failed to spawn batch task"
        entries = history.entries("s1")
        assert len(entries) == 1
        assert entries[0].success is False

    @pytest.mark.asyncio
    async def test_session_removed_mid_run(self, tmp_path):
        runner, history = _make_runner(tmp_path, "sleep 0.3\n" + CHECK_ONE_TASK)
        await runner.start("s1", DOCUMENT, SCRATCHPAD_PLACEHOLDER)
        await asyncio.sleep(0.1)
        runner._registry.remove("s1")

        final = await asyncio.wait_for(runner.wait("s1"), 10)
        assert final.completed_tasks == 1
        assert final.error == "Session not found: s1"
        assert not final.running
        assert not os.path.exists(final.document_path)
        assert len(history.entries("s1")) == 1


class TestStartValidation:

    @pytest.mark.asyncio
    async def test_no_tasks(self, tmp_path):
        runner, _ = _make_runner(tmp_path, CHECK_ONE_TASK)
        with pytest.raises(BatchRunError):
            await runner.start("s1", "# Nothing to do\n- [x] done\n", SCRATCHPAD_PLACEHOLDER)
        assert runner.get_state("s1") is None

    @pytest.mark.asyncio
    async def test_already_running(self, tmp_path):
        runner, _ = _make_runner(tmp_path, "sleep 0.3\n" + CHECK_ONE_TASK)
        await runner.start("s1", DOCUMENT, SCRATCHPAD_PLACEHOLDER)
        with pytest.raises(BatchRunError):
            await runner.start("s1", DOCUMENT, SCRATCHPAD_PLACEHOLDER)
        runner.stop("s1")
        await asyncio.wait_for(runner.wait("s1"), 10)

    @pytest.mark.asyncio
    async def test_unavailable_agent(self, tmp_path):
        runner, _ = _make_runner(tmp_path, CHECK_ONE_TASK, available=False)
        with pytest.raises(AgentUnavailableError):
            await runner.start("s1", DOCUMENT, SCRATCHPAD_PLACEHOLDER)

    @pytest.mark.asyncio
    async def test_state_is_a_snapshot(self, tmp_path):
        runner, _ = _make_runner(tmp_path, "sleep 0.3\n" + CHECK_ONE_TASK)
        await runner.start("s1", DOCUMENT, SCRATCHPAD_PLACEHOLDER)
        snapshot = runner.get_state("s1")
        snapshot.completed_tasks = 99
        assert runner.get_state("s1").completed_tasks == 0
        runner.stop("s1")
        await asyncio.wait_for(runner.wait("s1"), 10)
