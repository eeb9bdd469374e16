"""Tests for agentrelay line sources."""

import asyncio
import io
import json

import pytest

from agentrelay.events import EventType
from agentrelay.streams import file_stream, stdin_stream

OPENCODE_LINES = [
    json.dumps({"type": "step_start", "sessionID": "ses_f", "part": {}}),
    json.dumps({"type": "text", "sessionID": "ses_f", "part": {"type": "text", "text": "Hi"}}),
    "",
    json.dumps({"type": "step_finish", "sessionID": "ses_f", "part": {"reason": "stop"}}),
]


async def _collect(stream):
    return [event async for event in stream]


@pytest.mark.asyncio
async def test_file_stream_reads_transcript(tmp_path):
    """A saved transcript is parsed start to finish."""
    path = tmp_path / "run.jsonl"
    path.write_text("\n".join(OPENCODE_LINES) + "\n")

    events = await _collect(file_stream("opencode", str(path)))
    types = [e.type for e in events]
    assert types == [EventType.SYSTEM, EventType.INIT, EventType.TEXT,
                     EventType.RESULT, EventType.SYSTEM]
    assert events[1].session_id == "ses_f"
    assert events[2].text == "Hi"


@pytest.mark.asyncio
async def test_file_stream_not_found(tmp_path):
    """A missing file yields an error between the start and end markers."""
    events = await _collect(file_stream("opencode", str(tmp_path / "missing.jsonl")))
    assert [e.type for e in events] == [EventType.SYSTEM, EventType.ERROR, EventType.SYSTEM]
    assert "File not found" in events[1].text


@pytest.mark.asyncio
async def test_file_stream_follow_picks_up_appends(tmp_path):
    """With follow, lines appended later are parsed until the idle timeout."""
    path = tmp_path / "live.jsonl"
    path.write_text(OPENCODE_LINES[0] + "\n")

    async def append_later():
        await asyncio.sleep(0.2)
        with open(path, "a") as f:
            f.write(OPENCODE_LINES[3] + "\n")

    writer = asyncio.create_task(append_later())
    events = await asyncio.wait_for(_collect(file_stream(
        "opencode", str(path), follow=True, poll_interval=0.05, idle_timeout=0.5)), 10)
    await writer

    types = [e.type for e in events]
    assert EventType.INIT in types
    assert EventType.RESULT in types
    assert types[-1] == EventType.SYSTEM


@pytest.mark.asyncio
async def test_unknown_agent_rejected(tmp_path):
    """An agent without a parser cannot be streamed."""
    with pytest.raises(ValueError, match="No parser registered"):
        await _collect(file_stream("no-such-agent", str(tmp_path / "x")))


@pytest.mark.asyncio
async def test_stdin_stream(monkeypatch):
    """Lines piped into stdin are parsed until EOF."""
    monkeypatch.setattr("sys.stdin", io.StringIO("\n".join(OPENCODE_LINES) + "\n"))

    events = await _collect(stdin_stream("opencode"))
    types = [e.type for e in events]
    assert types[0] == EventType.SYSTEM
    assert EventType.TEXT in types
    assert types[-1] == EventType.SYSTEM
    assert events[-1].text == "stdin stream ended"
