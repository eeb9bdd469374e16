"""History entries: batch outcomes and group-chat responses, stored as JSONL."""

import logging
import os
import pathlib
import time
import uuid
from typing import Optional

from agentrelay.events import HistoryEntry, HistoryEntryType, UsageStats
from agentrelay.storage import append_jsonl, read_jsonl, write_jsonl_atomic

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_CHARS = 150


def make_summary(text: str, max_chars: int = DEFAULT_SUMMARY_CHARS) -> str:
    """First non-empty line of ``text``, cut to ``max_chars``."""
    for line in (text or "").splitlines():
        line = line.strip().lstrip("#").strip()
        if line:
            if len(line) > max_chars:
                return line[:max_chars - 3].rstrip() + "..."
            return line
    return ""


def new_entry(
    type: HistoryEntryType,
    summary: str,
    *,
    full_response: str = "",
    session_id: str = "",
    agent_session_id: str = "",
    participant_name: str = "",
    success: bool = True,
    usage: Optional[UsageStats] = None,
) -> HistoryEntry:
    return HistoryEntry(
        id=uuid.uuid4().hex,
        type=type,
        timestamp=time.time(),
        summary=summary,
        full_response=full_response,
        session_id=session_id,
        agent_session_id=agent_session_id,
        participant_name=participant_name,
        success=success,
        usage=usage,
    )


def entry_to_dict(entry: HistoryEntry) -> dict:
    data = {
        "id": entry.id,
        "type": entry.type.value,
        "timestamp": entry.timestamp,
        "summary": entry.summary,
        "fullResponse": entry.full_response,
        "sessionId": entry.session_id,
        "agentSessionId": entry.agent_session_id,
        "participantName": entry.participant_name,
        "success": entry.success,
    }
    if entry.usage is not None:
        data["usageStats"] = entry.usage.to_dict()
    return data


def entry_from_dict(data: dict) -> HistoryEntry:
    usage = None
    raw_usage = data.get("usageStats")
    if isinstance(raw_usage, dict):
        usage = UsageStats(
            input_tokens=raw_usage.get("inputTokens", 0),
            output_tokens=raw_usage.get("outputTokens", 0),
            cache_read_tokens=raw_usage.get("cacheReadTokens", 0),
            cache_creation_tokens=raw_usage.get("cacheCreationTokens", 0),
            cost_usd=raw_usage.get("costUsd", 0.0),
            reasoning_tokens=raw_usage.get("reasoningTokens", 0),
            context_window=raw_usage.get("contextWindow", 0),
        )
    try:
        entry_type = HistoryEntryType(data.get("type", "USER"))
    except ValueError:
        entry_type = HistoryEntryType.USER
    return HistoryEntry(
        id=data.get("id") or uuid.uuid4().hex,
        type=entry_type,
        timestamp=data.get("timestamp", 0.0),
        summary=data.get("summary", ""),
        full_response=data.get("fullResponse", ""),
        session_id=data.get("sessionId", ""),
        agent_session_id=data.get("agentSessionId", ""),
        participant_name=data.get("participantName", ""),
        success=data.get("success", True),
        usage=usage,
    )


class HistoryFile:
    """CRUD over one JSONL history file, oldest entry first."""

    def __init__(self, path: "os.PathLike | str"):
        self.path = pathlib.Path(path)

    def add(self, entry: HistoryEntry) -> HistoryEntry:
        append_jsonl(self.path, entry_to_dict(entry))
        return entry

    def entries(self) -> list[HistoryEntry]:
        return [entry_from_dict(d) for d in read_jsonl(self.path)]

    def get(self, entry_id: str) -> Optional[HistoryEntry]:
        for entry in self.entries():
            if entry.id == entry_id:
                return entry
        return None

    def delete(self, entry_id: str) -> bool:
        records = read_jsonl(self.path)
        kept = [r for r in records if r.get("id") != entry_id]
        if len(kept) == len(records):
            return False
        write_jsonl_atomic(self.path, kept)
        return True

    def clear(self) -> None:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass


class HistoryStore:
    """Per-session history files under one directory."""

    def __init__(self, directory: "os.PathLike | str"):
        self.directory = pathlib.Path(directory)

    def for_session(self, session_id: str) -> HistoryFile:
        return HistoryFile(self.directory / f"{session_id}.jsonl")

    def add(self, session_id: str, entry: HistoryEntry) -> HistoryEntry:
        logger.debug("History %s entry for %s: %s", entry.type.value, session_id, entry.summary)
        return self.for_session(session_id).add(entry)

    def entries(self, session_id: str) -> list[HistoryEntry]:
        return self.for_session(session_id).entries()

    def delete(self, session_id: str, entry_id: str) -> bool:
        return self.for_session(session_id).delete(entry_id)

    def clear(self, session_id: str) -> None:
        self.for_session(session_id).clear()
