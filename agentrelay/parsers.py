"""Parsers for Claude Code, Codex and OpenCode JSONL output.

Every parser turns one raw stdout line into a normalized AgentEvent.
Parsing never raises: blank lines yield None, non-JSON lines yield a
``text`` event carrying the line verbatim, and JSON with an unknown
shape yields a ``system`` event.
"""

import json
import logging
import re
from typing import Any, Optional

from agentrelay.events import AgentError, AgentEvent, EventType, ToolStatus, UsageStats

logger = logging.getLogger(__name__)


class BaseParser:
    """Base class for per-agent output parsers."""

    agent_id: str = ""

    def parse_line(self, line: str) -> Optional[AgentEvent]:
        line = line.rstrip("\r\n")
        if not line.strip():
            return None

        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return AgentEvent(EventType.TEXT, text=line, raw=line)

        if not isinstance(data, dict):
            return AgentEvent(EventType.SYSTEM, raw=data)

        # An error field wins over whatever the type says
        error = _error_text(data.get("error"))
        if error:
            return AgentEvent(EventType.ERROR, text=error,
                              session_id=self._session_id_of(data), raw=data)

        try:
            return self._transform(data)
        except (AttributeError, TypeError, ValueError) as e:
            logger.debug("%s: unexpected event shape (%s): %.200s", self.agent_id, e, line)
            return AgentEvent(EventType.SYSTEM, raw=data)

    def _transform(self, data: dict) -> AgentEvent:
        raise NotImplementedError

    def _session_id_of(self, data: dict) -> Optional[str]:
        return None

    # -- queries on parsed events --------------------------------------------

    def is_result_message(self, event: AgentEvent) -> bool:
        return event.type == EventType.RESULT

    def extract_session_id(self, event: AgentEvent) -> Optional[str]:
        return event.session_id or None

    def extract_usage(self, event: AgentEvent) -> Optional[UsageStats]:
        return event.usage

    def extract_slash_commands(self, event: AgentEvent) -> Optional[list[str]]:
        return None

    # -- error detection -----------------------------------------------------

    def detect_error_from_exit(self, exit_code: int, stderr: str,
                               stdout: str) -> Optional[AgentError]:
        if exit_code == 0:
            return None

        combined = f"{stderr}\n{stdout}"
        for pattern, error_type, message, recoverable in ERROR_PATTERNS:
            if pattern.search(combined):
                return AgentError(
                    type=error_type, message=message, recoverable=recoverable,
                    agent_id=self.agent_id,
                    raw={"exitCode": exit_code, "stderr": stderr, "stdout": stdout},
                )

        return AgentError(
            type="agent_crashed",
            message=f"Agent exited with code {exit_code}",
            recoverable=True,
            agent_id=self.agent_id,
            raw={"exitCode": exit_code, "stderr": stderr, "stdout": stdout},
        )


# (pattern, error type, user message, recoverable)
ERROR_PATTERNS: list[tuple[re.Pattern, str, str, bool]] = [
    (re.compile(r"invalid api key|unauthori[sz]ed|please (run )?/?login|authentication", re.I),
     "auth_expired", "Authentication failed. Please log in again.", True),
    (re.compile(r"rate.?limit|too many requests|\b429\b", re.I),
     "rate_limited", "Rate limited by the provider. Try again later.", True),
    (re.compile(r"context (length|window)|prompt is too long|maximum context", re.I),
     "token_exhaustion", "The conversation exceeded the model's context window.", True),
    (re.compile(r"ENOTFOUND|ECONNREFUSED|network error|connection reset", re.I),
     "network_error", "Network error while contacting the provider.", True),
]


# ---------------------------------------------------------------------------
# OpenCode parser (opencode run --format json)
# ---------------------------------------------------------------------------

class OpenCodeParser(BaseParser):
    """Parse OpenCode ``--format json`` output.

    Each line carries ``type``, ``timestamp``, ``sessionID`` and a ``part``
    object. ``step_finish`` closes a step: reason ``stop`` is the final
    answer, ``tool-calls`` means more work follows.
    """

    agent_id = "opencode"

    def _session_id_of(self, data: dict) -> Optional[str]:
        return data.get("sessionID") or None

    def _transform(self, data: dict) -> AgentEvent:
        etype = data.get("type")
        part = data.get("part")
        if not isinstance(part, dict):
            part = {}
        sid = self._session_id_of(data)

        if etype == "step_start":
            return AgentEvent(EventType.INIT, session_id=sid, raw=data)

        elif etype == "text":
            return AgentEvent(EventType.TEXT, session_id=sid,
                              text=part.get("text") or "", is_partial=True, raw=data)

        elif etype == "tool_use":
            return AgentEvent(EventType.TOOL_USE, session_id=sid,
                              tool_name=part.get("tool"), tool_state=part.get("state"),
                              raw=data)

        elif etype == "step_finish":
            is_final = part.get("reason") == "stop"
            return AgentEvent(
                EventType.RESULT if is_final else EventType.SYSTEM,
                session_id=sid, usage=self._usage_from_part(part), raw=data,
            )

        return AgentEvent(EventType.SYSTEM, session_id=sid, raw=data)

    @staticmethod
    def _usage_from_part(part: dict) -> Optional[UsageStats]:
        tokens = part.get("tokens")
        if not isinstance(tokens, dict):
            return None
        cache = tokens.get("cache")
        if not isinstance(cache, dict):
            cache = {}
        return UsageStats(
            input_tokens=tokens.get("input") or 0,
            output_tokens=tokens.get("output") or 0,
            reasoning_tokens=tokens.get("reasoning") or 0,
            cache_read_tokens=cache.get("read") or 0,
            cache_creation_tokens=cache.get("write") or 0,
            cost_usd=part.get("cost") or 0.0,
        )


# ---------------------------------------------------------------------------
# Claude Code parser (claude --print --output-format stream-json)
# ---------------------------------------------------------------------------

class ClaudeCodeParser(BaseParser):
    """Parse Claude Code ``--output-format stream-json`` output.

    Each line is a JSON object with a ``type`` of system, assistant, user,
    stream_event or result. The final ``result`` line carries the complete
    response, the session id and aggregated usage.
    """

    agent_id = "claude-code"

    def _session_id_of(self, data: dict) -> Optional[str]:
        return data.get("session_id") or None

    def _transform(self, data: dict) -> AgentEvent:
        etype = data.get("type")
        subtype = str(data.get("subtype") or "")
        sid = self._session_id_of(data)

        if etype == "system":
            if subtype == "init":
                commands = data.get("slash_commands")
                return AgentEvent(
                    EventType.INIT, session_id=sid,
                    slash_commands=list(commands) if isinstance(commands, list) else None,
                    raw=data,
                )
            return AgentEvent(EventType.SYSTEM, session_id=sid, text=subtype or None, raw=data)

        elif etype == "assistant":
            return self._parse_assistant(data, sid)

        elif etype == "stream_event":
            return self._parse_stream_event(data, sid)

        elif etype == "result":
            return self._parse_result(data, sid)

        return AgentEvent(EventType.SYSTEM, session_id=sid, raw=data)

    def _parse_assistant(self, data: dict, sid: Optional[str]) -> AgentEvent:
        message = data.get("message", {})
        content = message.get("content", []) if isinstance(message, dict) else []
        if not isinstance(content, list):
            content = []

        texts: list[str] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type", "")
            if block_type == "tool_use":
                return AgentEvent(
                    EventType.TOOL_USE, session_id=sid, tool_name=block.get("name"),
                    tool_state={"status": ToolStatus.RUNNING.value, "input": block.get("input", {})},
                    raw=data,
                )
            if block_type == "text" and block.get("text"):
                texts.append(block["text"])

        if texts:
            return AgentEvent(EventType.TEXT, session_id=sid, text="".join(texts), raw=data)
        return AgentEvent(EventType.SYSTEM, session_id=sid, raw=data)

    def _parse_stream_event(self, data: dict, sid: Optional[str]) -> AgentEvent:
        event = data.get("event", {})
        if isinstance(event, dict) and event.get("type") == "content_block_delta":
            delta = event.get("delta")
            if isinstance(delta, dict) and delta.get("type") == "text_delta":
                return AgentEvent(EventType.TEXT, session_id=sid,
                                  text=delta.get("text", ""), is_partial=True, raw=data)
        return AgentEvent(EventType.SYSTEM, session_id=sid, raw=data)

    def _parse_result(self, data: dict, sid: Optional[str]) -> AgentEvent:
        subtype = str(data.get("subtype") or "")
        if data.get("is_error") or subtype.startswith("error"):
            errors = data.get("errors") or []
            msg = ", ".join(str(e) for e in errors) if errors else (data.get("result") or subtype)
            return AgentEvent(EventType.ERROR, session_id=sid, text=str(msg), raw=data)

        return AgentEvent(
            EventType.RESULT, session_id=sid, text=data.get("result") or None,
            usage=self._usage_from_result(data), raw=data,
        )

    @staticmethod
    def _usage_from_result(data: dict) -> Optional[UsageStats]:
        usage = data.get("usage")
        cost = data.get("total_cost_usd")
        if not isinstance(usage, dict) and cost is None:
            return None
        usage = usage if isinstance(usage, dict) else {}

        context_window = 0
        model_usage = data.get("modelUsage")
        if isinstance(model_usage, dict):
            for stats in model_usage.values():
                if isinstance(stats, dict):
                    context_window = max(context_window, stats.get("contextWindow") or 0)

        return UsageStats(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
            cache_read_tokens=usage.get("cache_read_input_tokens") or 0,
            cache_creation_tokens=usage.get("cache_creation_input_tokens") or 0,
            cost_usd=cost or 0.0,
            context_window=context_window,
        )

    def extract_slash_commands(self, event: AgentEvent) -> Optional[list[str]]:
        return event.slash_commands


# ---------------------------------------------------------------------------
# Codex parser (codex exec --json)
# ---------------------------------------------------------------------------

class CodexParser(BaseParser):
    """Parse Codex ``exec --json`` JSONL output.

    Types contain dots (``thread.started``, ``item.completed`` ...). The
    thread id is only reported once, so it is remembered and stamped on
    every later event.
    """

    agent_id = "codex"

    def __init__(self):
        self._thread_id: Optional[str] = None

    def _session_id_of(self, data: dict) -> Optional[str]:
        return self._thread_id

    def _transform(self, data: dict) -> AgentEvent:
        etype = data.get("type")

        if etype == "thread.started":
            self._thread_id = data.get("thread_id") or None
            return AgentEvent(EventType.INIT, session_id=self._thread_id, raw=data)

        elif etype == "turn.completed":
            usage = data.get("usage")
            if not isinstance(usage, dict):
                usage = {}
            return AgentEvent(
                EventType.SYSTEM, session_id=self._thread_id, text="turn completed",
                usage=UsageStats(
                    input_tokens=usage.get("input_tokens") or 0,
                    output_tokens=usage.get("output_tokens") or 0,
                    cache_read_tokens=usage.get("cached_input_tokens") or 0,
                    reasoning_tokens=usage.get("reasoning_output_tokens") or 0,
                ),
                raw=data,
            )

        elif etype in ("item.started", "item.updated", "item.completed"):
            item = data.get("item")
            if isinstance(item, dict):
                return self._parse_item(etype, item, data)

        return AgentEvent(EventType.SYSTEM, session_id=self._thread_id, raw=data)

    def _parse_item(self, etype: str, item: dict, data: dict) -> AgentEvent:
        # Older releases used item_type / assistant_message
        item_type = item.get("type", item.get("item_type", ""))
        if item_type == "assistant_message":
            item_type = "agent_message"
        is_complete = etype == "item.completed"

        if item_type == "agent_message":
            text = item.get("text", "")
            if is_complete:
                return AgentEvent(EventType.RESULT, session_id=self._thread_id,
                                  text=text or None, raw=data)
            return AgentEvent(EventType.TEXT, session_id=self._thread_id,
                              text=text, is_partial=True, raw=data)

        elif item_type == "reasoning":
            return AgentEvent(EventType.TEXT, session_id=self._thread_id,
                              text=item.get("text", ""), is_partial=True, raw=data)

        elif item_type in ("command_execution", "mcp_tool_call", "file_change", "web_search"):
            return AgentEvent(
                EventType.TOOL_USE, session_id=self._thread_id,
                tool_name=_codex_tool_name(item_type, item),
                tool_state=_codex_tool_state(item, is_complete),
                raw=data,
            )

        elif item_type == "error":
            return AgentEvent(EventType.ERROR, session_id=self._thread_id,
                              text=str(item.get("message", item.get("text", "Unknown error"))),
                              raw=data)

        return AgentEvent(EventType.SYSTEM, session_id=self._thread_id, raw=data)


def _codex_tool_name(item_type: str, item: dict) -> str:
    if item_type == "mcp_tool_call":
        return f"{item.get('server', '?')}/{item.get('tool', '?')}"
    return item_type


def _codex_tool_state(item: dict, is_complete: bool) -> dict:
    status = item.get("status") or (ToolStatus.COMPLETED.value if is_complete
                                     else ToolStatus.RUNNING.value)
    if status == "in_progress":
        status = ToolStatus.RUNNING.value
    elif status == "failed":
        status = ToolStatus.ERROR.value
    state: dict[str, Any] = {"status": status}
    if "command" in item:
        state["input"] = {"command": item["command"]}
    elif "changes" in item:
        state["input"] = {"changes": item["changes"]}
    elif "arguments" in item:
        state["input"] = item["arguments"]
    if item.get("aggregated_output"):
        state["output"] = item["aggregated_output"]
    if item.get("exit_code") is not None:
        state["exitCode"] = item["exit_code"]
    return state


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error_text(error: Any) -> Optional[str]:
    """Normalize an ``error`` payload field to a message string."""
    if not error:
        return None
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        msg = error.get("message")
        data = error.get("data")
        if not msg and isinstance(data, dict):
            msg = data.get("message")
        return str(msg or json.dumps(error))
    return str(error)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_PARSERS: dict[str, type[BaseParser]] = {}


def register_parser(agent_id: str, parser_cls: type[BaseParser]) -> None:
    _PARSERS[agent_id] = parser_cls


def clear_parsers() -> None:
    _PARSERS.clear()


def init_parsers() -> None:
    """Register the built-in parsers, replacing any previous registration."""
    clear_parsers()
    register_parser(ClaudeCodeParser.agent_id, ClaudeCodeParser)
    register_parser(CodexParser.agent_id, CodexParser)
    register_parser(OpenCodeParser.agent_id, OpenCodeParser)


def has_parser(agent_id: str) -> bool:
    return agent_id in _PARSERS


def registered_agents() -> list[str]:
    return list(_PARSERS)


def create_parser(agent_id: str) -> Optional[BaseParser]:
    """Create a fresh parser for the given agent id.

    Returns None for agents without structured output (the terminal,
    unknown ids). Selection is by registered id only.
    """
    parser_cls = _PARSERS.get(agent_id)
    return parser_cls() if parser_cls else None


init_parsers()
