"""Console rendering for agentrelay - colors, icons and event lines."""

from datetime import datetime
from typing import Iterable

from rich.table import Table
from rich.text import Text

from agentrelay.agents import AgentDefinition
from agentrelay.events import AgentEvent, EventType, GroupChatMessage, HistoryEntry, UsageStats
from agentrelay.notifications import Notification

# ---------------------------------------------------------------------------
# Colors
# ---------------------------------------------------------------------------

CLAUDE_PRIMARY = "#a78bfa"      # Violet
CLAUDE_DIM = "#7c6bc4"
CODEX_PRIMARY = "#4ade80"       # Green
CODEX_DIM = "#34a65d"
OPENCODE_PRIMARY = "#38bdf8"    # Sky
OPENCODE_DIM = "#0284c7"
SYSTEM_PRIMARY = "#64748b"      # Slate
SYSTEM_DIM = "#475569"
SEPARATOR = "dim #3a3a5c"

AGENT_COLORS: dict[str, tuple[str, str]] = {
    "claude-code": (CLAUDE_PRIMARY, CLAUDE_DIM),
    "codex": (CODEX_PRIMARY, CODEX_DIM),
    "opencode": (OPENCODE_PRIMARY, OPENCODE_DIM),
}

# Type-specific colors (override agent color for content)
EVENT_STYLE: dict[EventType, str] = {
    EventType.ERROR: "#ef4444",
    EventType.TOOL_USE: "#fbbf24",
    EventType.RESULT: "#34d399",
    EventType.SYSTEM: "#64748b",
    EventType.INIT: "#818cf8",
}

# ---------------------------------------------------------------------------
# Icons
# ---------------------------------------------------------------------------

EVENT_ICONS: dict[EventType, str] = {
    EventType.INIT: "->",
    EventType.TEXT: ">>",
    EventType.TOOL_USE: "{}",
    EventType.RESULT: "OK",
    EventType.SYSTEM: "::",
    EventType.ERROR: "!!",
}

# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def describe_event(event: AgentEvent) -> str:
    """One-line content for an event, falling back to its tool or usage."""
    if event.type == EventType.TOOL_USE:
        status = (event.tool_state or {}).get("status", "")
        return f"{event.tool_name or 'tool'} ({status})" if status else (event.tool_name or "tool")
    if event.text:
        return event.text
    if event.usage is not None:
        return format_usage(event.usage)
    if event.type == EventType.INIT and event.session_id:
        return f"session {event.session_id}"
    return ""


def format_usage(usage: UsageStats) -> str:
    line = f"{usage.input_tokens:,} in / {usage.output_tokens:,} out"
    if usage.cost_usd:
        line += f" | ${usage.cost_usd:.4f}"
    return line


def render_event(event: AgentEvent, agent_id: str = "") -> Text:
    """Render an AgentEvent as a styled Rich Text line."""
    primary, dim = AGENT_COLORS.get(agent_id, (SYSTEM_PRIMARY, SYSTEM_DIM))

    icon = EVENT_ICONS.get(event.type, "  ")
    content_color = EVENT_STYLE.get(event.type, "") or primary
    if event.is_partial:
        content_color = f"italic {content_color}"

    ts = event.timestamp.strftime("%H:%M:%S")

    line = Text()
    line.append(f" {ts} ", style=f"dim {SYSTEM_DIM}")
    line.append(" | ", style=SEPARATOR)
    line.append(icon, style=f"bold {primary}")
    line.append(f" {(agent_id or 'agent').upper():11s}", style=f"bold {primary}")
    line.append(" | ", style=SEPARATOR)
    line.append(f"{event.type.value:8s}", style=dim)
    line.append("  ")
    line.append(describe_event(event), style=content_color)
    return line


def render_message(message: GroupChatMessage) -> Text:
    line = Text()
    line.append(f" {message.timestamp} ", style=f"dim {SYSTEM_DIM}")
    line.append(" | ", style=SEPARATOR)
    line.append(message.sender, style=f"bold {CLAUDE_PRIMARY}")
    if message.read_only:
        line.append(" (read-only)", style=f"dim {SYSTEM_DIM}")
    line.append("  ")
    line.append(message.content)
    return line


def render_history_entry(entry: HistoryEntry) -> Text:
    line = Text()
    ts = datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M:%S")
    line.append(f" {ts} ", style=f"dim {SYSTEM_DIM}")
    line.append(" | ", style=SEPARATOR)
    style = EVENT_STYLE[EventType.RESULT] if entry.success else EVENT_STYLE[EventType.ERROR]
    line.append(f"{entry.type.value:8s}", style=f"bold {style}")
    if entry.participant_name:
        line.append(f" {entry.participant_name}", style=f"bold {CLAUDE_PRIMARY}")
    line.append("  ")
    line.append(entry.summary)
    if entry.usage is not None:
        line.append(f"  ({format_usage(entry.usage)})", style=f"dim {SYSTEM_DIM}")
    return line


def render_notification(notification: Notification) -> Text:
    """Render a bus notification; known payloads get their own layout."""
    payload = notification.payload
    if isinstance(payload, GroupChatMessage):
        return render_message(payload)
    if isinstance(payload, HistoryEntry):
        return render_history_entry(payload)

    if isinstance(payload, UsageStats):
        body = format_usage(payload)
    elif isinstance(payload, dict):
        body = ", ".join(f"{k}={v}" for k, v in payload.items())
    elif payload is None:
        body = ""
    else:
        body = str(payload)

    line = Text()
    line.append(f" #{notification.seq:<5d}", style=f"dim {SYSTEM_DIM}")
    line.append(" | ", style=SEPARATOR)
    line.append(f"{notification.kind:26s}", style=f"bold {SYSTEM_PRIMARY}")
    line.append(f" {notification.scope_id} ", style=f"dim {SYSTEM_DIM}")
    line.append(body)
    return line


def agents_table(agents: Iterable[AgentDefinition]) -> Table:
    table = Table(title="Agents", header_style=f"bold {SYSTEM_PRIMARY}")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Available")
    table.add_column("Path", overflow="fold")
    for agent in agents:
        primary, _ = AGENT_COLORS.get(agent.id, (SYSTEM_PRIMARY, SYSTEM_DIM))
        table.add_row(
            Text(agent.id, style=f"bold {primary}"),
            agent.name,
            Text("yes", style=CODEX_PRIMARY) if agent.available else Text("no", style="#ef4444"),
            agent.path or "-",
        )
    return table
