"""CLI entry point for agentrelay.

Usage:
    # Render saved or piped agent output:
    claude --print --output-format stream-json "task" | agentrelay parse claude-code
    agentrelay parse codex --file ~/.codex/sessions/rollout-abc.jsonl

    # Run one prompt through an installed agent:
    agentrelay run opencode "summarize the README" --cwd ~/src/project

    # List detected agents:
    agentrelay agents

    # Inspect stored group chats and session history:
    agentrelay chats
    agentrelay chat-log 3f2a...
    agentrelay history SESSION_ID
"""

import argparse
import asyncio
import logging
import os
import sys
import uuid
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from agentrelay.agents import AgentDetector
from agentrelay.chatlog import ChatLog
from agentrelay.chatstore import GroupChatStore
from agentrelay.config import Settings, load_settings
from agentrelay.events import AgentError, AgentEvent
from agentrelay.history import HistoryStore
from agentrelay.parsers import registered_agents
from agentrelay.process import ProcessManager, SpawnConfig
from agentrelay.render import agents_table, render_event, render_history_entry, render_message
from agentrelay.streams import file_stream, stdin_stream

logger = logging.getLogger("agentrelay")

console = Console(highlight=False)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


async def _parse(args: argparse.Namespace) -> int:
    if args.file:
        source = file_stream(args.agent, args.file, follow=args.follow)
    else:
        source = stdin_stream(args.agent)
    async for event in source:
        console.print(render_event(event, args.agent))
    return 0


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    detector = AgentDetector(settings)
    agent = detector.get_agent(args.agent)
    if agent is None or not agent.available:
        logger.error("Agent '%s' is not available", args.agent)
        return 1

    pm = ProcessManager()
    session_id = f"cli-{uuid.uuid4().hex[:8]}"

    def on_event(sid: str, event: AgentEvent) -> None:
        console.print(render_event(event, args.agent))

    def on_agent_error(sid: str, error: AgentError) -> None:
        console.print(f"[bold #ef4444]{error.type}[/]: {error.message}")

    def on_stderr(sid: str, text: str) -> None:
        logger.debug("stderr: %s", text.rstrip())

    pm.on_event(on_event)
    pm.on_agent_error(on_agent_error)
    pm.on_stderr(on_stderr)

    waiter = pm.wait_for_exit(session_id)
    result = await pm.spawn(SpawnConfig(
        session_id=session_id,
        agent_id=agent.id,
        cwd=os.path.abspath(os.path.expanduser(args.cwd)),
        prompt=args.prompt,
        read_only=args.read_only,
        model=args.model or settings.agent(agent.id).model or None,
        agent=agent,
    ))
    if not result.success:
        waiter.cancel()
        logger.error("Failed to start %s", agent.name)
        return 1

    try:
        return await waiter
    except asyncio.CancelledError:
        pm.kill_all()
        raise


def _agents(settings: Settings) -> int:
    console.print(agents_table(AgentDetector(settings).detect()))
    return 0


def _chats(settings: Settings) -> int:
    chats = GroupChatStore(settings.group_chats_dir).list_chats()
    if not chats:
        console.print(f"No group chats in {settings.group_chats_dir}")
    for chat in chats:
        names = ", ".join(p.name for p in chat.participants) or "no participants"
        console.print(f"[bold]{chat.id}[/]  {chat.name}  ({chat.moderator_agent_id}; {names})")
    return 0


async def _chat_log(args: argparse.Namespace, settings: Settings) -> int:
    chat = GroupChatStore(settings.group_chats_dir).load(args.chat_id)
    if chat is None:
        logger.error("No group chat with id %s", args.chat_id)
        return 1
    for message in await ChatLog().read(chat.log_path):
        console.print(render_message(message))
    return 0


def _history(args: argparse.Namespace, settings: Settings) -> int:
    for entry in HistoryStore(settings.history_dir).entries(args.session_id):
        console.print(render_history_entry(entry))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Drive coding-agent CLIs and render their normalized event streams",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  codex exec --json "task" | agentrelay parse codex   Render piped Codex output
  agentrelay parse opencode --file run.jsonl           Render a saved transcript
  agentrelay run claude-code "explain main.py"         Run one prompt
  agentrelay agents                                    List detected agents
  agentrelay chat-log 3f2a...                          Print a group chat transcript
""",
    )
    parser.add_argument("--config", metavar="PATH",
                        help="YAML config file (default: $AGENTRELAY_CONFIG or "
                             "~/.config/agentrelay/config.yaml)")
    parser.add_argument("--log-level", metavar="LEVEL",
                        help="Logging level (overrides the config file)")
    parser.add_argument("--version", action="version", version="%(prog)s 0.1.0")

    sub = parser.add_subparsers(dest="command", required=True)

    p_parse = sub.add_parser("parse", help="Parse agent output from stdin or a file")
    p_parse.add_argument("agent", choices=registered_agents())
    p_parse.add_argument("--file", metavar="PATH", help="Read from a file instead of stdin")
    p_parse.add_argument("--follow", action="store_true",
                         help="Keep watching the file for new lines")

    p_run = sub.add_parser("run", help="Run one prompt through an agent")
    p_run.add_argument("agent", choices=registered_agents())
    p_run.add_argument("prompt")
    p_run.add_argument("--cwd", default=".", help="Working directory for the agent")
    p_run.add_argument("--model", help="Model override")
    p_run.add_argument("--read-only", action="store_true",
                       help="Ask the agent not to modify files")

    sub.add_parser("agents", help="List known agents and whether they are installed")
    sub.add_parser("chats", help="List stored group chats")

    p_log = sub.add_parser("chat-log", help="Print a group chat transcript")
    p_log.add_argument("chat_id")

    p_history = sub.add_parser("history", help="Print a session's history entries")
    p_history.add_argument("session_id")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    setup_logging(args.log_level or settings.log_level)

    try:
        if args.command == "parse":
            code = asyncio.run(_parse(args))
        elif args.command == "run":
            code = asyncio.run(_run(args, settings))
        elif args.command == "chats":
            code = _chats(settings)
        elif args.command == "chat-log":
            code = asyncio.run(_chat_log(args, settings))
        elif args.command == "history":
            code = _history(args, settings)
        else:
            code = _agents(settings)
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
