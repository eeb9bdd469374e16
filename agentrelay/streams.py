"""Line sources for agentrelay.

Each source is an async generator that feeds lines to the parser
registered for an agent id and yields the resulting AgentEvent objects.
"""

import asyncio
import sys
from typing import AsyncGenerator, Optional

from agentrelay.events import AgentEvent, EventType
from agentrelay.parsers import BaseParser, create_parser, registered_agents


def _parser_for(agent_id: str) -> BaseParser:
    parser = create_parser(agent_id)
    if parser is None:
        raise ValueError(
            f"No parser registered for '{agent_id}' "
            f"(known: {', '.join(registered_agents())})"
        )
    return parser


def _system(text: str) -> AgentEvent:
    return AgentEvent(EventType.SYSTEM, text=text)


# ---------------------------------------------------------------------------
# Stdin stream
# ---------------------------------------------------------------------------

async def stdin_stream(agent_id: str) -> AsyncGenerator[AgentEvent, None]:
    """Read agent output piped into stdin."""
    parser = _parser_for(agent_id)
    loop = asyncio.get_running_loop()

    yield _system(f"Reading from stdin ({agent_id})")

    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            event = parser.parse_line(line)
            if event:
                yield event
    except asyncio.CancelledError:
        return
    except OSError as e:
        yield AgentEvent(EventType.ERROR, text=f"stdin error: {e}")

    yield _system("stdin stream ended")


# ---------------------------------------------------------------------------
# File stream
# ---------------------------------------------------------------------------

async def file_stream(agent_id: str, path: str, follow: bool = False,
                      poll_interval: float = 0.1,
                      idle_timeout: Optional[float] = None) -> AsyncGenerator[AgentEvent, None]:
    """Parse a saved JSONL transcript, optionally tailing it for new lines.

    With ``follow`` the file is read from the start and then polled; the
    stream ends after ``idle_timeout`` seconds without new data, or never
    when it is None.
    """
    parser = _parser_for(agent_id)

    yield _system(f"Reading {path}")

    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            idle = 0.0
            while True:
                line = f.readline()
                if not line:
                    if not follow or (idle_timeout is not None and idle >= idle_timeout):
                        break
                    await asyncio.sleep(poll_interval)
                    idle += poll_interval
                    continue
                idle = 0.0
                event = parser.parse_line(line)
                if event:
                    yield event
    except asyncio.CancelledError:
        return
    except FileNotFoundError:
        yield AgentEvent(EventType.ERROR, text=f"File not found: {path}")
    except OSError as e:
        yield AgentEvent(EventType.ERROR, text=f"File error: {e}")

    yield _system(f"Finished reading {path}")
