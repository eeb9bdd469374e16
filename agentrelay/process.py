"""Process manager: spawns agent and shell processes and fans out their output.

Every process is tracked under a logical session id chosen by the caller
(``<id>-ai``, ``<id>-terminal``, ``<id>-batch-<uuid>`` ...). Output is
dispatched to subscribers in arrival order per session id.
"""

import asyncio
import codecs
import logging
import os
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from agentrelay.agents import (
    AgentDefinition,
    append_prompt,
    build_agent_args,
    get_agent_definition,
)
from agentrelay.events import AgentError, AgentEvent, EventType
from agentrelay.parsers import BaseParser, create_parser

logger = logging.getLogger(__name__)

#: Cap on stdout/stderr kept per process for exit-time error detection.
MAX_BUFFER_SIZE = 100 * 1024

#: Maximum bytes per stdout line from a parsed agent.
_MAX_LINE_BYTES = 8 * 1024 * 1024

_CHUNK_SIZE = 4096

Callback = Callable[[str, Any], None]


@dataclass
class SpawnConfig:
    session_id: str
    agent_id: str
    cwd: str
    command: str = ""
    args: Optional[list[str]] = None
    prompt: Optional[str] = None
    initial_input: Optional[str] = None
    read_only: bool = False
    model: Optional[str] = None
    agent_session_id: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    agent: Optional[AgentDefinition] = None


@dataclass
class SpawnResult:
    pid: int
    success: bool


@dataclass
class ManagedProcess:
    session_id: str
    agent_id: str
    proc: asyncio.subprocess.Process
    parser: Optional[BaseParser]
    is_batch: bool
    is_command: bool = False
    started_at: float = field(default_factory=time.time)
    stdout_buffer: str = ""
    stderr_buffer: str = ""
    streamed_text: str = ""
    result_emitted: bool = False
    session_id_emitted: bool = False
    killed: bool = False
    replaced: bool = False
    watcher: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.proc.pid


def _append_capped(buffer: str, text: str) -> str:
    buffer += text
    if len(buffer) > MAX_BUFFER_SIZE:
        buffer = buffer[-MAX_BUFFER_SIZE:]
    return buffer


class ProcessManager:
    """Spawn, write to, interrupt and kill processes keyed by session id."""

    KINDS = ("data", "stderr", "exit", "command_exit", "session_id", "usage",
             "event", "tool_execution", "agent_error")

    def __init__(self):
        self._processes: dict[str, ManagedProcess] = {}
        self._listeners: dict[str, list[Callback]] = {k: [] for k in self.KINDS}
        self._exit_waiters: dict[str, list[asyncio.Future]] = {}

    # -- subscriptions -------------------------------------------------------

    def _subscribe(self, kind: str, fn: Callback) -> Callable[[], None]:
        self._listeners[kind].append(fn)

        def unsubscribe() -> None:
            if fn in self._listeners[kind]:
                self._listeners[kind].remove(fn)

        return unsubscribe

    def on_data(self, fn: Callback) -> Callable[[], None]:
        return self._subscribe("data", fn)

    def on_stderr(self, fn: Callback) -> Callable[[], None]:
        return self._subscribe("stderr", fn)

    def on_exit(self, fn: Callback) -> Callable[[], None]:
        return self._subscribe("exit", fn)

    def on_command_exit(self, fn: Callback) -> Callable[[], None]:
        return self._subscribe("command_exit", fn)

    def on_session_id(self, fn: Callback) -> Callable[[], None]:
        return self._subscribe("session_id", fn)

    def on_usage(self, fn: Callback) -> Callable[[], None]:
        return self._subscribe("usage", fn)

    def on_event(self, fn: Callback) -> Callable[[], None]:
        return self._subscribe("event", fn)

    def on_tool_execution(self, fn: Callback) -> Callable[[], None]:
        return self._subscribe("tool_execution", fn)

    def on_agent_error(self, fn: Callback) -> Callable[[], None]:
        return self._subscribe("agent_error", fn)

    def _emit(self, kind: str, session_id: str, payload: Any) -> None:
        for fn in list(self._listeners[kind]):
            try:
                fn(session_id, payload)
            except Exception:
                logger.exception("%s listener failed for %s", kind, session_id)

    # -- queries -------------------------------------------------------------

    def get(self, session_id: str) -> Optional[ManagedProcess]:
        return self._processes.get(session_id)

    def is_running(self, session_id: str) -> bool:
        mp = self._processes.get(session_id)
        return mp is not None and mp.proc.returncode is None

    def session_ids(self) -> list[str]:
        return list(self._processes)

    def wait_for_exit(self, session_id: str) -> asyncio.Future:
        """Future resolved with the exit code of the next exit of ``session_id``.

        Register before spawning so a fast exit cannot be missed.
        """
        fut = asyncio.get_running_loop().create_future()
        self._exit_waiters.setdefault(session_id, []).append(fut)
        return fut

    # -- spawn ---------------------------------------------------------------

    async def spawn(self, config: SpawnConfig) -> SpawnResult:
        agent = config.agent or get_agent_definition(config.agent_id)
        command = config.command or (agent.path or agent.binary_name if agent else "")
        if not command:
            logger.error("No command to spawn for %s (%s)", config.session_id, config.agent_id)
            return SpawnResult(pid=-1, success=False)

        args = build_agent_args(
            agent, config.args,
            prompt=config.prompt,
            cwd=config.cwd,
            read_only=config.read_only,
            model=config.model,
            agent_session_id=config.agent_session_id,
        )
        if agent is not None and agent.custom_args:
            args = args + agent.custom_args
        if config.prompt:
            args = append_prompt(agent, args, config.prompt)

        env = dict(os.environ)
        if agent is not None:
            env.update(agent.custom_env)
        env.update(config.env)

        existing = self._processes.get(config.session_id)
        if existing is not None:
            logger.warning("Replacing live process for %s", config.session_id)
            existing.replaced = True
            self.kill(config.session_id)

        is_batch = bool(config.prompt)
        logger.info("Spawning %s: %s %s", config.session_id, command,
                    " ".join(args[:8]) + (" ..." if len(args) > 8 else ""))
        try:
            proc = await asyncio.create_subprocess_exec(
                command, *args,
                stdin=asyncio.subprocess.DEVNULL if is_batch else asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=config.cwd or None,
                env=env,
                start_new_session=True,
                limit=_MAX_LINE_BYTES,
            )
        except (OSError, ValueError) as e:
            logger.error("Failed to spawn %s (%s): %s", config.session_id, command, e)
            return SpawnResult(pid=-1, success=False)

        mp = ManagedProcess(
            session_id=config.session_id,
            agent_id=config.agent_id,
            proc=proc,
            parser=create_parser(config.agent_id),
            is_batch=is_batch,
        )
        self._processes[config.session_id] = mp
        mp.watcher = asyncio.create_task(self._watch(mp))

        if config.initial_input and not is_batch:
            self.write(config.session_id, config.initial_input)

        return SpawnResult(pid=proc.pid, success=True)

    async def run_command(self, session_id: str, command: str, cwd: str,
                          shell: str = "bash") -> int:
        """Run one shell command, streaming its output; returns the exit code."""
        waiter = self.wait_for_exit(session_id)
        logger.info("Running command for %s: %s", session_id, command)
        try:
            proc = await asyncio.create_subprocess_exec(
                shell, "-c", command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd or None,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.error("Failed to run command for %s: %s", session_id, e)
            self._exit_waiters[session_id].remove(waiter)
            self._emit("stderr", session_id, f"{e}\n")
            self._emit("command_exit", session_id, 127)
            return 127

        mp = ManagedProcess(session_id=session_id, agent_id="terminal", proc=proc,
                            parser=None, is_batch=True, is_command=True)
        self._processes[session_id] = mp
        mp.watcher = asyncio.create_task(self._watch(mp))
        return await waiter

    # -- input and signals ---------------------------------------------------

    def write(self, session_id: str, data: str) -> bool:
        mp = self._processes.get(session_id)
        if mp is None or mp.proc.stdin is None:
            return False
        stdin = mp.proc.stdin
        if stdin.is_closing():
            return False
        try:
            stdin.write(data.encode())
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.warning("Write to %s failed: %s", session_id, e)
            return False
        logger.debug("Wrote %d chars to %s", len(data), session_id)
        return True

    def close_stdin(self, session_id: str) -> bool:
        mp = self._processes.get(session_id)
        if mp is None or mp.proc.stdin is None or mp.proc.stdin.is_closing():
            return False
        mp.proc.stdin.close()
        return True

    def interrupt(self, session_id: str) -> bool:
        """Send SIGINT to the process group. No retry, no escalation."""
        mp = self._processes.get(session_id)
        if mp is None or mp.proc.returncode is not None:
            return False
        try:
            os.killpg(mp.pid, signal.SIGINT)
        except (ProcessLookupError, PermissionError) as e:
            logger.warning("Interrupt of %s failed: %s", session_id, e)
            return False
        logger.info("Interrupted %s (pid %d)", session_id, mp.pid)
        return True

    def kill(self, session_id: str) -> bool:
        """Forcefully kill a process. Unknown or dead sessions return False."""
        mp = self._processes.pop(session_id, None)
        if mp is None or mp.proc.returncode is not None:
            return False
        mp.killed = True
        try:
            os.killpg(mp.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                mp.proc.kill()
            except ProcessLookupError:
                return False
        logger.info("Killed %s (pid %d)", session_id, mp.pid)
        return True

    def kill_all(self) -> None:
        for session_id in list(self._processes):
            self.kill(session_id)

    # -- output --------------------------------------------------------------

    async def _watch(self, mp: ManagedProcess) -> None:
        readers = [asyncio.create_task(self._read_stderr(mp))]
        if mp.parser is not None:
            readers.append(asyncio.create_task(self._read_lines(mp)))
        else:
            readers.append(asyncio.create_task(self._read_chunks(mp)))

        code = await mp.proc.wait()
        await asyncio.gather(*readers, return_exceptions=True)
        self._handle_exit(mp, code)

    async def _read_lines(self, mp: ManagedProcess) -> None:
        stdout = mp.proc.stdout
        assert stdout is not None
        while True:
            try:
                raw = await stdout.readline()
            except ValueError:
                logger.warning("Oversized output line from %s dropped", mp.session_id)
                continue
            if not raw:
                break
            self._handle_line(mp, raw.decode(errors="replace"))

    async def _read_chunks(self, mp: ManagedProcess) -> None:
        stdout = mp.proc.stdout
        assert stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stdout.read(_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text and not mp.replaced:
                mp.stdout_buffer = _append_capped(mp.stdout_buffer, text)
                self._emit("data", mp.session_id, text)
        tail = decoder.decode(b"", final=True)
        if tail and not mp.replaced:
            self._emit("data", mp.session_id, tail)

    async def _read_stderr(self, mp: ManagedProcess) -> None:
        stderr = mp.proc.stderr
        assert stderr is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stderr.read(_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text and not mp.replaced:
                mp.stderr_buffer = _append_capped(mp.stderr_buffer, text)
                self._emit("stderr", mp.session_id, text)

    def _handle_line(self, mp: ManagedProcess, line: str) -> None:
        assert mp.parser is not None
        if mp.replaced:
            return
        mp.stdout_buffer = _append_capped(mp.stdout_buffer, line)
        event = mp.parser.parse_line(line)
        if event is None:
            return
        sid = mp.session_id
        logger.debug("%s event from %s", event.type.value, sid)
        self._emit("event", sid, event)

        agent_session_id = mp.parser.extract_session_id(event)
        if agent_session_id and not mp.session_id_emitted:
            mp.session_id_emitted = True
            self._emit("session_id", sid, agent_session_id)

        usage = mp.parser.extract_usage(event)
        if usage is not None:
            self._emit("usage", sid, usage)

        if event.type == EventType.TEXT:
            self._handle_text(mp, event)
        elif event.type == EventType.TOOL_USE:
            self._emit("tool_execution", sid, {
                "toolName": event.tool_name,
                "state": event.tool_state,
                "timestamp": event.timestamp,
            })
        elif event.type == EventType.ERROR:
            self._emit("agent_error", sid, AgentError(
                type="agent_error", message=event.text or "", recoverable=True,
                agent_id=mp.agent_id, session_id=sid, raw={"event": event.raw},
            ))

        if mp.parser.is_result_message(event) and not mp.result_emitted:
            mp.result_emitted = True
            text = event.text or mp.streamed_text
            if text:
                self._emit("data", sid, text)

    def _handle_text(self, mp: ManagedProcess, event: AgentEvent) -> None:
        text = event.text or ""
        if event.is_partial:
            mp.streamed_text += text
            self._emit("data", mp.session_id, text)
        elif isinstance(event.raw, str):
            # Not JSON: banners and diagnostics pass straight through
            self._emit("data", mp.session_id, text + "\n")
        else:
            mp.streamed_text += text

    def _handle_exit(self, mp: ManagedProcess, code: int) -> None:
        sid = mp.session_id
        if mp.replaced:
            # The id now belongs to the replacement; its exit is the one reported
            logger.info("Replaced process for %s exited with code %s", sid, code)
            return
        if self._processes.get(sid) is mp:
            del self._processes[sid]
        logger.info("Process %s exited with code %s%s", sid, code,
                    " (killed)" if mp.killed else "")

        if mp.parser is not None and code != 0 and not mp.killed:
            error = mp.parser.detect_error_from_exit(code, mp.stderr_buffer, mp.stdout_buffer)
            if error is not None:
                error.session_id = sid
                self._emit("agent_error", sid, error)

        self._emit("command_exit" if mp.is_command else "exit", sid, code)

        for fut in self._exit_waiters.pop(sid, []):
            if not fut.done():
                fut.set_result(code)
