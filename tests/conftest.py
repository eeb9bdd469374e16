"""Shared fakes: a recording process manager and a fixed agent detector."""

from typing import Any, Optional

import pytest

from agentrelay.agents import AgentCapabilities, AgentDefinition
from agentrelay.config import Settings
from agentrelay.process import ProcessManager, SpawnConfig, SpawnResult


def make_agent(agent_id: str, batch: bool, available: bool = True) -> AgentDefinition:
    return AgentDefinition(
        id=agent_id, name=agent_id.title(), binary_name=agent_id, path=f"/usr/bin/{agent_id}",
        capabilities=AgentCapabilities(supports_batch_mode=batch, supports_resume=True),
        available=available,
    )


class FakeProcessManager:
    """Records every call in order and lets tests fire process callbacks."""

    KINDS = ProcessManager.KINDS

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.spawned: list[SpawnConfig] = []
        self.writes: list[tuple[str, str]] = []
        self.commands: list[str] = []
        self.running: set[str] = set()
        self.fail_spawn: set[str] = set()
        self.fail_write = False
        self.interrupt_ok = True
        self.command_exit_code = 0
        self.command_output = ""
        self._next_pid = 1000
        self._listeners: dict[str, list] = {kind: [] for kind in self.KINDS}

    def __getattr__(self, name: str):
        kind = name[3:] if name.startswith("on_") else ""
        if kind not in ProcessManager.KINDS:
            raise AttributeError(name)

        def subscribe(fn):
            self._listeners[kind].append(fn)

            def unsubscribe():
                if fn in self._listeners[kind]:
                    self._listeners[kind].remove(fn)

            return unsubscribe

        return subscribe

    def emit(self, kind: str, session_id: str, payload: Any) -> None:
        for fn in list(self._listeners[kind]):
            fn(session_id, payload)

    def finish(self, session_id: str, code: int = 0) -> None:
        self.running.discard(session_id)
        self.emit("exit", session_id, code)

    def listener_count(self) -> int:
        return sum(len(fns) for fns in self._listeners.values())

    async def spawn(self, config: SpawnConfig) -> SpawnResult:
        self.calls.append(("spawn", config.session_id))
        self.spawned.append(config)
        if config.session_id in self.fail_spawn:
            return SpawnResult(pid=-1, success=False)
        self.running.add(config.session_id)
        self._next_pid += 1
        return SpawnResult(pid=self._next_pid, success=True)

    def is_running(self, session_id: str) -> bool:
        return session_id in self.running

    def last_spawn(self, session_id: str) -> Optional[SpawnConfig]:
        for config in reversed(self.spawned):
            if config.session_id == session_id:
                return config
        return None

    def write(self, session_id: str, data: str) -> bool:
        self.calls.append(("write", session_id))
        if self.fail_write or session_id not in self.running:
            return False
        self.writes.append((session_id, data))
        return True

    def kill(self, session_id: str) -> bool:
        self.calls.append(("kill", session_id))
        if session_id not in self.running:
            return False
        self.running.discard(session_id)
        return True

    def interrupt(self, session_id: str) -> bool:
        self.calls.append(("interrupt", session_id))
        return self.interrupt_ok and session_id in self.running

    async def run_command(self, session_id: str, command: str, cwd: str,
                          shell: str = "bash") -> int:
        self.calls.append(("run_command", session_id))
        self.commands.append(command)
        if self.command_output:
            self.emit("data", session_id, self.command_output)
        self.emit("command_exit", session_id, self.command_exit_code)
        return self.command_exit_code


class FakeDetector:
    def __init__(self, agents: list[AgentDefinition], settings: Optional[Settings] = None):
        self._agents = {a.id: a for a in agents}
        self.settings = settings or Settings()

    def detect(self) -> list[AgentDefinition]:
        return list(self._agents.values())

    def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        return self._agents.get(agent_id)


@pytest.fixture
def fake_pm() -> FakeProcessManager:
    return FakeProcessManager()


@pytest.fixture
def detector() -> FakeDetector:
    return FakeDetector([
        make_agent("interactive", batch=False),
        make_agent("batch", batch=True),
        make_agent("missing", batch=True, available=False),
    ])
