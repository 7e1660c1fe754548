"""Shared fixtures: a scriptable process double and ready-made components."""

from __future__ import annotations

import asyncio
import itertools
import signal
from pathlib import Path
from typing import Any, Callable

import pytest

from agentpty.config import AgentConfig
from agentpty.errors import ProcessError
from agentpty.pty.spawner import ProcessSpawner
from agentpty.session.wire import Wire, WireEvent

_pids = itertools.count(40_000)


class FakeProcess:
    """Stands in for PTYProcess without touching the OS.

    Tests push output with ``emit`` and end the process with ``exit``.
    Ctrl+C makes it exit with 130 unless ``ignore_interrupt`` is set.
    SIGTERM makes it exit on the next loop iteration unless
    ``ignore_terminate`` is set; SIGKILL always does.
    """

    def __init__(
        self,
        argv: list[str],
        *,
        cwd: str,
        env: dict[str, str],
        on_data: Callable[[str], None],
        on_exit: Callable[[int | None], None],
        ignore_interrupt: bool = False,
        ignore_terminate: bool = False,
        fail_start: bool = False,
        **_: Any,
    ) -> None:
        self.argv = argv
        self.cwd = cwd
        self.env = env
        self.ignore_interrupt = ignore_interrupt
        self.ignore_terminate = ignore_terminate
        self.fail_start = fail_start
        self.fail_signal = False
        self.writes: list[str] = []
        self.signals: list[int] = []
        self._on_data = on_data
        self._on_exit = on_exit
        self._pid = next(_pids)
        self._exited: asyncio.Future[int | None] | None = None

    async def start(self) -> None:
        if self.fail_start:
            raise ProcessError(f"Failed to launch {self.argv[0]}: not found")
        self._exited = asyncio.get_running_loop().create_future()

    def write(self, data: str) -> None:
        if not self.alive:
            raise ProcessError(f"Process {self._pid} is not running")
        self.writes.append(data)
        if data == "\x03" and not self.ignore_interrupt:
            asyncio.get_running_loop().call_soon(self.exit, 130)

    def send_signal(self, sig: int) -> None:
        if self.fail_signal:
            raise PermissionError(f"Cannot signal {self._pid}")
        self.signals.append(sig)
        if sig == signal.SIGKILL or (sig == signal.SIGTERM and not self.ignore_terminate):
            asyncio.get_running_loop().call_soon(self.exit, -sig)

    def emit(self, data: str) -> None:
        self._on_data(data)

    def exit(self, code: int | None = 0) -> None:
        if self._exited is None or self._exited.done():
            return
        self._exited.set_result(code)
        self._on_exit(code)

    async def wait(self) -> int | None:
        if self._exited is None:
            return None
        return await asyncio.shield(self._exited)

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def alive(self) -> bool:
        return self._exited is not None and not self._exited.done()

    @property
    def typed(self) -> str:
        """Everything written to the process, concatenated."""
        return "".join(self.writes)


class FakeProcessFactory:
    """Process factory that records every FakeProcess it creates."""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.ignore_interrupt = False
        self.ignore_terminate = False
        self.fail_start = False

    def __call__(self, argv: list[str], **kwargs: Any) -> FakeProcess:
        proc = FakeProcess(
            argv,
            ignore_interrupt=self.ignore_interrupt,
            ignore_terminate=self.ignore_terminate,
            fail_start=self.fail_start,
            **kwargs,
        )
        self.processes.append(proc)
        return proc

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


def drain(q: asyncio.Queue[WireEvent | None]) -> list[WireEvent]:
    """Pop every event currently queued (the close sentinel is dropped)."""
    events: list[WireEvent] = []
    while not q.empty():
        event = q.get_nowait()
        if event is not None:
            events.append(event)
    return events


@pytest.fixture
def agent_config(tmp_path: Path) -> AgentConfig:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return AgentConfig(
        id="test-agent",
        name="Test Agent",
        runtime="claudeCode",
        workspace=str(workspace),
        agent_dir=str(tmp_path / "agent"),
        claude_code={"binary_path": "/opt/fake/claude", "permission_mode": "bypassPermissions"},
    )


@pytest.fixture
def processes() -> FakeProcessFactory:
    return FakeProcessFactory()


@pytest.fixture
def wire() -> Wire:
    return Wire()


@pytest.fixture
def spawner(
    agent_config: AgentConfig, wire: Wire, processes: FakeProcessFactory
) -> ProcessSpawner:
    return ProcessSpawner(
        agent_config,
        wire,
        process_factory=processes,
        startup_delay=0,
        grace_period=0.05,
        kill_timeout=0.05,
    )
