"""Session record — bookkeeping for one managed CLI process."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone

from agentpty.config import SpawnOptions
from agentpty.pty.buffer import RingBuffer


class SessionState(enum.StrEnum):
    """Lifecycle states for a session.

    ``starting`` -> ``running`` -> ``idle`` | ``error`` | ``stopped``.
    ``stopped`` is terminal; a stopped session is never in the registry.
    """

    STARTING = "starting"
    RUNNING = "running"
    IDLE = "idle"
    ERROR = "error"
    STOPPED = "stopped"


class ExitReason(enum.StrEnum):
    INTERRUPTED = "interrupted"  # Exited within the grace window after Ctrl+C
    TERMINATED = "terminated"  # SIGTERM after the grace window
    KILLED = "killed"  # Forced stop (SIGKILL)
    EXITED = "exited"  # Process exited on its own


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """One spawned process plus its bookkeeping.

    Owned by the ProcessSpawner's registry; everything else refers to a
    session by ``session_id`` and treats the record as read-only.
    """

    session_id: str
    agent_id: str
    pid: int
    workdir: str
    task: str
    options: SpawnOptions | None = None
    started_at: datetime = field(default_factory=_now)
    last_activity: datetime = field(default_factory=_now)
    state: SessionState = SessionState.STARTING
    error: str | None = None  # Only while state == ERROR
    exit_code: int | None = None
    exit_reason: ExitReason | None = None
    output_buffer: RingBuffer = field(default_factory=RingBuffer)

    def touch(self) -> None:
        self.last_activity = _now()
