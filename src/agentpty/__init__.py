"""agentpty — manage interactive CLI agents running in pseudo-terminals."""

from agentpty.config import AgentConfig, ClaudeCodeConfig, SpawnOptions
from agentpty.errors import (
    AgentPTYError,
    CompletionTimeoutError,
    ConfigError,
    NotFoundError,
    NotInitializedError,
    ProcessError,
    SessionStoppedError,
    TaskFailedError,
    WaiterConflictError,
)
from agentpty.pty import ProcessSpawner, Session, SessionState
from agentpty.runtime import (
    AvailabilityResult,
    Communicator,
    OutputKind,
    ParsedOutput,
    Runtime,
)
from agentpty.session.wire import EventType, WireEvent

__version__ = "0.1.0"

__all__ = [
    "AgentConfig",
    "AgentPTYError",
    "AvailabilityResult",
    "ClaudeCodeConfig",
    "Communicator",
    "CompletionTimeoutError",
    "ConfigError",
    "EventType",
    "NotFoundError",
    "NotInitializedError",
    "OutputKind",
    "ParsedOutput",
    "ProcessError",
    "ProcessSpawner",
    "Runtime",
    "Session",
    "SessionState",
    "SessionStoppedError",
    "SpawnOptions",
    "TaskFailedError",
    "WaiterConflictError",
    "WireEvent",
]
