"""Error taxonomy for agentpty.

Each error also derives from the closest builtin so callers that only
know the builtin hierarchy (``LookupError``, ``TimeoutError``, ...) still
catch it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentpty.runtime.parsers import ParsedOutput


class AgentPTYError(Exception):
    """Base class for all agentpty errors."""


class ConfigError(AgentPTYError, ValueError):
    """Invalid agent configuration or spawn options."""


class NotFoundError(AgentPTYError, LookupError):
    """An operation referenced a session id that is not registered."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class NotInitializedError(AgentPTYError, RuntimeError):
    """The runtime was used after shutdown."""

    def __init__(self) -> None:
        super().__init__("Runtime is not initialized")


class CompletionTimeoutError(AgentPTYError, TimeoutError):
    """No terminal output arrived within the timeout."""

    def __init__(self, session_id: str, timeout: float) -> None:
        super().__init__(
            f"Timeout waiting for completion: {session_id} ({timeout:g}s)"
        )
        self.session_id = session_id
        self.timeout = timeout


class ProcessError(AgentPTYError, OSError):
    """The external binary could not be launched or probed."""


class TaskFailedError(AgentPTYError):
    """The process reported an error while a completion wait was pending."""

    def __init__(self, session_id: str, output: ParsedOutput) -> None:
        super().__init__(output.error or "Task failed")
        self.session_id = session_id
        self.output = output


class WaiterConflictError(AgentPTYError):
    """A completion wait is already pending on the session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"A completion wait is already pending on {session_id}")
        self.session_id = session_id


class SessionStoppedError(AgentPTYError):
    """The session stopped before a pending wait finished."""

    def __init__(self, session_id: str, reason: str | None = None) -> None:
        detail = f" ({reason})" if reason else ""
        super().__init__(f"Session {session_id} stopped{detail}")
        self.session_id = session_id
        self.reason = reason
