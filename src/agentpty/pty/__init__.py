"""PTY process management — one pseudo-terminal per CLI session.

Every session runs in its own PTY with process group isolation, a
bounded output ring buffer, and exit detection that feeds the spawner's
registry.
"""

from agentpty.pty.buffer import RingBuffer
from agentpty.pty.process import ProcessHandle, PTYProcess
from agentpty.pty.session import ExitReason, Session, SessionState
from agentpty.pty.spawner import ProcessSpawner

__all__ = [
    "ExitReason",
    "ProcessHandle",
    "ProcessSpawner",
    "PTYProcess",
    "RingBuffer",
    "Session",
    "SessionState",
]
