"""Wire protocol — decouples session management from its consumers.

Events flow from the spawner and communicator to the host. Consumers
either subscribe with a queue (``subscribe``) and read events at their own
pace, or register a listener (``add_listener``) that is invoked inline on
the event loop as each event is sent. The communicator itself is a
listener: it classifies ``OUTPUT`` events into ``PARSED_OUTPUT`` events.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from agentpty.runtime.parsers import ParsedOutput

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    STARTED = "started"
    OUTPUT = "output"
    ERROR = "error"
    COMPLETED = "completed"
    STOPPED = "stopped"
    PARSED_OUTPUT = "parsed_output"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def session_id(self) -> str | None:
        return self.data.get("session_id")


Listener = Callable[[WireEvent], None]


class Wire:
    """Event bus: spawner/communicator -> host.

    Multi-producer, multi-consumer broadcast. Queue subscribers are fed
    before listeners run, so a listener that sends a follow-up event never
    reorders what queue subscribers see.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._listeners: list[Listener] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers and listeners.

        Silently drops events after ``close()`` has been called. A listener
        that raises is logged and skipped; the remaining listeners still run.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Wire listener %r failed on %s event", listener, event.type.value
                )

    def send_started(self, session_id: str, pid: int) -> None:
        self.send(
            WireEvent(type=EventType.STARTED, data={"session_id": session_id, "pid": pid})
        )

    def send_output(self, session_id: str, data: str) -> None:
        self.send(
            WireEvent(type=EventType.OUTPUT, data={"session_id": session_id, "data": data})
        )

    def send_error(self, session_id: str, error: str) -> None:
        self.send(
            WireEvent(type=EventType.ERROR, data={"session_id": session_id, "error": error})
        )

    def send_completed(self, session_id: str, result: str | None = None) -> None:
        self.send(
            WireEvent(
                type=EventType.COMPLETED,
                data={"session_id": session_id, "result": result},
            )
        )

    def send_stopped(
        self,
        session_id: str,
        exit_code: int | None = None,
        reason: str = "",
    ) -> None:
        """Notify consumers that a session reached its terminal state."""
        self.send(
            WireEvent(
                type=EventType.STOPPED,
                data={
                    "session_id": session_id,
                    "exit_code": exit_code,
                    "reason": reason,
                    "state": "stopped",
                },
            )
        )

    def send_parsed_output(self, session_id: str, output: ParsedOutput) -> None:
        self.send(
            WireEvent(
                type=EventType.PARSED_OUTPUT,
                data={"session_id": session_id, "output": output},
            )
        )

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked inline for every event."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        if self._closed:
            return
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
        self._listeners.clear()
