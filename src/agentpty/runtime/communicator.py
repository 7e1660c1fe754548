"""Communicator — semantic events and request/response over a session's PTY."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from agentpty.errors import (
    CompletionTimeoutError,
    NotFoundError,
    SessionStoppedError,
    TaskFailedError,
    WaiterConflictError,
)
from agentpty.log import LogFn, make_log
from agentpty.pty.session import SessionState
from agentpty.pty.spawner import INTERRUPT, ProcessSpawner
from agentpty.runtime.parsers import (
    HeuristicOutputParser,
    OutputKind,
    OutputParser,
    ParsedOutput,
    ParserFactory,
)
from agentpty.session.wire import EventType, Wire, WireEvent
from agentpty.text import preview

logger = logging.getLogger(__name__)

OutputHandler = Callable[[ParsedOutput], None]

DEFAULT_COMPLETION_TIMEOUT = 300.0


def format_message(message: str) -> str:
    """Ensure the message ends with a newline so the CLI submits it."""
    return message if message.endswith("\n") else f"{message}\n"


class Communicator:
    """Classifies session output and layers protocols over the byte stream.

    Listens to ``OUTPUT`` events on the wire, runs each chunk through the
    session's parser, and re-emits the result as ``PARSED_OUTPUT``. Each
    session gets its own parser instance so stateful strategies never mix
    output from different processes.

    Two kinds of consumers can attach per session:

    * one output handler (``on_output``), replaced by a later registration;
    * one completion waiter (``wait_for_completion``). A second concurrent
      wait fails with ``WaiterConflictError`` instead of silently
      displacing the first.
    """

    def __init__(
        self,
        spawner: ProcessSpawner,
        wire: Wire,
        *,
        parser_factory: ParserFactory | None = None,
        log: LogFn | None = None,
    ) -> None:
        self._spawner = spawner
        self._wire = wire
        self._parser_factory: ParserFactory = parser_factory or HeuristicOutputParser
        self._log = log or make_log(logger)
        self._parsers: dict[str, OutputParser] = {}
        self._handlers: dict[str, OutputHandler] = {}
        self._waiters: dict[str, asyncio.Future[ParsedOutput]] = {}
        # Terminal outputs that arrived while nobody was waiting
        self._undelivered: dict[str, ParsedOutput] = {}
        self._wire.add_listener(self._on_event)

    # -- outbound ---------------------------------------------------------------

    async def send_message(self, session_id: str, message: str) -> None:
        """Send a chat message to the session."""
        self._log(
            "info",
            "Sending message",
            {"session_id": session_id, "message": preview(message)},
        )
        self._spawner.write(session_id, format_message(message))

    async def send_command(
        self, session_id: str, command: str, args: str | None = None
    ) -> None:
        """Send a slash command (e.g. ``/compact``) with optional arguments."""
        full_command = f"{command} {args}" if args else command
        self._log("info", "Sending command", {"session_id": session_id, "command": full_command})
        self._spawner.write(session_id, format_message(full_command))

    async def respond_to_prompt(self, session_id: str, response: str) -> None:
        """Answer a question the process asked (a ``prompt`` classification)."""
        self._log(
            "info",
            "Responding to prompt",
            {"session_id": session_id, "response": preview(response)},
        )
        self._spawner.write(session_id, format_message(response))

    async def interrupt(self, session_id: str) -> None:
        """Send Ctrl+C."""
        self._log("info", "Interrupting session", {"session_id": session_id})
        self._spawner.write(session_id, INTERRUPT)

    # -- handlers and waiters ---------------------------------------------------

    def on_output(self, session_id: str, handler: OutputHandler) -> None:
        """Register the output handler for a session, replacing any previous one."""
        if session_id in self._handlers:
            self._log("debug", "Replacing output handler", {"session_id": session_id})
        self._handlers[session_id] = handler

    def off_output(self, session_id: str) -> None:
        self._handlers.pop(session_id, None)

    async def wait_for_completion(
        self, session_id: str, timeout: float | None = DEFAULT_COMPLETION_TIMEOUT
    ) -> ParsedOutput:
        """Wait for the session's next terminal output.

        Returns the first output with ``is_complete`` set. A terminal output
        that arrived before the wait started is returned at once, provided
        nothing has been written to the session since.

        Raises:
            NotFoundError: The session is not registered.
            WaiterConflictError: Another wait is pending on this session.
            TaskFailedError: An ``error`` output arrived first.
            SessionStoppedError: The session stopped first.
            CompletionTimeoutError: Nothing terminal arrived within ``timeout``.
            asyncio.CancelledError: The wait was cancelled by the caller or
                via ``cancel_wait``.
        """
        session = self._spawner.get_session(session_id)
        if session is None:
            raise NotFoundError(session_id)
        pending = self._waiters.get(session_id)
        if pending is not None and not pending.done():
            raise WaiterConflictError(session_id)

        early = self._undelivered.pop(session_id, None)
        if early is not None and session.state in (SessionState.IDLE, SessionState.ERROR):
            # Finished before the caller started waiting, with no input since
            if early.kind == OutputKind.ERROR:
                raise TaskFailedError(session_id, early)
            return early

        waiter: asyncio.Future[ParsedOutput] = asyncio.get_running_loop().create_future()
        self._waiters[session_id] = waiter
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            raise CompletionTimeoutError(session_id, timeout or 0.0) from None
        finally:
            if self._waiters.get(session_id) is waiter:
                del self._waiters[session_id]

    def cancel_wait(self, session_id: str) -> bool:
        """Abort a pending completion wait. Returns whether one was pending."""
        waiter = self._waiters.pop(session_id, None)
        if waiter is None or waiter.done():
            return False
        waiter.cancel()
        return True

    def has_waiter(self, session_id: str) -> bool:
        waiter = self._waiters.get(session_id)
        return waiter is not None and not waiter.done()

    def cleanup(self) -> None:
        """Drop every handler and parser and cancel pending waits."""
        self._handlers.clear()
        self._parsers.clear()
        self._undelivered.clear()
        for waiter in self._waiters.values():
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()
        self._wire.remove_listener(self._on_event)

    # -- inbound ----------------------------------------------------------------

    def _on_event(self, event: WireEvent) -> None:
        session_id = event.session_id
        if session_id is None:
            return
        if event.type == EventType.OUTPUT:
            self._handle_output(session_id, event.data["data"])
        elif event.type == EventType.STOPPED:
            self._handle_stopped(session_id, event.data.get("reason"))

    def _parser_for(self, session_id: str) -> OutputParser:
        parser = self._parsers.get(session_id)
        if parser is None:
            parser = self._parser_factory()
            self._parsers[session_id] = parser
        return parser

    def _handle_output(self, session_id: str, data: str) -> None:
        try:
            parsed = self._parser_for(session_id).parse(data)
        except Exception:
            logger.exception("Output parser failed for session %s", session_id)
            parsed = ParsedOutput(kind=OutputKind.RAW, content=data)

        self._log(
            "debug",
            "Parsed output",
            {"session_id": session_id, "kind": parsed.kind.value, "is_complete": parsed.is_complete},
        )
        self._wire.send_parsed_output(session_id, parsed)

        if parsed.is_complete:
            self._spawner.mark_idle(session_id, parsed.content)
        elif parsed.kind == OutputKind.ERROR:
            self._spawner.mark_error(session_id, parsed.error or parsed.content)

        handler = self._handlers.get(session_id)
        if handler is not None:
            try:
                handler(parsed)
            except Exception:
                logger.exception("Output handler failed for session %s", session_id)

        if not parsed.is_terminal:
            return
        waiter = self._waiters.get(session_id)
        if waiter is None or waiter.done():
            self._undelivered[session_id] = parsed
        elif parsed.kind == OutputKind.ERROR:
            waiter.set_exception(TaskFailedError(session_id, parsed))
        else:
            waiter.set_result(parsed)

    def _handle_stopped(self, session_id: str, reason: str | None) -> None:
        self._parsers.pop(session_id, None)
        self._undelivered.pop(session_id, None)
        self._handlers.pop(session_id, None)
        waiter = self._waiters.get(session_id)
        if waiter is not None and not waiter.done():
            waiter.set_exception(SessionStoppedError(session_id, reason))
