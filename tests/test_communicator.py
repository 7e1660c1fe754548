"""Tests for agentpty.runtime.communicator.Communicator."""

from __future__ import annotations

import asyncio

import pytest

from agentpty.errors import (
    CompletionTimeoutError,
    NotFoundError,
    SessionStoppedError,
    TaskFailedError,
    WaiterConflictError,
)
from agentpty.pty.session import Session, SessionState
from agentpty.pty.spawner import ProcessSpawner
from agentpty.runtime.communicator import Communicator, format_message
from agentpty.runtime.parsers import OutputKind, ParsedOutput, StructuredOutputParser
from agentpty.session.wire import EventType, Wire

from conftest import FakeProcess, FakeProcessFactory, drain


@pytest.fixture
def communicator(spawner: ProcessSpawner, wire: Wire) -> Communicator:
    return Communicator(spawner, wire)


@pytest.fixture
async def session(spawner: ProcessSpawner, communicator: Communicator) -> Session:
    return await spawner.spawn("initial task")


@pytest.fixture
def proc(session: Session, processes: FakeProcessFactory) -> FakeProcess:
    return processes.last


class TestFormatMessage:
    def test_appends_newline(self) -> None:
        assert format_message("hi") == "hi\n"

    def test_keeps_existing_newline(self) -> None:
        assert format_message("hi\n") == "hi\n"


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


class TestOutbound:
    async def test_send_message(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        await communicator.send_message(session.session_id, "hello")
        assert proc.writes[-1] == "hello\n"

    async def test_send_command_with_args(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        await communicator.send_command(session.session_id, "/model", "sonnet")
        assert proc.writes[-1] == "/model sonnet\n"

    async def test_send_command_without_args(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        await communicator.send_command(session.session_id, "/compact")
        assert proc.writes[-1] == "/compact\n"

    async def test_respond_to_prompt(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        await communicator.respond_to_prompt(session.session_id, "yes")
        assert proc.writes[-1] == "yes\n"

    async def test_interrupt(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        proc.ignore_interrupt = True
        await communicator.interrupt(session.session_id)
        assert proc.writes[-1] == "\x03"

    async def test_unknown_session(self, communicator: Communicator) -> None:
        with pytest.raises(NotFoundError):
            await communicator.send_message("nope", "hello")


# ---------------------------------------------------------------------------
# Classification and handlers
# ---------------------------------------------------------------------------


class TestClassification:
    async def test_parsed_output_event(
        self, wire: Wire, session: Session, proc: FakeProcess
    ) -> None:
        q = wire.subscribe()
        proc.emit("working on it")
        events = drain(q)
        assert [e.type for e in events] == [EventType.OUTPUT, EventType.PARSED_OUTPUT]
        parsed = events[1].data["output"]
        assert parsed.kind == OutputKind.RAW

    async def test_completion_marks_idle(
        self, wire: Wire, session: Session, proc: FakeProcess
    ) -> None:
        q = wire.subscribe()
        proc.emit("Task completed\n")
        assert session.state == SessionState.IDLE
        types = [e.type for e in drain(q)]
        assert types == [EventType.OUTPUT, EventType.PARSED_OUTPUT, EventType.COMPLETED]

    async def test_error_marks_error(self, session: Session, proc: FakeProcess) -> None:
        proc.emit("Error: disk full\n")
        assert session.state == SessionState.ERROR
        assert session.error == "disk full"

    async def test_handler_receives_output(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        seen: list[ParsedOutput] = []
        communicator.on_output(session.session_id, seen.append)
        proc.emit("chunk")
        assert [p.content for p in seen] == ["chunk"]

    async def test_handler_replaced(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        first: list[ParsedOutput] = []
        second: list[ParsedOutput] = []
        communicator.on_output(session.session_id, first.append)
        communicator.on_output(session.session_id, second.append)
        proc.emit("chunk")
        assert first == []
        assert len(second) == 1

    async def test_off_output(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        seen: list[ParsedOutput] = []
        communicator.on_output(session.session_id, seen.append)
        communicator.off_output(session.session_id)
        proc.emit("chunk")
        assert seen == []

    async def test_failing_handler_is_contained(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        def broken(parsed: ParsedOutput) -> None:
            raise RuntimeError("handler bug")

        communicator.on_output(session.session_id, broken)
        proc.emit("Done")
        assert session.state == SessionState.IDLE

    async def test_parsers_are_per_session(
        self,
        spawner: ProcessSpawner,
        communicator: Communicator,
        processes: FakeProcessFactory,
    ) -> None:
        a = await spawner.spawn("a")
        proc_a = processes.last
        b = await spawner.spawn("b")
        proc_b = processes.last

        proc_a.emit("Task comp")
        proc_b.emit("leted")
        # Neither session saw the whole marker
        assert a.state == SessionState.STARTING
        assert b.state == SessionState.STARTING

        proc_a.emit("leted")
        assert a.state == SessionState.IDLE
        assert b.state == SessionState.STARTING

    async def test_faulty_parser_falls_back_to_raw(
        self, spawner: ProcessSpawner, wire: Wire, processes: FakeProcessFactory
    ) -> None:
        class Exploding:
            def parse(self, output: str) -> ParsedOutput:
                raise ValueError("parser bug")

            def reset(self) -> None:
                pass

        communicator = Communicator(spawner, wire, parser_factory=Exploding)
        session = await spawner.spawn("t")
        seen: list[ParsedOutput] = []
        communicator.on_output(session.session_id, seen.append)
        processes.last.emit("still flowing")
        assert seen == [ParsedOutput(kind=OutputKind.RAW, content="still flowing")]

    async def test_structured_parser_factory(
        self, spawner: ProcessSpawner, wire: Wire, processes: FakeProcessFactory
    ) -> None:
        communicator = Communicator(spawner, wire, parser_factory=StructuredOutputParser)
        session = await spawner.spawn("t")
        waiter = asyncio.create_task(communicator.wait_for_completion(session.session_id, 1.0))
        await asyncio.sleep(0)
        processes.last.emit('{"type": "result", "result": "4"}')
        result = await waiter
        assert result.content == "4"


# ---------------------------------------------------------------------------
# wait_for_completion
# ---------------------------------------------------------------------------


class TestWaitForCompletion:
    async def test_resolves_on_completion(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        waiter = asyncio.create_task(communicator.wait_for_completion(session.session_id, 1.0))
        await asyncio.sleep(0)
        proc.emit("thinking...")
        assert not waiter.done()
        proc.emit("Task completed: ok\n")
        result = await waiter
        assert result.is_complete
        assert "Task completed" in result.content
        assert not communicator.has_waiter(session.session_id)

    async def test_error_rejects(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        waiter = asyncio.create_task(communicator.wait_for_completion(session.session_id, 1.0))
        await asyncio.sleep(0)
        proc.emit("Error: disk full\n")
        with pytest.raises(TaskFailedError, match="disk full") as exc_info:
            await waiter
        assert exc_info.value.output.kind == OutputKind.ERROR

    async def test_timeout(self, communicator: Communicator, session: Session) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(CompletionTimeoutError) as exc_info:
            await communicator.wait_for_completion(session.session_id, 0.05)
        assert loop.time() - started >= 0.04
        assert exc_info.value.session_id == session.session_id
        assert isinstance(exc_info.value, TimeoutError)
        assert not communicator.has_waiter(session.session_id)

    async def test_unknown_session(self, communicator: Communicator) -> None:
        with pytest.raises(NotFoundError):
            await communicator.wait_for_completion("nope", 0.1)

    async def test_second_waiter_conflicts(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        first = asyncio.create_task(communicator.wait_for_completion(session.session_id, 1.0))
        await asyncio.sleep(0)
        with pytest.raises(WaiterConflictError):
            await communicator.wait_for_completion(session.session_id, 1.0)
        # The first wait is unaffected
        proc.emit("Done")
        assert (await first).is_complete

    async def test_stop_rejects_waiter(
        self,
        spawner: ProcessSpawner,
        communicator: Communicator,
        session: Session,
    ) -> None:
        waiter = asyncio.create_task(communicator.wait_for_completion(session.session_id, 1.0))
        await asyncio.sleep(0)
        await spawner.stop(session.session_id, force=True)
        with pytest.raises(SessionStoppedError, match="killed"):
            await waiter

    async def test_cancel_wait(self, communicator: Communicator, session: Session) -> None:
        waiter = asyncio.create_task(communicator.wait_for_completion(session.session_id, 1.0))
        await asyncio.sleep(0)
        assert communicator.cancel_wait(session.session_id) is True
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert communicator.cancel_wait(session.session_id) is False

    async def test_caller_cancellation_clears_waiter(
        self, communicator: Communicator, session: Session
    ) -> None:
        waiter = asyncio.create_task(communicator.wait_for_completion(session.session_id, 1.0))
        await asyncio.sleep(0)
        assert communicator.has_waiter(session.session_id)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert not communicator.has_waiter(session.session_id)
        # A fresh wait is allowed afterwards
        again = asyncio.create_task(communicator.wait_for_completion(session.session_id, 1.0))
        await asyncio.sleep(0)
        assert communicator.has_waiter(session.session_id)
        again.cancel()
        with pytest.raises(asyncio.CancelledError):
            await again

    async def test_cleanup_cancels_waiters(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        seen: list[ParsedOutput] = []
        communicator.on_output(session.session_id, seen.append)
        waiter = asyncio.create_task(communicator.wait_for_completion(session.session_id, 1.0))
        await asyncio.sleep(0)
        communicator.cleanup()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        proc.emit("Done")
        assert seen == []


# ---------------------------------------------------------------------------
# Completion that arrives before the wait
# ---------------------------------------------------------------------------


class TestEarlyCompletion:
    async def test_completion_before_wait_is_returned(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        proc.emit("Task completed\n")
        result = await communicator.wait_for_completion(session.session_id, 0.05)
        assert result.is_complete
        assert "Task completed" in result.content

    async def test_error_before_wait_is_raised(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        proc.emit("Error: disk full\n")
        with pytest.raises(TaskFailedError, match="disk full"):
            await communicator.wait_for_completion(session.session_id, 0.05)

    async def test_early_result_is_delivered_once(
        self, communicator: Communicator, session: Session, proc: FakeProcess
    ) -> None:
        proc.emit("Done")
        await communicator.wait_for_completion(session.session_id, 0.05)
        with pytest.raises(CompletionTimeoutError):
            await communicator.wait_for_completion(session.session_id, 0.05)

    async def test_input_after_completion_discards_it(
        self,
        spawner: ProcessSpawner,
        communicator: Communicator,
        session: Session,
        proc: FakeProcess,
    ) -> None:
        proc.emit("Done")
        spawner.write(session.session_id, "next task\n")
        with pytest.raises(CompletionTimeoutError):
            await communicator.wait_for_completion(session.session_id, 0.05)
