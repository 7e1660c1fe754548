"""Process spawner — owns the session registry and process lifecycle."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import signal
import time
import uuid
from dataclasses import dataclass

from agentpty.config import (
    AGENT_TEAMS_ENV,
    AgentConfig,
    PermissionMode,
    SpawnOptions,
)
from agentpty.errors import NotFoundError, ProcessError
from agentpty.log import LogFn, make_log
from agentpty.pty.buffer import RingBuffer
from agentpty.pty.process import ProcessFactory, ProcessHandle, PTYProcess
from agentpty.pty.session import ExitReason, Session, SessionState
from agentpty.session.wire import Wire
from agentpty.text import clean_terminal_text, preview

logger = logging.getLogger(__name__)

INTERRUPT = "\x03"  # Ctrl+C


@dataclass
class _Entry:
    process: ProcessHandle
    session: Session
    stop_reason: ExitReason | None = None  # Set once a stop is in progress


class ProcessSpawner:
    """Spawns and tracks one PTY process per session for a single agent.

    The spawner is the only component that creates or removes registry
    entries and the only one that mutates ``Session`` records. It ensures:
    - Sessions are tracked and can be looked up by ID
    - A session leaves the registry exactly once, whether it was stopped
      or exited on its own, with a single ``stopped`` event
    - All sessions are killed on cleanup (no orphan processes)
    """

    def __init__(
        self,
        agent: AgentConfig,
        wire: Wire,
        *,
        log: LogFn | None = None,
        process_factory: ProcessFactory | None = None,
        startup_delay: float | None = None,
        grace_period: float | None = None,
        kill_timeout: float | None = None,
    ) -> None:
        self._agent = agent
        self._cc = agent.claude_code
        self._wire = wire
        self._log = log or make_log(logger)
        self._process_factory: ProcessFactory = process_factory or PTYProcess
        self.startup_delay = (
            self._cc.startup_delay if startup_delay is None else startup_delay
        )
        self.grace_period = self._cc.grace_period if grace_period is None else grace_period
        self.kill_timeout = self._cc.kill_timeout if kill_timeout is None else kill_timeout
        self._sessions: dict[str, _Entry] = {}

    @property
    def binary_path(self) -> str:
        return self._cc.binary_path

    async def spawn(self, options: SpawnOptions | str) -> Session:
        """Spawn a new session and, unless resuming, type its task.

        Raises:
            ProcessError: The binary could not be launched. The registry is
                left untouched.
        """
        options = SpawnOptions.parse(options)
        session_id = self._generate_session_id()

        self._log(
            "info",
            "Spawning session",
            {
                "agent_id": self._agent.id,
                "session_id": session_id,
                "task": preview(options.task),
            },
        )

        argv = [self.binary_path, *self.build_args(options)]
        workdir = self.resolve_workdir(options)
        env = self.build_env(options)

        process = self._process_factory(
            argv,
            cwd=workdir,
            env=env,
            on_data=functools.partial(self._handle_data, session_id),
            on_exit=functools.partial(self._handle_exit, session_id),
            cols=self._cc.cols,
            rows=self._cc.rows,
        )
        await process.start()

        session = Session(
            session_id=session_id,
            agent_id=self._agent.id,
            pid=process.pid,
            workdir=workdir,
            task=options.task,
            options=options,
            output_buffer=RingBuffer(self._cc.output_buffer_size),
        )
        self._sessions[session_id] = _Entry(process=process, session=session)
        self._wire.send_started(session_id, process.pid)

        if not options.is_resuming:
            # Let the CLI draw its UI before typing into it
            await asyncio.sleep(self.startup_delay)
            if session_id in self._sessions:
                self._send_task(session_id, options.task)
            else:
                self._log(
                    "warn",
                    "Session exited before its task was sent",
                    {"session_id": session_id, "exit_code": session.exit_code},
                )

        return session

    def write(self, session_id: str, text: str) -> None:
        """Write raw text to a session's terminal."""
        entry = self._sessions.get(session_id)
        if entry is None:
            raise NotFoundError(session_id)

        self._log(
            "debug", "Writing to session", {"session_id": session_id, "input": preview(text)}
        )
        entry.process.write(text)
        session = entry.session
        session.touch()
        if text != INTERRUPT and session.state in (SessionState.IDLE, SessionState.ERROR):
            session.state = SessionState.RUNNING
            session.error = None

    async def stop(self, session_id: str, force: bool = False) -> None:
        """Stop a session. Stopping an unknown session is a no-op.

        ``force`` kills the process group immediately. Otherwise Ctrl+C is
        written and the process gets ``grace_period`` seconds to exit; only
        if it is still registered afterwards is SIGTERM sent, followed by
        SIGKILL if it survives another ``kill_timeout`` seconds.
        """
        entry = self._sessions.get(session_id)
        if entry is None:
            self._log("warn", "Attempted to stop non-existent session", {"session_id": session_id})
            return
        if entry.stop_reason is not None and not force:
            # A stop is already in flight; let it finish the transition
            await self._wait_exit(entry, self.grace_period)
            return

        self._log("info", "Stopping session", {"session_id": session_id, "force": force})
        process = entry.process

        if force:
            entry.stop_reason = ExitReason.KILLED
            process.send_signal(signal.SIGKILL)
        else:
            entry.stop_reason = ExitReason.INTERRUPTED
            try:
                process.write(INTERRUPT)
            except ProcessError as e:
                self._log("debug", "Interrupt write failed", {"session_id": session_id, "error": str(e)})

            await self._wait_exit(entry, self.grace_period)
            if self._sessions.get(session_id) is not entry:
                # Exited inside the window; the exit path already finalized it
                return

            entry.stop_reason = ExitReason.TERMINATED
            process.send_signal(signal.SIGTERM)
            await self._wait_exit(entry, self.kill_timeout)
            if self._sessions.get(session_id) is not entry:
                return

            # Still alive after SIGTERM; never leave an untracked process behind
            entry.stop_reason = ExitReason.KILLED
            process.send_signal(signal.SIGKILL)

        self._finalize(entry, None, entry.stop_reason)

    async def _wait_exit(self, entry: _Entry, timeout: float) -> None:
        try:
            await asyncio.wait_for(entry.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def restart(self, session_id: str) -> Session:
        """Force-stop a session and spawn a fresh one with the same task."""
        entry = self._sessions.get(session_id)
        if entry is None:
            raise NotFoundError(session_id)

        self._log("info", "Restarting session", {"session_id": session_id})

        session = entry.session
        if session.options is not None:
            options = session.options.model_copy(
                update={"resume_session_id": None, "continue_session": False}
            )
        else:
            options = SpawnOptions(task=session.task)

        await self.stop(session_id, force=True)
        return await self.spawn(options)

    def get_session(self, session_id: str) -> Session | None:
        entry = self._sessions.get(session_id)
        return entry.session if entry else None

    def get_all_sessions(self) -> list[Session]:
        return [entry.session for entry in self._sessions.values()]

    def mark_idle(self, session_id: str, result: str | None = None) -> None:
        """Record that the session finished its task and is waiting for input."""
        entry = self._sessions.get(session_id)
        if entry is None:
            return
        entry.session.state = SessionState.IDLE
        entry.session.error = None
        self._log("info", "Session task completed", {"session_id": session_id})
        self._wire.send_completed(session_id, result)

    def mark_error(self, session_id: str, message: str) -> None:
        """Record an error reported by the process."""
        entry = self._sessions.get(session_id)
        if entry is None:
            return
        entry.session.state = SessionState.ERROR
        entry.session.error = message
        self._log("error", "Session reported an error", {"session_id": session_id, "error": message})
        self._wire.send_error(session_id, message)

    async def cleanup(self, reap_timeout: float = 1.0) -> None:
        """Force-stop every session concurrently.

        After the stops, waits up to ``reap_timeout`` seconds for the killed
        processes to be reaped so no reader is left running.
        """
        session_ids = list(self._sessions)
        processes = [entry.process for entry in self._sessions.values()]
        self._log("info", "Cleaning up all sessions", {"count": len(session_ids)})

        results = await asyncio.gather(
            *(self.stop(sid, force=True) for sid in session_ids),
            return_exceptions=True,
        )
        for sid, result in zip(session_ids, results):
            if isinstance(result, BaseException):
                self._log(
                    "error",
                    "Failed to stop session during cleanup",
                    {"session_id": sid, "error": str(result)},
                )

        if processes and reap_timeout > 0:
            waits = [asyncio.ensure_future(p.wait()) for p in processes]
            _, pending = await asyncio.wait(waits, timeout=reap_timeout)
            for task in pending:
                task.cancel()

    # -- argument / environment construction ---------------------------------

    def build_args(self, options: SpawnOptions) -> list[str]:
        """CLI flags for a spawn (binary path excluded)."""
        args: list[str] = []

        if options.resume_session_id:
            args += ["--resume", options.resume_session_id]
        elif options.continue_session:
            args.append("--continue")

        permission_mode = (
            options.permission_mode
            or self._cc.permission_mode
            or PermissionMode.BYPASS_PERMISSIONS
        )
        args += ["--permission-mode", str(permission_mode)]

        model = options.model or self._cc.model
        if model:
            args += ["--model", model]

        if options.output_format:
            args += ["--output-format", str(options.output_format)]

        return args

    def resolve_workdir(self, options: SpawnOptions) -> str:
        if options.continue_session:
            return self._cc.workdir or self._agent.workspace
        return self._agent.workspace

    def build_env(self, options: SpawnOptions) -> dict[str, str]:
        env = {**os.environ, "TERM": self._cc.term, **self._cc.env}
        env.pop("PROMPT_COMMAND", None)
        if self._cc.agent_teams or options.enable_teams:
            env[AGENT_TEAMS_ENV] = "1"
        return env

    # -- process callbacks ----------------------------------------------------

    def _handle_data(self, session_id: str, data: str) -> None:
        entry = self._sessions.get(session_id)
        if entry is None:
            return

        session = entry.session
        session.touch()
        session.output_buffer.append(data)

        if (
            session.state == SessionState.STARTING
            and self._cc.ready_marker in clean_terminal_text(data)
        ):
            session.state = SessionState.RUNNING

        self._wire.send_output(session_id, data)
        self._log("debug", "PTY output", {"session_id": session_id, "output": preview(data, 200)})

    def _handle_exit(self, session_id: str, exit_code: int | None) -> None:
        entry = self._sessions.get(session_id)
        if entry is None:
            # Already removed by stop()
            return
        self._finalize(entry, exit_code, entry.stop_reason or ExitReason.EXITED)

    def _finalize(
        self, entry: _Entry, exit_code: int | None, reason: ExitReason
    ) -> None:
        session = entry.session
        if self._sessions.get(session.session_id) is not entry:
            return
        del self._sessions[session.session_id]

        session.state = SessionState.STOPPED
        session.error = None
        session.exit_code = exit_code
        session.exit_reason = reason

        self._log(
            "info",
            "Session stopped",
            {"session_id": session.session_id, "exit_code": exit_code, "reason": reason.value},
        )
        self._wire.send_stopped(session.session_id, exit_code, reason.value)

    def _send_task(self, session_id: str, task: str) -> None:
        self.write(session_id, f"{task}\n")
        self._log("debug", "Task sent", {"session_id": session_id, "task": preview(task)})

    def _generate_session_id(self) -> str:
        while True:
            session_id = (
                f"cc-{self._agent.id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
            )
            if session_id not in self._sessions:
                return session_id

    def __len__(self) -> int:
        return len(self._sessions)
