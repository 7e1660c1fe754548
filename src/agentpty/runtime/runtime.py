"""Runtime — the single entry point for managing an agent's CLI sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from agentpty.config import AgentConfig, RuntimeType, SpawnOptions
from agentpty.errors import ConfigError, NotInitializedError
from agentpty.log import LogFn, make_log
from agentpty.pty.process import ProcessFactory
from agentpty.pty.session import Session
from agentpty.pty.spawner import ProcessSpawner
from agentpty.runtime.communicator import (
    DEFAULT_COMPLETION_TIMEOUT,
    Communicator,
    OutputHandler,
)
from agentpty.runtime.parsers import ParsedOutput, ParserFactory, parser_factory
from agentpty.session.wire import Wire, WireEvent
from agentpty.text import preview

logger = logging.getLogger(__name__)

EventCallback = Callable[[WireEvent], None]


@dataclass
class AvailabilityResult:
    """Outcome of probing the CLI binary with ``--version``."""

    available: bool
    version: str | None = None
    error: str | None = None


class Runtime:
    """Lifecycle façade over one ProcessSpawner + Communicator pair.

    Construction validates the agent configuration; a runtime that fails
    validation is never created. After ``shutdown()`` every lifecycle call
    raises ``NotInitializedError``.

    All state (registry, handlers, the event wire) belongs to this
    instance. Two runtimes never share anything.
    """

    def __init__(
        self,
        agent: AgentConfig | Mapping[str, Any],
        *,
        on_event: EventCallback | None = None,
        log: LogFn | None = None,
        process_factory: ProcessFactory | None = None,
        parser_factory: ParserFactory | None = None,
        startup_delay: float | None = None,
        grace_period: float | None = None,
        kill_timeout: float | None = None,
    ) -> None:
        self._agent = AgentConfig.parse(agent)
        self._log = log or make_log(logger)
        self._validate_agent_config()

        self._wire = Wire()
        if on_event is not None:
            self._wire.add_listener(on_event)

        self._spawner = ProcessSpawner(
            self._agent,
            self._wire,
            log=self._log,
            process_factory=process_factory,
            startup_delay=startup_delay,
            grace_period=grace_period,
            kill_timeout=kill_timeout,
        )
        self._communicator = Communicator(
            self._spawner,
            self._wire,
            parser_factory=parser_factory or _default_parser_factory(self._agent),
            log=self._log,
        )
        self._availability: AvailabilityResult | None = None
        self._initialized = True

        self._log(
            "info",
            "Runtime initialized",
            {"agent_id": self._agent.id, "workspace": self._agent.workspace},
        )

    @property
    def agent(self) -> AgentConfig:
        return self._agent

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def availability(self) -> AvailabilityResult | None:
        """Result of the most recent ``check_availability`` call."""
        return self._availability

    # -- lifecycle --------------------------------------------------------------

    async def start_session(self, options: SpawnOptions | Mapping[str, Any] | str) -> Session:
        """Start a new session."""
        self._ensure_initialized()
        options = SpawnOptions.parse(options)

        self._log(
            "info",
            "Starting session",
            {
                "agent_id": self._agent.id,
                "task": preview(options.task),
                "resume": options.resume_session_id,
                "continue": options.continue_session,
            },
        )
        try:
            session = await self._spawner.spawn(options)
        except Exception as e:
            self._log("error", "Failed to start session", {"agent_id": self._agent.id, "error": str(e)})
            raise

        self._log("info", "Session started", {"session_id": session.session_id, "pid": session.pid})
        return session

    async def stop_session(self, session_id: str, force: bool = False) -> None:
        """Stop a session. Unknown ids are ignored."""
        self._ensure_initialized()
        self._log("info", "Stopping session", {"session_id": session_id, "force": force})
        try:
            await self._spawner.stop(session_id, force)
            self._communicator.off_output(session_id)
        except Exception as e:
            self._log("error", "Failed to stop session", {"session_id": session_id, "error": str(e)})
            raise
        self._log("info", "Session stopped", {"session_id": session_id})

    async def restart_session(self, session_id: str) -> Session:
        """Kill a session and start a fresh one with the same task."""
        self._ensure_initialized()
        self._log("info", "Restarting session", {"session_id": session_id})
        try:
            new_session = await self._spawner.restart(session_id)
        except Exception as e:
            self._log("error", "Failed to restart session", {"session_id": session_id, "error": str(e)})
            raise

        self._log(
            "info",
            "Session restarted",
            {"old_session_id": session_id, "new_session_id": new_session.session_id},
        )
        return new_session

    async def resume_session(self, session_id: str, task: str | None = None) -> Session:
        """Resume a previous CLI conversation by its id."""
        self._ensure_initialized()
        self._log("info", "Resuming session", {"session_id": session_id})
        return await self.start_session(
            SpawnOptions(task=task or "Continue", resume_session_id=session_id)
        )

    async def continue_last_session(self, task: str | None = None) -> Session:
        """Continue the most recent CLI conversation in the workspace."""
        self._ensure_initialized()
        self._log("info", "Continuing last session", {"workspace": self._agent.workspace})
        return await self.start_session(
            SpawnOptions(task=task or "Continue", continue_session=True)
        )

    # -- communication ----------------------------------------------------------

    async def send_message(self, session_id: str, message: str) -> None:
        self._ensure_initialized()
        await self._communicator.send_message(session_id, message)

    async def send_command(
        self, session_id: str, command: str, args: str | None = None
    ) -> None:
        self._ensure_initialized()
        await self._communicator.send_command(session_id, command, args)

    async def respond_to_prompt(self, session_id: str, response: str) -> None:
        self._ensure_initialized()
        await self._communicator.respond_to_prompt(session_id, response)

    async def interrupt_session(self, session_id: str) -> None:
        """Send Ctrl+C to a session."""
        self._ensure_initialized()
        await self._communicator.interrupt(session_id)

    async def wait_for_completion(
        self, session_id: str, timeout: float | None = DEFAULT_COMPLETION_TIMEOUT
    ) -> ParsedOutput:
        self._ensure_initialized()
        return await self._communicator.wait_for_completion(session_id, timeout)

    def cancel_wait(self, session_id: str) -> bool:
        self._ensure_initialized()
        return self._communicator.cancel_wait(session_id)

    def on_output(self, session_id: str, handler: OutputHandler) -> None:
        self._ensure_initialized()
        self._communicator.on_output(session_id, handler)

    def off_output(self, session_id: str) -> None:
        self._ensure_initialized()
        self._communicator.off_output(session_id)

    # -- queries ----------------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        self._ensure_initialized()
        return self._spawner.get_session(session_id)

    def get_all_sessions(self) -> list[Session]:
        self._ensure_initialized()
        return self._spawner.get_all_sessions()

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Queue receiving every event; ``None`` marks shutdown."""
        self._ensure_initialized()
        return self._wire.subscribe()

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._wire.unsubscribe(q)

    async def check_availability(self) -> AvailabilityResult:
        """Run ``<binary> --version``. Never raises."""
        cc = self._agent.claude_code
        binary_path = cc.binary_path
        try:
            proc = await asyncio.create_subprocess_exec(
                binary_path,
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                stdout, stderr = await asyncio.wait_for(
                    proc.communicate(), timeout=cc.version_timeout
                )
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                raise TimeoutError(
                    f"{binary_path} --version timed out after {cc.version_timeout:g}s"
                ) from None

            if proc.returncode != 0:
                detail = stderr.decode(errors="replace").strip() or stdout.decode(errors="replace").strip()
                raise RuntimeError(
                    f"{binary_path} --version exited with code {proc.returncode}"
                    + (f": {detail}" if detail else "")
                )

            version = stdout.decode(errors="replace").strip()
            result = AvailabilityResult(available=True, version=version)
            self._log(
                "info",
                "CLI availability check",
                {"available": True, "version": version, "binary_path": binary_path},
            )
        except Exception as e:
            error = str(e) or e.__class__.__name__
            result = AvailabilityResult(available=False, error=error)
            self._log("warn", "CLI not available", {"binary_path": binary_path, "error": error})

        self._availability = result
        return result

    async def shutdown(self) -> None:
        """Stop every session and release the runtime."""
        if not self._initialized:
            return
        self._log(
            "info",
            "Shutting down runtime",
            {"agent_id": self._agent.id, "active_sessions": len(self._spawner)},
        )
        try:
            await self._spawner.cleanup()
            self._communicator.cleanup()
        except Exception as e:
            self._log("error", "Error during shutdown", {"error": str(e)})
            raise
        finally:
            self._initialized = False
            self._wire.close()

        self._log("info", "Runtime shutdown complete", {"agent_id": self._agent.id})

    async def __aenter__(self) -> Runtime:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # -- internals --------------------------------------------------------------

    def _validate_agent_config(self) -> None:
        if not self._agent.id:
            raise ConfigError("Agent configuration missing required field: id")
        if not self._agent.workspace:
            raise ConfigError("Agent configuration missing required field: workspace")
        if self._agent.runtime != RuntimeType.CLAUDE_CODE:
            raise ConfigError(
                f"Invalid runtime type: {self._agent.runtime}. "
                f"Expected '{RuntimeType.CLAUDE_CODE.value}'."
            )
        self._log(
            "debug",
            "Agent configuration validated",
            {"agent_id": self._agent.id, "workspace": self._agent.workspace},
        )

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError()


def _default_parser_factory(agent: AgentConfig) -> ParserFactory:
    return parser_factory(agent.claude_code.output_parser)
