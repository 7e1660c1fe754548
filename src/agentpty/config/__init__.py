"""Configuration — Pydantic models for agents and spawn options."""

from __future__ import annotations

import enum
import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from agentpty.errors import ConfigError

DEFAULT_BINARY_PATH = "/opt/homebrew/bin/claude"
AGENT_TEAMS_ENV = "CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS"


class RuntimeType(enum.StrEnum):
    DEFAULT = "default"
    CLAUDE_CODE = "claudeCode"


class PermissionMode(enum.StrEnum):
    BYPASS_PERMISSIONS = "bypassPermissions"
    ACCEPT_EDITS = "acceptEdits"
    DELEGATE = "delegate"
    PLAN = "plan"
    DONT_ASK = "dontAsk"


class OutputFormat(enum.StrEnum):
    TEXT = "text"
    JSON = "json"
    STREAM_JSON = "stream-json"


class ParserKind(enum.StrEnum):
    HEURISTIC = "heuristic"
    STRUCTURED = "structured"


class _CamelModel(BaseModel):
    # Accept both the snake_case field names and the camelCase keys used in
    # JSON agent definitions.
    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)


class ClaudeCodeConfig(_CamelModel):
    """Per-agent settings for the managed CLI process."""

    binary_path: str = Field(default=DEFAULT_BINARY_PATH, alias="binaryPath")
    permission_mode: PermissionMode | None = Field(
        default=None, alias="permissionMode"
    )
    session_persistence: bool = Field(default=False, alias="sessionPersistence")
    plugins: list[str] = Field(default_factory=list)
    mcp_servers: list[str] = Field(default_factory=list, alias="mcpServers")
    agent_teams: bool = Field(default=False, alias="agentTeams")
    model: str | None = Field(default=None)
    workdir: str | None = Field(default=None)
    env: dict[str, str] = Field(default_factory=dict)

    output_parser: ParserKind = Field(
        default=ParserKind.HEURISTIC,
        alias="outputParser",
        description="Classifier used for this agent's output",
    )
    startup_delay: float = Field(
        default=1.0,
        ge=0,
        alias="startupDelay",
        description="Seconds to let the CLI settle before the task is typed",
    )
    grace_period: float = Field(
        default=3.0,
        ge=0,
        alias="gracePeriod",
        description="Seconds between the interrupt byte and SIGTERM on a soft stop",
    )
    kill_timeout: float = Field(
        default=2.0,
        ge=0,
        alias="killTimeout",
        description="Seconds to wait after SIGTERM before SIGKILL",
    )
    output_buffer_size: int = Field(default=100, ge=1, alias="outputBufferSize")
    ready_marker: str = Field(
        default="Claude Code",
        alias="readyMarker",
        description="Output substring that moves a session from starting to running",
    )
    term: str = Field(default="xterm-256color")
    cols: int = Field(default=120, ge=1)
    rows: int = Field(default=40, ge=1)
    version_timeout: float = Field(default=5.0, gt=0, alias="versionTimeout")


class Identity(BaseModel):
    name: str
    emoji: str | None = None


class AgentConfig(_CamelModel):
    """Host-owned description of one agent. Consumed read-only."""

    id: str = ""
    name: str = ""
    runtime: str = Field(default=RuntimeType.DEFAULT.value)
    model: str | None = None
    workspace: str = ""
    agent_dir: str = Field(default="", alias="agentDir")
    claude_code: ClaudeCodeConfig = Field(
        default_factory=ClaudeCodeConfig, alias="claudeCode"
    )
    identity: Identity | None = None

    @classmethod
    def load(cls, config_path: str | None = None) -> AgentConfig:
        """Load an agent definition from a JSON/YAML file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            AGENTPTY_BINARY            - Override claude_code.binary_path
            AGENTPTY_PERMISSION_MODE   - Override claude_code.permission_mode
            AGENTPTY_MODEL             - Override claude_code.model
            AGENTPTY_WORKSPACE         - Override workspace
        """
        from dotenv import load_dotenv

        load_dotenv()

        config_data: dict[str, Any] = {}

        if config_path:
            path = Path(config_path).expanduser()
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            text = path.read_text()
            if path.suffix in (".yaml", ".yml"):
                import yaml  # lazy import, only needed for YAML definitions

                try:
                    config_data = yaml.safe_load(text) or {}
                except yaml.YAMLError as e:
                    raise ConfigError(f"Could not parse {path}: {e}") from e
            else:
                try:
                    config_data = json.loads(text)
                except json.JSONDecodeError as e:
                    raise ConfigError(f"Could not parse {path}: {e}") from e
            if not isinstance(config_data, dict):
                raise ConfigError(f"{path} must contain a mapping")

        # Accept either key style for the nested block
        cc = dict(config_data.pop("claudeCode", None) or config_data.pop("claude_code", None) or {})

        env_binary = os.environ.get("AGENTPTY_BINARY")
        if env_binary:
            cc["binary_path"] = env_binary
            cc.pop("binaryPath", None)

        env_permission = os.environ.get("AGENTPTY_PERMISSION_MODE")
        if env_permission:
            cc["permission_mode"] = env_permission
            cc.pop("permissionMode", None)

        env_model = os.environ.get("AGENTPTY_MODEL")
        if env_model:
            cc["model"] = env_model

        env_workspace = os.environ.get("AGENTPTY_WORKSPACE")
        if env_workspace:
            config_data["workspace"] = env_workspace

        config_data["claude_code"] = cc
        return cls.parse(config_data)

    @classmethod
    def parse(cls, data: Any) -> AgentConfig:
        """Validate a mapping (or pass through an instance), raising ConfigError."""
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid agent configuration: {e}") from e


class SpawnOptions(_CamelModel):
    """Options for one spawn of the managed CLI."""

    task: str
    resume_session_id: str | None = Field(default=None, alias="resumeSessionId")
    continue_session: bool = Field(default=False, alias="continue")
    permission_mode: PermissionMode | None = Field(
        default=None, alias="permissionMode"
    )
    model: str | None = None
    enable_teams: bool = Field(default=False, alias="enableTeams")
    teammates: int | None = Field(default=None, ge=1)
    output_format: OutputFormat | None = Field(default=None, alias="outputFormat")

    @model_validator(mode="after")
    def _resume_xor_continue(self) -> SpawnOptions:
        if self.resume_session_id and self.continue_session:
            raise ValueError("resume_session_id and continue_session are mutually exclusive")
        return self

    @property
    def is_resuming(self) -> bool:
        return bool(self.resume_session_id) or self.continue_session

    @classmethod
    def parse(cls, data: Any) -> SpawnOptions:
        """Coerce a task string, mapping, or instance into SpawnOptions."""
        if isinstance(data, cls):
            return data
        if isinstance(data, str):
            data = {"task": data}
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid spawn options: {e}") from e


__all__ = [
    "AGENT_TEAMS_ENV",
    "DEFAULT_BINARY_PATH",
    "AgentConfig",
    "ClaudeCodeConfig",
    "Identity",
    "OutputFormat",
    "ParserKind",
    "PermissionMode",
    "RuntimeType",
    "SpawnOptions",
]
