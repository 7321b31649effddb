"""Runtime configuration for the backlog orchestrator."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_AGENTS: tuple[str, ...] = ("claude", "codex", "gemini", "echo")

DEFAULT_COMMAND_TEMPLATES: dict[str, str] = {
    "claude": (
        "claude -p --model {model} --output-format json "
        "--permission-mode acceptEdits -- {prompt}"
    ),
    "codex": "codex exec --sandbox workspace-write --model {model} {prompt}",
    "gemini": "gemini --model {model} --approval-mode auto_edit --prompt {prompt}",
    "echo": (
        f"{sys.executable} -m backlog_pilot.orchestrator.backend.echo_agent "
        "--prompt-file {prompt_file}"
    ),
}

DEFAULT_MODELS: dict[str, str] = {
    "claude": "sonnet",
    "codex": "gpt-5-codex",
    "gemini": "gemini-2.5-pro",
    "echo": "echo",
}


@dataclass(slots=True)
class AgentSettings:
    """Reasoning agent invocation settings."""

    agent: str = "claude"
    command_template: str = DEFAULT_COMMAND_TEMPLATES["claude"]
    model: str = DEFAULT_MODELS["claude"]
    timeout_seconds: int = 1_800
    graceful_shutdown_seconds: int = 5


@dataclass(slots=True)
class Settings:
    """Process-level settings; scheduling settings live in the database."""

    db_path: Path = Path(".backlog_pilot.db")
    working_directory: Path | None = None
    sqlite_busy_timeout_ms: int = 5_000
    shutdown_timeout_seconds: float = 30.0
    log_level: str = "INFO"
    agent: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        agent = os.getenv("BACKLOG_PILOT_AGENT", "claude").strip().lower()
        working_directory = os.getenv("BACKLOG_PILOT_WORKING_DIRECTORY", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("BACKLOG_PILOT_DB_PATH", ".backlog_pilot.db")),
            working_directory=Path(working_directory) if working_directory else None,
            sqlite_busy_timeout_ms=int(os.getenv("BACKLOG_PILOT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            shutdown_timeout_seconds=float(
                os.getenv("BACKLOG_PILOT_SHUTDOWN_TIMEOUT_SECONDS", "30"),
            ),
            log_level=os.getenv("BACKLOG_PILOT_LOG_LEVEL", "INFO").strip().upper(),
            agent=AgentSettings(
                agent=agent,
                command_template=os.getenv(
                    "BACKLOG_PILOT_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATES.get(agent, ""),
                ),
                model=os.getenv("BACKLOG_PILOT_AGENT_MODEL", DEFAULT_MODELS.get(agent, "")),
                timeout_seconds=int(os.getenv("BACKLOG_PILOT_AGENT_TIMEOUT_SECONDS", "1800")),
                graceful_shutdown_seconds=int(
                    os.getenv("BACKLOG_PILOT_AGENT_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for unusable values."""

        if self.agent.agent not in SUPPORTED_AGENTS and not self.agent.command_template.strip():
            raise ValueError(
                f"Unsupported BACKLOG_PILOT_AGENT {self.agent.agent!r}: expected one of "
                f"{', '.join(SUPPORTED_AGENTS)} or set BACKLOG_PILOT_AGENT_COMMAND_TEMPLATE.",
            )
        template = self.agent.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError(
                "BACKLOG_PILOT_AGENT_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )
        if self.agent.timeout_seconds <= 0:
            raise ValueError("BACKLOG_PILOT_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.graceful_shutdown_seconds < 0:
            raise ValueError("BACKLOG_PILOT_AGENT_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.shutdown_timeout_seconds <= 0:
            raise ValueError("BACKLOG_PILOT_SHUTDOWN_TIMEOUT_SECONDS must be > 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("BACKLOG_PILOT_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid BACKLOG_PILOT_LOG_LEVEL: {self.log_level!r}")
        if self.working_directory is not None and not self.working_directory.is_dir():
            raise ValueError(
                f"BACKLOG_PILOT_WORKING_DIRECTORY does not exist: {self.working_directory}",
            )
