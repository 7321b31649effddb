"""Subprocess-based reasoning backend for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from backlog_pilot.orchestrator.backend.base import BackendRunError, ReasoningRequest
from backlog_pilot.orchestrator.backend.response_parser import (
    extract_token_usage,
    parse_agent_response,
)
from backlog_pilot.orchestrator.cancellation import CancellationToken
from backlog_pilot.orchestrator.failure_classifier import (
    DEFAULT_TRANSIENT_EXIT_CODES,
    classify_agent_failure,
)
from backlog_pilot.orchestrator.models import ExecutionOutcome, FailureClass, ReasoningResult

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.1


@dataclass(slots=True)
class _ProcessOutcome:
    exit_code: int
    timed_out: bool = False
    cancelled: bool = False


class CliAgentBackend:
    """Run one prompt through an external agent command template.

    The template is rendered with shell-quoted values for ``{prompt}``,
    ``{prompt_file}``, ``{system_prompt_file}``, ``{model}`` and ``{workdir}``.
    It must reference the prompt either inline or by file.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        agent: str,
        command_template: str,
        model: str = "",
        timeout_seconds: int = 1_800,
        graceful_shutdown_seconds: int = 5,
        transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
    ) -> None:
        self.agent = agent
        self.command_template = command_template
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.transient_exit_codes = transient_exit_codes

    def execute_prompt(self, request: ReasoningRequest) -> ReasoningResult:
        if not request.working_directory.is_dir():
            raise BackendRunError(
                f"Working directory does not exist: {request.working_directory}",
                transient=False,
            )

        with tempfile.TemporaryDirectory(prefix="backlog-pilot-") as scratch:
            run_dir = Path(scratch)
            uses_system_file = "{system_prompt_file}" in self.command_template
            prompt = (
                request.user_prompt
                if uses_system_file
                else f"{request.system_prompt}\n\n{request.user_prompt}"
            )
            prompt_file = run_dir / "prompt.md"
            prompt_file.write_text(prompt, "utf-8")
            system_prompt_file = run_dir / "system_prompt.md"
            system_prompt_file.write_text(request.system_prompt, "utf-8")

            run_args = build_run_args(
                command_template=self.command_template,
                model=self.model,
                prompt=prompt,
                prompt_file=prompt_file,
                system_prompt_file=system_prompt_file,
                workdir=request.working_directory,
            )

            env = os.environ.copy()
            env["BACKLOG_PILOT_ITEM_ID"] = request.item_id
            env["BACKLOG_PILOT_PHASE"] = request.phase
            env["BACKLOG_PILOT_AGENT"] = self.agent

            stdout_path = run_dir / "stdout.txt"
            stderr_path = run_dir / "stderr.txt"
            logger.debug("Running %s agent: %s", self.agent, run_args[0])
            try:
                with (
                    stdout_path.open("w", encoding="utf-8") as stdout_handle,
                    stderr_path.open("w", encoding="utf-8") as stderr_handle,
                ):
                    outcome = self._run_subprocess(
                        run_args=run_args,
                        env=env,
                        cwd=request.working_directory,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                        cancellation=request.cancellation,
                    )
            except FileNotFoundError as error:
                raise BackendRunError(
                    f"CLI agent command not found: {run_args[0]}",
                    transient=False,
                ) from error
            except OSError as error:
                raise BackendRunError(
                    f"CLI agent failed to start: {error}",
                    transient=True,
                ) from error

            stdout = stdout_path.read_text("utf-8", errors="replace")
            stderr = stderr_path.read_text("utf-8", errors="replace")

        return self._interpret(outcome, stdout=stdout, stderr=stderr)

    def _interpret(self, outcome: _ProcessOutcome, *, stdout: str, stderr: str) -> ReasoningResult:
        tokens_used = extract_token_usage(stdout=stdout, stderr=stderr)
        if outcome.timed_out:
            return ReasoningResult(
                success=False,
                outcome=ExecutionOutcome.FAILED,
                error_message=f"Agent timed out after {self.timeout_seconds} seconds.",
                tokens_used=tokens_used,
                failure_class=FailureClass.TIMEOUT,
            )
        if outcome.cancelled:
            return ReasoningResult(
                success=False,
                outcome=ExecutionOutcome.FAILED,
                error_message="Agent run cancelled by shutdown request.",
                tokens_used=tokens_used,
                failure_class=FailureClass.CANCELLED,
            )
        if outcome.exit_code != 0:
            classified = classify_agent_failure(
                agent=self.agent,
                exit_code=outcome.exit_code,
                stdout=stdout,
                stderr=stderr,
                transient_exit_codes=self.transient_exit_codes,
            )
            logger.warning(
                "%s agent failed: class=%s rule=%s exit_code=%d",
                self.agent,
                classified.failure_class.value,
                classified.matched_rule,
                outcome.exit_code,
            )
            return ReasoningResult(
                success=False,
                outcome=ExecutionOutcome.FAILED,
                error_message=classified.describe(exit_code=outcome.exit_code),
                tokens_used=tokens_used,
                failure_class=classified.failure_class,
            )
        return parse_agent_response(stdout=stdout, stderr=stderr)

    def _run_subprocess(  # noqa: PLR0913
        self,
        *,
        run_args: list[str],
        env: dict[str, str],
        cwd: Path,
        stdout_handle: IO[str],
        stderr_handle: IO[str],
        cancellation: CancellationToken | None,
    ) -> _ProcessOutcome:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            env=env,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        start_monotonic = time.monotonic()
        shutdown_deadline: float | None = None

        while True:
            returncode = process.poll()
            if returncode is not None:
                return _ProcessOutcome(exit_code=returncode)

            now = time.monotonic()
            if now - start_monotonic >= self.timeout_seconds:
                _terminate_process(process)
                return _ProcessOutcome(exit_code=124, timed_out=True)

            if cancellation is not None and cancellation.is_cancelled:
                if shutdown_deadline is None:
                    shutdown_deadline = now + max(0, self.graceful_shutdown_seconds)
                if now >= shutdown_deadline:
                    _terminate_process(process)
                    return _ProcessOutcome(exit_code=124, cancelled=True)

            time.sleep(_POLL_INTERVAL_SECONDS)


def build_run_args(  # noqa: PLR0913
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    system_prompt_file: Path,
    workdir: Path,
) -> list[str]:
    """Render a command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "CLI agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            system_prompt_file=shlex.quote(str(system_prompt_file)),
            workdir=shlex.quote(str(workdir)),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "CLI agent command template rendered empty command.",
            transient=False,
        )
    return argv


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
