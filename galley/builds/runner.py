"""Command runner for delegated external tools.

This module handles:
- Executing repo, git, openssl, avbroot and the AOSP build system
- Optional capture of stdout/stderr to a log file
- Enforcing timeouts
- Translating failures into ExternalToolError with the right exit status

Every phase goes through a CommandRunner so that tests can substitute a fake.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from galley.errors import EXIT_CONFIG, ExternalToolError

logger = logging.getLogger(__name__)

REDACTED = "********"


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        command: The command that was executed (secrets redacted).
        returncode: Process exit code.
        stdout: Captured standard output, if requested.
        started_at: Start time.
        finished_at: Finish time.
    """

    command: str
    returncode: int
    stdout: bytes | None
    started_at: datetime
    finished_at: datetime

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def duration(self) -> float:
        """Duration in seconds."""
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def text(self) -> str:
        """Captured stdout decoded as UTF-8."""
        if self.stdout is None:
            return ""
        return self.stdout.decode("utf-8", errors="replace")


def redact_command(cmd: Sequence[str | os.PathLike[str]], secrets: Sequence[str]) -> str:
    """Render a command for logging with secret values masked.

    Args:
        cmd: Command arguments.
        secrets: Values that must not appear in logs.

    Returns:
        Shell-quoted command string.
    """
    rendered = shlex.join(str(c) for c in cmd)
    for secret in secrets:
        if secret:
            rendered = rendered.replace(secret, REDACTED)
    return rendered


class CommandRunner:
    """Run external commands with consistent logging and error handling."""

    def __init__(
        self,
        log_path: Path | None = None,
        default_timeout: int | None = None,
    ) -> None:
        self.log_path = log_path
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: Sequence[str | os.PathLike[str]],
        *,
        cwd: Path | None = None,
        env_override: dict[str, str] | None = None,
        input: bytes | str | None = None,
        capture: bool = False,
        check: bool = True,
        exit_status: int = EXIT_CONFIG,
        timeout: int | None = None,
        secrets: Sequence[str] = (),
    ) -> CommandResult:
        """Execute a command.

        Args:
            cmd: Command as a list of arguments.
            cwd: Working directory.
            env_override: Environment variables added to the current environment.
            input: Data written to the process stdin.
            capture: Capture stdout and return it in the result.
            check: Raise ExternalToolError on non-zero exit.
            exit_status: Exit status carried by the raised error.
            timeout: Timeout in seconds (defaults to the runner timeout).
            secrets: Values to mask when logging the command.

        Returns:
            CommandResult with execution details.

        Raises:
            ExternalToolError: If the command cannot be started, times out,
                or exits non-zero while ``check`` is set.
        """
        args = [str(c) for c in cmd]
        cmd_str = redact_command(args, secrets)
        effective_timeout = timeout if timeout is not None else self.default_timeout

        logger.info("Executing: %s", cmd_str)
        if cwd is not None:
            logger.debug("Working directory: %s", cwd)

        env: dict[str, str] | None = None
        if env_override:
            env = dict(os.environ)
            env.update(env_override)

        if isinstance(input, str):
            input = input.encode("utf-8")

        started_at = datetime.now(timezone.utc)
        log_file = None
        try:
            stdout = subprocess.PIPE if capture else None
            stderr = None
            if self.log_path is not None:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file = self.log_path.open("ab")
                log_file.write(f"# Command: {cmd_str}\n".encode())
                log_file.write(f"# Started: {started_at.isoformat()}\n".encode())
                log_file.flush()
                stderr = log_file
                if not capture:
                    stdout = log_file

            result = subprocess.run(
                args,
                cwd=cwd,
                env=env,
                input=input,
                stdout=stdout,
                stderr=stderr,
                timeout=effective_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            message = f"Command timed out after {effective_timeout} seconds: {cmd_str}"
            logger.error(message)
            raise ExternalToolError(
                cmd_str, -1, exit_status=exit_status, message=message
            ) from e
        except OSError as e:
            message = f"Failed to execute {cmd_str}: {e}"
            logger.error(message)
            raise ExternalToolError(
                cmd_str, None, exit_status=exit_status, message=message
            ) from e
        finally:
            if log_file is not None:
                log_file.close()

        finished_at = datetime.now(timezone.utc)
        command_result = CommandResult(
            command=cmd_str,
            returncode=result.returncode,
            stdout=result.stdout if capture else None,
            started_at=started_at,
            finished_at=finished_at,
        )

        if result.returncode != 0:
            logger.debug("Command exited with %d: %s", result.returncode, cmd_str)
            if check:
                raise ExternalToolError(
                    cmd_str, result.returncode, exit_status=exit_status
                )

        return command_result

    def shell(self, script: str, **kwargs: object) -> CommandResult:
        """Run a bash script (needed for ``source build/envsetup.sh``).

        Args:
            script: Bash script text.
            **kwargs: Passed to ``run``.

        Returns:
            CommandResult with execution details.
        """
        return self.run(["bash", "-c", script], **kwargs)  # type: ignore[arg-type]


__all__ = [
    "CommandResult",
    "CommandRunner",
    "redact_command",
]
