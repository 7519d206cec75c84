"""Error taxonomy shared by the orchestrator and the monitor.

Every error carries a stable ``code`` for structured handling and the
process ``exit_status`` the CLI should return when the error ends a run:

- 1: configuration, validation, prerequisite, patch, key or network failure
- 2: compile or packaging failure
"""

from __future__ import annotations

from collections.abc import Sequence

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_BUILD = 2


class GalleyError(Exception):
    """Base error for galley operations."""

    def __init__(
        self,
        message: str,
        code: str = "galley_error",
        exit_status: int = EXIT_CONFIG,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.exit_status = exit_status


class ConfigError(GalleyError):
    """Raised when required inputs are missing or invalid.

    Lists every missing input, not just the first one found.
    """

    def __init__(self, missing: Sequence[str], message: str | None = None) -> None:
        self.missing = list(missing)
        if message is None:
            message = f"Missing required variables: {' '.join(self.missing)}"
        super().__init__(message, code="config_error", exit_status=EXIT_CONFIG)


class PrerequisiteError(GalleyError):
    """Raised when a phase dependency is not satisfied."""

    def __init__(self, phase: str, missing: Sequence[str]) -> None:
        self.phase = phase
        self.missing = list(missing)
        super().__init__(
            f"Phase '{phase}' is missing prerequisites: {'; '.join(self.missing)}",
            code="prerequisite_error",
            exit_status=EXIT_CONFIG,
        )


class RetryExhaustedError(GalleyError):
    """Raised when a network operation fails on every attempt."""

    def __init__(
        self,
        operation: str,
        attempts: int,
        last_error: BaseException | None = None,
    ) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        message = f"{operation} failed after {attempts} attempts"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message, code="retry_exhausted", exit_status=EXIT_CONFIG)


class ExternalToolError(GalleyError):
    """Raised when a delegated subprocess fails or cannot be started."""

    def __init__(
        self,
        command: str,
        returncode: int | None,
        exit_status: int = EXIT_CONFIG,
        message: str | None = None,
    ) -> None:
        self.command = command
        self.returncode = returncode
        if message is None:
            message = f"Command failed with exit code {returncode}: {command}"
        super().__init__(message, code="external_tool_error", exit_status=exit_status)


class FetchError(GalleyError):
    """Raised when the remote release tag list cannot be fetched or parsed."""

    def __init__(self, message: str, code: str = "fetch_error") -> None:
        super().__init__(message, code=code, exit_status=EXIT_CONFIG)


__all__ = [
    "EXIT_BUILD",
    "EXIT_CONFIG",
    "EXIT_OK",
    "ConfigError",
    "ExternalToolError",
    "FetchError",
    "GalleyError",
    "PrerequisiteError",
    "RetryExhaustedError",
]
