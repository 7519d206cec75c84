"""Shared type definitions for galley.

This module contains enums and small dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class BuildMode(str, Enum):
    """When the release monitor triggers a build."""

    ON_RELEASE = "on_release"
    MONTHLY = "monthly"


class RootType(str, Enum):
    """How (and whether) the finished build is rooted."""

    NONE = "none"
    MAGISK = "magisk"
    KERNELSU = "kernelsu"


class Phase(str, Enum):
    """Build orchestrator phases, in execution order."""

    SYNC = "sync"
    VENDOR_PREREQS = "vendor-extract-prereqs"
    AAPT2 = "aapt2-build"
    EXTRACT = "vendor-extract"
    CUSTOMIZE = "customize"
    KEYS = "keys"
    ROOT_TOOLS = "root-tools"
    KERNEL = "kernel"
    ROM = "rom"


@dataclass(frozen=True)
class NoAction:
    """Poll outcome: nothing to build."""

    reason: str = ""


@dataclass(frozen=True)
class ShouldBuild:
    """Poll outcome: build the given tag."""

    tag: str


PollDecision = NoAction | ShouldBuild


@dataclass
class TargetFailure:
    """A per-target failure that was isolated instead of aborting the run."""

    target: str
    phase: Phase
    message: str
    exit_status: int


@dataclass
class RunReport:
    """Outcome of an orchestrator run."""

    build_number: str
    targets: list[str]
    phases_run: list[Phase] = field(default_factory=list)
    failures: list[TargetFailure] = field(default_factory=list)
    skipped: dict[str, list[Phase]] = field(default_factory=dict)

    @property
    def failed_targets(self) -> set[str]:
        """Targets that failed in some phase."""
        return {f.target for f in self.failures}

    @property
    def exit_status(self) -> int:
        """Highest exit status among isolated failures (0 if none)."""
        return max((f.exit_status for f in self.failures), default=0)


__all__ = [
    "BuildMode",
    "NoAction",
    "Phase",
    "PollDecision",
    "RootType",
    "RunReport",
    "ShouldBuild",
    "TargetFailure",
]
