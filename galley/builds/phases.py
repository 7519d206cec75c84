"""Phase selection, shared build context and prerequisite checks.

Phases are enabled independently by flags. Running with no flags enables a
fixed default set in strict mode. Each phase declares prerequisites that are
checked immediately before it runs; every unmet one is reported together in a
single PrerequisiteError.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import httpx

from galley.builds.devices import DeviceMap
from galley.builds.fetch import RootTools, new_client
from galley.builds.runner import CommandRunner
from galley.config import BuildSettings
from galley.errors import GalleyError, PrerequisiteError
from galley.notify import Notifier
from galley.types import Phase, RootType, RunReport, TargetFailure

logger = logging.getLogger(__name__)

LUNCH_SDK_TARGET = "sdk_phone64_x86_64-cur-user"


@dataclass(frozen=True)
class PhaseFlags:
    """Which phases were requested."""

    sync: bool = False
    aapt2: bool = False
    extract: bool = False
    customize: bool = False
    keys: bool = False
    rom: bool = False
    kernel: bool = False

    @property
    def any(self) -> bool:
        return any(
            (self.sync, self.aapt2, self.extract, self.customize, self.keys, self.rom, self.kernel)
        )

    def phases(self, root_type: RootType) -> list[Phase]:
        """Return the phases to run, in execution order.

        Args:
            root_type: Root method; magisk adds root-tools, kernelsu forces kernel.

        Returns:
            Ordered list of phases.
        """
        selected: list[Phase] = []
        if self.sync:
            selected.append(Phase.SYNC)
        if self.extract or self.aapt2:
            selected.append(Phase.VENDOR_PREREQS)
        if self.aapt2:
            selected.append(Phase.AAPT2)
        if self.extract:
            selected.append(Phase.EXTRACT)
        if self.customize:
            selected.append(Phase.CUSTOMIZE)
        if self.keys:
            selected.append(Phase.KEYS)
        if root_type is RootType.MAGISK:
            selected.append(Phase.ROOT_TOOLS)
        if self.kernel or root_type is RootType.KERNELSU:
            selected.append(Phase.KERNEL)
        if self.rom:
            selected.append(Phase.ROM)
        return selected


# Used when no phase flag is given (container entrypoint).
DEFAULT_FLAGS = PhaseFlags(
    sync=True,
    aapt2=True,
    extract=True,
    customize=True,
    keys=True,
    rom=True,
    kernel=False,
)
DEFAULT_ROOT_TYPE = RootType.MAGISK


def decline(prompt: str) -> bool:
    """Answer no to every confirmation prompt."""
    return False


def make_build_number(moment: datetime) -> str:
    """Return the release build number for a date (``YYYYMMDD01``)."""
    return moment.strftime("%Y%m%d") + "01"


@dataclass
class BuildContext:
    """Everything a phase needs, passed explicitly instead of via globals."""

    settings: BuildSettings
    runner: CommandRunner
    notifier: Notifier
    device_map: DeviceMap
    root_tools: RootTools
    build_number: str
    root_type: RootType = RootType.NONE
    strict: bool = False
    flags: PhaseFlags = field(default_factory=PhaseFlags)
    sleep: Callable[[float], None] = time.sleep
    confirm: Callable[[str], bool] = decline
    client_factory: Callable[[], httpx.Client] = new_client
    report: RunReport = field(init=False)

    def __post_init__(self) -> None:
        self.report = RunReport(
            build_number=self.build_number,
            targets=list(self.settings.targets),
        )

    @property
    def workdir(self) -> Path:
        return self.settings.workdir

    @property
    def build_mods(self) -> Path:
        return self.settings.build_mods_dir

    @property
    def targets(self) -> list[str]:
        return self.report.targets

    def notify(self, message: str) -> None:
        self.notifier.notify(message)

    def release_dir(self, target: str) -> Path:
        """Release directory produced by generate-release.sh for a target."""
        bn = self.build_number
        return self.workdir / "releases" / bn / f"release-{target}-{bn}"

    def factory_zip(self, target: str) -> Path:
        return self.release_dir(target) / f"{target}-factory-{self.build_number}.zip"

    def ota_zip(self, target: str) -> Path:
        return self.release_dir(target) / f"{target}-ota_update-{self.build_number}.zip"

    def record_failure(self, target: str, phase: Phase, error: GalleyError) -> None:
        """Isolate a per-target failure: log, notify and remember it."""
        logger.error("%s failed for %s: %s", phase.value, target, error)
        self.notify(f"{phase.value} failed for {target}")
        self.report.failures.append(
            TargetFailure(
                target=target,
                phase=phase,
                message=str(error),
                exit_status=error.exit_status,
            )
        )

    def record_skip(self, target: str, phase: Phase, reason: str) -> None:
        logger.warning("Skipping %s for %s: %s", phase.value, target, reason)
        self.report.skipped.setdefault(target, []).append(phase)

    def active_targets(self, phase: Phase) -> list[str]:
        """Targets that have not failed in an earlier phase."""
        failed = self.report.failed_targets
        active: list[str] = []
        for target in self.targets:
            if target in failed:
                self.record_skip(target, phase, "failed in an earlier phase")
            else:
                active.append(target)
        return active


def check_build_environment(ctx: BuildContext) -> list[str]:
    """Return problems with the AOSP checkout (empty if usable)."""
    envsetup = ctx.workdir / "build" / "envsetup.sh"
    if envsetup.is_file():
        return []
    if ctx.flags.sync:
        return [f"{envsetup} is missing after sync; check the sync logs"]
    return [f"{envsetup} not found; run with -s to sync first"]


def missing_prerequisites(phase: Phase, ctx: BuildContext) -> list[str]:
    """List every unmet prerequisite of a phase.

    Args:
        phase: Phase about to run.
        ctx: Build context.

    Returns:
        Human-readable problems (empty if the phase can run).
    """
    missing: list[str] = []
    if phase in (Phase.AAPT2, Phase.ROM):
        missing.extend(check_build_environment(ctx))
    if phase is Phase.EXTRACT:
        adevtool = ctx.workdir / "vendor" / "adevtool"
        if not adevtool.is_dir():
            missing.append(f"{adevtool} not found; run with -s to sync first")
    if phase is Phase.KEYS:
        for tool in (
            ctx.workdir / "development" / "tools" / "make_key",
            ctx.workdir / "external" / "avb" / "avbtool.py",
        ):
            if not tool.exists():
                missing.append(f"{tool} not found; run with -s to sync first")
    return missing


def require_prerequisites(phase: Phase, ctx: BuildContext) -> None:
    """Raise PrerequisiteError listing every unmet prerequisite of a phase."""
    missing = missing_prerequisites(phase, ctx)
    if missing:
        ctx.notify(f"{phase.value} cannot run: prerequisites missing")
        raise PrerequisiteError(phase.value, missing)


def require_root_tools(ctx: BuildContext, need_magisk: bool = False) -> None:
    """Raise PrerequisiteError unless the root-patching tools are present.

    Args:
        ctx: Build context.
        need_magisk: Also require Magisk.apk.
    """
    missing: list[str] = []
    if not ctx.root_tools.avbroot.is_file():
        missing.append(f"avbroot not found at {ctx.root_tools.avbroot}")
    if need_magisk and not ctx.root_tools.magisk.is_file():
        missing.append(f"Magisk.apk not found at {ctx.root_tools.magisk}")
    if missing:
        raise PrerequisiteError("root-patch", missing)


def lunch_script(lunch_target: str, *make_targets: str) -> str:
    """Compose a bash script that sets up the AOSP env and runs ``m``."""
    script = f"source build/envsetup.sh && lunch {lunch_target}"
    if make_targets:
        script += " && m " + " ".join(make_targets)
    return script


__all__ = [
    "DEFAULT_FLAGS",
    "DEFAULT_ROOT_TYPE",
    "LUNCH_SDK_TARGET",
    "BuildContext",
    "PhaseFlags",
    "check_build_environment",
    "decline",
    "lunch_script",
    "make_build_number",
    "missing_prerequisites",
    "require_prerequisites",
    "require_root_tools",
]
