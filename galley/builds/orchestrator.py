"""Build orchestrator.

Runs the requested phases in a fixed order against one BuildContext. A phase
failure that is not isolated per target aborts the run; the error's exit
status becomes the run's. Otherwise the run exits with the highest status
among isolated per-target failures (0 if none).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime

import yaml

from galley.builds.customize import run_customize
from galley.builds.devices import DeviceMap, load_device_map
from galley.builds.fetch import RootTools
from galley.builds.kernel import run_kernel
from galley.builds.keys import run_keys
from galley.builds.phases import (
    DEFAULT_FLAGS,
    DEFAULT_ROOT_TYPE,
    BuildContext,
    PhaseFlags,
    decline,
    make_build_number,
    require_prerequisites,
)
from galley.builds.rom import run_rom
from galley.builds.runner import CommandRunner
from galley.builds.sync import run_sync, setup_workspace
from galley.builds.vendor import run_aapt2, run_extract, run_vendor_prereqs
from galley.config import REQUIRED_INPUTS, BuildSettings
from galley.errors import EXIT_CONFIG, ConfigError, GalleyError
from galley.notify import Notifier
from galley.types import Phase, RootType

logger = logging.getLogger(__name__)


def run_root_tools(ctx: BuildContext) -> None:
    """Fetch avbroot (if absent) and the latest Magisk.

    Raises:
        RetryExhaustedError: If a download keeps failing.
    """
    ctx.root_tools.ensure_avbroot()
    ctx.root_tools.ensure_magisk()


PHASE_HANDLERS: dict[Phase, Callable[[BuildContext], None]] = {
    Phase.SYNC: run_sync,
    Phase.VENDOR_PREREQS: run_vendor_prereqs,
    Phase.AAPT2: run_aapt2,
    Phase.EXTRACT: run_extract,
    Phase.CUSTOMIZE: run_customize,
    Phase.KEYS: run_keys,
    Phase.ROOT_TOOLS: run_root_tools,
    Phase.KERNEL: run_kernel,
    Phase.ROM: run_rom,
}


def resolve_mode(
    flags: PhaseFlags | None,
    settings: BuildSettings,
    root_type: RootType | None = None,
) -> tuple[PhaseFlags, RootType, bool]:
    """Work out phases, root type and strictness for a run.

    With no phase flags the default phase set runs in strict mode, rooted
    with Magisk unless a root type is configured.

    Args:
        flags: Requested phases (None or empty for the default set).
        settings: Build settings.
        root_type: Explicit root type, overriding ``ROOT_TYPE``.

    Returns:
        Tuple of (flags, root_type, strict).
    """
    configured = root_type or (RootType(settings.root_type) if settings.root_type else None)
    if flags is None or not flags.any:
        return DEFAULT_FLAGS, configured or DEFAULT_ROOT_TYPE, True
    return flags, configured or RootType.NONE, settings.docker_mode


class BuildOrchestrator:
    """Sequence build phases for one run."""

    def __init__(
        self,
        settings: BuildSettings,
        flags: PhaseFlags | None = None,
        root_type: RootType | None = None,
        runner: CommandRunner | None = None,
        notifier: Notifier | None = None,
        device_map: DeviceMap | None = None,
        root_tools: RootTools | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        confirm: Callable[[str], bool] = decline,
    ) -> None:
        self.settings = settings
        self.flags, self.root_type, self.strict = resolve_mode(flags, settings, root_type)
        self.runner = runner or CommandRunner(default_timeout=settings.build_timeout)
        self.notifier = notifier or Notifier(settings.apprise_urls)
        self.device_map = device_map
        self.root_tools = root_tools or RootTools(
            settings.build_mods_dir / "avbroot", sleep=sleep
        )
        self.clock = clock
        self.sleep = sleep
        self.confirm = confirm
        self.context: BuildContext | None = None

    def create_context(self) -> BuildContext:
        device_map = self.device_map or load_device_map(self.settings.device_map_file)
        return BuildContext(
            settings=self.settings,
            runner=self.runner,
            notifier=self.notifier,
            device_map=device_map,
            root_tools=self.root_tools,
            build_number=make_build_number(self.clock()),
            root_type=self.root_type,
            strict=self.strict,
            flags=self.flags,
            sleep=self.sleep,
            confirm=self.confirm,
        )

    def run_phase(self, ctx: BuildContext, phase: Phase) -> None:
        """Check prerequisites and run one phase.

        Raises:
            GalleyError: If the phase aborts the run. Filesystem errors are
                raised as GalleyError with code ``io_error``.
        """
        logger.info("==> %s", phase.value)
        try:
            require_prerequisites(phase, ctx)
            try:
                PHASE_HANDLERS[phase](ctx)
            except OSError as e:
                raise GalleyError(str(e), code="io_error") from e
        except GalleyError as e:
            logger.error("Phase %s failed: %s", phase.value, e)
            self.notifier.notify(f"{phase.value} failed: {e}")
            raise
        ctx.report.phases_run.append(phase)
        logger.info("Phase %s completed", phase.value)

    def run(self) -> int:
        """Validate inputs and run every selected phase.

        Returns:
            Process exit status.
        """
        try:
            self.settings.validate_required()
        except ConfigError as e:
            logger.error("%s", e)
            for name in e.missing:
                logger.error("  %s: %s", name, REQUIRED_INPUTS.get(name, ""))
            return e.exit_status

        phases = self.flags.phases(self.root_type)
        logger.info("Targets: %s", ", ".join(self.settings.targets))
        logger.info("Phases: %s", ", ".join(p.value for p in phases))
        logger.info("Root type: %s", self.root_type.value)

        try:
            ctx = self.create_context()
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error("Failed to load device map: %s", e)
            return EXIT_CONFIG
        self.context = ctx
        logger.info("Build number: %s", ctx.build_number)

        try:
            setup_workspace(ctx)
        except (GalleyError, OSError) as e:
            logger.error("Workspace setup failed: %s", e)
            self.notifier.notify(f"Workspace setup failed: {e}")
            return EXIT_CONFIG

        try:
            for phase in phases:
                self.run_phase(ctx, phase)
        except GalleyError as e:
            return e.exit_status

        status = ctx.report.exit_status
        if ctx.report.failures:
            failed = ", ".join(sorted(ctx.report.failed_targets))
            logger.warning("Build finished with failed targets: %s", failed)
        else:
            logger.info("Build finished successfully")
        return status


def make_build_trigger(
    settings: BuildSettings,
    **kwargs: object,
) -> Callable[[str | None], int]:
    """Return a monitor trigger that runs a full default build.

    Args:
        settings: Base build settings.
        **kwargs: Passed to BuildOrchestrator.

    Returns:
        Callable taking a tag override (None keeps ``TAG``) and returning
        the exit status.
    """

    def _trigger(tag: str | None) -> int:
        run_settings = settings if tag is None else settings.model_copy(update={"tag": tag})
        return BuildOrchestrator(run_settings, **kwargs).run()  # type: ignore[arg-type]

    return _trigger


__all__ = [
    "PHASE_HANDLERS",
    "BuildOrchestrator",
    "make_build_trigger",
    "resolve_mode",
    "run_root_tools",
]
