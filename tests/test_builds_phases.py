"""Tests for phase selection, build context and prerequisite checks."""

from datetime import datetime

import pytest

from galley.builds.phases import (
    DEFAULT_FLAGS,
    PhaseFlags,
    lunch_script,
    make_build_number,
    missing_prerequisites,
    require_prerequisites,
    require_root_tools,
)
from galley.errors import EXIT_BUILD, ExternalToolError, GalleyError, PrerequisiteError
from galley.types import Phase, RootType


class TestPhaseFlags:
    """Tests for PhaseFlags.phases ordering."""

    def test_no_flags(self) -> None:
        """No flags selects nothing."""
        assert not PhaseFlags().any
        assert PhaseFlags().phases(RootType.NONE) == []

    def test_default_flags_order(self) -> None:
        """The default set runs in the fixed order with magisk tooling."""
        assert DEFAULT_FLAGS.phases(RootType.MAGISK) == [
            Phase.SYNC,
            Phase.VENDOR_PREREQS,
            Phase.AAPT2,
            Phase.EXTRACT,
            Phase.CUSTOMIZE,
            Phase.KEYS,
            Phase.ROOT_TOOLS,
            Phase.ROM,
        ]

    def test_extract_implies_prereqs(self) -> None:
        """Vendor extraction pulls in its prerequisites phase."""
        assert PhaseFlags(extract=True).phases(RootType.NONE) == [
            Phase.VENDOR_PREREQS,
            Phase.EXTRACT,
        ]

    def test_kernelsu_forces_kernel(self) -> None:
        """KernelSU rooting needs a kernel build."""
        assert PhaseFlags(rom=True).phases(RootType.KERNELSU) == [Phase.KERNEL, Phase.ROM]

    def test_kernel_flag(self) -> None:
        """-f alone runs only the kernel phase."""
        assert PhaseFlags(kernel=True).phases(RootType.NONE) == [Phase.KERNEL]


class TestHelpers:
    """Tests for small helpers."""

    def test_make_build_number(self) -> None:
        """Build numbers are the date plus 01."""
        assert make_build_number(datetime(2025, 2, 3, 23, 59)) == "2025020301"

    def test_lunch_script(self) -> None:
        """The script sources envsetup, lunches and runs m."""
        assert lunch_script("husky-ap4a-user", "otatools-package") == (
            "source build/envsetup.sh && lunch husky-ap4a-user && m otatools-package"
        )

    def test_lunch_script_without_targets(self) -> None:
        """No make targets means no m invocation."""
        assert "&& m" not in lunch_script("husky-ap4a-user")


class TestBuildContext:
    """Tests for BuildContext bookkeeping."""

    def test_release_paths(self, make_ctx) -> None:
        """Release artifacts live under releases/<BN>/release-<t>-<BN>."""
        ctx = make_ctx()
        release = ctx.workdir / "releases" / "2025020101" / "release-husky-2025020101"
        assert ctx.release_dir("husky") == release
        assert ctx.factory_zip("husky") == release / "husky-factory-2025020101.zip"
        assert ctx.ota_zip("husky") == release / "husky-ota_update-2025020101.zip"

    def test_record_failure_isolates_target(self, make_ctx, notifier) -> None:
        """A failed target is skipped by later phases."""
        ctx = make_ctx()
        ctx.record_failure(
            "husky", Phase.EXTRACT, ExternalToolError("adevtool", 1, exit_status=EXIT_BUILD)
        )

        assert ctx.active_targets(Phase.KEYS) == ["shiba"]
        assert ctx.report.exit_status == EXIT_BUILD
        assert ctx.report.skipped["husky"] == [Phase.KEYS]
        notifier.notify.assert_called_with("vendor-extract failed for husky")

    def test_failure_message_recorded(self, make_ctx) -> None:
        """The failure message is kept in the report."""
        ctx = make_ctx()
        ctx.record_failure("shiba", Phase.KEYS, GalleyError("no key"))
        assert ctx.report.failures[0].message == "no key"


class TestPrerequisites:
    """Tests for prerequisite checks."""

    def test_rom_needs_envsetup(self, make_ctx) -> None:
        """ROM without a synced tree reports the missing envsetup."""
        ctx = make_ctx()
        missing = missing_prerequisites(Phase.ROM, ctx)
        assert len(missing) == 1
        assert "envsetup.sh" in missing[0]
        assert "-s" in missing[0]

    def test_rom_ready(self, make_ctx) -> None:
        """A synced tree satisfies ROM prerequisites."""
        ctx = make_ctx()
        envsetup = ctx.workdir / "build" / "envsetup.sh"
        envsetup.parent.mkdir(parents=True)
        envsetup.touch()
        assert missing_prerequisites(Phase.ROM, ctx) == []

    def test_keys_reports_every_missing_tool(self, make_ctx) -> None:
        """All missing key tools are reported together."""
        ctx = make_ctx()
        with pytest.raises(PrerequisiteError) as exc_info:
            require_prerequisites(Phase.KEYS, ctx)

        assert exc_info.value.phase == "keys"
        assert len(exc_info.value.missing) == 2
        assert exc_info.value.exit_status == 1

    def test_extract_needs_adevtool(self, make_ctx) -> None:
        """Vendor extraction requires adevtool."""
        ctx = make_ctx()
        assert missing_prerequisites(Phase.EXTRACT, ctx)
        (ctx.workdir / "vendor" / "adevtool").mkdir(parents=True)
        assert missing_prerequisites(Phase.EXTRACT, ctx) == []

    def test_kernel_has_no_prerequisites(self, make_ctx) -> None:
        """Kernel builds only need per-target mappings."""
        assert missing_prerequisites(Phase.KERNEL, make_ctx()) == []

    def test_root_tools_required(self, make_ctx) -> None:
        """Root patching needs avbroot and Magisk."""
        ctx = make_ctx()
        with pytest.raises(PrerequisiteError) as exc_info:
            require_root_tools(ctx, need_magisk=True)
        assert len(exc_info.value.missing) == 2
