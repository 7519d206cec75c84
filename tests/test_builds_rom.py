"""Tests for ROM compilation, packaging and root patching."""

import tracemalloc
import zipfile
from io import BytesIO
from pathlib import Path

import pytest

from galley.builds.rom import (
    PUSH_LIST_NAME,
    build_target,
    check_disk_space,
    inject_factory_images,
    record_push_files,
    root_patch,
    run_rom,
    sign_release,
    summarize,
)
from galley.errors import EXIT_BUILD, ExternalToolError, GalleyError, PrerequisiteError
from galley.types import Phase, RootType


def zip_bytes(members: dict[str, bytes]) -> bytes:
    buf = BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return buf.getvalue()


def write_factory_zip(path: Path, target: str, build_number: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    inner = zip_bytes({"boot.img": b"stock-boot", "system.img": b"system"})
    outer = zip_bytes(
        {
            f"{target}-{build_number}/flash-all.sh": b"#!/bin/sh\n",
            f"{target}-{build_number}/image-{target}-{build_number}.zip": inner,
        }
    )
    path.write_bytes(outer)


def read_inner_image(path: Path, target: str, build_number: str) -> dict[str, bytes]:
    with zipfile.ZipFile(path) as outer:
        inner = outer.read(f"{target}-{build_number}/image-{target}-{build_number}.zip")
    with zipfile.ZipFile(BytesIO(inner)) as zf:
        return {name: zf.read(name) for name in zf.namelist()}


@pytest.fixture
def rom_ready(fake_runner):
    """Build context with a synced tree whose release script writes artifacts."""

    def _prepare(ctx):
        envsetup = ctx.workdir / "build" / "envsetup.sh"
        envsetup.parent.mkdir(parents=True, exist_ok=True)
        envsetup.touch()
        finalize = ctx.workdir / "script" / "finalize.sh"
        finalize.parent.mkdir(parents=True, exist_ok=True)
        finalize.touch()

        def _release(call) -> None:
            target = call.args[1]
            write_factory_zip(ctx.factory_zip(target), target, ctx.build_number)
            ctx.ota_zip(target).write_bytes(b"ota")

        fake_runner.on("generate-release.sh", _release)
        return ctx

    return _prepare


@pytest.fixture
def root_tools_present():
    """Place avbroot and Magisk where the context expects them."""

    def _install(ctx):
        ctx.root_tools.avbroot.parent.mkdir(parents=True, exist_ok=True)
        ctx.root_tools.avbroot.write_bytes(b"ELF")
        ctx.root_tools.magisk.write_bytes(b"APK")
        return ctx

    return _install


class TestDiskSpace:
    """Tests for check_disk_space."""

    def test_enough_space(self, make_ctx, monkeypatch) -> None:
        monkeypatch.setattr("galley.builds.rom.free_space_gb", lambda path: 500)
        check_disk_space(make_ctx(strict=True))

    def test_low_space_strict_fails(self, make_ctx, monkeypatch) -> None:
        """Strict mode never prompts."""
        monkeypatch.setattr("galley.builds.rom.free_space_gb", lambda path: 50)
        prompts: list[str] = []

        def confirm(prompt: str) -> bool:
            prompts.append(prompt)
            return True

        with pytest.raises(PrerequisiteError) as exc_info:
            check_disk_space(make_ctx(strict=True, confirm=confirm))

        assert "50GB" in exc_info.value.missing[0]
        assert prompts == []

    def test_low_space_interactive(self, make_ctx, monkeypatch) -> None:
        """Interactively the operator decides."""
        monkeypatch.setattr("galley.builds.rom.free_space_gb", lambda path: 50)

        check_disk_space(make_ctx(confirm=lambda prompt: True))
        with pytest.raises(PrerequisiteError):
            check_disk_space(make_ctx(confirm=lambda prompt: False))


class TestSignRelease:
    """Tests for sign_release."""

    def test_missing_finalize_is_build_failure(self, make_ctx, fake_runner, notifier) -> None:
        """A missing finalize.sh aborts with exit status 2."""
        with pytest.raises(ExternalToolError) as exc_info:
            sign_release(make_ctx(), "husky")

        assert exc_info.value.exit_status == EXIT_BUILD
        assert fake_runner.calls == []
        notifier.notify.assert_called_with("finalize.sh not found for husky!")

    def test_passphrase_passed_in_env(self, make_ctx, fake_runner, rom_ready, settings_factory) -> None:
        """Both scripts get the key pass-phrase as ``password``."""
        ctx = rom_ready(make_ctx(settings=settings_factory(certpass="hunter2")))

        sign_release(ctx, "husky")

        finalize, release = fake_runner.calls
        assert finalize.args[0].endswith("script/finalize.sh")
        assert release.args[1:] == ["husky", "2025020101"]
        for call in (finalize, release):
            assert call.kwargs["env_override"] == {"password": "hunter2"}
            assert call.kwargs["exit_status"] == EXIT_BUILD

    def test_generate_release_failure(self, make_ctx, fake_runner, rom_ready, notifier) -> None:
        ctx = rom_ready(make_ctx())
        fake_runner.fail_on("generate-release.sh")

        with pytest.raises(ExternalToolError) as exc_info:
            sign_release(ctx, "husky")

        assert exc_info.value.exit_status == EXIT_BUILD
        notifier.notify.assert_called_with("Release generation failed for husky!")


class TestInjectFactoryImages:
    """Tests for inject_factory_images."""

    def test_replaces_images(self, tmp_path) -> None:
        """Patched images replace their stock copies in the nested zip."""
        factory = tmp_path / "husky-factory-2025020101.zip"
        write_factory_zip(factory, "husky", "2025020101")
        images = tmp_path / "root"
        images.mkdir()
        (images / "boot.img").write_bytes(b"magisk-boot")
        (images / "init_boot.img").write_bytes(b"init")

        assert inject_factory_images(factory, "husky", images) == 2

        inner = read_inner_image(factory, "husky", "2025020101")
        assert inner == {
            "system.img": b"system",
            "boot.img": b"magisk-boot",
            "init_boot.img": b"init",
        }
        with zipfile.ZipFile(factory) as outer:
            assert outer.read("husky-2025020101/flash-all.sh") == b"#!/bin/sh\n"
        assert list(tmp_path.glob("*.tmp")) == []

    def test_missing_image_zip(self, tmp_path) -> None:
        """A factory zip without the nested image zip is left untouched."""
        factory = tmp_path / "husky-factory.zip"
        factory.write_bytes(zip_bytes({"README": b"x"}))
        original = factory.read_bytes()
        images = tmp_path / "root"
        images.mkdir()

        with pytest.raises(GalleyError) as exc_info:
            inject_factory_images(factory, "husky", images)

        assert exc_info.value.code == "factory_image_missing"
        assert factory.read_bytes() == original
        assert list(tmp_path.glob("*.tmp")) == []

    def test_streams_large_image_archive(self, tmp_path) -> None:
        """Peak memory stays well below the size of the nested archive."""
        size = 32 * 1024 * 1024
        member = "husky-2025020101/image-husky-2025020101.zip"
        inner_path = tmp_path / "inner.zip"
        with zipfile.ZipFile(inner_path, "w") as zf:
            zf.writestr("system.img", bytes(size))
            zf.writestr("boot.img", b"stock-boot")
        factory = tmp_path / "husky-factory-2025020101.zip"
        with zipfile.ZipFile(factory, "w") as zf:
            zf.write(inner_path, arcname=member)
        inner_path.unlink()
        images = tmp_path / "root"
        images.mkdir()
        (images / "boot.img").write_bytes(b"magisk-boot")

        tracemalloc.start()
        try:
            inject_factory_images(factory, "husky", images)
            peak = tracemalloc.get_traced_memory()[1]
        finally:
            tracemalloc.stop()

        assert peak < size // 4
        with zipfile.ZipFile(factory) as outer, outer.open(member) as nested:
            with zipfile.ZipFile(nested) as inner:
                assert inner.getinfo("system.img").file_size == size
                assert inner.read("boot.img") == b"magisk-boot"
        assert sorted(p.name for p in tmp_path.iterdir()) == [factory.name, "root"]


class TestRootPatch:
    """Tests for root_patch."""

    def test_patches_and_swaps_ota(
        self, make_ctx, fake_runner, root_tools_present, settings_factory
    ) -> None:
        """The patched OTA replaces the original, which is kept as .unpatched."""
        ctx = root_tools_present(
            make_ctx(settings=settings_factory(tgt="oriole", certpass="pw"), root_type=RootType.MAGISK)
        )
        write_factory_zip(ctx.factory_zip("oriole"), "oriole", ctx.build_number)
        ota = ctx.ota_zip("oriole")
        ota.write_bytes(b"stock-ota")

        def _patch(call) -> None:
            Path(call.args[call.args.index("--output") + 1]).write_bytes(b"rooted-ota")

        def _extract(call) -> None:
            out = Path(call.args[call.args.index("--directory") + 1])
            (out / "boot.img").write_bytes(b"magisk-boot")

        fake_runner.on("ota patch", _patch)
        fake_runner.on("ota extract", _extract)

        assert root_patch(ctx, "oriole")

        (patch_call,) = fake_runner.matching("ota patch")
        assert patch_call.args[patch_call.args.index("--magisk-preinit-device") + 1] == "persist"
        assert patch_call.kwargs["env_override"] == {"PASSPHRASE_AVB": "pw", "PASSPHRASE_OTA": "pw"}
        assert ota.read_bytes() == b"rooted-ota"
        assert ota.with_name(ota.name + ".unpatched").read_bytes() == b"stock-ota"
        inner = read_inner_image(ctx.factory_zip("oriole"), "oriole", ctx.build_number)
        assert inner["boot.img"] == b"magisk-boot"
        assert not (ctx.release_dir("oriole") / "root").exists()

    def test_no_preinit_device_skips(self, make_ctx, fake_runner) -> None:
        """Targets without a preinit device are skipped with a warning."""
        ctx = make_ctx(root_type=RootType.MAGISK)

        assert not root_patch(ctx, "husky")

        assert fake_runner.calls == []
        assert ctx.report.skipped["husky"] == [Phase.ROM]

    def test_missing_tools(self, make_ctx) -> None:
        ctx = make_ctx(root_type=RootType.MAGISK)
        with pytest.raises(PrerequisiteError):
            root_patch(ctx, "oriole")


class TestPushList:
    """Tests for record_push_files."""

    def test_appends_once(self, make_ctx) -> None:
        """A target's entries are written only once."""
        ctx = make_ctx()

        assert record_push_files(ctx, "husky")
        assert not record_push_files(ctx, "husky")
        assert record_push_files(ctx, "shiba")

        lines = (ctx.workdir / "releases" / PUSH_LIST_NAME).read_text().splitlines()
        assert lines[:7] == [
            "husky-ota_update-2025020101.zip",
            "husky-factory-2025020101.zip",
            "husky-factory-2025020101.zip.sig",
            "husky-testing",
            "husky-beta",
            "husky-stable",
            "",
        ]
        assert sum(1 for line in lines if line.startswith("husky-")) == 6
        assert "shiba-stable" in lines


class TestBuildTarget:
    """Tests for build_target and run_rom."""

    def test_compile_failure_aborts(self, make_ctx, fake_runner, rom_ready, notifier) -> None:
        """A failed compile raises with exit status 2 and skips packaging."""
        ctx = rom_ready(make_ctx())
        fake_runner.fail_on("target-files-package")

        with pytest.raises(ExternalToolError) as exc_info:
            build_target(ctx, "husky")

        assert exc_info.value.exit_status == EXIT_BUILD
        assert not fake_runner.matching("otatools-package")
        assert notifier.notify.call_args.args[0].startswith("Build failed for husky after")

    def test_lunch_targets(self, make_ctx, fake_runner, rom_ready) -> None:
        """Compile and otatools use the release config from the build id."""
        ctx = rom_ready(make_ctx())

        build_target(ctx, "husky")

        compile_call, otatools = fake_runner.calls[:2]
        assert "lunch husky-ap4a-user && m vendorbootimage vendorkernelbootimage target-files-package" in compile_call.line
        assert "lunch husky-ap4a-user && m otatools-package" in otatools.line

    def test_root_patch_failure_is_isolated(
        self, make_ctx, fake_runner, rom_ready, root_tools_present, settings_factory
    ) -> None:
        """A failed root patch is recorded and the build continues."""
        ctx = root_tools_present(
            rom_ready(make_ctx(settings=settings_factory(tgt="oriole"), root_type=RootType.MAGISK))
        )
        fake_runner.fail_on("ota patch")

        build_target(ctx, "oriole")

        assert ctx.report.failed_targets == {"oriole"}
        assert ctx.report.failures[0].phase is Phase.ROM

    def test_push_and_ready_notification(
        self, make_ctx, rom_ready, notifier, settings_factory
    ) -> None:
        ctx = rom_ready(make_ctx(settings=settings_factory(push=True)))

        build_target(ctx, "husky")

        assert (ctx.workdir / "releases" / PUSH_LIST_NAME).exists()
        notifier.notify.assert_called_with("Factory image ready for husky")

    def test_run_rom_summary(self, make_ctx, rom_ready, monkeypatch) -> None:
        """Every target is built and summarized."""
        monkeypatch.setattr("galley.builds.rom.free_space_gb", lambda path: 500)
        ctx = rom_ready(make_ctx())

        run_rom(ctx)

        assert summarize(ctx) == {"husky": True, "shiba": True}

    def test_summary_reports_missing(self, make_ctx) -> None:
        assert summarize(make_ctx()) == {"husky": False, "shiba": False}
