"""ROM compilation, release packaging and root patching.

Compile and packaging failures abort the whole run with exit status 2. Root
patching is isolated per target.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
import zipfile
from pathlib import Path

from galley.builds.phases import (
    BuildContext,
    lunch_script,
    require_prerequisites,
    require_root_tools,
)
from galley.errors import EXIT_BUILD, ExternalToolError, GalleyError, PrerequisiteError
from galley.types import Phase, RootType

logger = logging.getLogger(__name__)

RECOMMENDED_FREE_GB = 200
PUSH_LIST_NAME = "filesToPushToUpdateServer.txt"


def free_space_gb(path: Path) -> int:
    return shutil.disk_usage(path).free // (1024**3)


def check_disk_space(ctx: BuildContext) -> None:
    """Make sure the source volume has room for a full build.

    Raises:
        PrerequisiteError: If space is low and the build is strict or the
            operator declines to continue.
    """
    available = free_space_gb(ctx.settings.src_dir)
    if available >= RECOMMENDED_FREE_GB:
        logger.info("Disk space check: %dGB available", available)
        return

    logger.warning(
        "Low disk space. Available: %dGB, Recommended: %dGB",
        available,
        RECOMMENDED_FREE_GB,
    )
    problem = f"{available}GB free on {ctx.settings.src_dir}, {RECOMMENDED_FREE_GB}GB recommended"
    if ctx.strict or not ctx.confirm("Continue anyway?"):
        raise PrerequisiteError(Phase.ROM.value, [problem])


def compile_target(ctx: BuildContext, target: str) -> None:
    """Build vendor images and target files for one target.

    Raises:
        ExternalToolError: If compilation fails (exit status 2).
    """
    lunch_target = f"{target}-{ctx.settings.target_release}-user"
    logger.info("Starting build for %s", target)
    started = time.monotonic()
    try:
        ctx.runner.shell(
            lunch_script(
                lunch_target,
                "vendorbootimage",
                "vendorkernelbootimage",
                "target-files-package",
            ),
            cwd=ctx.workdir,
            exit_status=EXIT_BUILD,
            timeout=ctx.settings.build_timeout,
        )
    except ExternalToolError:
        minutes = int((time.monotonic() - started) // 60)
        ctx.notify(f"Build failed for {target} after {minutes} minutes!")
        raise
    minutes = int((time.monotonic() - started) // 60)
    logger.info("Build for %s completed successfully in %d minutes", target, minutes)
    ctx.notify(f"Build for {target} completed successfully in {minutes} minutes!")


def package_otatools(ctx: BuildContext, target: str) -> None:
    logger.info("Building OTA tools for %s", target)
    try:
        ctx.runner.shell(
            lunch_script(f"{target}-{ctx.settings.target_release}-user", "otatools-package"),
            cwd=ctx.workdir,
            exit_status=EXIT_BUILD,
            timeout=ctx.settings.build_timeout,
        )
    except ExternalToolError:
        ctx.notify(f"OTA Tools failed for {target}!")
        raise
    ctx.notify(f"OTA Tools for {target} packaged successfully!")


def sign_release(ctx: BuildContext, target: str) -> None:
    """Run finalize.sh and generate-release.sh with the key pass-phrase.

    Raises:
        ExternalToolError: If either script is missing or fails (exit status 2).
    """
    env = {"password": ctx.settings.passphrase}
    finalize = ctx.workdir / "script" / "finalize.sh"
    if not finalize.is_file():
        ctx.notify(f"finalize.sh not found for {target}!")
        raise ExternalToolError(
            str(finalize),
            None,
            exit_status=EXIT_BUILD,
            message=f"{finalize} not found",
        )
    try:
        ctx.runner.run([str(finalize)], cwd=ctx.workdir, env_override=env, exit_status=EXIT_BUILD)
    except ExternalToolError:
        ctx.notify(f"finalize.sh failed for {target}!")
        raise

    try:
        ctx.runner.run(
            [str(ctx.workdir / "script" / "generate-release.sh"), target, ctx.build_number],
            cwd=ctx.workdir,
            env_override=env,
            exit_status=EXIT_BUILD,
        )
    except ExternalToolError:
        ctx.notify(f"Release generation failed for {target}!")
        raise
    ctx.notify(f"Release signed and packaged for {target}!")


def inject_factory_images(factory_zip: Path, target: str, images_dir: Path) -> int:
    """Replace images inside the nested ``image-<target>-*.zip`` of a factory zip.

    Members are streamed through a scratch directory beside the factory zip,
    so no archive is held in memory.

    Args:
        factory_zip: Factory image archive, rewritten in place.
        target: Device codename.
        images_dir: Directory of ``*.img`` files to inject.

    Returns:
        Number of images injected.

    Raises:
        GalleyError: If the factory zip holds no image archive for the target.
    """
    images = {p.name: p for p in sorted(images_dir.iterdir()) if p.is_file()}
    prefix = f"image-{target}-"

    with tempfile.TemporaryDirectory(prefix=".inject-", dir=factory_zip.parent) as work:
        work_dir = Path(work)
        rebuilt = work_dir / factory_zip.name
        found = False
        with zipfile.ZipFile(factory_zip) as src, zipfile.ZipFile(
            rebuilt, "w", zipfile.ZIP_DEFLATED
        ) as dst:
            for info in src.infolist():
                base = Path(info.filename).name
                if not (base.startswith(prefix) and base.endswith(".zip")):
                    _copy_member(src, dst, info)
                    continue
                stock = work_dir / base
                with src.open(info) as fsrc, stock.open("wb") as fdst:
                    shutil.copyfileobj(fsrc, fdst)
                patched = work_dir / f"patched-{base}"
                _rewrite_image_zip(stock, patched, images)
                stock.unlink()
                dst.write(patched, arcname=info.filename, compress_type=info.compress_type)
                patched.unlink()
                found = True
        if not found:
            raise GalleyError(
                f"No {prefix}*.zip in {factory_zip.name}", code="factory_image_missing"
            )
        os.replace(rebuilt, factory_zip)
    return len(images)


def _copy_member(src: zipfile.ZipFile, dst: zipfile.ZipFile, info: zipfile.ZipInfo) -> None:
    out = zipfile.ZipInfo(info.filename, date_time=info.date_time)
    out.compress_type = info.compress_type
    out.external_attr = info.external_attr
    # Known size lets zipfile pick zip64 headers for multi-GB members.
    out.file_size = info.file_size
    if info.is_dir():
        dst.writestr(out, b"")
        return
    with src.open(info) as fsrc, dst.open(out, "w") as fdst:
        shutil.copyfileobj(fsrc, fdst)


def _rewrite_image_zip(stock: Path, patched: Path, images: dict[str, Path]) -> None:
    with zipfile.ZipFile(stock) as src, zipfile.ZipFile(
        patched, "w", zipfile.ZIP_DEFLATED
    ) as dst:
        for info in src.infolist():
            if Path(info.filename).name in images:
                continue
            _copy_member(src, dst, info)
        for image_name, path in images.items():
            dst.write(path, arcname=image_name)


def root_patch(ctx: BuildContext, target: str) -> bool:
    """Patch the OTA with Magisk and refresh the factory image.

    Returns:
        False if the target was skipped for lack of a preinit device.
    """
    preinit = ctx.device_map.preinit_device(target)
    if not preinit:
        ctx.record_skip(target, Phase.ROM, "no preinit device configured, skipping Magisk patching")
        return False
    logger.info("Using preinit device %s for %s", preinit, target)
    require_root_tools(ctx, need_magisk=True)

    keys_dir = ctx.workdir / "keys" / target
    release_dir = ctx.release_dir(target)
    ota = ctx.ota_zip(target)
    patched = ota.with_name(ota.name + ".patched")
    passphrase = ctx.settings.passphrase
    avbroot = str(ctx.root_tools.avbroot)

    ctx.runner.run(
        [
            avbroot, "ota", "patch",
            "--input", str(ota),
            "--output", str(patched),
            "--key-avb", str(keys_dir / "avb.key"),
            "--key-ota", str(keys_dir / "ota.key"),
            "--cert-ota", str(keys_dir / "ota.crt"),
            "--pass-avb-env-var", "PASSPHRASE_AVB",
            "--pass-ota-env-var", "PASSPHRASE_OTA",
            "--magisk", str(ctx.root_tools.magisk),
            "--magisk-preinit-device", preinit,
            "--ignore-magisk-warnings",
        ],
        env_override={"PASSPHRASE_AVB": passphrase, "PASSPHRASE_OTA": passphrase},
    )

    root_dir = release_dir / "root"
    root_dir.mkdir(parents=True, exist_ok=True)
    try:
        ctx.runner.run(
            [avbroot, "ota", "extract", "--input", str(patched), "--directory", str(root_dir)]
        )
        inject_factory_images(ctx.factory_zip(target), target, root_dir)
    finally:
        shutil.rmtree(root_dir, ignore_errors=True)

    ota.rename(ota.with_name(ota.name + ".unpatched"))
    patched.rename(ota)
    logger.info("Rooted OTA and factory image ready for %s", target)
    return True


def push_list_entries(target: str, build_number: str) -> list[str]:
    return [
        f"{target}-ota_update-{build_number}.zip",
        f"{target}-factory-{build_number}.zip",
        f"{target}-factory-{build_number}.zip.sig",
        f"{target}-testing",
        f"{target}-beta",
        f"{target}-stable",
    ]


def record_push_files(ctx: BuildContext, target: str) -> bool:
    """Append a target's release files to the update-server push list once.

    Returns:
        True if entries were appended.
    """
    push_list = ctx.workdir / "releases" / PUSH_LIST_NAME
    push_list.parent.mkdir(parents=True, exist_ok=True)
    existing = push_list.read_text(encoding="utf-8") if push_list.exists() else ""
    if any(line.startswith(f"{target}-") for line in existing.splitlines()):
        logger.warning("%s found, skipping", target)
        return False
    with push_list.open("a", encoding="utf-8") as f:
        f.write("\n".join(push_list_entries(target, ctx.build_number)) + "\n\n")
    return True


def summarize(ctx: BuildContext) -> dict[str, bool]:
    """Log which targets produced a factory image."""
    results = {t: ctx.factory_zip(t).exists() for t in ctx.targets}
    logger.info("=== BUILD SUMMARY ===")
    for target, ready in results.items():
        if ready:
            logger.info("✓ %s: Factory image ready", target)
        else:
            logger.error("✗ %s: Build may have failed", target)
    return results


def build_target(ctx: BuildContext, target: str) -> None:
    """Compile, package and sign one target, then root-patch and record it.

    Raises:
        GalleyError: On compile or packaging failures, which abort the run.
    """
    ctx.notify(f"Building for {target}")
    require_prerequisites(Phase.ROM, ctx)
    compile_target(ctx, target)
    package_otatools(ctx, target)
    sign_release(ctx, target)

    if ctx.root_type is RootType.MAGISK:
        try:
            root_patch(ctx, target)
        except (GalleyError, OSError, zipfile.BadZipFile) as e:
            error = e if isinstance(e, GalleyError) else GalleyError(str(e), code="root_patch")
            ctx.record_failure(target, Phase.ROM, error)

    logger.info("Built %s", ctx.release_dir(target))

    if ctx.settings.push:
        record_push_files(ctx, target)

    if ctx.factory_zip(target).exists():
        ctx.notify(f"Factory image ready for {target}")


def run_rom(ctx: BuildContext) -> None:
    """Build every active target and print the summary."""
    check_disk_space(ctx)
    for target in ctx.active_targets(Phase.ROM):
        build_target(ctx, target)
    logger.info("Build completed for all targets")
    summarize(ctx)


__all__ = [
    "RECOMMENDED_FREE_GB",
    "build_target",
    "check_disk_space",
    "compile_target",
    "inject_factory_images",
    "package_otatools",
    "push_list_entries",
    "record_push_files",
    "root_patch",
    "run_rom",
    "sign_release",
    "summarize",
]
