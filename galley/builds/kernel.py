"""Kernel builds.

Each target is mapped to a kernel build target and a kernel manifest. Targets
without a mapping are skipped with a warning, and a failing target does not
stop the others.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from galley.builds.devices import KERNEL_PREBUILT_IMAGES
from galley.builds.fetch import DownloadError, download_file
from galley.builds.phases import BuildContext
from galley.builds.sync import repo_sync
from galley.errors import EXIT_BUILD, GalleyError
from galley.retry import TOOL_DOWNLOAD_POLICY, retry_call
from galley.types import Phase, RootType

logger = logging.getLogger(__name__)

KERNEL_MANIFEST_URL = "https://github.com/GrapheneOS/kernel_manifest-{manifest}.git"
KERNELSU_SETUP_URL = "https://raw.githubusercontent.com/tiann/KernelSU/main/kernel/setup.sh"

# Kernel targets built from a device-specific branch
DEVICE_BRANCH_TARGETS = frozenset({"caimito"})


def kernel_branch(version: str, kernel_target: str) -> str:
    """Return the kernel manifest branch for an Android version."""
    if kernel_target in DEVICE_BRANCH_TARGETS:
        return f"{version}-{kernel_target}"
    return version


def clean_kernel_root(kernel_root: Path) -> None:
    """Remove previous kernel checkouts."""
    if not kernel_root.exists():
        return
    logger.warning("Cleaning %s/*", kernel_root)
    for entry in kernel_root.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


def apply_kernelsu(ctx: BuildContext, kernel_dir: Path) -> None:
    """Run the KernelSU setup script inside the kernel source tree.

    Raises:
        RetryExhaustedError: If the setup script cannot be downloaded.
    """
    script = kernel_dir / "kernelsu-setup.sh"

    def _download() -> int:
        with ctx.client_factory() as client:
            return download_file(client, KERNELSU_SETUP_URL, script)

    retry_call(
        _download,
        TOOL_DOWNLOAD_POLICY,
        "KernelSU setup download",
        retry_on=(DownloadError,),
        sleep=ctx.sleep,
    )
    ctx.runner.run(["bash", str(script)], cwd=kernel_dir / "aosp")


def copy_prebuilt_images(
    ctx: BuildContext, kernel_target: str, dist_dir: Path
) -> list[Path]:
    """Copy dist images into the device kernel prebuilt directory.

    Returns:
        Destination paths written (empty if the target needs no copy).
    """
    images = KERNEL_PREBUILT_IMAGES.get(kernel_target)
    if not images:
        return []
    device_dir = ctx.workdir / "device" / "google" / f"{kernel_target}-kernel"
    device_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for source_name, dest_name in images.items():
        dest = device_dir / dest_name
        shutil.copyfile(dist_dir / source_name, dest)
        written.append(dest)
    return written


def build_target_kernel(ctx: BuildContext, target: str) -> bool:
    """Build the kernel for one target.

    Returns:
        False if the target was skipped for lack of a mapping.
    """
    kernel_target = ctx.device_map.kernel_target(target)
    if not kernel_target:
        ctx.record_skip(target, Phase.KERNEL, "no kernel configuration")
        return False
    manifest = ctx.device_map.kernel_manifest(kernel_target)
    if not manifest:
        ctx.record_skip(target, Phase.KERNEL, f"no kernel manifest for {kernel_target}")
        return False

    branch = kernel_branch(ctx.settings.version, kernel_target)
    kernel_dir = ctx.settings.kernel_root / kernel_target
    kernel_dir.mkdir(parents=True, exist_ok=True)

    logger.info("Building %s kernel (%s, branch %s)", target, kernel_target, branch)
    ctx.runner.run(
        ["repo", "init", "-u", KERNEL_MANIFEST_URL.format(manifest=manifest), "-b", branch],
        cwd=kernel_dir,
    )
    repo_sync(ctx, kernel_dir)

    if ctx.root_type is RootType.KERNELSU:
        apply_kernelsu(ctx, kernel_dir)

    ctx.runner.run(
        ["build/build.sh", f"-j{os.cpu_count() or 1}"],
        cwd=kernel_dir,
        env_override={
            "LTO": "thin",
            "BUILD_CONFIG": f"aosp/build.config.{kernel_target}",
        },
        exit_status=EXIT_BUILD,
        timeout=ctx.settings.build_timeout,
    )

    dist_dir = kernel_dir / "out" / branch / manifest / "dist"
    copy_prebuilt_images(ctx, kernel_target, dist_dir)
    return True


def run_kernel(ctx: BuildContext) -> None:
    """Build kernels for every mapped target."""
    clean_kernel_root(ctx.settings.kernel_root)
    for target in ctx.active_targets(Phase.KERNEL):
        try:
            build_target_kernel(ctx, target)
        except GalleyError as e:
            ctx.record_failure(target, Phase.KERNEL, e)
        except OSError as e:
            ctx.record_failure(
                target,
                Phase.KERNEL,
                GalleyError(f"Failed to copy kernel for {target}: {e}", code="kernel_copy"),
            )
    ctx.notify("Kernel build completed")


__all__ = [
    "KERNEL_MANIFEST_URL",
    "build_target_kernel",
    "clean_kernel_root",
    "copy_prebuilt_images",
    "kernel_branch",
    "run_kernel",
]
