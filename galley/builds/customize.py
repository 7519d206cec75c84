"""Pre-build customizations applied to every target.

- Ad-blocking hosts file
- Boot animation and notification sound
- frameworks/base and build/make patches for the Android version
- Updater server configuration
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from xml.sax.saxutils import escape

from galley.builds.fetch import HOSTS_URL, DownloadError, download_file
from galley.builds.phases import BuildContext
from galley.errors import ExternalToolError, RetryExhaustedError
from galley.retry import HOSTS_DOWNLOAD_POLICY, retry_call

logger = logging.getLogger(__name__)

NOTIFICATION_SOUND = "fasten_seatbelt.ogg"

UPDATER_CONFIG_TEMPLATE = """\
<?xml version="1.0" encoding="utf-8"?>
<resources>
<string name="url" translatable="false">{url}</string>
<string name="channel_default" translatable="false">stable</string>
<string name="network_type_default" translatable="false">1</string>
<string name="battery_not_low_default" translatable="false">true</string>
<string name="requires_charging_default" translatable="false">false</string>
<string name="idle_reboot_default" translatable="false">false</string>
</resources>
"""


def install_hosts(ctx: BuildContext) -> bool:
    """Download the hosts file into the system image sources.

    Returns:
        True if installed; False if the download failed outside strict mode.

    Raises:
        RetryExhaustedError: If the download failed in strict mode.
    """
    dest = ctx.workdir / "system" / "core" / "rootdir" / "etc" / "hosts"

    def _download() -> int:
        with ctx.client_factory() as client:
            return download_file(client, HOSTS_URL, dest)

    try:
        retry_call(
            _download,
            HOSTS_DOWNLOAD_POLICY,
            "Hosts file download",
            retry_on=(DownloadError,),
            sleep=ctx.sleep,
        )
    except RetryExhaustedError:
        if ctx.strict:
            raise
        logger.warning(
            "Failed to download hosts file after %d attempts, continuing...",
            HOSTS_DOWNLOAD_POLICY.attempts,
        )
        return False
    logger.info("Hosts file downloaded successfully")
    return True


def copy_asset(src: Path, dest_dir: Path, mode: int | None = None) -> bool:
    """Copy an optional asset, warning when it is absent."""
    if not src.is_file():
        logger.warning("%s not found", src.name)
        return False
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / src.name
    shutil.copyfile(src, dest)
    if mode is not None:
        dest.chmod(mode)
    return True


def apply_patch(ctx: BuildContext, name: str, target_dir: Path, patch_file: Path) -> None:
    """Apply a patch with ``git apply``.

    Raises:
        ExternalToolError: If the patch does not apply (exit status 1).
    """
    logger.info("Applying %s patch", name)
    try:
        ctx.runner.run(
            [
                "git",
                "apply",
                f"--directory={target_dir}",
                "--unsafe-paths",
                str(patch_file),
            ],
            cwd=ctx.workdir,
        )
    except ExternalToolError:
        ctx.notify(f"{name} patch failed!")
        raise
    logger.info("%s patch applied successfully", name)


def render_updater_config(update_url: str) -> str:
    return UPDATER_CONFIG_TEMPLATE.format(url=escape(update_url))


def write_updater_config(ctx: BuildContext) -> Path:
    path = ctx.workdir / "packages" / "apps" / "Updater" / "res" / "values" / "config.xml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_updater_config(ctx.settings.update_url), encoding="utf-8")
    return path


def run_customize(ctx: BuildContext) -> None:
    """Apply all pre-build modifications."""
    ctx.notify("Applying pre-build mods")
    workdir = ctx.workdir
    mods = ctx.build_mods
    version = ctx.settings.version

    logger.info("Modifying hosts file")
    install_hosts(ctx)

    logger.info("Replacing bootanimation")
    copy_asset(mods / "bootanimation.zip", workdir / "frameworks" / "base" / "data")

    logger.info("Copying custom notification sounds and setting permissions")
    copy_asset(
        mods / NOTIFICATION_SOUND,
        workdir / "frameworks" / "base" / "data" / "sounds" / "notifications",
        mode=0o644,
    )

    patches = mods / "patches" / version
    apply_patch(
        ctx,
        "frameworks/base",
        workdir / "frameworks" / "base",
        patches / f"frameworks-base-patches-{version}.patch",
    )
    apply_patch(
        ctx,
        "build/make",
        workdir / "build" / "make",
        patches / f"build-make-patches-{version}.patch",
    )

    write_updater_config(ctx)
    ctx.notify("Pre-build mods applied!")


__all__ = [
    "apply_patch",
    "copy_asset",
    "install_hosts",
    "render_updater_config",
    "run_customize",
    "write_updater_config",
]
