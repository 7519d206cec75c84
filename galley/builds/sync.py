"""Workspace setup and source sync.

Sync resets (or wipes) the existing checkout, initializes repo for the
requested tag, verifies release tags against the GrapheneOS allowed signers,
and runs ``repo sync`` under the sync retry policy.
"""

from __future__ import annotations

import getpass
import grp
import logging
import os
import re
import shutil
from pathlib import Path

from galley.builds.fetch import ALLOWED_SIGNERS_URL, DownloadError, download_file
from galley.builds.phases import BuildContext
from galley.errors import ExternalToolError
from galley.retry import SYNC_POLICY, TOOL_DOWNLOAD_POLICY, RetryPolicy, retry_call

logger = logging.getLogger(__name__)

MANIFEST_URL = "https://github.com/GrapheneOS/platform_manifest.git"

# Release tags are build numbers such as 2025020100
RELEASE_TAG_PATTERN = re.compile(r"^[0-9]{10}$")

# Directories kept by a clean sync
PRESERVED_DIRS = frozenset({"keys", "releases"})

REPO_SYNC_CMD = ["repo", "sync", "-c", "-j4", "--force-sync"]


def is_release_tag(tag: str) -> bool:
    return bool(RELEASE_TAG_PATTERN.match(tag))


def repo_sync(
    ctx: BuildContext,
    cwd: Path,
    policy: RetryPolicy = SYNC_POLICY,
) -> None:
    """Run ``repo sync`` in ``cwd`` until it succeeds or retries run out.

    Raises:
        RetryExhaustedError: If every attempt fails.
    """

    def _sync() -> None:
        ctx.runner.run(REPO_SYNC_CMD, cwd=cwd)

    try:
        retry_call(
            _sync,
            policy,
            "Repo sync",
            retry_on=(ExternalToolError,),
            sleep=ctx.sleep,
        )
    except Exception:
        ctx.notify(f"Repo sync failed after {policy.attempts} attempts")
        raise
    logger.info("Repo sync successful!")


def setup_workspace(ctx: BuildContext) -> None:
    """Create the checkout directory and prepare ownership and git identity."""
    settings = ctx.settings
    workdir = ctx.workdir

    if workdir.exists():
        logger.info("%s exists, skipping creation", workdir)
        if settings.official_build and ctx.flags.aapt2 and ctx.flags.rom:
            out = workdir / settings.out_dir
            logger.warning("Official build detected, cleaning %s", out)
            shutil.rmtree(out, ignore_errors=True)
            out.mkdir(parents=True)
    else:
        logger.warning("%s not found, creating", workdir)
        workdir.mkdir(parents=True)

    ctx.runner.run(["git", "config", "--global", "user.email", settings.git_email])
    ctx.runner.run(["git", "config", "--global", "user.name", settings.git_name])
    ctx.runner.run(["git", "config", "--global", "color.ui", "true"])

    if settings.fix_permissions:
        owner = settings.usr or getpass.getuser()
        group = settings.grp or grp.getgrgid(os.getgid()).gr_name
        logger.info("Setting permissions to %s:%s", owner, group)
        for root in (settings.src_dir, settings.build_mods_dir):
            ctx.runner.run(["sudo", "chown", "-R", f"{owner}:{group}", str(root)])


def clean_checkout(workdir: Path) -> None:
    """Remove the repo metadata and checkout, keeping keys and releases."""
    logger.warning("CLEAN_SYNC requested - removing entire work directory")
    for entry in workdir.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            if entry.name in PRESERVED_DIRS:
                continue
            shutil.rmtree(entry, ignore_errors=True)
        else:
            entry.unlink(missing_ok=True)
    logger.info("Work directory cleaned")


def undo_patches(ctx: BuildContext) -> None:
    """Reset every project in an existing checkout (best effort)."""
    logger.info("Undoing patches prior to sync")
    repo_tool = ctx.workdir / ".repo" / "repo"
    if repo_tool.is_dir():
        ctx.runner.run(["git", "reset", "--hard"], cwd=repo_tool, check=False)
        ctx.runner.run(["git", "clean", "-ffdx"], cwd=repo_tool, check=False)
    if (ctx.workdir / ".repo").is_dir() and shutil.which("repo"):
        ctx.runner.run(["repo", "forall", "-vc", "git reset --hard"], cwd=ctx.workdir, check=False)
        ctx.runner.run(["repo", "forall", "-vc", "git clean -ffdx"], cwd=ctx.workdir, check=False)


def verify_manifest_tag(ctx: BuildContext) -> None:
    """Verify the signed release tag of the manifest checkout.

    Raises:
        RetryExhaustedError: If the allowed signers cannot be downloaded.
        ExternalToolError: If verification fails.
    """
    signers = ctx.workdir / ".repo" / "grapheneos_allowed_signers"

    def _download() -> int:
        with ctx.client_factory() as client:
            return download_file(client, ALLOWED_SIGNERS_URL, signers)

    retry_call(
        _download,
        TOOL_DOWNLOAD_POLICY,
        "allowed_signers download",
        retry_on=(DownloadError,),
        sleep=ctx.sleep,
    )

    manifests = ctx.workdir / ".repo" / "manifests"
    ctx.runner.run(
        ["git", "config", "gpg.ssh.allowedSignersFile", str(signers)], cwd=manifests
    )
    described = ctx.runner.run(["git", "describe"], cwd=manifests, capture=True)
    tag = described.text.strip()
    ctx.runner.run(["git", "verify-tag", tag], cwd=manifests)
    logger.info("Verified manifest tag %s", tag)


def run_sync(ctx: BuildContext) -> None:
    """Sync the source tree for the configured tag.

    Raises:
        RetryExhaustedError: If repo sync keeps failing (aborts the run).
        ExternalToolError: If repo init or tag verification fails.
    """
    workdir = ctx.workdir
    tag = ctx.settings.tag

    if ctx.settings.clean_sync:
        clean_checkout(workdir)
    else:
        undo_patches(ctx)

    if is_release_tag(tag):
        logger.info("Release branch tag detected!")
    else:
        logger.info("Dev branch tag detected!")
    ctx.runner.run(["repo", "init", "-u", MANIFEST_URL, "-b", tag], cwd=workdir)

    if is_release_tag(tag):
        verify_manifest_tag(ctx)

    logger.info("Syncing repo...")
    repo_sync(ctx, workdir)
    ctx.notify("Repo sync completed!")


__all__ = [
    "MANIFEST_URL",
    "clean_checkout",
    "is_release_tag",
    "repo_sync",
    "run_sync",
    "setup_workspace",
    "undo_patches",
    "verify_manifest_tag",
]
