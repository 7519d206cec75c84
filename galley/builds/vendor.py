"""Vendor file extraction.

adevtool needs its node dependencies installed and the arsclib host tool
(built together with aapt2) before it can generate vendor trees.
"""

from __future__ import annotations

import logging

from galley.builds.phases import LUNCH_SDK_TARGET, BuildContext, lunch_script
from galley.errors import EXIT_BUILD, ExternalToolError
from galley.types import Phase

logger = logging.getLogger(__name__)


def run_vendor_prereqs(ctx: BuildContext) -> None:
    """Install adevtool dependencies if the tool is checked out."""
    adevtool = ctx.workdir / "vendor" / "adevtool"
    if not adevtool.is_dir():
        if not ctx.flags.sync:
            logger.warning("adevtool directory not found. Run with -s flag to sync first")
        return

    logger.info("Installing adevtool dependencies")
    ctx.runner.run(
        ["yarn", "install", "--cwd", str(adevtool)],
        cwd=ctx.workdir,
        env_override={"COREPACK_ENABLE_DOWNLOAD_PROMPT": "0"},
    )


def run_aapt2(ctx: BuildContext) -> None:
    """Build aapt2/arsclib for vendor extraction.

    Raises:
        ExternalToolError: If compilation fails (exit status 2).
    """
    logger.info("Compiling aapt2")
    try:
        ctx.runner.shell(
            lunch_script(LUNCH_SDK_TARGET, "arsclib"),
            cwd=ctx.workdir,
            exit_status=EXIT_BUILD,
        )
    except ExternalToolError:
        ctx.notify("aapt2 build failed!")
        raise
    logger.info("aapt2 compiled successfully!")
    ctx.notify("aapt2 build completed successfully!")


def run_extract(ctx: BuildContext) -> None:
    """Download and extract vendor files for every target.

    A failing target is recorded and skipped by later phases.
    """
    adevtool_run = ctx.workdir / "vendor" / "adevtool" / "bin" / "run"
    for target in ctx.active_targets(Phase.EXTRACT):
        logger.info("Downloading and extracting vendor files for %s", target)
        try:
            ctx.runner.run(
                [str(adevtool_run), "generate-all", "-d", target],
                cwd=ctx.workdir,
            )
        except ExternalToolError as e:
            ctx.record_failure(target, Phase.EXTRACT, e)
    ctx.notify("Vendor files extracted for all targets")


__all__ = ["run_aapt2", "run_extract", "run_vendor_prereqs"]
