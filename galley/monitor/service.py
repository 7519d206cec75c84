"""Release monitor service.

This module provides the monitor API:
- ReleaseMonitor.poll(): check upstream once and decide whether to build
- ReleaseMonitor.run_loop(): poll on an interval, building one tag at a time
- handle_signals(): turn SIGINT/SIGTERM into a clean stop at the next checkpoint

The loop is single-threaded. A build blocks polling until it finishes, and a
stop request is honoured only before a build or sleep starts.
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from types import FrameType

from galley.errors import FetchError
from galley.monitor.state import MonitorState, MonthlyBuildState, StateStore
from galley.notify import Notifier
from galley.types import BuildMode, NoAction, PollDecision, ShouldBuild

logger = logging.getLogger(__name__)

# Called with the tag to build (None = use the configured tag); returns an exit status.
BuildTrigger = Callable[[str | None], int]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_check_time(moment: datetime) -> str:
    """Format a timestamp as UTC ISO-8601 with a ``Z`` suffix."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def month_key(moment: datetime) -> str:
    """Return the ``YYYY-MM`` month of a timestamp (UTC)."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m")


def record_release(monthly: MonthlyBuildState, month: str) -> None:
    """Count a newly observed release, resetting counters on month rollover.

    Args:
        monthly: State to mutate.
        month: Current ``YYYY-MM``.
    """
    if monthly.current_month != month:
        logger.info("New month %s, resetting release counters", month)
        monthly.current_month = month
        monthly.releases_this_month = 0
        monthly.built_this_month = False
    monthly.releases_this_month += 1


def decide_build(
    monthly: MonthlyBuildState,
    mode: BuildMode,
    ordinal: int,
    tag: str,
) -> PollDecision:
    """Decide whether a newly observed tag should be built.

    In monthly mode a trigger marks the month as built.

    Args:
        monthly: Monthly state, already updated for this tag.
        mode: Build mode.
        ordinal: Which release of the month to build (monthly mode).
        tag: The new tag.

    Returns:
        ShouldBuild or NoAction.
    """
    if mode is BuildMode.ON_RELEASE:
        logger.info("Build mode: on_release - Will build for tag %s", tag)
        return ShouldBuild(tag)

    count = monthly.releases_this_month
    if not monthly.built_this_month and count >= ordinal:
        monthly.built_this_month = True
        logger.info(
            "Build mode: monthly - This is release #%d, target is #%d - Will build",
            count,
            ordinal,
        )
        return ShouldBuild(tag)

    logger.info(
        "Build mode: monthly - This is release #%d, target is #%d, "
        "already built: %s - Skipping",
        count,
        ordinal,
        monthly.built_this_month,
    )
    return NoAction("monthly build not due")


class ReleaseMonitor:
    """Poll upstream tags and trigger builds according to the build mode."""

    def __init__(
        self,
        state_store: StateStore[MonitorState],
        monthly_store: StateStore[MonthlyBuildState],
        fetch_tags: Callable[[], list[str]],
        trigger: BuildTrigger,
        build_mode: BuildMode = BuildMode.ON_RELEASE,
        monthly_release: int = 1,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if monthly_release < 1:
            raise ValueError("monthly_release must be at least 1")
        self.state_store = state_store
        self.monthly_store = monthly_store
        self.fetch_tags = fetch_tags
        self.trigger = trigger
        self.build_mode = BuildMode(build_mode)
        self.monthly_release = monthly_release
        self.notifier = notifier or Notifier([])
        self.clock = clock
        self._stop = threading.Event()
        self._sleep = sleep or self._interruptible_sleep

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        """Ask the loop to exit at the next safe checkpoint."""
        self._stop.set()

    def _interruptible_sleep(self, seconds: float) -> None:
        self._stop.wait(seconds)

    def poll(self) -> PollDecision:
        """Check upstream once.

        Both state documents are updated under lock before returning. A poll
        that sees the same tag as last time writes nothing.

        Returns:
            ShouldBuild(tag) or NoAction.

        Raises:
            FetchError: If the tag list cannot be fetched.
        """
        logger.info("Checking for new GrapheneOS releases...")
        tags = self.fetch_tags()
        if not tags:
            raise FetchError("Remote returned no tags", code="empty_response")
        latest = tags[0]
        now = self.clock()

        # last_tag is saved before the monthly counters
        with self.monthly_store.update() as monthly, self.state_store.update() as state:
            logger.info("Latest tag: %s", latest)
            logger.info("Last known tag: %s", state.last_tag)

            if latest == state.last_tag:
                logger.info("No new releases detected")
                return NoAction("no new release")

            logger.info("New release detected: %s", latest)
            state.last_tag = latest
            state.last_check = format_check_time(now)

            record_release(monthly, month_key(now))
            return decide_build(
                monthly, self.build_mode, self.monthly_release, latest
            )

    def build(self, tag: str) -> int:
        """Run one build for ``tag`` and report the outcome.

        Failures are logged and notified; they never propagate.

        Args:
            tag: Tag to build.

        Returns:
            The build's exit status.
        """
        logger.info("Triggering build for tag: %s", tag)
        self.notifier.notify(f"Starting build for GrapheneOS {tag}")

        with self.state_store.update() as state:
            state.last_build_tag = tag
            state.last_check = format_check_time(self.clock())

        try:
            status = self.trigger(tag)
        except Exception:
            logger.exception("Build raised an unexpected error for %s", tag)
            status = 1

        if status == 0:
            logger.info("Build completed successfully for %s", tag)
            self.notifier.notify(f"Build completed successfully for GrapheneOS {tag}")
        else:
            logger.error("Build failed for %s (exit status %d)", tag, status)
            self.notifier.notify(f"Build FAILED for GrapheneOS {tag} - check logs")
        return status

    def run_loop(self, interval: float, enabled: bool) -> int:
        """Run the monitor.

        Args:
            interval: Seconds to sleep between polls.
            enabled: When False, run a single build and return its status.

        Returns:
            Exit status: the build's when disabled, 0 after a requested stop.
        """
        if not enabled:
            logger.info("Monitoring disabled, running single build with existing configuration")
            return self.trigger(None)

        if interval <= 0:
            raise ValueError("interval must be positive")

        logger.info("Starting GrapheneOS release monitor")
        logger.info("Build mode: %s", self.build_mode.value)
        if self.build_mode is BuildMode.MONTHLY:
            logger.info("Will build on release #%d of each month", self.monthly_release)
        logger.info("Check interval: %ss", interval)

        self.state_store.ensure()
        self.monthly_store.ensure()
        self.notifier.notify(f"Monitor started - Mode: {self.build_mode.value}")

        while not self.stop_requested:
            try:
                decision = self.poll()
            except FetchError as e:
                logger.error("Failed to fetch tags: %s", e)
                decision = NoAction("fetch failed")

            if isinstance(decision, ShouldBuild) and not self.stop_requested:
                self.build(decision.tag)

            if self.stop_requested:
                break
            logger.info("Sleeping for %ss...", interval)
            self._sleep(interval)

        logger.info("Monitor stopped")
        return 0


@contextmanager
def handle_signals(monitor: ReleaseMonitor) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``monitor.request_stop`` while active.

    Original handlers are restored on exit.

    Args:
        monitor: Monitor to stop.

    Yields:
        None while handlers are installed.
    """

    def _handler(signum: int, frame: FrameType | None) -> None:
        logger.info("Received shutdown signal %d, stopping after current step", signum)
        monitor.request_stop()

    original_int = signal.signal(signal.SIGINT, _handler)
    original_term = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_int)
        signal.signal(signal.SIGTERM, original_term)


__all__ = [
    "BuildTrigger",
    "ReleaseMonitor",
    "decide_build",
    "format_check_time",
    "handle_signals",
    "month_key",
    "record_release",
]
