"""Shared fixtures for galley tests.

Phases never touch real tools in tests: FakeRunner records every command and
can be told to fail or to run a side effect for commands matching a fragment.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from galley.builds.devices import DeviceMap
from galley.builds.fetch import RootTools
from galley.builds.phases import BuildContext, PhaseFlags
from galley.builds.runner import CommandResult
from galley.config import BuildSettings
from galley.errors import EXIT_CONFIG, ExternalToolError
from galley.notify import Notifier
from galley.types import RootType


@dataclass
class FakeCall:
    args: list[str]
    kwargs: dict[str, Any]

    @property
    def line(self) -> str:
        return " ".join(self.args)


@dataclass
class FakeRunner:
    """Drop-in CommandRunner that records instead of executing."""

    calls: list[FakeCall] = field(default_factory=list)
    failures: dict[str, int] = field(default_factory=dict)
    handlers: list[tuple[str, Callable[[FakeCall], None]]] = field(default_factory=list)
    outputs: dict[str, bytes] = field(default_factory=dict)

    def fail_on(self, fragment: str, times: int = -1) -> None:
        """Fail commands containing ``fragment`` (``times`` < 0 means always)."""
        self.failures[fragment] = times

    def on(self, fragment: str, func: Callable[[FakeCall], None]) -> None:
        self.handlers.append((fragment, func))

    def run(self, cmd, **kwargs) -> CommandResult:
        call = FakeCall([str(c) for c in cmd], kwargs)
        self.calls.append(call)
        for fragment, func in self.handlers:
            if fragment in call.line:
                func(call)
        for fragment, remaining in list(self.failures.items()):
            if fragment in call.line and remaining != 0:
                if remaining > 0:
                    self.failures[fragment] = remaining - 1
                if kwargs.get("check", True):
                    raise ExternalToolError(
                        call.line, 1, exit_status=kwargs.get("exit_status", EXIT_CONFIG)
                    )
        stdout = b""
        for fragment, output in self.outputs.items():
            if fragment in call.line:
                stdout = output
        now = datetime.now(timezone.utc)
        return CommandResult(
            command=call.line,
            returncode=0,
            stdout=stdout,
            started_at=now,
            finished_at=now,
        )

    def shell(self, script: str, **kwargs) -> CommandResult:
        return self.run(["bash", "-c", script], **kwargs)

    @property
    def lines(self) -> list[str]:
        return [c.line for c in self.calls]

    def matching(self, fragment: str) -> list[FakeCall]:
        return [c for c in self.calls if fragment in c.line]


def make_settings(tmp_path: Path, **overrides: Any) -> BuildSettings:
    """BuildSettings isolated from the environment and rooted in tmp_path."""
    values: dict[str, Any] = {
        "os": "grapheneos",
        "tgt": "husky,shiba",
        "tag": "2025020100",
        "google_build_id": "AP4A.250205.002",
        "version": "15",
        "src_dir": tmp_path / "src",
        "build_mods_dir": tmp_path / "build_mods",
    }
    values.update(overrides)
    return BuildSettings(_env_file=None, **values)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def notifier() -> MagicMock:
    mock = MagicMock(spec=Notifier)
    mock.notify.return_value = True
    return mock


@pytest.fixture
def settings(tmp_path: Path) -> BuildSettings:
    return make_settings(tmp_path)


@pytest.fixture
def make_ctx(tmp_path: Path, fake_runner: FakeRunner, notifier: MagicMock):
    """Factory for BuildContext objects wired to fakes."""

    def _make(
        settings: BuildSettings | None = None,
        root_type: RootType = RootType.NONE,
        flags: PhaseFlags | None = None,
        **kwargs: Any,
    ) -> BuildContext:
        settings = settings or make_settings(tmp_path)
        settings.workdir.mkdir(parents=True, exist_ok=True)
        settings.build_mods_dir.mkdir(parents=True, exist_ok=True)
        kwargs.setdefault("device_map", DeviceMap())
        kwargs.setdefault(
            "root_tools",
            RootTools(settings.build_mods_dir / "avbroot", sleep=lambda s: None),
        )
        kwargs.setdefault("sleep", lambda s: None)
        return BuildContext(
            settings=settings,
            runner=fake_runner,  # type: ignore[arg-type]
            notifier=notifier,
            build_number="2025020101",
            root_type=root_type,
            flags=flags or PhaseFlags(),
            **kwargs,
        )

    return _make


@pytest.fixture
def settings_factory(tmp_path: Path) -> Callable[..., BuildSettings]:
    """Build settings rooted in tmp_path with per-test overrides."""

    def _make(**overrides: Any) -> BuildSettings:
        return make_settings(tmp_path, **overrides)

    return _make
