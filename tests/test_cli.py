"""Smoke tests for the CLI.

These tests verify basic CLI functionality without requiring
network access or external tools.
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from galley import __version__
from galley.builds.phases import PhaseFlags
from galley.cli import app
from galley.types import RootType

runner = CliRunner()

BUILD_ENV = {
    "OS": "grapheneos",
    "TGT": "husky",
    "TAG": "2025020100",
    "GOOGLE_BUILD_ID": "AP4A.250205.002",
    "VERSION": "15",
}

ALL_ENV = (*BUILD_ENV, "ROOT_TYPE", "MONITORING_ENABLED", "BUILD_MODE", "DOCKER_MODE")


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path):
    """Run every command away from any .env file and real state paths."""
    monkeypatch.chdir(tmp_path)
    for name in ALL_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SRC_DIR", str(tmp_path / "src"))
    monkeypatch.setenv("BUILD_MODS_DIR", str(tmp_path / "build_mods"))
    monkeypatch.setenv("STATE_FILE", str(tmp_path / "state.json"))
    monkeypatch.setenv("MONTHLY_BUILD_FILE", str(tmp_path / "monthly.json"))
    monkeypatch.setattr("galley.cli.configure_logging", lambda level: None)


@pytest.fixture
def build_env(monkeypatch):
    for name, value in BUILD_ENV.items():
        monkeypatch.setenv(name, value)


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "GrapheneOS" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout

    def test_build_help_lists_phase_flags(self) -> None:
        result = runner.invoke(app, ["build", "--help"])
        assert result.exit_code == 0
        for flag in ("--sync", "--aapt2", "--extract", "--customize", "--keys", "--rom", "--kernel"):
            assert flag in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self, build_env) -> None:
        """CLI config should show every section."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        for section in ("Build:", "Paths:", "Monitor:", "Operational:"):
            assert section in result.stdout
        assert "grapheneos" in result.stdout

    def test_config_unset_inputs(self) -> None:
        """Unset required inputs are shown, not rejected."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "(unset)" in result.stdout

    def test_config_json(self, build_env, monkeypatch) -> None:
        """config --json has build and monitor sections with masked secrets."""
        monkeypatch.setenv("CERTPASS", "hunter2")
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["build"]["tgt"] == "husky"
        assert data["monitor"]["build_mode"] == "on_release"
        assert "hunter2" not in result.stdout

    def test_invalid_config_exit_1(self, monkeypatch) -> None:
        monkeypatch.setenv("BUILD_MODE", "weekly")
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout


class TestCLIState:
    """Test CLI state command."""

    def test_state_empty(self) -> None:
        result = runner.invoke(app, ["state"])
        assert result.exit_code == 0
        assert "Monitor state:" in result.stdout
        assert "(none)" in result.stdout

    def test_state_json(self, tmp_path: Path) -> None:
        (tmp_path / "state.json").write_text(
            json.dumps({"last_tag": "2025020100", "last_build_tag": "2025020100", "last_check": ""})
        )
        result = runner.invoke(app, ["state", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["monitor"]["last_tag"] == "2025020100"
        assert data["monthly"]["releases_this_month"] == 0


class TestCLIBuild:
    """Test CLI build command."""

    def test_missing_inputs_exit_1(self) -> None:
        """Without the required variables the build fails validation."""
        with patch("galley.builds.orchestrator.CommandRunner") as mock_runner:
            result = runner.invoke(app, ["build", "-s"])
        assert result.exit_code == 1
        assert not mock_runner.return_value.run.called

    def test_flags_passed_to_orchestrator(self, build_env) -> None:
        with patch("galley.builds.orchestrator.BuildOrchestrator") as mock_cls:
            mock_cls.return_value.run.return_value = 0
            result = runner.invoke(app, ["build", "-s", "-r", "--root-type", "magisk"])

        assert result.exit_code == 0
        kwargs = mock_cls.call_args.kwargs
        assert kwargs["flags"] == PhaseFlags(sync=True, rom=True)
        assert kwargs["root_type"] is RootType.MAGISK

    def test_build_failure_status(self, build_env) -> None:
        """The orchestrator's exit status becomes the process status."""
        with patch("galley.builds.orchestrator.BuildOrchestrator") as mock_cls:
            mock_cls.return_value.run.return_value = 2
            result = runner.invoke(app, ["build", "-r"])

        assert result.exit_code == 2
        assert "exit status 2" in result.stdout

    def test_invalid_root_type(self, build_env) -> None:
        result = runner.invoke(app, ["build", "--root-type", "supersu"])
        assert result.exit_code == 1
        assert "Invalid root type" in result.stdout


class TestCLIMonitor:
    """Test CLI monitor command."""

    def test_disabled_runs_single_build(self, build_env) -> None:
        """With monitoring disabled the monitor runs one build for TAG."""
        with patch("galley.builds.orchestrator.BuildOrchestrator") as mock_cls:
            mock_cls.return_value.run.return_value = 0
            result = runner.invoke(app, ["monitor"])

        assert result.exit_code == 0
        assert mock_cls.call_args.args[0].tag == "2025020100"
