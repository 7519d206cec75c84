"""Configuration settings for galley.

Uses pydantic-settings for config parsing from environment variables and
defaults. Variable names match the container contract (``OS``, ``TGT``,
``TAG`` ...), so no env prefix is used. Configuration precedence:
CLI flags > env vars > .env file > defaults.
"""

from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from galley.errors import ConfigError

# Required orchestrator inputs and the hint shown when one is missing.
REQUIRED_INPUTS: dict[str, str] = {
    "OS": "Operating system identifier",
    "TGT": "Build target(s), comma-separated",
    "TAG": "Git tag or branch to build",
    "GOOGLE_BUILD_ID": "Google build identifier",
    "VERSION": "Android version number",
}

GRAPHENEOS_TAGS_URL = "https://api.github.com/repos/GrapheneOS/platform_manifest/tags"


def missing_inputs(
    values: Mapping[str, object | None],
    required: Iterable[str],
) -> list[str]:
    """Return the required input names that are absent or empty.

    Args:
        values: Input name to value mapping.
        required: Names that must be present.

    Returns:
        Missing names, in the order given by ``required``.
    """
    missing: list[str] = []
    for name in required:
        value = values.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
    return missing


def require_inputs(
    values: Mapping[str, object | None],
    required: Iterable[str],
) -> None:
    """Fail with a single ConfigError naming every missing input.

    Args:
        values: Input name to value mapping.
        required: Names that must be present.

    Raises:
        ConfigError: If any required input is missing.
    """
    missing = missing_inputs(values, required)
    if missing:
        raise ConfigError(missing)


class _GalleySettings(BaseSettings):
    """Settings shared by the orchestrator and the monitor."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    apprise_urls: str = Field(
        default="",
        description="Notification endpoints for apprise (comma or space separated)",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


class BuildSettings(_GalleySettings):
    """Build orchestrator settings.

    The required inputs default to empty strings so that validation can
    report all of them at once (see ``validate_required``).
    """

    # Required
    os: str = Field(default="", description="Operating system identifier")
    tgt: str = Field(default="", description="Build target(s), comma-separated")
    tag: str = Field(default="", description="Git tag or branch to build")
    google_build_id: str = Field(default="", description="Google build identifier")
    version: str = Field(default="", description="Android version number")

    # Identity and credentials
    cn: str = Field(default="GrapheneOS", description="Common name for certificates")
    certpass: SecretStr = Field(
        default=SecretStr(""),
        description="Pass-phrase used to encrypt signing keys",
    )
    usr: str = Field(default="", description="Owner user for source directories")
    grp: str = Field(default="", description="Owner group for source directories")
    git_email: str = Field(default="user@domain.com")
    git_name: str = Field(default="user")

    # Paths
    src_dir: Path = Field(default=Path("/src"), description="Source root")
    build_mods_dir: Path = Field(
        default=Path("/build_mods"),
        description="Keys, patches and assets supplied by the operator",
    )
    out_dir: str = Field(default="out", description="Build output dir in checkout")
    device_map_file: Path | None = Field(
        default=None,
        description="Optional YAML file overriding the device mapping tables",
    )

    # Behaviour
    update_url: str = Field(default="", description="Updater server URL")
    root_type: Literal["none", "magisk", "kernelsu"] | None = Field(
        default=None,
        description="Root method applied to the build",
    )
    docker_mode: bool = Field(
        default=False,
        description="Strict, non-interactive mode (fail instead of prompting)",
    )
    clean_sync: bool = Field(default=False)
    official_build: bool = Field(default=False)
    push: bool = Field(default=False, description="Record files for update server")
    fix_permissions: bool = Field(
        default=False,
        description="chown source and build-mods roots to USR:GRP",
    )

    # Timeouts (in seconds, None = no timeout)
    build_timeout: int | None = Field(default=None, ge=60)
    download_timeout: int = Field(default=300, ge=10)

    @property
    def targets(self) -> list[str]:
        """Lowercased build targets."""
        return [
            t for t in self.tgt.lower().replace(",", " ").split() if t
        ]

    @property
    def target_release(self) -> str:
        """Release config name derived from the Google build id."""
        return self.google_build_id.lower().split(".", 1)[0]

    @property
    def workdir(self) -> Path:
        """Source checkout for the OS."""
        return self.src_dir / self.os

    @property
    def kernel_root(self) -> Path:
        """Root directory for kernel checkouts."""
        return self.src_dir / "kernel"

    @property
    def passphrase(self) -> str:
        """Plain key pass-phrase (empty if unset)."""
        return self.certpass.get_secret_value()

    def required_values(self) -> dict[str, str]:
        """Map required input names to their configured values."""
        return {
            "OS": self.os,
            "TGT": self.tgt,
            "TAG": self.tag,
            "GOOGLE_BUILD_ID": self.google_build_id,
            "VERSION": self.version,
        }

    def validate_required(self) -> None:
        """Raise ConfigError naming every missing required input."""
        require_inputs(self.required_values(), REQUIRED_INPUTS)


class MonitorSettings(_GalleySettings):
    """Release monitor settings."""

    build_mode: Literal["on_release", "monthly"] = Field(
        default="on_release",
        description="Build on every release or once per month",
    )
    monthly_release: int = Field(
        default=1,
        ge=1,
        description="Which release of the month to build (monthly mode)",
    )
    check_interval: int = Field(
        default=3600,
        gt=0,
        description="Seconds between polls",
    )
    monitoring_enabled: bool = Field(
        default=False,
        description="Poll for releases; otherwise run a single build",
    )
    state_file: Path = Field(default=Path("/tmp/galley_monitor_state.json"))
    monthly_build_file: Path = Field(default=Path("/tmp/galley_monthly_build.json"))
    tags_url: str = Field(default=GRAPHENEOS_TAGS_URL)
    fetch_timeout: int = Field(default=30, ge=1)


def get_build_settings() -> BuildSettings:
    """Get orchestrator settings loaded from the environment.

    Returns:
        BuildSettings instance.
    """
    return BuildSettings()


def get_monitor_settings() -> MonitorSettings:
    """Get monitor settings loaded from the environment.

    Returns:
        MonitorSettings instance.
    """
    return MonitorSettings()


def print_settings_json(settings: BaseSettings | None = None) -> str:
    """Render effective settings as JSON.

    Secrets are masked.

    Args:
        settings: Optional settings instance; uses build settings if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_build_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "GRAPHENEOS_TAGS_URL",
    "REQUIRED_INPUTS",
    "BuildSettings",
    "MonitorSettings",
    "get_build_settings",
    "get_monitor_settings",
    "missing_inputs",
    "print_settings_json",
    "require_inputs",
]
