"""Network downloads used by the build.

This module handles:
- Streaming downloads to disk via a temp file
- GitHub "latest release" metadata lookup and asset selection
- Fetching avbroot and Magisk for root patching
- Fetching the hosts file and GrapheneOS allowed signers

Callers wrap these in retry_call; every failure surfaces as DownloadError.
"""

from __future__ import annotations

import logging
import re
import shutil
import tempfile
import zipfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from galley.retry import TOOL_DOWNLOAD_POLICY, RetryPolicy, retry_call

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"

AVBROOT_REPO = "chenxiaolong/avbroot"
AVBROOT_ASSET_PATTERN = r"avbroot-.*-x86_64-unknown-linux-gnu\.zip$"

MAGISK_REPO = "topjohnwu/Magisk"
MAGISK_ASSET_PATTERN = r"Magisk-.*\.apk$"

HOSTS_URL = "https://raw.githubusercontent.com/StevenBlack/hosts/master/hosts"
ALLOWED_SIGNERS_URL = "https://grapheneos.org/allowed_signers"

# Timeout for metadata requests (seconds)
METADATA_TIMEOUT = 30

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 300

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


class DownloadError(Exception):
    """Raised when a download or release lookup fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        """Initialize DownloadError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


def new_client() -> httpx.Client:
    """Create an HTTPX client suitable for GitHub and raw downloads."""
    return httpx.Client(follow_redirects=True)


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> int:
    """Download a file, replacing ``dest_path`` only on success.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        Number of bytes written.

    Raises:
        DownloadError: If download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        dir=dest_path.parent, suffix=".tmp", delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        total_bytes = 0
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            with tmp_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    total_bytes += len(chunk)
        shutil.move(str(tmp_path), str(dest_path))
    except httpx.HTTPStatusError as e:
        tmp_path.unlink(missing_ok=True)
        raise DownloadError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        tmp_path.unlink(missing_ok=True)
        raise DownloadError(f"Timeout downloading {url}", code="timeout") from e
    except httpx.RequestError as e:
        tmp_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Network error downloading {url}: {e}", code="network_error"
        ) from e
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise

    logger.info("Downloaded %s (%d bytes)", dest_path.name, total_bytes)
    return total_bytes


def fetch_latest_release(
    client: httpx.Client,
    repo: str,
    base_url: str = GITHUB_API_BASE,
    timeout: float = METADATA_TIMEOUT,
) -> dict[str, Any]:
    """Fetch the latest release metadata of a GitHub repository.

    Args:
        client: HTTPX client instance.
        repo: ``owner/name``.
        base_url: GitHub API base URL.
        timeout: Request timeout in seconds.

    Returns:
        Release JSON object.

    Raises:
        DownloadError: If the request fails or the response is not an object.
    """
    url = f"{base_url}/repos/{repo}/releases/latest"
    logger.debug("Fetching release metadata from %s", url)

    try:
        response = client.get(url, timeout=timeout)
        response.raise_for_status()
        release = response.json()
    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error fetching release for {repo}: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(f"Timeout fetching release for {repo}", code="timeout") from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error fetching release for {repo}: {e}", code="network_error"
        ) from e
    except ValueError as e:
        raise DownloadError(
            f"Invalid release metadata for {repo}: {e}", code="malformed_response"
        ) from e

    if not isinstance(release, dict):
        raise DownloadError(
            f"Invalid release metadata for {repo}", code="malformed_response"
        )
    return release


def find_asset_url(release: dict[str, Any], pattern: str) -> str:
    """Return the download URL of the first asset whose name matches.

    Args:
        release: Release JSON object.
        pattern: Regular expression matched against asset names.

    Returns:
        Asset download URL.

    Raises:
        DownloadError: If no asset matches.
    """
    regex = re.compile(pattern)
    for asset in release.get("assets") or []:
        name = asset.get("name", "")
        if regex.search(name):
            return str(asset["browser_download_url"])
    raise DownloadError(
        f"No asset matching '{pattern}' in release {release.get('name', '?')}",
        code="asset_not_found",
    )


def extract_zip_member(archive_path: Path, member_name: str, dest_path: Path) -> Path:
    """Extract one member (matched by base name) from a zip archive.

    Args:
        archive_path: Zip file.
        member_name: Base name of the member to extract.
        dest_path: Where to write it.

    Returns:
        ``dest_path``.

    Raises:
        DownloadError: If the archive is invalid or lacks the member.
    """
    try:
        with zipfile.ZipFile(archive_path) as zf:
            for info in zf.infolist():
                if not info.is_dir() and Path(info.filename).name == member_name:
                    with zf.open(info) as src, dest_path.open("wb") as dst:
                        shutil.copyfileobj(src, dst)
                    return dest_path
    except zipfile.BadZipFile as e:
        raise DownloadError(f"Invalid zip archive {archive_path}: {e}", code="bad_zip") from e

    raise DownloadError(
        f"{member_name} not found in {archive_path.name}", code="member_not_found"
    )


def download_avbroot(client: httpx.Client, tools_dir: Path) -> Path:
    """Download the latest avbroot release into ``tools_dir``.

    Args:
        client: HTTPX client instance.
        tools_dir: Directory for root tools.

    Returns:
        Path to the executable.
    """
    release = fetch_latest_release(client, AVBROOT_REPO)
    url = find_asset_url(release, AVBROOT_ASSET_PATTERN)
    archive = tools_dir / "avbroot.zip"
    download_file(client, url, archive)
    binary = extract_zip_member(archive, "avbroot", tools_dir / "avbroot")
    binary.chmod(0o755)
    logger.info("avbroot downloaded successfully")
    return binary


def download_magisk(client: httpx.Client, tools_dir: Path) -> Path:
    """Download the latest Magisk APK into ``tools_dir``.

    Args:
        client: HTTPX client instance.
        tools_dir: Directory for root tools.

    Returns:
        Path to ``Magisk.apk``.
    """
    release = fetch_latest_release(client, MAGISK_REPO)
    url = find_asset_url(release, MAGISK_ASSET_PATTERN)
    apk = tools_dir / "Magisk.apk"
    download_file(client, url, apk)
    logger.info("Magisk downloaded successfully")
    return apk


class RootTools:
    """Locate or download the root-patching tools."""

    def __init__(
        self,
        tools_dir: Path,
        client_factory: Callable[[], httpx.Client] = new_client,
        policy: RetryPolicy = TOOL_DOWNLOAD_POLICY,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.tools_dir = tools_dir
        self.client_factory = client_factory
        self.policy = policy
        self.sleep = sleep

    @property
    def avbroot(self) -> Path:
        return self.tools_dir / "avbroot"

    @property
    def magisk(self) -> Path:
        return self.tools_dir / "Magisk.apk"

    def _retry(self, func: Callable[[], Path], operation: str) -> Path:
        kwargs: dict[str, Any] = {"retry_on": (DownloadError,)}
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        return retry_call(func, self.policy, operation, **kwargs)

    def ensure_avbroot(self) -> Path:
        """Return the avbroot binary, downloading it if absent.

        Raises:
            RetryExhaustedError: If every download attempt fails.
        """
        if self.avbroot.is_file():
            logger.info("avbroot exists")
            return self.avbroot
        self.tools_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Grabbing latest avbroot")
        with self.client_factory() as client:
            return self._retry(
                lambda: download_avbroot(client, self.tools_dir), "avbroot download"
            )

    def ensure_magisk(self) -> Path:
        """Download the latest Magisk APK.

        Always refreshed so root patching uses the current release.

        Raises:
            RetryExhaustedError: If every download attempt fails.
        """
        self.tools_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Grabbing latest Magisk")
        with self.client_factory() as client:
            return self._retry(
                lambda: download_magisk(client, self.tools_dir), "Magisk download"
            )


__all__ = [
    "ALLOWED_SIGNERS_URL",
    "AVBROOT_ASSET_PATTERN",
    "HOSTS_URL",
    "MAGISK_ASSET_PATTERN",
    "DownloadError",
    "RootTools",
    "download_avbroot",
    "download_file",
    "download_magisk",
    "extract_zip_member",
    "fetch_latest_release",
    "find_asset_url",
    "new_client",
]
