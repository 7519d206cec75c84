"""Upstream release tag discovery.

Fetches the tag list of the GrapheneOS platform manifest from the GitHub API.
The API returns tags newest first; only names are used.
"""

from __future__ import annotations

import logging

import httpx

from galley.config import GRAPHENEOS_TAGS_URL
from galley.errors import FetchError

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 30

# Number of tags kept from the API response
TAG_LIMIT = 5


def parse_tags(payload: object, limit: int = TAG_LIMIT) -> list[str]:
    """Extract tag names from a GitHub tags API payload.

    Args:
        payload: Decoded JSON response.
        limit: Maximum number of tags to return.

    Returns:
        Tag names, newest first.

    Raises:
        FetchError: If the payload is not a non-empty list of named tags.
    """
    if not isinstance(payload, list):
        raise FetchError(
            f"Expected a list of tags, got {type(payload).__name__}",
            code="malformed_response",
        )

    names: list[str] = []
    for entry in payload[:limit]:
        name = entry.get("name") if isinstance(entry, dict) else None
        if not isinstance(name, str) or not name.strip():
            raise FetchError(f"Malformed tag entry: {entry!r}", code="malformed_response")
        names.append(name.strip())

    if not names:
        raise FetchError("Remote returned no tags", code="empty_response")
    return names


def fetch_tags(
    client: httpx.Client,
    url: str = GRAPHENEOS_TAGS_URL,
    timeout: float = FETCH_TIMEOUT,
) -> list[str]:
    """Fetch the newest release tags.

    Args:
        client: HTTPX client instance.
        url: GitHub tags API URL.
        timeout: Request timeout in seconds.

    Returns:
        Tag names, newest first.

    Raises:
        FetchError: If the remote is unreachable or the response is unusable.
    """
    logger.debug("Fetching tags from %s", url)

    try:
        response = client.get(url, timeout=timeout)
        response.raise_for_status()
        payload = response.json()
    except httpx.HTTPStatusError as e:
        raise FetchError(
            f"HTTP error fetching tags: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise FetchError(f"Timeout fetching tags from {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise FetchError(f"Network error fetching tags: {e}", code="network_error") from e
    except ValueError as e:
        raise FetchError(
            f"Invalid JSON from {url}: {e}", code="malformed_response"
        ) from e

    return parse_tags(payload)


class TagFetcher:
    """Callable returning the newest tags from a fixed URL."""

    def __init__(
        self,
        url: str = GRAPHENEOS_TAGS_URL,
        timeout: float = FETCH_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    def __call__(self) -> list[str]:
        if self._client is not None:
            return fetch_tags(self._client, self.url, self.timeout)
        with httpx.Client(
            headers={"Accept": "application/vnd.github+json"},
            follow_redirects=True,
        ) as client:
            return fetch_tags(client, self.url, self.timeout)


__all__ = ["FETCH_TIMEOUT", "TagFetcher", "fetch_tags", "parse_tags"]
