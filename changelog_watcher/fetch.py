"""
Fetch module for the Changelog Watcher.

This module talks to the GitHub REST API to learn the latest commit that
touched the tracked changelog and to download the file itself. Requests
go through a session with retries and exponential backoff; failures that
mean "GitHub cannot be reached right now" surface as RemoteUnavailable.
"""

import base64
import binascii
import time
from dataclasses import dataclass
from typing import Any, Optional, Tuple
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from changelog_watcher.config import GitHubConfig
from changelog_watcher.utils import get_logger


# Module logger
logger = get_logger("fetch")

# GitHub API configuration
GITHUB_API_BASE = "https://api.github.com"
GITHUB_WEB_BASE = "https://github.com"
GITHUB_API_VERSION = "2022-11-28"

# Contents API media type returning the file body as-is (needed above 1 MB)
RAW_MEDIA_TYPE = "application/vnd.github.raw+json"

# Default configuration
DEFAULT_TIMEOUT = 30  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 1.0
DEFAULT_USER_AGENT = "ChangelogWatcher/1.0"


class RemoteUnavailable(Exception):
    """Raised when GitHub cannot be reached (network, auth or rate limit)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class RevisionRef:
    """
    A commit that touched the tracked file.

    Attributes:
        sha: Commit hash, used as the opaque revision identifier.
        message: Commit message.
        author_name: Name of the commit author.
        date: Author date as reported by GitHub (ISO 8601).
        html_url: Link to the commit on github.com.
    """
    sha: str
    message: str = ""
    author_name: str = ""
    date: str = ""
    html_url: str = ""

    @classmethod
    def from_api(cls, data: dict) -> "RevisionRef":
        """Build a RevisionRef from a GitHub commit object."""
        commit = data.get("commit") or {}
        author = commit.get("author") or {}
        return cls(
            sha=data.get("sha", ""),
            message=commit.get("message", ""),
            author_name=author.get("name", ""),
            date=author.get("date", ""),
            html_url=data.get("html_url", ""),
        )


def create_github_session(
    token: Optional[str] = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
) -> requests.Session:
    """
    Create a requests session configured for the GitHub API.

    Configures automatic retries with exponential backoff for
    transient failures (429, 5xx, connection errors).

    Args:
        token: Optional GitHub token. Without one, requests are anonymous
               and subject to the lower unauthenticated rate limit.
        max_retries: Maximum number of retry attempts.
        backoff_factor: Multiplier for exponential backoff between retries.

    Returns:
        Configured requests.Session instance.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "HEAD"],
        raise_on_status=False
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    session.headers.update({
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
        "User-Agent": DEFAULT_USER_AGENT,
    })

    if token:
        session.headers["Authorization"] = f"Bearer {token}"

    return session


def check_rate_limit(response: requests.Response) -> Tuple[bool, int]:
    """
    Check if response indicates rate limiting.

    Args:
        response: Response object from GitHub API.

    Returns:
        Tuple of (is_rate_limited, seconds_until_reset).
    """
    if response.status_code == 429:
        return True, _seconds_until_reset(response)

    if response.status_code != 403:
        return False, 0

    if response.headers.get("X-RateLimit-Remaining", "1") == "0":
        return True, _seconds_until_reset(response)

    try:
        data = response.json()
    except ValueError:
        return False, 0

    if isinstance(data, dict) and "rate limit" in str(data.get("message", "")).lower():
        return True, _seconds_until_reset(response)

    return False, 0


def _seconds_until_reset(response: requests.Response) -> int:
    try:
        reset_timestamp = int(response.headers.get("X-RateLimit-Reset", "0"))
    except ValueError:
        return 0
    return max(0, reset_timestamp - int(time.time()))


def decode_content(payload: dict) -> Optional[str]:
    """
    Decode the body of a GitHub contents API response.

    Args:
        payload: JSON object returned for a single file.

    Returns:
        File text as UTF-8, or None if the payload carries no content.

    Raises:
        RemoteUnavailable: If the base64 payload is corrupt.
    """
    content = payload.get("content")
    if content is None:
        return None

    encoding = payload.get("encoding", "base64")
    if encoding != "base64":
        return str(content)

    try:
        raw = base64.b64decode(content)
    except (binascii.Error, ValueError) as e:
        raise RemoteUnavailable(f"Malformed file content from GitHub: {e}")

    return raw.decode("utf-8", errors="replace")


class RemoteStateClient:
    """
    Read-only client for the tracked changelog file on GitHub.

    Both fetch methods return None when GitHub answers 404 (nothing to
    report) and raise RemoteUnavailable when GitHub cannot be reached.
    """

    def __init__(
        self,
        github: GitHubConfig,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: int = DEFAULT_TIMEOUT
    ):
        self.owner = github.owner
        self.repo = github.repo
        self.file_path = github.file_path
        self.branch = github.branch
        self.timeout = timeout
        self.session = session or create_github_session(token)

    def __enter__(self) -> "RemoteStateClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.repo}"

    def _send(
        self,
        path: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None
    ) -> Optional[requests.Response]:
        """
        Issue a GET request against the GitHub API.

        Args:
            path: API path starting with a slash.
            params: Optional query parameters.
            headers: Extra headers for this request only.

        Returns:
            The HTTP 200 response, or None on HTTP 404.

        Raises:
            RemoteUnavailable: On network errors, auth failures, rate limits
                               or server errors.
        """
        url = f"{GITHUB_API_BASE}{path}"
        logger.debug(f"GET {url} params={params}")

        kwargs = {"params": params, "timeout": self.timeout}
        if headers:
            kwargs["headers"] = headers

        try:
            response = self.session.get(url, **kwargs)
        except requests.exceptions.Timeout:
            raise RemoteUnavailable("GitHub API request timeout")
        except requests.exceptions.ConnectionError as e:
            raise RemoteUnavailable(f"Connection error: {e}")
        except requests.exceptions.RequestException as e:
            raise RemoteUnavailable(f"GitHub API request failed: {e}")

        if response.status_code == 200:
            return response

        if response.status_code == 404:
            logger.warning(f"GitHub returned 404 for {url}")
            return None

        is_limited, wait_time = check_rate_limit(response)
        if is_limited:
            raise RemoteUnavailable(
                f"GitHub API rate limit exceeded, resets in {wait_time}s",
                status_code=response.status_code
            )

        if response.status_code == 401:
            raise RemoteUnavailable(
                "GitHub authentication failed. Check GITHUB_TOKEN.",
                status_code=401
            )

        if response.status_code == 403:
            raise RemoteUnavailable(
                f"GitHub denied access to {self.repository}",
                status_code=403
            )

        raise RemoteUnavailable(
            f"GitHub API error: HTTP {response.status_code}",
            status_code=response.status_code
        )

    def _get(self, path: str, params: Optional[dict] = None) -> Optional[Any]:
        """
        GET a GitHub API path and decode the JSON body.

        Returns:
            Decoded JSON body, or None on HTTP 404.

        Raises:
            RemoteUnavailable: As for ``_send``, or if the body is not JSON.
        """
        response = self._send(path, params=params)
        if response is None:
            return None

        try:
            return response.json()
        except ValueError:
            raise RemoteUnavailable("GitHub API returned invalid JSON", status_code=200)

    def _get_raw(self, path: str, params: Optional[dict] = None) -> Optional[str]:
        """GET a contents path as raw file text, or None on HTTP 404."""
        response = self._send(path, params=params, headers={"Accept": RAW_MEDIA_TYPE})
        if response is None:
            return None

        response.encoding = "utf-8"
        return response.text

    def fetch_latest_revision(self) -> Optional[RevisionRef]:
        """
        Get the most recent commit touching the tracked file.

        Returns:
            RevisionRef of the newest commit, or None if the file has no
            history (deleted, path typo, unknown repository).

        Raises:
            RemoteUnavailable: If GitHub cannot be reached.
        """
        params = {"path": self.file_path, "per_page": 1}
        if self.branch:
            params["sha"] = self.branch

        data = self._get(f"/repos/{self.owner}/{self.repo}/commits", params=params)

        if not data or not isinstance(data, list):
            logger.info(f"No commits found for {self.repository}:{self.file_path}")
            return None

        revision = RevisionRef.from_api(data[0])
        if not revision.sha:
            logger.warning("Latest commit has no sha, ignoring")
            return None

        logger.debug(f"Latest revision of {self.file_path}: {revision.sha[:7]}")
        return revision

    def fetch_file_content(self) -> Optional[str]:
        """
        Download the current text of the tracked file.

        Returns:
            Decoded file text, or None if the file is absent.

        Raises:
            RemoteUnavailable: If GitHub cannot be reached.
        """
        params = {"ref": self.branch} if self.branch else None
        path = f"/repos/{self.owner}/{self.repo}/contents/{quote(self.file_path.lstrip('/'))}"
        data = self._get(path, params=params)

        # A list means the path is a directory
        if not isinstance(data, dict):
            return None

        if data.get("encoding") == "none":
            # Files over 1 MB come back without an inline body
            logger.warning(
                f"{self.file_path} is too large for inline content "
                f"({data.get('size', 'unknown')} bytes), downloading raw"
            )
            text = self._get_raw(path, params=params)
        else:
            text = decode_content(data)
        if text is not None:
            logger.info(f"Fetched {self.file_path} ({len(text)} chars)")
        return text

    def commit_history_url(self) -> str:
        """Link to the commit history of the tracked file on github.com."""
        return f"{GITHUB_WEB_BASE}/{self.owner}/{self.repo}/commits/{self.branch}/{self.file_path}"

    def check_connection(self) -> bool:
        """
        Verify that the configured repository is reachable.

        Returns:
            True if GitHub answered for the repository, False otherwise.
        """
        try:
            data = self._get(f"/repos/{self.owner}/{self.repo}")
        except RemoteUnavailable as e:
            logger.warning(f"GitHub connection check failed: {e}")
            return False

        if data is None:
            logger.warning(f"Repository {self.repository} not found or not accessible")
            return False

        logger.debug(f"GitHub connection OK for {self.repository}")
        return True
