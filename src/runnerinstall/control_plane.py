"""
GitHub Actions control-plane client.

Thin httpx client for the three calls the installer needs: a runner
registration token, the list of registered runners (to confirm the new
runner came online), and the latest runner release.

The client does not retry; it classifies failures so the RetryExecutor
can. Authentication problems and missing repositories are fatal;
rate limiting, server errors and transport errors are transient.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import httpx

from runnerinstall import __version__
from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.contracts.timeouts import HTTP_CLIENT_TIMEOUT_S, RETRYABLE_HTTP_STATUS_CODES
from runnerinstall.errors import FatalError, TransientError

logger = logging.getLogger(__name__)

RUNNER_RELEASE_REPO = "actions/runner"


@dataclass(frozen=True)
class RunnerRegistration:
    """A runner as the control plane sees it."""

    id: int
    name: str
    status: str
    busy: bool = False
    labels: Tuple[str, ...] = ()

    @property
    def online(self) -> bool:
        return self.status == "online"


@dataclass(frozen=True)
class RunnerRelease:
    version: str
    download_url: str


def runner_asset_name(version: str, os_name: str = "linux", arch: str = "x64") -> str:
    return f"actions-runner-{os_name}-{arch}-{version}.tar.gz"


def runner_release(version: str, os_name: str = "linux", arch: str = "x64") -> RunnerRelease:
    """Release descriptor for a pinned version, without an API call."""
    version = version.lstrip("v")
    return RunnerRelease(
        version=version,
        download_url=(
            f"https://github.com/{RUNNER_RELEASE_REPO}/releases/download/"
            f"v{version}/{runner_asset_name(version, os_name, arch)}"
        ),
    )


class ControlPlane(Protocol):
    """What the installer needs from the CI control plane."""

    registration_url: str

    def registration_token(self) -> str:
        ...

    def remove_token(self) -> str:
        ...

    def find_runner(self, name: str) -> Optional[RunnerRegistration]:
        ...

    def latest_runner_release(self, os_name: str = "linux", arch: str = "x64") -> RunnerRelease:
        ...


class GitHubControlPlane:
    """
    GitHub REST API client for repository-level runners.

    Example:
        with GitHubControlPlane("octo/app", token=pat) as github:
            token = github.registration_token()
            runner = github.find_runner("ci-runner-1")
    """

    def __init__(
        self,
        repository: str,
        token: str,
        api_url: str = "https://api.github.com",
        github_url: str = "https://github.com",
        timeout: float = HTTP_CLIENT_TIMEOUT_S,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            repository: owner/repo
            token: Personal access token with repo admin scope
            api_url: REST API base URL (GitHub Enterprise differs)
            github_url: Web URL the runner registers against
            timeout: Per-request timeout in seconds
            transport: Custom httpx transport (tests use MockTransport)
        """
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self.registration_url = f"{github_url.rstrip('/')}/{repository}"
        self._client = httpx.Client(
            base_url=self.api_url,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": f"runnerinstall/{__version__}",
            },
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> "GitHubControlPlane":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _format_github_error(response: httpx.Response) -> str:
        """Format a GitHub API error response for human readability."""
        try:
            message = response.json().get("message", response.text)
        except (json.JSONDecodeError, ValueError, AttributeError):
            message = response.text
        return f"HTTP {response.status_code}: {message}"

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientError(f"GitHub API request {method} {path} failed: {e}")

        status = response.status_code
        if status < 400:
            return response

        detail = self._format_github_error(response)
        rate_limited = status == 403 and response.headers.get("x-ratelimit-remaining") == "0"
        if status in RETRYABLE_HTTP_STATUS_CODES or rate_limited:
            logger.warning(f"GitHub API {method} {path} returned {detail}")
            raise TransientError(f"GitHub API {method} {path}: {detail}")
        if status in (401, 403):
            raise FatalError(
                f"GitHub authentication failed for {self.repository}: {detail}",
                ErrorCode.GITHUB_AUTH_FAILED,
            )
        if status == 404:
            raise FatalError(
                f"Repository {self.repository} not found or not accessible: {detail}",
                ErrorCode.GITHUB_REGISTRATION_FAILED,
            )
        raise FatalError(f"GitHub API {method} {path}: {detail}", ErrorCode.GITHUB_REGISTRATION_FAILED)

    def _runner_token(self, kind: str) -> str:
        response = self._request("POST", f"/repos/{self.repository}/actions/runners/{kind}")
        token = response.json().get("token")
        if not token:
            raise FatalError(
                f"GitHub returned no {kind} for {self.repository}",
                ErrorCode.GITHUB_REGISTRATION_FAILED,
            )
        return token

    def registration_token(self) -> str:
        """Create a short-lived runner registration token."""
        token = self._runner_token("registration-token")
        logger.info(f"Obtained registration token for {self.repository}")
        return token

    def remove_token(self) -> str:
        """Create a short-lived token for ``config.sh remove``."""
        token = self._runner_token("remove-token")
        logger.info(f"Obtained remove token for {self.repository}")
        return token

    def find_runner(self, name: str) -> Optional[RunnerRegistration]:
        """Look up a registered runner by name, following pagination."""
        page = 1
        while True:
            response = self._request(
                "GET",
                f"/repos/{self.repository}/actions/runners",
                params={"per_page": 100, "page": page},
            )
            data = response.json()
            runners = data.get("runners", [])
            for runner in runners:
                if runner.get("name") == name:
                    return RunnerRegistration(
                        id=runner["id"],
                        name=runner["name"],
                        status=runner.get("status", "unknown"),
                        busy=bool(runner.get("busy", False)),
                        labels=tuple(label.get("name", "") for label in runner.get("labels", [])),
                    )
            if len(runners) < 100 or page * 100 >= data.get("total_count", 0):
                return None
            page += 1

    def latest_runner_release(self, os_name: str = "linux", arch: str = "x64") -> RunnerRelease:
        """Resolve the newest runner release and its tarball URL."""
        response = self._request("GET", f"/repos/{RUNNER_RELEASE_REPO}/releases/latest")
        data = response.json()
        version = str(data.get("tag_name", "")).lstrip("v")
        if not version:
            raise TransientError("GitHub returned a runner release without a tag name")

        asset_name = runner_asset_name(version, os_name, arch)
        for asset in data.get("assets", []):
            if asset.get("name") == asset_name and asset.get("browser_download_url"):
                return RunnerRelease(version=version, download_url=asset["browser_download_url"])
        return runner_release(version, os_name, arch)
