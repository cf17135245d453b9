"""Client for the remote reference registry.

Talks JSON over HTTP to the registry server: pull, lightweight existence
check, staleness check, push and pull-count recording. Push eligibility is
gated client-side before any request is sent.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from github import Github, GithubException

from .config import Config
from .models import ReferenceData
from .repo_source import LocalRepoSource, RemoteRepoSource, RepoSource


logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base class for registry sync errors."""

    pass


class NetworkError(SyncError):
    """Transport failure or unexpected HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(SyncError):
    def __init__(self, message: str = "Authentication required. Set REFSYNC_TOKEN or log in first."):
        super().__init__(message)


class RateLimitError(SyncError):
    def __init__(self, message: str = "Rate limit exceeded. You can push up to 3 times per repo per day."):
        super().__init__(message)


class ConflictError(SyncError):
    """The registry holds a newer reference than the one being pushed."""

    def __init__(
        self,
        message: str = "A newer reference already exists on the server.",
        remote_commit_sha: Optional[str] = None,
    ):
        super().__init__(message)
        self.remote_commit_sha = remote_commit_sha


class PushNotAllowedError(SyncError):
    """The repository is not eligible for pushing.

    ``reason`` is one of ``local``, ``not-github`` or ``low-stars``.
    """

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


@dataclass
class RemoteCheck:
    exists: bool
    commit_sha: Optional[str] = None
    analyzed_at: Optional[str] = None


@dataclass
class StalenessResult:
    is_stale: bool
    local_commit_sha: str
    remote_commit_sha: Optional[str] = None


@dataclass
class CanPushResult:
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    stars: Optional[int] = None


class SyncClient:
    """HTTP client for the reference registry."""

    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        """Initialize the sync client.

        Args:
            config: Configuration object
            session: Optional requests session override
        """
        self.config = config
        self.api_base = config.api_base.rstrip("/")
        self.timeout = config.sync_timeout
        self.session = session or requests.Session()

    def _post(self, path: str, payload: Dict[str, Any], token: Optional[str] = None) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        url = f"{self.api_base}{path}"
        try:
            return self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(f"Failed to connect to {self.api_base}: {e}")

    @staticmethod
    def _error_body(response: requests.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    # ========== Read Operations ==========

    def pull(self, full_name: str, reference_name: Optional[str] = None) -> Optional[ReferenceData]:
        """Fetch a reference from the registry.

        Returns:
            ReferenceData, or None if the registry has none

        Raises:
            NetworkError: On transport failure or unexpected status
        """
        payload: Dict[str, Any] = {"fullName": full_name}
        if reference_name:
            payload["referenceName"] = reference_name

        response = self._post("/api/references/pull", payload)

        if response.status_code == 404:
            return None
        if response.status_code == 400:
            raise SyncError(self._error_body(response).get("message") or "Invalid request")
        if not response.ok:
            raise NetworkError(f"Failed to pull reference: {response.reason}", response.status_code)

        return ReferenceData.from_dict(response.json())

    def check_remote(self, full_name: str, reference_name: Optional[str] = None) -> RemoteCheck:
        """Lightweight existence check; never counts as a pull."""
        payload: Dict[str, Any] = {"fullName": full_name}
        if reference_name:
            payload["referenceName"] = reference_name

        response = self._post("/api/references/check", payload)

        if response.status_code == 404:
            return RemoteCheck(exists=False)
        if not response.ok:
            raise NetworkError(f"Failed to check remote: {response.reason}", response.status_code)

        data = response.json()
        if not data.get("exists"):
            return RemoteCheck(exists=False)
        return RemoteCheck(exists=True, commit_sha=data.get("commitSha"), analyzed_at=data.get("analyzedAt"))

    def check_staleness(self, full_name: str, local_commit_sha: str) -> StalenessResult:
        """Compare a local SHA with the registry's.

        Only a remote reference with a different SHA is stale.
        """
        remote = self.check_remote(full_name)
        if not remote.exists or not remote.commit_sha:
            return StalenessResult(is_stale=False, local_commit_sha=local_commit_sha)

        return StalenessResult(
            is_stale=local_commit_sha != remote.commit_sha,
            local_commit_sha=local_commit_sha,
            remote_commit_sha=remote.commit_sha,
        )

    def record_pull(self, full_name: str, reference_name: Optional[str] = None) -> None:
        """Bump the registry's pull counter for a reference."""
        payload: Dict[str, Any] = {"fullName": full_name}
        if reference_name:
            payload["referenceName"] = reference_name

        response = self._post("/api/references/record-pull", payload)
        if not response.ok:
            raise NetworkError(f"Failed to record pull: {response.reason}", response.status_code)

    # ========== Push ==========

    def push(
        self,
        reference: ReferenceData,
        token: str,
        repo_metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Push a reference to the registry.

        Args:
            reference: Reference to push
            token: Bearer token identifying the user
            repo_metadata: Optional repoDescription/repoStars/repoLanguage/repoDefaultBranch

        Returns:
            ``{"success": True}`` on acceptance

        Raises:
            AuthenticationError: On HTTP 401
            RateLimitError: On HTTP 429
            ConflictError: On HTTP 409, carrying the registry's commit SHA
            SyncError: On HTTP 400
            NetworkError: On transport failure or any other status
        """
        payload = {
            "fullName": reference.full_name,
            "referenceName": reference.reference_name,
            "description": reference.description,
            "content": reference.content,
            "commitSha": reference.commit_sha,
            "analyzedAt": reference.generated_at,
        }
        payload.update({k: v for k, v in (repo_metadata or {}).items() if v is not None})

        response = self._post("/api/references/push", payload, token=token)

        if response.status_code == 401:
            raise AuthenticationError()
        if response.status_code == 429:
            raise RateLimitError()
        if response.status_code == 409:
            body = self._error_body(response)
            raise ConflictError(
                body.get("message") or "A newer reference already exists on the server.",
                body.get("remoteCommitSha"),
            )
        if response.status_code == 400:
            body = self._error_body(response)
            raise SyncError(body.get("message") or body.get("error") or "Invalid request")
        if not response.ok:
            raise NetworkError(f"Failed to push reference: {response.reason}", response.status_code)

        logger.info(f"Pushed {reference.full_name} ({reference.reference_name}) at {reference.commit_sha[:7]}")
        return {"success": True}

    # ========== Push Eligibility ==========

    def fetch_repo_stars(self, owner: str, repo: str) -> int:
        """Upstream star count, or 0 on any failure."""
        try:
            github = Github(self.config.github_token) if self.config.github_token else Github()
            return github.get_repo(f"{owner}/{repo}").stargazers_count or 0
        except GithubException as e:
            logger.warning(f"Could not fetch stars for {owner}/{repo}: {e}")
            return 0
        except Exception as e:
            logger.warning(f"Star lookup for {owner}/{repo} failed: {e}")
            return 0

    def can_push(self, source: RepoSource) -> CanPushResult:
        """Decide whether a repository may be pushed to the registry."""
        if isinstance(source, LocalRepoSource):
            return CanPushResult(
                allowed=False,
                reason="local",
                message="Local repositories cannot be pushed. "
                "Only remote repositories with a public URL are supported.",
            )

        if isinstance(source, RemoteRepoSource):
            if source.provider != "github":
                return CanPushResult(
                    allowed=False,
                    reason="not-github",
                    message=f"{source.provider} repositories are not yet supported. Only GitHub is.",
                )

            min_stars = self.config.min_stars_for_push
            if min_stars <= 0:
                return CanPushResult(allowed=True)

            stars = self.fetch_repo_stars(source.owner, source.repo)
            if stars < min_stars:
                return CanPushResult(
                    allowed=False,
                    reason="low-stars",
                    message=f"Repository has {stars} stars, but {min_stars}+ required for push.",
                    stars=stars,
                )
            return CanPushResult(allowed=True, stars=stars)

        raise TypeError(f"Unknown repository source: {source!r}")

    def validate_push_allowed(self, source: RepoSource) -> None:
        """Raise PushNotAllowedError if ``source`` may not be pushed."""
        result = self.can_push(source)
        if not result.allowed:
            raise PushNotAllowedError(result.message or "Push not allowed", result.reason or "local")
