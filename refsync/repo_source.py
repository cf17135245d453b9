"""Repository source parsing.

A repository is identified either by a remote hosting location or by a
local checkout. Both variants carry a ``qualified_name`` which is the
stable key joining the local cache and the remote registry.
"""

import hashlib
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union


class RepoSourceError(ValueError):
    """Raised when a repository input cannot be parsed."""

    pass


class PathNotFoundError(RepoSourceError):
    """Raised when a local repository path does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Path does not exist: {path}")
        self.path = path


class NotGitRepoError(RepoSourceError):
    """Raised when a local path is not a git repository."""

    def __init__(self, path: str):
        super().__init__(f"Directory is not a git repository: {path}")
        self.path = path


PROVIDER_HOSTS = {
    "github.com": "github",
    "gitlab.com": "gitlab",
    "bitbucket.org": "bitbucket",
}

HOSTS_BY_PROVIDER = {provider: host for host, provider in PROVIDER_HOSTS.items()}

HTTPS_URL_RE = re.compile(
    r"^https?://(github\.com|gitlab\.com|bitbucket\.org)/([^/]+)/([^/]+?)(?:\.git)?/?$"
)
SSH_URL_RE = re.compile(r"^git@(github\.com|gitlab\.com|bitbucket\.org):([^/]+)/([^/]+?)(?:\.git)?$")
SHORT_FORMAT_RE = re.compile(r"^([^/:@\s]+)/([^/:@\s]+)$")


@dataclass(frozen=True)
class RemoteRepoSource:
    """A repository hosted by a git provider."""

    provider: str
    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def qualified_name(self) -> str:
        return f"{self.provider}:{self.owner}/{self.repo}"

    @property
    def clone_url(self) -> str:
        return f"https://{HOSTS_BY_PROVIDER[self.provider]}/{self.owner}/{self.repo}.git"


@dataclass(frozen=True)
class LocalRepoSource:
    """A repository that only exists as a local checkout."""

    path: str
    name: str

    @property
    def qualified_name(self) -> str:
        return f"local:{hash_path(self.path)}"


RepoSource = Union[RemoteRepoSource, LocalRepoSource]


def hash_path(path: str) -> str:
    """Short, stable identifier for a local path."""
    return hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]


def _parse_remote_url(text: str) -> Optional[RemoteRepoSource]:
    for pattern in (HTTPS_URL_RE, SSH_URL_RE):
        match = pattern.match(text)
        if match:
            host, owner, repo = match.groups()
            return RemoteRepoSource(provider=PROVIDER_HOSTS[host], owner=owner, repo=repo)
    return None


def _parse_local_path(text: str) -> LocalRepoSource:
    path = Path(os.path.expanduser(text)).resolve()

    if not path.exists():
        raise PathNotFoundError(str(path))
    if not path.is_dir():
        raise RepoSourceError(f"Path is not a directory: {path}")
    if not (path / ".git").exists():
        raise NotGitRepoError(str(path))

    return LocalRepoSource(path=str(path), name=path.name)


def parse_repo_input(text: str) -> RepoSource:
    """Parse user input into a repository source.

    Supported formats:
        - owner/repo (defaults to GitHub)
        - https://github.com/owner/repo (also gitlab.com, bitbucket.org)
        - git@github.com:owner/repo.git
        - ., /absolute/path, ~/path (local checkouts)

    Args:
        text: Raw repository input

    Returns:
        RemoteRepoSource or LocalRepoSource

    Raises:
        PathNotFoundError: If a local path does not exist
        NotGitRepoError: If a local path is not a git repository
        RepoSourceError: For any other unparseable input
    """
    trimmed = text.strip()

    remote = _parse_remote_url(trimmed)
    if remote:
        return remote

    if trimmed.startswith((".", "/", "~")):
        return _parse_local_path(trimmed)

    match = SHORT_FORMAT_RE.match(trimmed)
    if match:
        owner, repo = match.groups()
        return RemoteRepoSource(provider="github", owner=owner, repo=repo)

    raise RepoSourceError(
        f"Unable to parse repository input: {text}. "
        "Expected owner/repo, https://github.com/owner/repo, "
        "git@github.com:owner/repo.git, or a local path"
    )


def parse_qualified_name(qualified_name: str) -> Optional[RemoteRepoSource]:
    """Rebuild a remote source from its cache key, or None for local keys."""
    provider, _, full_name = qualified_name.partition(":")
    if provider not in HOSTS_BY_PROVIDER or "/" not in full_name:
        return None
    owner, repo = full_name.split("/", 1)
    return RemoteRepoSource(provider=provider, owner=owner, repo=repo)
