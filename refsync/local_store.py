"""Local repository store.

Wraps the git executable for clone, fetch, pull, rev-parse and sparse
checkout, and keeps the index consistent with what is on disk. A failed
clone leaves neither an index entry nor the directories it created.
"""

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from git import Git
from git.exc import GitCommandNotFound

from .config import Config
from .index_store import IndexStore
from .linker import Linker
from .models import (
    CacheEntry,
    ReferenceData,
    reference_file_name,
    reference_file_name_for,
    reference_stem,
    utc_now_iso,
)
from .repo_source import RemoteRepoSource, RepoSource


logger = logging.getLogger(__name__)


class CloneError(Exception):
    """Base class for local repository cache errors."""

    pass


class RepoExistsError(CloneError):
    """Raised when a clone target already exists and force is not set."""

    def __init__(self, path: Union[str, Path]):
        super().__init__(f"Repository already exists at: {path}")
        self.path = str(path)


class RepoNotFoundError(CloneError):
    """Raised when a repository is not indexed or missing on disk."""

    def __init__(self, qualified_name: str):
        super().__init__(f"Repository not found in index: {qualified_name}")
        self.qualified_name = qualified_name


class GitError(CloneError):
    """Raised when a git subprocess fails.

    ``message`` is the classified, human-actionable text. ``stderr`` is the
    raw output of the failing command.
    """

    def __init__(self, message: str, command: str, exit_code: Optional[int], stderr: str = ""):
        super().__init__(message)
        self.message = message
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


# Known stderr fragments and the advice shown for them. First match wins.
GIT_ERROR_HINTS: List[Tuple[Tuple[str, ...], str]] = [
    (
        ("could not resolve host", "network is unreachable", "connection timed out",
         "failed to connect", "connection refused", "unable to access"),
        "Network unreachable. Check your internet connection and try again.",
    ),
    (
        ("authentication failed", "could not read username", "terminal prompts disabled",
         "permission denied (publickey)", "invalid username or password"),
        "Authentication failed. The repository may be private or your credentials are invalid.",
    ),
    (
        ("repository not found", "does not appear to be a git repository"),
        "Repository not found upstream. Check the owner and repository name.",
    ),
    (
        ("remote branch", "couldn't find remote ref"),
        "Branch not found on the remote.",
    ),
    (
        ("conflict", "automatic merge failed", "not possible to fast-forward",
         "divergent branches", "refusing to merge unrelated histories"),
        "Merge conflict: local history has diverged from the remote. "
        "Remove and clone the repository again.",
    ),
    (
        ("would be overwritten", "please commit your changes or stash them"),
        "Local changes would be overwritten. Commit, stash or discard them first.",
    ),
    (
        ("not a git repository",),
        "Not a git repository.",
    ),
    (
        ("already exists and is not an empty directory",),
        "Target directory already exists and is not empty.",
    ),
    (
        ("no space left on device",),
        "No space left on device.",
    ),
]


def classify_git_error(stderr: str) -> str:
    """Turn raw git stderr into a short actionable message."""
    lowered = stderr.lower()
    for fragments, hint in GIT_ERROR_HINTS:
        if any(fragment in lowered for fragment in fragments):
            return hint
    last_line = stderr.strip().splitlines()[-1] if stderr.strip() else "unknown error"
    return f"Git command failed: {last_line}"


def run_git(args: Sequence[str], cwd: Optional[Union[str, Path]] = None) -> str:
    """Run a git command and return its stripped stdout.

    Args:
        args: Git arguments (without the 'git' prefix)
        cwd: Working directory

    Raises:
        GitError: If git exits non-zero or cannot be started
    """
    command = "git " + " ".join(args)
    logger.debug(f"Running: {command} in {cwd or '.'}")

    try:
        status, stdout, stderr = Git(str(cwd) if cwd else None).execute(
            ["git", *args],
            with_extended_output=True,
            with_exceptions=False,
            env={"GIT_TERMINAL_PROMPT": "0"},
        )
    except (GitCommandNotFound, OSError) as e:
        raise GitError(f"Could not run git: {e}", command, None, str(e))

    if status != 0:
        raise GitError(classify_git_error(stderr or ""), command, status, stderr or "")
    return (stdout or "").strip()


def get_commit_sha(repo_path: Union[str, Path]) -> str:
    """Return HEAD's SHA for a working tree.

    Raises:
        GitError: If the path is not a git repository
    """
    return run_git(["rev-parse", "HEAD"], repo_path)


def is_shallow(repo_path: Union[str, Path]) -> bool:
    return run_git(["rev-parse", "--is-shallow-repository"], repo_path) == "true"


@dataclass
class UpdateResult:
    """Outcome of updating one repository."""

    previous_sha: str
    current_sha: str
    updated: bool
    unshallowed: bool = False


class LocalRepoStore:
    """Clone, update and remove repositories under the configured repo root."""

    def __init__(
        self,
        config: Config,
        index: Optional[IndexStore] = None,
        linker: Optional[Linker] = None,
    ):
        """Initialize the store.

        Args:
            config: Configuration object
            index: Index store (built from config if omitted)
            linker: Agent linker (built from config if omitted)
        """
        self.config = config
        self.index = index or IndexStore(config)
        self.linker = linker or Linker(config)

    # ========== Paths ==========

    def get_repo_path(self, source: RemoteRepoSource) -> Path:
        """Working tree location: ``{repo_root}/{provider}/{owner}/{repo}``."""
        return self.config.repo_root / source.provider / source.owner / source.repo

    def reference_path(self, file_name: str) -> Path:
        return self.config.references_dir / file_name

    def meta_path(self, file_name: str) -> Path:
        return self.config.meta_dir / reference_stem(file_name)

    # ========== Clone ==========

    def clone(
        self,
        source: RepoSource,
        shallow: bool = False,
        branch: Optional[str] = None,
        sparse: bool = False,
        force: bool = False,
    ) -> Path:
        """Clone a remote repository into the cache.

        Args:
            source: Repository to clone
            shallow: Clone with ``--depth 1``
            branch: Branch to check out
            sparse: Blobless sparse clone of the configured directories
            force: Delete an existing target directory first

        Returns:
            Path of the new working tree

        Raises:
            RepoExistsError: If the target exists and force is not set
            GitError: If any git command fails
        """
        if not isinstance(source, RemoteRepoSource):
            raise CloneError("Only remote repositories can be cloned")

        repo_path = self.get_repo_path(source)

        if repo_path.exists():
            if not force:
                raise RepoExistsError(repo_path)
            logger.info(f"Removing existing clone at {repo_path}")
            shutil.rmtree(repo_path)

        created_dirs = self._missing_parents(repo_path)
        repo_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Cloning {source.full_name} into {repo_path}")

        try:
            if sparse:
                self._clone_sparse(source.clone_url, repo_path, shallow, branch)
            else:
                self._clone_standard(source.clone_url, repo_path, shallow, branch)
            commit_sha = get_commit_sha(repo_path)
        except GitError as e:
            logger.error(f"Clone of {source.full_name} failed: {e.message}")
            self._cleanup_failed_clone(repo_path, created_dirs)
            raise

        file_name = reference_file_name(source)
        entry = CacheEntry(local_path=str(repo_path), commit_sha=commit_sha)
        if self.reference_path(file_name).exists():
            entry.add_reference(file_name)

        self.index.upsert(source.qualified_name, entry)
        logger.info(f"Cloned {source.qualified_name} at {commit_sha[:7]}")
        return repo_path

    @staticmethod
    def _clone_args(shallow: bool, branch: Optional[str]) -> List[str]:
        args = []
        if shallow:
            args += ["--depth", "1"]
        if branch:
            args += ["--branch", branch]
        return args

    def _clone_standard(self, clone_url: str, repo_path: Path, shallow: bool, branch: Optional[str]) -> None:
        run_git(["clone", *self._clone_args(shallow, branch), clone_url, str(repo_path)])

    def _clone_sparse(self, clone_url: str, repo_path: Path, shallow: bool, branch: Optional[str]) -> None:
        args = ["clone", "--filter=blob:none", "--no-checkout", "--sparse"]
        run_git([*args, *self._clone_args(shallow, branch), clone_url, str(repo_path)])
        run_git(["sparse-checkout", "set", *self.config.sparse_checkout_dirs], repo_path)
        run_git(["checkout"], repo_path)

    def _missing_parents(self, repo_path: Path) -> List[Path]:
        """Provider and owner directories that a clone into repo_path would create, deepest first."""
        repo_root = self.config.repo_root.resolve()
        missing = []
        for parent in repo_path.resolve().parents:
            if parent == repo_root or parent.exists():
                break
            missing.append(parent)
        return missing

    @staticmethod
    def _cleanup_failed_clone(repo_path: Path, created_dirs: List[Path]) -> None:
        if repo_path.exists():
            shutil.rmtree(repo_path, ignore_errors=True)
        for directory in created_dirs:
            if directory.exists() and not any(directory.iterdir()):
                directory.rmdir()

    @staticmethod
    def _remove_empty_owner_dir(repo_path: Path) -> None:
        owner_dir = repo_path.parent
        if owner_dir.exists() and not any(owner_dir.iterdir()):
            owner_dir.rmdir()

    # ========== Update ==========

    def update(self, qualified_name: str, unshallow: bool = False) -> UpdateResult:
        """Fetch and fast-forward a cached repository.

        Args:
            qualified_name: Cache key of the repository
            unshallow: Convert a shallow clone to a full one while fetching

        Raises:
            RepoNotFoundError: If not indexed or missing on disk
            GitError: If fetch or pull fails
        """
        entry = self.index.get(qualified_name)
        if entry is None:
            raise RepoNotFoundError(qualified_name)

        repo_path = Path(entry.local_path)
        if not repo_path.exists():
            raise RepoNotFoundError(qualified_name)

        previous_sha = get_commit_sha(repo_path)

        fetch_args = ["fetch"]
        unshallowed = False
        if unshallow and is_shallow(repo_path):
            fetch_args.append("--unshallow")
            unshallowed = True

        run_git(fetch_args, repo_path)
        run_git(["pull", "--ff-only"], repo_path)
        current_sha = get_commit_sha(repo_path)

        entry.updated_at = utc_now_iso()
        entry.commit_sha = current_sha
        self.index.upsert(qualified_name, entry)

        result = UpdateResult(
            previous_sha=previous_sha,
            current_sha=current_sha,
            updated=previous_sha != current_sha,
            unshallowed=unshallowed,
        )
        if result.updated:
            logger.info(f"Updated {qualified_name}: {previous_sha[:7]} -> {current_sha[:7]}")
        return result

    # ========== Remove ==========

    def remove(self, qualified_name: str, reference_only: bool = False, repo_only: bool = False) -> bool:
        """Remove a repository and/or its references from the cache.

        Args:
            qualified_name: Cache key of the repository
            reference_only: Keep the working tree, drop references
            repo_only: Keep references, drop the working tree

        Returns:
            False if the repository is not indexed
        """
        if reference_only and repo_only:
            raise ValueError("reference_only and repo_only are mutually exclusive")

        entry = self.index.get(qualified_name)
        if entry is None:
            return False

        remove_repo_files = not reference_only
        remove_reference_files = not repo_only

        if remove_repo_files:
            repo_path = Path(entry.local_path)
            if repo_path.exists():
                shutil.rmtree(repo_path)
                self._remove_empty_owner_dir(repo_path)
                logger.info(f"Deleted working tree {repo_path}")

        if remove_reference_files:
            self.delete_reference_files(entry)

        if remove_repo_files:
            self.index.remove(qualified_name)
        elif remove_reference_files:
            entry.clear_references()
            entry.updated_at = utc_now_iso()
            self.index.upsert(qualified_name, entry)

        return True

    def delete_reference_files(self, entry: CacheEntry) -> None:
        """Delete reference files, metadata directories and agent links of an entry."""
        file_names = list(entry.references)
        if entry.primary and entry.primary not in file_names:
            file_names.append(entry.primary)

        for file_name in file_names:
            reference_path = self.reference_path(file_name)
            if reference_path.exists():
                reference_path.unlink()

            meta_path = self.meta_path(file_name)
            if meta_path.exists():
                shutil.rmtree(meta_path)

            self.linker.unlink_reference(reference_stem(file_name))

    # ========== References ==========

    def install_reference(
        self,
        qualified_name: str,
        reference: ReferenceData,
        keywords: Optional[List[str]] = None,
    ) -> Path:
        """Store a reference document and associate it with a cached repository.

        Raises:
            RepoNotFoundError: If the repository is not indexed
        """
        entry = self.index.get(qualified_name)
        if entry is None:
            raise RepoNotFoundError(qualified_name)

        file_name = reference_file_name_for(reference.full_name)
        reference_path = self.reference_path(file_name)
        reference_path.parent.mkdir(parents=True, exist_ok=True)
        reference_path.write_text(reference.content, encoding="utf-8")

        meta_path = self.meta_path(file_name)
        meta_path.mkdir(parents=True, exist_ok=True)
        meta = {
            "fullName": reference.full_name,
            "referenceName": reference.reference_name,
            "description": reference.description,
            "commitSha": reference.commit_sha,
            "generatedAt": reference.generated_at,
        }
        (meta_path / "meta.json").write_text(json.dumps(meta, indent=2), encoding="utf-8")

        self.linker.link_reference(reference_stem(file_name), reference_path)

        entry.add_reference(file_name)
        for keyword in keywords or []:
            if keyword not in entry.keywords:
                entry.keywords.append(keyword)
        entry.updated_at = utc_now_iso()
        self.index.upsert(qualified_name, entry)

        logger.info(f"Installed reference {file_name} for {qualified_name}")
        return reference_path

    def read_reference(self, qualified_name: str) -> Optional[ReferenceData]:
        """Load the primary reference of a cached repository, if installed."""
        entry = self.index.get(qualified_name)
        if entry is None or not entry.primary:
            return None

        reference_path = self.reference_path(entry.primary)
        meta_file = self.meta_path(entry.primary) / "meta.json"
        if not reference_path.exists() or not meta_file.exists():
            return None

        meta = json.loads(meta_file.read_text(encoding="utf-8"))
        return ReferenceData(
            full_name=meta["fullName"],
            reference_name=meta["referenceName"],
            description=meta.get("description", ""),
            content=reference_path.read_text(encoding="utf-8"),
            commit_sha=meta["commitSha"],
            generated_at=meta["generatedAt"],
        )

    # ========== Queries ==========

    def list_repos(self) -> List[Tuple[str, CacheEntry]]:
        return sorted(self.index.read().items())

    def is_cloned(self, qualified_name: str) -> bool:
        return self.get_local_path(qualified_name) is not None

    def get_local_path(self, qualified_name: str) -> Optional[Path]:
        """Working tree path, or None unless both indexed and present on disk."""
        entry = self.index.get(qualified_name)
        if entry is None:
            return None
        path = Path(entry.local_path)
        if not path.exists():
            return None
        return path

    def is_stale(self, qualified_name: str) -> bool:
        """Compare HEAD with the last SHA recorded in the index."""
        entry = self.index.get(qualified_name)
        if entry is None or not entry.commit_sha or not Path(entry.local_path).exists():
            return False
        try:
            return get_commit_sha(entry.local_path) != entry.commit_sha
        except GitError as e:
            logger.debug(f"Could not read HEAD of {qualified_name}: {e.message}")
            return False
