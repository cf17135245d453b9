"""Repo Manager - batch maintenance of the local repository cache.

This module provides:
- Status reporting across all cached repositories
- Batch update with per-repository error isolation
- Pruning of dangling index entries and detection of orphaned clones
- Garbage collection by age and/or missing reference
- Discovery of clones made outside refsync

Every batch loop checks the cancellation event before each item. A set
event stops the loop and the partial result is returned with
``cancelled=True``. A git command already running is never interrupted.
"""

import logging
import os
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Set, Tuple

from .config import Config
from .local_store import GitError, LocalRepoStore, RepoNotFoundError, get_commit_sha
from .models import CacheEntry, display_name


logger = logging.getLogger(__name__)


@dataclass
class RepoStatusSummary:
    """Aggregate state of the cache."""

    total: int = 0
    with_reference: int = 0
    stale: int = 0
    missing: int = 0
    disk_bytes: int = 0
    cancelled: bool = False


@dataclass
class UpdateError:
    repo: str
    error: str


@dataclass
class UpdateAllResult:
    updated: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    unshallowed: List[str] = field(default_factory=list)
    errors: List[UpdateError] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class PruneResult:
    removed_from_index: List[str] = field(default_factory=list)
    orphaned_dirs: List[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class GcRemoval:
    repo: str
    reason: str
    size_bytes: int


@dataclass
class GcResult:
    removed: List[GcRemoval] = field(default_factory=list)
    freed_bytes: int = 0
    errors: List[UpdateError] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class DiscoveredRepo:
    full_name: str
    qualified_name: str
    local_path: str


@dataclass
class DiscoverResult:
    discovered: List[DiscoveredRepo] = field(default_factory=list)
    already_indexed: int = 0
    cancelled: bool = False


def get_dir_size(dir_path: Path) -> int:
    """Recursive size of regular files under a directory (symlinks not followed)."""
    total = 0
    for root, _dirs, files in os.walk(dir_path):
        for name in files:
            file_path = os.path.join(root, name)
            try:
                if not os.path.islink(file_path):
                    total += os.path.getsize(file_path)
            except OSError:
                continue
    return total


def get_last_access_time(repo_path: Path) -> Optional[datetime]:
    """Latest of the directory mtime and ``.git/FETCH_HEAD`` mtime."""
    try:
        latest = repo_path.stat().st_mtime
    except OSError:
        return None

    fetch_head = repo_path / ".git" / "FETCH_HEAD"
    if fetch_head.exists():
        latest = max(latest, fetch_head.stat().st_mtime)

    return datetime.fromtimestamp(latest)


def matches_pattern(name: str, pattern: Optional[str]) -> bool:
    """Case-insensitive glob match supporting ``*`` and ``?``."""
    if not pattern or pattern == "*":
        return True
    regex = "".join(
        ".*" if ch == "*" else "." if ch == "?" else re.escape(ch)
        for ch in pattern
    )
    return re.fullmatch(regex, name, re.IGNORECASE) is not None


def matches_repo(qualified_name: str, pattern: Optional[str]) -> bool:
    """Match a glob against the ``owner/repo`` name or the full cache key."""
    return matches_pattern(display_name(qualified_name), pattern) or matches_pattern(qualified_name, pattern)


class RepoManager:
    """Orchestrates the index and the local repository store."""

    def __init__(
        self,
        config: Config,
        store: Optional[LocalRepoStore] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """Initialize the repo manager.

        Args:
            config: Configuration object
            store: Local repository store (built from config if omitted)
            cancel_event: Event that stops batch operations between items
        """
        self.config = config
        self.store = store or LocalRepoStore(config)
        self.index = self.store.index
        self.cancel_event = cancel_event or threading.Event()

    def _cancelled(self, operation: str) -> bool:
        if self.cancel_event.is_set():
            logger.warning(f"{operation} cancelled")
            return True
        return False

    # ========== Status ==========

    def status(self, on_progress: Optional[Callable[[int, int, str], None]] = None) -> RepoStatusSummary:
        """Summarize every indexed repository.

        Args:
            on_progress: Called with (current, total, repo) before each item
        """
        repos = self.store.list_repos()
        summary = RepoStatusSummary(total=len(repos))

        for i, (qualified_name, entry) in enumerate(repos, start=1):
            if self._cancelled("Status scan"):
                summary.cancelled = True
                break
            if on_progress:
                on_progress(i, summary.total, display_name(qualified_name))

            repo_path = Path(entry.local_path)
            if not repo_path.exists():
                summary.missing += 1
                continue

            if entry.has_reference:
                summary.with_reference += 1
            if self.store.is_stale(qualified_name):
                summary.stale += 1
            summary.disk_bytes += get_dir_size(repo_path)

        return summary

    # ========== Update ==========

    def update_all(
        self,
        pattern: Optional[str] = None,
        dry_run: bool = False,
        unshallow: bool = False,
        on_progress: Optional[Callable[[str, str, Optional[str]], None]] = None,
        stale_only: bool = False,
    ) -> UpdateAllResult:
        """Update every indexed repository matching ``pattern``.

        A failing repository is recorded in ``errors`` and the batch continues.

        Args:
            pattern: Glob matched case-insensitively against ``owner/repo`` or the cache key
            dry_run: Report what would be updated without running git
            unshallow: Convert shallow clones to full clones
            on_progress: Called with (repo, status, message)
            stale_only: Skip repositories whose HEAD matches the SHA recorded in the index
        """
        result = UpdateAllResult()

        def progress(repo: str, status: str, message: Optional[str] = None) -> None:
            if on_progress:
                on_progress(repo, status, message)

        for qualified_name, entry in self.store.list_repos():
            if self._cancelled("Update"):
                result.cancelled = True
                break
            if not matches_repo(qualified_name, pattern):
                continue

            if not Path(entry.local_path).exists():
                result.skipped.append(qualified_name)
                progress(qualified_name, "skipped", "missing on disk")
                continue

            if stale_only and not self.store.is_stale(qualified_name):
                result.skipped.append(qualified_name)
                progress(qualified_name, "skipped", "matches recorded SHA")
                continue

            if dry_run:
                result.updated.append(qualified_name)
                progress(qualified_name, "updated", "would update")
                continue

            progress(qualified_name, "updating")
            try:
                update = self.store.update(qualified_name, unshallow=unshallow)
            except (GitError, RepoNotFoundError, OSError) as e:
                logger.error(f"Failed to update {qualified_name}: {e}")
                result.errors.append(UpdateError(repo=qualified_name, error=str(e)))
                progress(qualified_name, "error", str(e))
                continue

            if update.unshallowed:
                result.unshallowed.append(qualified_name)
                progress(qualified_name, "unshallowed", update.current_sha[:7])
            elif update.updated:
                result.updated.append(qualified_name)
                progress(qualified_name, "updated", f"{update.previous_sha[:7]} -> {update.current_sha[:7]}")
            else:
                result.skipped.append(qualified_name)
                progress(qualified_name, "skipped", "already up to date")

        return result

    # ========== Prune ==========

    def _walk_repo_root(self, repo_root: Path) -> Iterator[Tuple[str, str, str, Path]]:
        """Yield (provider, owner, repo, path) for each clone under the root."""
        if not repo_root.exists():
            return

        for provider_dir in sorted(p for p in repo_root.iterdir() if p.is_dir()):
            for owner_dir in sorted(p for p in provider_dir.iterdir() if p.is_dir()):
                for repo_dir in sorted(p for p in owner_dir.iterdir() if p.is_dir()):
                    if (repo_dir / ".git").exists():
                        yield provider_dir.name, owner_dir.name, repo_dir.name, repo_dir

    def _indexed_paths(self) -> Set[str]:
        return {os.path.normpath(entry.local_path) for entry in self.index.read().values()}

    def prune(
        self,
        dry_run: bool = False,
        on_progress: Optional[Callable[[str, str], None]] = None,
    ) -> PruneResult:
        """Reconcile the index with the disk.

        Entries whose working tree is gone are removed from the index (unless
        ``dry_run``). Clones under the repo root that no entry points to are
        reported as orphaned; they are never deleted here.
        """
        result = PruneResult()

        for qualified_name, entry in self.store.list_repos():
            if self._cancelled("Prune"):
                result.cancelled = True
                return result
            if Path(entry.local_path).exists():
                continue

            if on_progress:
                on_progress(qualified_name, "missing on disk")
            result.removed_from_index.append(qualified_name)
            if not dry_run:
                self.index.remove(qualified_name)
                logger.info(f"Pruned {qualified_name} from index")

        indexed_paths = self._indexed_paths()
        for _provider, owner, repo, repo_path in self._walk_repo_root(self.config.repo_root):
            if self._cancelled("Prune"):
                result.cancelled = True
                break
            if os.path.normpath(str(repo_path)) in indexed_paths:
                continue
            if on_progress:
                on_progress(f"{owner}/{repo}", "not in index")
            result.orphaned_dirs.append(str(repo_path))

        return result

    # ========== Garbage Collection ==========

    def gc(
        self,
        older_than_days: Optional[int] = None,
        without_reference: bool = False,
        dry_run: bool = False,
        on_progress: Optional[Callable[[str, str, int], None]] = None,
    ) -> GcResult:
        """Evict repositories by last access time and/or missing reference.

        Args:
            older_than_days: Remove repos not accessed within this many days
            without_reference: Remove repos that have no reference files
            dry_run: Report candidates without deleting anything
            on_progress: Called with (repo, reason, size_bytes)
        """
        result = GcResult()
        cutoff = datetime.now() - timedelta(days=older_than_days) if older_than_days is not None else None

        for qualified_name, entry in self.store.list_repos():
            if self._cancelled("Garbage collection"):
                result.cancelled = True
                break

            repo_path = Path(entry.local_path)
            if not repo_path.exists():
                continue

            reason = self._gc_reason(entry, repo_path, cutoff, older_than_days, without_reference)
            if not reason:
                continue

            size_bytes = get_dir_size(repo_path)
            if on_progress:
                on_progress(qualified_name, reason, size_bytes)

            if not dry_run:
                try:
                    self.store.remove(qualified_name)
                except OSError as e:
                    logger.error(f"Failed to collect {qualified_name}: {e}")
                    result.errors.append(UpdateError(repo=qualified_name, error=str(e)))
                    continue
                logger.info(f"Collected {qualified_name} ({reason}), freed {size_bytes} bytes")

            result.removed.append(GcRemoval(repo=qualified_name, reason=reason, size_bytes=size_bytes))
            result.freed_bytes += size_bytes

        return result

    @staticmethod
    def _gc_reason(
        entry: CacheEntry,
        repo_path: Path,
        cutoff: Optional[datetime],
        older_than_days: Optional[int],
        without_reference: bool,
    ) -> str:
        reasons = []
        if cutoff is not None:
            last_access = get_last_access_time(repo_path)
            if last_access is not None and last_access < cutoff:
                reasons.append(f"not accessed in {older_than_days}+ days")
        if without_reference and not entry.has_reference:
            reasons.append("no reference")
        return ", ".join(reasons)

    # ========== Discovery ==========

    def discover(
        self,
        repo_root: Optional[Path] = None,
        dry_run: bool = False,
        on_progress: Optional[Callable[[str, str], None]] = None,
    ) -> DiscoverResult:
        """Adopt clones under the repo root that are not yet indexed.

        Args:
            repo_root: Directory to scan (defaults to the configured root)
            dry_run: Report without writing to the index
            on_progress: Called with (full_name, provider)
        """
        result = DiscoverResult()
        root = Path(repo_root) if repo_root else self.config.repo_root
        indexed_paths = self._indexed_paths()

        for provider, owner, repo, repo_path in self._walk_repo_root(root):
            if self._cancelled("Discovery"):
                result.cancelled = True
                break

            if os.path.normpath(str(repo_path)) in indexed_paths:
                result.already_indexed += 1
                continue

            full_name = f"{owner}/{repo}"
            qualified_name = f"{provider}:{full_name}"
            if on_progress:
                on_progress(full_name, provider)

            if not dry_run:
                try:
                    commit_sha: Optional[str] = get_commit_sha(repo_path)
                except GitError as e:
                    logger.debug(f"Could not read HEAD of {repo_path}: {e.message}")
                    commit_sha = None
                self.index.upsert(qualified_name, CacheEntry(local_path=str(repo_path), commit_sha=commit_sha))
                logger.info(f"Discovered {qualified_name} at {repo_path}")

            result.discovered.append(
                DiscoveredRepo(full_name=full_name, qualified_name=qualified_name, local_path=str(repo_path))
            )

        return result
