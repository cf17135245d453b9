"""Reference registry - the authoritative remote store.

Read projections (get, list, pull, check) are side-effect free. ``push``
runs as one transaction and reports every business outcome (missing auth,
invalid input, rate limit, conflict) as a ``PushResult`` value. Only
storage failures raise.

Conflict resolution compares the ``analyzedAt`` timestamps claimed by
clients. A push whose timestamp is strictly older than the stored one is
rejected; clock skew between clients can therefore reorder pushes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .config import Config
from .models import ReferenceData
from .push_validation import parse_timestamp, validate_push_fields, validate_reference_content
from .registry_store import (
    ListedReference,
    PushLogEntry,
    RegistryStore,
    RemoteReference,
    RemoteRepository,
)


logger = logging.getLogger(__name__)


class PushError(str, Enum):
    """Business failures a push can report."""

    AUTH_REQUIRED = "auth_required"
    INVALID_INPUT = "invalid_input"
    INVALID_REFERENCE = "invalid_reference"
    RATE_LIMIT = "rate_limit"
    CONFLICT = "conflict"


@dataclass
class PushResult:
    """Outcome of a push."""

    success: bool
    error: Optional[PushError] = None
    message: Optional[str] = None
    remote_commit_sha: Optional[str] = None

    @classmethod
    def ok(cls) -> "PushResult":
        return cls(success=True)

    @classmethod
    def failed(
        cls,
        error: PushError,
        message: Optional[str] = None,
        remote_commit_sha: Optional[str] = None,
    ) -> "PushResult":
        return cls(success=False, error=error, message=message, remote_commit_sha=remote_commit_sha)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True}
        data: Dict[str, Any] = {"success": False, "error": self.error.value if self.error else None}
        if self.message:
            data["message"] = self.message
        if self.remote_commit_sha:
            data["remoteCommitSha"] = self.remote_commit_sha
        return data


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class Registry:
    """Business logic of the reference registry."""

    def __init__(
        self,
        config: Config,
        store: Optional[RegistryStore] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize the registry.

        Args:
            config: Configuration object
            store: Backing store (built from config if omitted)
            clock: Source of the current UTC time
        """
        self.config = config
        self.store = store or RegistryStore(config)
        self.clock = clock

    # ========== Read Projections ==========

    def get(self, full_name: str) -> Optional[RemoteReference]:
        return self.get_by_name(full_name, None)

    def get_by_name(self, full_name: str, reference_name: Optional[str]) -> Optional[RemoteReference]:
        with self.store.reader() as conn:
            repo = self.store.get_repository(conn, full_name)
            if repo is None:
                return None
            return self.store.get_reference(conn, repo.id, reference_name)

    def list_by_repo(self, full_name: str) -> List[Dict[str, Any]]:
        with self.store.reader() as conn:
            repo = self.store.get_repository(conn, full_name)
            if repo is None:
                return []
            references = self.store.list_repository_references(conn, repo.id)

        return [
            {
                "referenceName": ref.reference_name,
                "description": ref.description,
                "analyzedAt": ref.analyzed_at,
                "commitSha": ref.commit_sha,
                "pullCount": ref.pull_count,
                "isVerified": ref.is_verified,
            }
            for ref in references
        ]

    def list(self, limit: int = 50) -> List[ListedReference]:
        """Discovery feed ordered by descending pull count."""
        with self.store.reader() as conn:
            return self.store.list_references(conn, limit)

    def pull(self, full_name: str, reference_name: Optional[str] = None) -> Optional[ReferenceData]:
        """Fetch a reference. Does not touch the pull counter."""
        ref = self.get_by_name(full_name, reference_name)
        if ref is None:
            return None
        return ReferenceData(
            full_name=full_name,
            reference_name=ref.reference_name,
            description=ref.description,
            content=ref.content,
            commit_sha=ref.commit_sha,
            generated_at=ref.analyzed_at,
        )

    def check(self, full_name: str, reference_name: Optional[str] = None) -> Dict[str, Any]:
        ref = self.get_by_name(full_name, reference_name)
        if ref is None:
            return {"exists": False}
        return {"exists": True, "commitSha": ref.commit_sha, "analyzedAt": ref.analyzed_at}

    def record_pull(self, full_name: str, reference_name: Optional[str] = None) -> bool:
        """Increment a reference's pull count.

        Returns:
            False (and does nothing) if the reference does not exist
        """
        with self.store.transaction() as conn:
            repo = self.store.get_repository(conn, full_name)
            if repo is None:
                return False
            ref = self.store.get_reference(conn, repo.id, reference_name)
            if ref is None:
                return False
            self.store.increment_pull_count(conn, ref.id)
        return True

    # ========== Push ==========

    def push(self, payload: Dict[str, Any], identity: Optional[str]) -> PushResult:
        """Store a pushed reference.

        Args:
            payload: Wire payload (fullName, referenceName, description, content,
                commitSha, analyzedAt and optional repo* metadata)
            identity: Authenticated user id, or None

        Returns:
            PushResult describing success or the business failure
        """
        if not identity:
            return PushResult.failed(PushError.AUTH_REQUIRED, "Authentication required")

        fields = validate_push_fields(payload)
        if not fields.valid:
            return PushResult.failed(PushError.INVALID_INPUT, fields.error)

        content = validate_reference_content(payload["content"])
        if not content.valid:
            return PushResult.failed(PushError.INVALID_REFERENCE, content.error)

        full_name = payload["fullName"]
        reference_name = payload["referenceName"]
        incoming_at = parse_timestamp(payload["analyzedAt"])
        now = self.clock()
        now_iso = _iso(now)

        with self.store.transaction() as conn:
            self.store.ensure_user(conn, identity, now_iso)

            since = _iso(now - timedelta(hours=self.config.push_window_hours))
            recent = self.store.count_recent_pushes(conn, identity, full_name, since)
            if recent >= self.config.push_limit_per_day:
                logger.info(f"Rate limit hit by {identity} for {full_name} ({recent} pushes)")
                return PushResult.failed(
                    PushError.RATE_LIMIT,
                    f"You can push up to {self.config.push_limit_per_day} times per repo per day",
                )

            repo = self._upsert_repository(conn, payload, now_iso)

            existing = self.store.get_reference(conn, repo.id, reference_name)
            if existing is not None and self._is_older(incoming_at, existing.analyzed_at):
                logger.info(
                    f"Conflict on {full_name}/{reference_name}: incoming {payload['analyzedAt']} "
                    f"is older than stored {existing.analyzed_at}"
                )
                return PushResult.failed(
                    PushError.CONFLICT,
                    "A newer reference already exists on the server",
                    remote_commit_sha=existing.commit_sha,
                )

            self.store.upsert_reference(
                conn,
                RemoteReference(
                    repository_id=repo.id,
                    reference_name=reference_name,
                    description=payload["description"],
                    content=payload["content"],
                    commit_sha=payload["commitSha"],
                    analyzed_at=payload["analyzedAt"],
                    pushed_by=identity,
                ),
            )
            self.store.append_push_log(
                conn,
                PushLogEntry(
                    full_name=full_name,
                    user_id=identity,
                    pushed_at=now_iso,
                    commit_sha=payload["commitSha"],
                ),
            )

        logger.info(f"Accepted push of {full_name}/{reference_name} at {payload['commitSha'][:7]} from {identity}")
        return PushResult.ok()

    def _upsert_repository(self, conn, payload: Dict[str, Any], now_iso: str) -> RemoteRepository:
        full_name = payload["fullName"]
        repo = self.store.get_repository(conn, full_name)

        if repo is None:
            owner, name = full_name.split("/", 1)
            return self.store.insert_repository(
                conn,
                RemoteRepository(
                    full_name=full_name,
                    owner=owner,
                    name=name,
                    description=payload.get("repoDescription"),
                    stars=payload.get("repoStars") or 0,
                    language=payload.get("repoLanguage"),
                    default_branch=payload.get("repoDefaultBranch") or "main",
                    canonical_url=f"https://github.com/{full_name}",
                    fetched_at=now_iso,
                ),
            )

        if payload.get("repoDescription") is not None:
            repo.description = payload["repoDescription"]
        if payload.get("repoStars") is not None:
            repo.stars = payload["repoStars"]
        if payload.get("repoLanguage") is not None:
            repo.language = payload["repoLanguage"]
        if payload.get("repoDefaultBranch") is not None:
            repo.default_branch = payload["repoDefaultBranch"]
        repo.fetched_at = now_iso
        self.store.update_repository(conn, repo)
        return repo

    @staticmethod
    def _is_older(incoming: datetime, stored_value: str) -> bool:
        try:
            stored = parse_timestamp(stored_value)
        except ValueError:
            logger.warning(f"Stored analyzedAt is not a timestamp: {stored_value!r}")
            return False
        return incoming < stored
