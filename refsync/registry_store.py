"""SQLite storage for the reference registry."""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from .config import Config


logger = logging.getLogger(__name__)


@dataclass
class RemoteRepository:
    """Repository metadata held by the registry."""

    full_name: str
    owner: str
    name: str
    stars: int
    default_branch: str
    canonical_url: str
    fetched_at: str
    description: Optional[str] = None
    language: Optional[str] = None
    id: Optional[int] = None


@dataclass
class RemoteReference:
    """A reference document held by the registry."""

    repository_id: int
    reference_name: str
    description: str
    content: str
    commit_sha: str
    analyzed_at: str
    pull_count: int = 0
    is_verified: bool = False
    pushed_by: Optional[str] = None
    id: Optional[int] = None


@dataclass
class PushLogEntry:
    """One accepted push, kept for rate limiting."""

    full_name: str
    user_id: str
    pushed_at: str
    commit_sha: str


@dataclass
class ListedReference:
    """Row of the public discovery feed."""

    full_name: str
    reference_name: str
    pull_count: int
    analyzed_at: str
    commit_sha: str
    is_verified: bool


class RegistryStore:
    """Transactional SQLite store behind the registry server."""

    def __init__(self, config: Config, db_path: Optional[Path] = None):
        """Initialize the store and create tables if needed.

        Args:
            config: Configuration object
            db_path: Optional database path override
        """
        self.config = config
        self.db_path = Path(db_path or config.server_db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, isolation_level=None, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_database(self) -> None:
        """Initialize SQLite database with required tables."""
        conn = self._connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS repositories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    full_name TEXT NOT NULL UNIQUE,
                    owner TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    stars INTEGER NOT NULL DEFAULT 0,
                    language TEXT,
                    default_branch TEXT NOT NULL,
                    canonical_url TEXT NOT NULL,
                    fetched_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS reference_docs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repository_id INTEGER NOT NULL REFERENCES repositories(id),
                    reference_name TEXT NOT NULL,
                    description TEXT NOT NULL,
                    content TEXT NOT NULL,
                    commit_sha TEXT NOT NULL,
                    analyzed_at TEXT NOT NULL,
                    pull_count INTEGER NOT NULL DEFAULT 0,
                    is_verified INTEGER NOT NULL DEFAULT 0,
                    pushed_by TEXT,
                    UNIQUE (repository_id, reference_name)
                );

                CREATE INDEX IF NOT EXISTS idx_reference_pull_count
                ON reference_docs(pull_count);

                CREATE TABLE IF NOT EXISTS push_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    full_name TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    pushed_at TEXT NOT NULL,
                    commit_sha TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_push_log_user_repo
                ON push_log(user_id, full_name, pushed_at);
            """)
            logger.debug(f"Initialized registry database at {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Database initialization error: {e}")
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Connection inside a write transaction, committed on normal exit."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    # ========== Users ==========

    def ensure_user(self, conn: sqlite3.Connection, user_id: str, now: str) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO users (user_id, created_at) VALUES (?, ?)",
            (user_id, now),
        )

    # ========== Repositories ==========

    @staticmethod
    def _row_to_repository(row: sqlite3.Row) -> RemoteRepository:
        return RemoteRepository(
            id=row["id"],
            full_name=row["full_name"],
            owner=row["owner"],
            name=row["name"],
            description=row["description"],
            stars=row["stars"],
            language=row["language"],
            default_branch=row["default_branch"],
            canonical_url=row["canonical_url"],
            fetched_at=row["fetched_at"],
        )

    def get_repository(self, conn: sqlite3.Connection, full_name: str) -> Optional[RemoteRepository]:
        row = conn.execute("SELECT * FROM repositories WHERE full_name = ?", (full_name,)).fetchone()
        return self._row_to_repository(row) if row else None

    def insert_repository(self, conn: sqlite3.Connection, repo: RemoteRepository) -> RemoteRepository:
        cursor = conn.execute(
            """
            INSERT INTO repositories
                (full_name, owner, name, description, stars, language,
                 default_branch, canonical_url, fetched_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                repo.full_name, repo.owner, repo.name, repo.description, repo.stars,
                repo.language, repo.default_branch, repo.canonical_url, repo.fetched_at,
            ),
        )
        repo.id = cursor.lastrowid
        return repo

    def update_repository(self, conn: sqlite3.Connection, repo: RemoteRepository) -> None:
        conn.execute(
            """
            UPDATE repositories
            SET description = ?, stars = ?, language = ?, default_branch = ?, fetched_at = ?
            WHERE id = ?
            """,
            (repo.description, repo.stars, repo.language, repo.default_branch, repo.fetched_at, repo.id),
        )

    # ========== References ==========

    @staticmethod
    def _row_to_reference(row: sqlite3.Row) -> RemoteReference:
        return RemoteReference(
            id=row["id"],
            repository_id=row["repository_id"],
            reference_name=row["reference_name"],
            description=row["description"],
            content=row["content"],
            commit_sha=row["commit_sha"],
            analyzed_at=row["analyzed_at"],
            pull_count=row["pull_count"],
            is_verified=bool(row["is_verified"]),
            pushed_by=row["pushed_by"],
        )

    def get_reference(
        self,
        conn: sqlite3.Connection,
        repository_id: int,
        reference_name: Optional[str] = None,
    ) -> Optional[RemoteReference]:
        """Reference by name, or the repository's first reference when no name is given."""
        if reference_name:
            row = conn.execute(
                "SELECT * FROM reference_docs WHERE repository_id = ? AND reference_name = ?",
                (repository_id, reference_name),
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM reference_docs WHERE repository_id = ? ORDER BY id LIMIT 1",
                (repository_id,),
            ).fetchone()
        return self._row_to_reference(row) if row else None

    def list_repository_references(self, conn: sqlite3.Connection, repository_id: int) -> List[RemoteReference]:
        rows = conn.execute(
            "SELECT * FROM reference_docs WHERE repository_id = ? ORDER BY id",
            (repository_id,),
        ).fetchall()
        return [self._row_to_reference(row) for row in rows]

    def upsert_reference(self, conn: sqlite3.Connection, ref: RemoteReference) -> None:
        """Insert or overwrite by (repository, reference name); keeps pull count and verification."""
        conn.execute(
            """
            INSERT INTO reference_docs
                (repository_id, reference_name, description, content, commit_sha,
                 analyzed_at, pushed_by)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (repository_id, reference_name) DO UPDATE SET
                description = excluded.description,
                content = excluded.content,
                commit_sha = excluded.commit_sha,
                analyzed_at = excluded.analyzed_at,
                pushed_by = excluded.pushed_by
            """,
            (
                ref.repository_id, ref.reference_name, ref.description, ref.content,
                ref.commit_sha, ref.analyzed_at, ref.pushed_by,
            ),
        )

    def increment_pull_count(self, conn: sqlite3.Connection, reference_id: int) -> None:
        conn.execute(
            "UPDATE reference_docs SET pull_count = pull_count + 1 WHERE id = ?",
            (reference_id,),
        )

    def list_references(self, conn: sqlite3.Connection, limit: int) -> List[ListedReference]:
        rows = conn.execute(
            """
            SELECT r.full_name, d.reference_name, d.pull_count, d.analyzed_at,
                   d.commit_sha, d.is_verified
            FROM reference_docs d
            JOIN repositories r ON r.id = d.repository_id
            ORDER BY d.pull_count DESC, d.analyzed_at DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [
            ListedReference(
                full_name=row["full_name"],
                reference_name=row["reference_name"],
                pull_count=row["pull_count"],
                analyzed_at=row["analyzed_at"],
                commit_sha=row["commit_sha"],
                is_verified=bool(row["is_verified"]),
            )
            for row in rows
        ]

    # ========== Push Log ==========

    def count_recent_pushes(self, conn: sqlite3.Connection, user_id: str, full_name: str, since: str) -> int:
        row = conn.execute(
            """
            SELECT COUNT(*) FROM push_log
            WHERE user_id = ? AND full_name = ? AND pushed_at >= ?
            """,
            (user_id, full_name, since),
        ).fetchone()
        return row[0]

    def append_push_log(self, conn: sqlite3.Connection, entry: PushLogEntry) -> None:
        conn.execute(
            "INSERT INTO push_log (full_name, user_id, pushed_at, commit_sha) VALUES (?, ?, ?, ?)",
            (entry.full_name, entry.user_id, entry.pushed_at, entry.commit_sha),
        )
