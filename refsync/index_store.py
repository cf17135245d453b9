"""Persisted index of cached repositories.

The index is a single JSON file of the form ``{"repos": {key: entry}}``.
Reads self-heal: a missing, unreadable, malformed or schema-invalid file is
treated as an empty index. Writes replace the whole file through a temporary
file and ``os.replace``.

There is no locking. Two processes doing read-merge-write at the same time
race, and the last writer wins.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from .config import Config
from .models import CacheEntry


logger = logging.getLogger(__name__)


class IndexStore:
    """Key/value storage of cache entries keyed by qualified name."""

    def __init__(self, config: Config):
        """Initialize the index store.

        Args:
            config: Configuration object
        """
        self.config = config
        self.index_path = Path(config.index_path)

    def read(self) -> Dict[str, CacheEntry]:
        """Read the persisted map.

        Returns:
            Mapping of qualified name to entry (empty on any read failure)
        """
        if not self.index_path.exists():
            return {}

        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable index at {self.index_path}: {e}")
            return {}

        try:
            return self._parse(data)
        except ValueError as e:
            logger.warning(f"Ignoring invalid index at {self.index_path}: {e}")
            return {}

    @staticmethod
    def _parse(data) -> Dict[str, CacheEntry]:
        if not isinstance(data, dict):
            raise ValueError("index must be a JSON object")
        repos = data.get("repos")
        if not isinstance(repos, dict):
            raise ValueError("'repos' must be an object")
        return {key: CacheEntry.from_dict(value) for key, value in repos.items()}

    def write(self, entries: Dict[str, CacheEntry]) -> None:
        """Serialize the full map and replace the backing file.

        Args:
            entries: Complete mapping to persist
        """
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"repos": {key: entry.to_dict() for key, entry in entries.items()}}

        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.index_path.parent), prefix=".index_", suffix=".tmp"
        )
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.index_path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.debug(f"Wrote index with {len(entries)} entries to {self.index_path}")

    def get(self, key: str) -> Optional[CacheEntry]:
        return self.read().get(key)

    def upsert(self, key: str, entry: CacheEntry) -> None:
        """Insert or replace one entry, preserving all other keys."""
        entries = self.read()
        entries[key] = entry
        self.write(entries)

    def remove(self, key: str) -> bool:
        """Remove one entry.

        Returns:
            True if the key existed
        """
        entries = self.read()
        if key not in entries:
            return False
        del entries[key]
        self.write(entries)
        return True
