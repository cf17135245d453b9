"""Data model shared by the local cache and the sync protocol."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .repo_source import LocalRepoSource, RemoteRepoSource, RepoSource


def utc_now_iso() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


def _require_str(data: Dict[str, Any], key: str, allow_empty: bool = True) -> str:
    value = data.get(key)
    if not isinstance(value, str) or (not allow_empty and not value):
        raise ValueError(f"Field '{key}' must be a {'non-empty ' if not allow_empty else ''}string")
    return value


def _require_str_list(data: Dict[str, Any], key: str) -> List[str]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"Field '{key}' must be a list of strings")
    return list(value)


@dataclass
class CacheEntry:
    """Index metadata for one cached repository."""

    local_path: str
    references: List[str] = field(default_factory=list)
    primary: str = ""
    keywords: List[str] = field(default_factory=list)
    updated_at: str = field(default_factory=utc_now_iso)
    commit_sha: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "CacheEntry":
        """Build an entry from its JSON form.

        Raises:
            ValueError: If the data does not match the entry schema
        """
        if not isinstance(data, dict):
            raise ValueError("Cache entry must be an object")

        commit_sha = data.get("commitSha")
        if commit_sha is not None and not isinstance(commit_sha, str):
            raise ValueError("Field 'commitSha' must be a string")

        return cls(
            local_path=_require_str(data, "localPath", allow_empty=False),
            references=_require_str_list(data, "references"),
            primary=_require_str(data, "primary") if "primary" in data else "",
            keywords=_require_str_list(data, "keywords"),
            updated_at=_require_str(data, "updatedAt"),
            commit_sha=commit_sha,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "localPath": self.local_path,
            "references": list(self.references),
            "primary": self.primary,
            "keywords": list(self.keywords),
            "updatedAt": self.updated_at,
        }
        if self.commit_sha is not None:
            data["commitSha"] = self.commit_sha
        return data

    @property
    def has_reference(self) -> bool:
        return bool(self.references)

    def add_reference(self, file_name: str) -> None:
        """Associate a reference file, making it primary if none is set."""
        if file_name not in self.references:
            self.references.append(file_name)
        if not self.primary:
            self.primary = file_name

    def clear_references(self) -> None:
        self.references = []
        self.primary = ""


@dataclass
class ReferenceData:
    """A generated reference document exchanged by push and pull."""

    full_name: str
    reference_name: str
    description: str
    content: str
    commit_sha: str
    generated_at: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReferenceData":
        return cls(
            full_name=data["fullName"],
            reference_name=data["referenceName"],
            description=data.get("description", ""),
            content=data["content"],
            commit_sha=data["commitSha"],
            generated_at=data.get("generatedAt") or data.get("analyzedAt", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fullName": self.full_name,
            "referenceName": self.reference_name,
            "description": self.description,
            "content": self.content,
            "commitSha": self.commit_sha,
            "generatedAt": self.generated_at,
        }


def reference_file_name(source: RepoSource) -> str:
    """File name of the reference document for a repository."""
    if isinstance(source, RemoteRepoSource):
        return f"{source.owner}-{source.repo}.md".lower()
    if isinstance(source, LocalRepoSource):
        return f"{source.name}.md".lower()
    raise TypeError(f"Unknown repository source: {source!r}")


def reference_file_name_for(full_name: str) -> str:
    """File name of the reference document for an ``owner/repo`` name."""
    return f"{full_name.replace('/', '-')}.md".lower()


def reference_stem(file_name: str) -> str:
    """Name of the metadata directory and agent link for a reference file."""
    return file_name[:-3] if file_name.endswith(".md") else file_name


def display_name(qualified_name: str) -> str:
    """Human-friendly label for a cache key (``owner/repo`` for remote keys)."""
    _, _, rest = qualified_name.partition(":")
    return rest or qualified_name
