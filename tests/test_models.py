"""Tests for refsync.models."""

import pytest

from refsync.models import (
    CacheEntry,
    display_name,
    reference_file_name,
    reference_file_name_for,
    reference_stem,
)
from refsync.repo_source import LocalRepoSource, RemoteRepoSource


class TestCacheEntry:

    def test_first_reference_becomes_primary(self):
        entry = CacheEntry(local_path="/x")

        entry.add_reference("a.md")
        entry.add_reference("b.md")
        entry.add_reference("a.md")

        assert entry.references == ["a.md", "b.md"]
        assert entry.primary == "a.md"

    def test_clear_references(self):
        entry = CacheEntry(local_path="/x", references=["a.md"], primary="a.md")

        entry.clear_references()

        assert not entry.has_reference
        assert entry.primary == ""

    def test_from_dict_rejects_bad_schema(self):
        with pytest.raises(ValueError):
            CacheEntry.from_dict({"localPath": "/x", "references": "a.md", "updatedAt": "t"})

    def test_missing_sha_is_omitted(self):
        assert "commitSha" not in CacheEntry(local_path="/x").to_dict()


class TestNaming:

    def test_remote_reference_file_name(self):
        assert reference_file_name(RemoteRepoSource("github", "TanStack", "Router")) == "tanstack-router.md"

    def test_local_reference_file_name(self):
        assert reference_file_name(LocalRepoSource(path="/src/MyApp", name="MyApp")) == "myapp.md"

    def test_full_name_helpers(self):
        assert reference_file_name_for("TanStack/Router") == "tanstack-router.md"
        assert reference_stem("tanstack-router.md") == "tanstack-router"
        assert display_name("github:tanstack/router") == "tanstack/router"
