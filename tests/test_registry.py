"""Tests for refsync.registry."""

from datetime import datetime, timedelta, timezone

import pytest

from refsync.registry import PushError, Registry
from refsync.registry_store import RegistryStore

from .conftest import REFERENCE_CONTENT, SHA_A, SHA_B


class Clock:
    """Settable clock."""

    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def payload(**overrides):
    data = {
        "fullName": "tanstack/router",
        "referenceName": "tanstack-router",
        "description": "Type-safe router",
        "content": REFERENCE_CONTENT,
        "commitSha": SHA_A,
        "analyzedAt": "2026-02-01T00:00:00Z",
    }
    data.update(overrides)
    return data


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def registry(config, clock):
    return Registry(config, RegistryStore(config), clock=clock)


class TestPush:

    def test_requires_identity(self, registry):
        result = registry.push(payload(), None)

        assert result.success is False
        assert result.error == PushError.AUTH_REQUIRED
        assert registry.check("tanstack/router") == {"exists": False}

    def test_invalid_fields(self, registry):
        result = registry.push(payload(commitSha="nope"), "alice")

        assert result.error == PushError.INVALID_INPUT

    def test_invalid_content(self, registry):
        result = registry.push(payload(content="# Short"), "alice")

        assert result.error == PushError.INVALID_REFERENCE

    def test_first_push_creates_repository_and_reference(self, registry):
        result = registry.push(payload(repoStars=120, repoLanguage="TypeScript"), "alice")

        assert result.success is True
        assert result.to_dict() == {"success": True}
        ref = registry.get("tanstack/router")
        assert ref.commit_sha == SHA_A
        assert ref.pushed_by == "alice"
        assert ref.pull_count == 0

        with registry.store.reader() as conn:
            repo = registry.store.get_repository(conn, "tanstack/router")
        assert repo.owner == "tanstack"
        assert repo.stars == 120
        assert repo.default_branch == "main"
        assert repo.canonical_url == "https://github.com/tanstack/router"

    def test_repository_patch_keeps_unsupplied_values(self, registry, clock):
        registry.push(payload(repoStars=120, repoLanguage="TypeScript"), "alice")
        clock.advance(minutes=1)

        registry.push(payload(analyzedAt="2026-02-02T00:00:00Z", repoStars=150), "alice")

        with registry.store.reader() as conn:
            repo = registry.store.get_repository(conn, "tanstack/router")
        assert repo.stars == 150
        assert repo.language == "TypeScript"

    def test_older_push_conflicts(self, registry):
        registry.push(payload(commitSha=SHA_B, analyzedAt="2026-02-10T00:00:00Z"), "alice")

        result = registry.push(payload(analyzedAt="2026-02-01T00:00:00Z"), "bob")

        assert result.success is False
        assert result.error == PushError.CONFLICT
        assert result.remote_commit_sha == SHA_B
        assert result.to_dict()["remoteCommitSha"] == SHA_B
        assert registry.get("tanstack/router").commit_sha == SHA_B

    def test_equal_timestamp_overwrites(self, registry):
        registry.push(payload(commitSha=SHA_B), "alice")

        result = registry.push(payload(commitSha=SHA_A), "bob")

        assert result.success is True
        assert registry.get("tanstack/router").commit_sha == SHA_A

    def test_timestamps_compare_across_offsets(self, registry):
        registry.push(payload(commitSha=SHA_B, analyzedAt="2026-02-01T10:00:00+00:00"), "alice")

        result = registry.push(payload(analyzedAt="2026-02-01T11:00:00+02:00"), "bob")

        assert result.error == PushError.CONFLICT

    def test_overwrite_keeps_pull_count(self, registry):
        registry.push(payload(), "alice")
        registry.record_pull("tanstack/router")

        registry.push(payload(analyzedAt="2026-02-05T00:00:00Z", commitSha=SHA_B), "alice")

        assert registry.get("tanstack/router").pull_count == 1


class TestRateLimit:

    def test_fourth_push_in_window_is_rejected(self, registry, clock):
        for day in range(1, 4):
            assert registry.push(payload(analyzedAt=f"2026-02-0{day}T00:00:00Z"), "alice").success
            clock.advance(hours=1)

        result = registry.push(payload(analyzedAt="2026-02-05T00:00:00Z"), "alice")

        assert result.error == PushError.RATE_LIMIT
        assert registry.get("tanstack/router").analyzed_at == "2026-02-03T00:00:00Z"

    def test_window_slides(self, registry, clock):
        for day in range(1, 4):
            registry.push(payload(analyzedAt=f"2026-02-0{day}T00:00:00Z"), "alice")

        clock.advance(hours=24, seconds=1)

        assert registry.push(payload(analyzedAt="2026-02-05T00:00:00Z"), "alice").success is True

    def test_limit_is_per_user_and_repository(self, registry):
        for day in range(1, 4):
            registry.push(payload(analyzedAt=f"2026-02-0{day}T00:00:00Z"), "alice")

        assert registry.push(payload(analyzedAt="2026-02-05T00:00:00Z"), "bob").success is True
        assert registry.push(payload(fullName="tanstack/query"), "alice").success is True

    def test_rejected_pushes_do_not_count(self, registry):
        registry.push(payload(analyzedAt="2026-02-10T00:00:00Z"), "alice")
        for _ in range(3):
            assert registry.push(payload(), "alice").error == PushError.CONFLICT

        assert registry.push(payload(analyzedAt="2026-02-11T00:00:00Z"), "alice").success is True


class TestReads:

    def test_pull_does_not_increment(self, registry):
        registry.push(payload(), "alice")

        reference = registry.pull("tanstack/router")

        assert reference.content == REFERENCE_CONTENT
        assert reference.generated_at == "2026-02-01T00:00:00Z"
        assert registry.get("tanstack/router").pull_count == 0

    def test_pull_unknown(self, registry):
        assert registry.pull("nobody/nothing") is None

    def test_check(self, registry):
        registry.push(payload(), "alice")

        assert registry.check("tanstack/router") == {
            "exists": True,
            "commitSha": SHA_A,
            "analyzedAt": "2026-02-01T00:00:00Z",
        }
        assert registry.check("tanstack/router", "other") == {"exists": False}

    def test_get_by_name_and_list_by_repo(self, registry):
        registry.push(payload(), "alice")
        registry.push(payload(referenceName="router-devtools"), "alice")

        assert registry.get_by_name("tanstack/router", "router-devtools").reference_name == "router-devtools"
        names = [ref["referenceName"] for ref in registry.list_by_repo("tanstack/router")]
        assert names == ["tanstack-router", "router-devtools"]
        assert registry.list_by_repo("nobody/nothing") == []

    def test_record_pull(self, registry):
        registry.push(payload(), "alice")

        assert registry.record_pull("tanstack/router") is True
        assert registry.record_pull("tanstack/router", "tanstack-router") is True
        assert registry.record_pull("nobody/nothing") is False
        assert registry.get("tanstack/router").pull_count == 2

    def test_list_orders_by_pull_count(self, registry):
        registry.push(payload(fullName="a/one", analyzedAt="2026-02-01T00:00:00Z"), "alice")
        registry.push(payload(fullName="a/two", analyzedAt="2026-02-02T00:00:00Z"), "alice")
        registry.push(payload(fullName="a/three", analyzedAt="2026-02-03T00:00:00Z"), "alice")
        registry.record_pull("a/one")
        registry.record_pull("a/one")
        registry.record_pull("a/two")

        listed = registry.list(limit=10)

        assert [ref.full_name for ref in listed] == ["a/one", "a/two", "a/three"]
        assert listed[0].pull_count == 2
        assert [ref.full_name for ref in registry.list(limit=1)] == ["a/one"]

    def test_list_ties_prefer_recent_analysis(self, registry):
        registry.push(payload(fullName="a/old", analyzedAt="2026-01-01T00:00:00Z"), "alice")
        registry.push(payload(fullName="a/new", analyzedAt="2026-02-01T00:00:00Z"), "alice")

        assert [ref.full_name for ref in registry.list()] == ["a/new", "a/old"]
