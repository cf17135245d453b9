"""Tests for refsync.sync_client."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from github import GithubException

from refsync.repo_source import LocalRepoSource, RemoteRepoSource
from refsync.sync_client import (
    AuthenticationError,
    ConflictError,
    NetworkError,
    PushNotAllowedError,
    RateLimitError,
    SyncClient,
    SyncError,
)

from .conftest import SHA_A, SHA_B


def response(status_code, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    resp.reason = "reason"
    resp.json.return_value = body if body is not None else {}
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(config, session):
    return SyncClient(config, session=session)


class TestPull:

    def test_pull_returns_reference(self, client, session, reference):
        session.post.return_value = response(200, reference.to_dict())

        result = client.pull("tanstack/router")

        assert result == reference
        url = session.post.call_args[0][0]
        assert url == "http://registry.test/api/references/pull"
        assert session.post.call_args[1]["json"] == {"fullName": "tanstack/router"}
        assert session.post.call_args[1]["timeout"] == 5

    def test_pull_not_found(self, client, session):
        session.post.return_value = response(404)

        assert client.pull("tanstack/router") is None

    def test_transport_failure(self, client, session):
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(NetworkError):
            client.pull("tanstack/router")

    def test_server_error(self, client, session):
        session.post.return_value = response(500)

        with pytest.raises(NetworkError) as exc_info:
            client.pull("tanstack/router")
        assert exc_info.value.status_code == 500


class TestCheck:

    def test_check_remote_exists(self, client, session):
        session.post.return_value = response(
            200, {"exists": True, "commitSha": SHA_A, "analyzedAt": "2026-01-01T00:00:00Z"}
        )

        result = client.check_remote("tanstack/router")

        assert result.exists is True
        assert result.commit_sha == SHA_A
        assert session.post.call_args[0][0].endswith("/api/references/check")

    def test_check_remote_missing(self, client, session):
        session.post.return_value = response(404, {"exists": False})

        assert client.check_remote("tanstack/router").exists is False

    def test_staleness_differs(self, client, session):
        session.post.return_value = response(200, {"exists": True, "commitSha": SHA_B, "analyzedAt": "x"})

        result = client.check_staleness("tanstack/router", SHA_A)

        assert result.is_stale is True
        assert result.remote_commit_sha == SHA_B

    def test_staleness_same_sha(self, client, session):
        session.post.return_value = response(200, {"exists": True, "commitSha": SHA_A, "analyzedAt": "x"})

        assert client.check_staleness("tanstack/router", SHA_A).is_stale is False

    def test_no_remote_is_not_stale(self, client, session):
        session.post.return_value = response(404)

        result = client.check_staleness("tanstack/router", SHA_A)

        assert result.is_stale is False
        assert result.remote_commit_sha is None


class TestPush:

    def test_success_sends_bearer_token(self, client, session, reference):
        session.post.return_value = response(200, {"success": True})

        assert client.push(reference, "tok", {"repoStars": 10, "repoLanguage": None}) == {"success": True}

        kwargs = session.post.call_args[1]
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["json"]["analyzedAt"] == reference.generated_at
        assert kwargs["json"]["repoStars"] == 10
        assert "repoLanguage" not in kwargs["json"]

    @pytest.mark.parametrize(
        "status,error",
        [(401, AuthenticationError), (429, RateLimitError), (400, SyncError), (503, NetworkError)],
    )
    def test_status_mapping(self, client, session, reference, status, error):
        session.post.return_value = response(status, {"error": "x"})

        with pytest.raises(error):
            client.push(reference, "tok")

    def test_conflict_carries_remote_sha(self, client, session, reference):
        session.post.return_value = response(
            409, {"success": False, "error": "conflict", "remoteCommitSha": SHA_B}
        )

        with pytest.raises(ConflictError) as exc_info:
            client.push(reference, "tok")
        assert exc_info.value.remote_commit_sha == SHA_B


class TestRecordPull:

    def test_record_pull(self, client, session):
        session.post.return_value = response(200, {"recorded": True})

        client.record_pull("tanstack/router", "tanstack-router")

        assert session.post.call_args[1]["json"] == {
            "fullName": "tanstack/router",
            "referenceName": "tanstack-router",
        }


class TestPushEligibility:

    def test_local_sources_rejected(self, client, tmp_path):
        with pytest.raises(PushNotAllowedError) as exc_info:
            client.validate_push_allowed(LocalRepoSource(path=str(tmp_path), name="x"))
        assert exc_info.value.reason == "local"

    def test_non_github_rejected(self, client):
        with pytest.raises(PushNotAllowedError) as exc_info:
            client.validate_push_allowed(RemoteRepoSource("gitlab", "a", "b"))
        assert exc_info.value.reason == "not-github"

    def test_github_allowed_without_star_gate(self, client):
        with patch("refsync.sync_client.Github") as mock_github:
            client.validate_push_allowed(RemoteRepoSource("github", "a", "b"))
        mock_github.assert_not_called()

    def test_low_stars(self, config, session):
        config._config["sync"]["min_stars_for_push"] = 5
        client = SyncClient(config, session=session)

        with patch("refsync.sync_client.Github") as mock_github:
            mock_github.return_value.get_repo.return_value.stargazers_count = 2
            result = client.can_push(RemoteRepoSource("github", "a", "b"))

        assert result.allowed is False
        assert result.reason == "low-stars"
        assert result.stars == 2

    def test_star_lookup_failure_counts_as_zero(self, config, session):
        config._config["sync"]["min_stars_for_push"] = 5
        client = SyncClient(config, session=session)

        with patch("refsync.sync_client.Github") as mock_github:
            mock_github.return_value.get_repo.side_effect = GithubException(404, {"message": "Not Found"}, None)
            assert client.fetch_repo_stars("a", "b") == 0
