"""Tests for refsync.sync_server."""

import sqlite3
from unittest.mock import MagicMock, patch

import pytest
from github import GithubException

from refsync.registry import Registry
from refsync.registry_store import RegistryStore
from refsync.sync_server import GitHubTokenAuthenticator, create_sync_server

from .conftest import REFERENCE_CONTENT, SHA_A, SHA_B


TOKENS = {"alice-token": "alice", "bob-token": "bob"}


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


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def registry(config):
    return Registry(config, RegistryStore(config))


@pytest.fixture
def client(config, registry):
    app = create_sync_server(config, registry=registry, authenticator=TOKENS.get)
    app.config["TESTING"] = True
    return app.test_client()


class TestPushEndpoint:

    def test_push_success(self, client):
        response = client.post("/api/references/push", json=payload(), headers=auth("alice-token"))

        assert response.status_code == 200
        assert response.get_json() == {"success": True}

    def test_missing_token(self, client):
        response = client.post("/api/references/push", json=payload())

        assert response.status_code == 401
        assert response.get_json()["error"] == "auth_required"

    def test_unknown_token(self, client):
        response = client.post("/api/references/push", json=payload(), headers=auth("forged"))

        assert response.status_code == 401

    def test_missing_fields(self, client):
        body = payload()
        del body["content"]

        response = client.post("/api/references/push", json=body, headers=auth("alice-token"))

        assert response.status_code == 400
        assert "content" in response.get_json()["message"]

    def test_invalid_reference(self, client):
        response = client.post(
            "/api/references/push",
            json=payload(content="# Title\n\n<div>too short</div>"),
            headers=auth("alice-token"),
        )

        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_reference"

    def test_non_string_repo_metadata_is_400(self, client):
        response = client.post(
            "/api/references/push",
            json=payload(repoLanguage=42, repoDefaultBranch=["main"]),
            headers=auth("alice-token"),
        )

        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_input"

    def test_conflict(self, client):
        client.post(
            "/api/references/push",
            json=payload(commitSha=SHA_B, analyzedAt="2026-02-10T00:00:00Z"),
            headers=auth("alice-token"),
        )

        response = client.post("/api/references/push", json=payload(), headers=auth("bob-token"))

        assert response.status_code == 409
        assert response.get_json()["remoteCommitSha"] == SHA_B

    def test_rate_limit(self, client):
        for day in range(1, 4):
            client.post(
                "/api/references/push",
                json=payload(analyzedAt=f"2026-02-0{day}T00:00:00Z"),
                headers=auth("alice-token"),
            )

        response = client.post(
            "/api/references/push",
            json=payload(analyzedAt="2026-02-05T00:00:00Z"),
            headers=auth("alice-token"),
        )

        assert response.status_code == 429
        assert response.get_json()["error"] == "rate_limit"


class TestReadEndpoints:

    @pytest.fixture(autouse=True)
    def seeded(self, client):
        client.post("/api/references/push", json=payload(), headers=auth("alice-token"))

    def test_pull(self, client):
        response = client.post("/api/references/pull", json={"fullName": "tanstack/router"})

        assert response.status_code == 200
        body = response.get_json()
        assert body["content"] == REFERENCE_CONTENT
        assert body["commitSha"] == SHA_A
        assert body["generatedAt"] == "2026-02-01T00:00:00Z"

    def test_pull_unknown(self, client):
        response = client.post("/api/references/pull", json={"fullName": "nobody/nothing"})

        assert response.status_code == 404

    def test_pull_requires_full_name(self, client):
        response = client.post("/api/references/pull", json={})

        assert response.status_code == 400

    def test_check(self, client):
        response = client.post("/api/references/check", json={"fullName": "tanstack/router"})

        assert response.status_code == 200
        assert response.get_json() == {
            "exists": True,
            "commitSha": SHA_A,
            "analyzedAt": "2026-02-01T00:00:00Z",
        }

    def test_check_unknown_is_not_an_http_error(self, client):
        response = client.post("/api/references/check", json={"fullName": "nobody/nothing"})

        assert response.status_code == 200
        assert response.get_json() == {"exists": False}

    def test_pull_then_record(self, client):
        client.post("/api/references/pull", json={"fullName": "tanstack/router"})
        response = client.post("/api/references/record-pull", json={"fullName": "tanstack/router"})

        assert response.get_json() == {"recorded": True}
        listed = client.get("/api/references?limit=5").get_json()
        assert listed[0]["fullName"] == "tanstack/router"
        assert listed[0]["pullCount"] == 1

    def test_list_by_repo(self, client):
        response = client.get("/api/references/tanstack/router")

        assert response.status_code == 200
        assert [ref["referenceName"] for ref in response.get_json()] == ["tanstack-router"]

    def test_health(self, client):
        assert client.get("/health").get_json()["status"] == "healthy"


class TestInfrastructureErrors:

    def test_storage_failure_is_500(self, config):
        registry = MagicMock()
        registry.check.side_effect = sqlite3.OperationalError("database is locked")
        app = create_sync_server(config, registry=registry, authenticator=TOKENS.get)

        response = app.test_client().post("/api/references/check", json={"fullName": "a/b"})

        assert response.status_code == 500
        assert response.get_json()["error"] == "internal"


class TestGitHubTokenAuthenticator:

    def test_resolves_login(self):
        with patch("refsync.sync_server.Github") as mock_github:
            mock_github.return_value.get_user.return_value.login = "alice"
            assert GitHubTokenAuthenticator()("token") == "alice"
        mock_github.assert_called_once_with("token")

    def test_bad_token(self):
        with patch("refsync.sync_server.Github") as mock_github:
            mock_github.return_value.get_user.side_effect = GithubException(401, {"message": "Bad credentials"}, None)
            assert GitHubTokenAuthenticator()("token") is None
