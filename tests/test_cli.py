"""Tests for refsync.cli."""

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from refsync.cli import cli, format_bytes
from refsync.index_store import IndexStore
from refsync.local_store import GitError, LocalRepoStore
from refsync.models import CacheEntry
from refsync.repo_manager import GcResult, UpdateAllResult, UpdateError
from refsync.sync_client import ConflictError

from .conftest import SHA_B, make_clone


@pytest.fixture
def config_file(config, tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config._config))
    return path


@pytest.fixture
def run(config_file):
    runner = CliRunner()

    def invoke(*args):
        with patch("refsync.cli.install_cancel_handler"):
            return runner.invoke(cli, ["--config", str(config_file), *args])

    return invoke


class TestCli:

    def test_clone_git_error_prints_classified_message(self, run):
        error = GitError("Network unreachable. Check your internet connection and try again.", "git clone", 128)
        with patch("refsync.cli.LocalRepoStore.clone", side_effect=error):
            result = run("clone", "tanstack/router")

        assert result.exit_code == 1
        assert "Network unreachable" in result.output

    def test_rm_unknown_repo(self, run):
        result = run("rm", "tanstack/router")

        assert result.exit_code == 1
        assert "not in the index" in result.output

    def test_rm_flags_exclusive(self, run):
        result = run("rm", "tanstack/router", "--reference-only", "--repo-only")

        assert result.exit_code == 2

    def test_status(self, run, config):
        repo_path = make_clone(config, "github", "a", "b")
        IndexStore(config).upsert("github:a/b", CacheEntry(local_path=str(repo_path)))

        result = run("status")

        assert result.exit_code == 0
        assert "Repositories" in result.output

    def test_gc_requires_a_policy(self, run):
        assert run("gc").exit_code == 2

    def test_update_all_passes_stale_only(self, run):
        with patch("refsync.cli.RepoManager.update_all", return_value=UpdateAllResult()) as mock_update_all:
            result = run("update-all", "--stale-only", "-p", "tanstack/*")

        assert result.exit_code == 0
        assert mock_update_all.call_args.kwargs["stale_only"] is True
        assert mock_update_all.call_args.kwargs["pattern"] == "tanstack/*"

    def test_gc_removal_failure_exits_nonzero(self, run):
        failed = GcResult(errors=[UpdateError(repo="github:a/one", error="Permission denied")])
        with patch("refsync.cli.RepoManager.gc", return_value=failed):
            result = run("gc", "--without-reference")

        assert result.exit_code == 1
        assert "a/one" in result.output

    def test_prune_reports_consistent_index(self, run):
        result = run("prune")

        assert result.exit_code == 0
        assert "consistent" in result.output

    def test_push_conflict_offers_repull(self, run, config, reference):
        repo_path = make_clone(config, "github", "tanstack", "router")
        store = LocalRepoStore(config)
        store.index.upsert("github:tanstack/router", CacheEntry(local_path=str(repo_path)))
        store.install_reference("github:tanstack/router", reference)

        with patch("refsync.cli.SyncClient.push", side_effect=ConflictError(remote_commit_sha=SHA_B)):
            result = run("push", "tanstack/router", "--token", "tok")

        assert result.exit_code == 1
        assert "refsync pull tanstack/router" in result.output
        assert SHA_B[:7] in result.output


class TestFormatBytes:

    @pytest.mark.parametrize("size,expected", [(0, "0 B"), (2048, "2.0 KB"), (5 * 1024 ** 3, "5.0 GB")])
    def test_units(self, size, expected):
        assert format_bytes(size) == expected
