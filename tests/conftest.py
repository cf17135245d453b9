"""Shared fixtures for refsync tests."""

from pathlib import Path

import pytest

from refsync.config import Config
from refsync.models import ReferenceData


SHA_A = "a" * 40
SHA_B = "b" * 40

REFERENCE_CONTENT = "# Router\n\n" + "Routing reference for the router package. " * 20


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config whose every path lives under tmp_path."""
    return Config(values={
        "paths": {
            "repo_root": str(tmp_path / "ow"),
            "data_dir": str(tmp_path / "data"),
            "log_dir": str(tmp_path / "logs"),
        },
        "agents": {
            "skill_dirs": [str(tmp_path / "agent-skills")],
        },
        "sync": {
            "api_base": "http://registry.test",
            "timeout": 5,
        },
        "server": {
            "db_path": str(tmp_path / "registry.db"),
        },
    })


def make_clone(config: Config, provider: str, owner: str, repo: str) -> Path:
    """Create a fake working tree with a .git directory."""
    repo_path = config.repo_root / provider / owner / repo
    (repo_path / ".git").mkdir(parents=True)
    (repo_path / "README.md").write_text("hello")
    return repo_path


@pytest.fixture
def reference() -> ReferenceData:
    return ReferenceData(
        full_name="tanstack/router",
        reference_name="tanstack-router",
        description="Type-safe router",
        content=REFERENCE_CONTENT,
        commit_sha=SHA_A,
        generated_at="2026-01-01T00:00:00+00:00",
    )
