"""Shared fixtures: a throwaway git repo, a config pointing at it, and a DB."""

import subprocess
from pathlib import Path

import pytest

from backlog_conductor.config import Config
from backlog_conductor.db.engine import init_db


def git(cwd, *args) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return result.stdout.strip()


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """Commits made by tests and by merges need an author."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@test.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@test.com")


@pytest.fixture
def git_repo(tmp_path):
    """A git repo on ``main`` with one commit. The DB and agent dirs live outside it."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init")
    git(repo, "checkout", "-b", "main")
    (repo / "README.md").write_text("# Test\n")
    git(repo, "add", ".")
    git(repo, "commit", "-m", "init")
    return repo


@pytest.fixture
def commit_file():
    """Write a file in a checkout and commit it."""

    def _commit(cwd: Path, name: str, content: str, message: str | None = None) -> str:
        path = Path(cwd) / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        git(cwd, "add", name)
        git(cwd, "commit", "-m", message or f"edit {name}")
        return git(cwd, "rev-parse", "HEAD")

    return _commit


@pytest.fixture
def config(tmp_path, git_repo):
    return Config(
        db_path=tmp_path / "bc.db",
        repo_path=git_repo,
        agent_dir=tmp_path / "agents",
        agent_command="sh",
        agent_model=None,
        agent_timeout=0,
        watchdog_timeout=0,
        kill_grace=1.0,
    )


@pytest.fixture
def db(config):
    conn = init_db(config.db_path)
    yield conn
    conn.close()
