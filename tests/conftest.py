# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Shared fixtures: a real throwaway git repository."""

import shutil
import subprocess
from pathlib import Path
from typing import Dict, Optional

import pytest

from gitvan.config import GitVanConfig
from gitvan.git import GitAdapter


class Repo:
    """Helper around a temporary repository for tests."""

    def __init__(self, path: Path):
        self.path = path

    def git(self, *args: str) -> str:
        result = subprocess.run(
            ["git", *args], cwd=self.path, check=True, capture_output=True, text=True
        )
        return result.stdout.strip()

    @property
    def adapter(self) -> GitAdapter:
        return GitAdapter(self.path)

    def write(self, relative: str, content: str = "") -> Path:
        target = self.path / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        return target

    def commit(self, message: str, files: Optional[Dict[str, str]] = None) -> str:
        """Write `files`, stage everything and commit. Returns the new sha."""
        for relative, content in (files or {}).items():
            self.write(relative, content)
        self.git("add", "-A")
        self.git("commit", "-q", "--allow-empty", "-m", message)
        return self.head()

    def head(self) -> str:
        return self.git("rev-parse", "HEAD")

    def tag(self, name: str, commit: str = "HEAD") -> None:
        self.git("tag", name, commit)

    def config(self, **overrides) -> GitVanConfig:
        values = dict(
            root_dir=self.path,
            max_parallel=2,
            poll_interval=0.05,
            job_timeout=10.0,
            timeout_grace=1.0,
            drain_deadline=2.0,
            event_log=None,
        )
        values.update(overrides)
        return GitVanConfig(**values)


@pytest.fixture
def repo(tmp_path, monkeypatch):
    """An initialised repository on branch main with one root commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Author")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Author")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "author@example.com")

    path = tmp_path / "repo"
    path.mkdir()
    r = Repo(path)
    r.git("init", "-q")
    r.git("symbolic-ref", "HEAD", "refs/heads/main")
    r.git("config", "commit.gpgsign", "false")
    r.git("config", "tag.gpgsign", "false")
    (path / ".git" / "info").mkdir(exist_ok=True)
    with open(path / ".git" / "info" / "exclude", "a") as f:
        f.write("\n.gitvan/\n")
    r.commit("chore: initial commit", {"README.md": "# test\n"})
    return r
