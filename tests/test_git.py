# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for the git adapter against a real repository."""

import subprocess

import pytest

from gitvan.errors import GitOperationError, NoHeadError, NoTagsError
from gitvan.git import GitAdapter, parse_name_status


class TestRepositoryState:
    def test_head_and_branch(self, repo):
        adapter = repo.adapter
        assert adapter.head() == repo.head()
        assert len(adapter.head()) == 40
        assert adapter.current_branch() == "main"
        assert adapter.is_repository()

    def test_head_on_empty_repository(self, tmp_path, repo):
        empty = tmp_path / "empty"
        empty.mkdir()
        subprocess.run(["git", "init", "-q"], cwd=empty, check=True)
        with pytest.raises(NoHeadError):
            GitAdapter(empty).head()

    def test_detached_head(self, repo):
        repo.git("checkout", "-q", "--detach")
        assert repo.adapter.current_branch() == "HEAD"

    def test_not_a_repository(self, tmp_path):
        adapter = GitAdapter(tmp_path)
        assert not adapter.is_repository()
        with pytest.raises(GitOperationError):
            adapter.output(["rev-parse", "--show-toplevel"])

    def test_commit_info(self, repo):
        sha = repo.commit("feat(api): add endpoint\n\nLonger body.")
        info = repo.adapter.commit_info(sha)
        assert info.sha == sha
        assert info.subject == "feat(api): add endpoint"
        assert info.message.startswith("feat(api): add endpoint")
        assert "Longer body." in info.message
        assert info.author_email == "author@example.com"
        assert info.signed is False
        assert not info.is_merge

    def test_new_commits_oldest_first(self, repo):
        base = repo.head()
        first = repo.commit("one")
        second = repo.commit("two")
        assert repo.adapter.new_commits(second, [base]) == [first, second]
        assert repo.adapter.new_commits(second, [second]) == []


class TestTagsAndBranches:
    def test_tags_map_to_commits(self, repo):
        sha = repo.head()
        repo.tag("v1.0.0")
        repo.adapter.tag("v1.1.0", message="annotated release")
        assert repo.adapter.tags() == {"v1.0.0": sha, "v1.1.0": sha}

    def test_describe_without_tags(self, repo):
        with pytest.raises(NoTagsError):
            repo.adapter.describe()
        assert repo.adapter.latest_tag() is None

    def test_describe_nearest_tag(self, repo):
        repo.tag("v0.1.0")
        assert repo.adapter.describe() == "v0.1.0"

    def test_branches(self, repo):
        repo.git("branch", "feature/x")
        branches = repo.adapter.branches()
        assert branches["main"] == repo.head()
        assert branches["feature/x"] == repo.head()


class TestChanges:
    def test_root_commit_changes(self, repo):
        root = repo.git("rev-list", "--max-parents=0", "HEAD")
        assert repo.adapter.commit_changes(root).added == ["README.md"]

    def test_added_modified_deleted(self, repo):
        repo.commit("seed", {"src/a.js": "a", "src/b.js": "b"})
        repo.write("src/a.js", "changed")
        (repo.path / "src" / "b.js").unlink()
        repo.write("src/c.js", "c")
        sha = repo.commit("mixed")
        changes = repo.adapter.commit_changes(sha)
        assert changes.added == ["src/c.js"]
        assert changes.modified == ["src/a.js"]
        assert changes.deleted == ["src/b.js"]
        assert changes.changed == ["src/a.js", "src/b.js", "src/c.js"]

    def test_rename_lists_both_sides(self, repo):
        repo.commit("seed", {"old/name.txt": "same content for rename detection\n"})
        repo.git("mv", "old/name.txt", "new/name.txt")
        sha = repo.commit("move")
        changes = repo.adapter.commit_changes(sha)
        assert changes.renamed == [("old/name.txt", "new/name.txt")]
        assert changes.changed == ["new/name.txt", "old/name.txt"]

    def test_parse_name_status(self):
        output = "A\tx\nM\ty\nD\tz\nR087\ta\tb\nC100\tc\td\n"
        changes = parse_name_status(output)
        assert changes.added == ["x", "d"]
        assert changes.modified == ["y"]
        assert changes.deleted == ["z"]
        assert changes.renamed == [("a", "b")]


class TestNotes:
    REF = "refs/notes/gitvan/test"

    def test_note_roundtrip(self, repo):
        adapter = repo.adapter
        head = repo.head()
        assert adapter.note_read(self.REF, head) is None
        adapter.note(self.REF, head, "line one\n")
        assert adapter.note_read(self.REF, head) == "line one\n"
        adapter.note(self.REF, head, "replaced\n")
        assert adapter.note_read(self.REF, head) == "replaced\n"

    def test_note_list_and_cat_blobs(self, repo):
        adapter = repo.adapter
        assert adapter.note_list(self.REF) == []
        adapter.note(self.REF, repo.head(), "payload\n")
        pairs = adapter.note_list(self.REF)
        assert len(pairs) == 1
        blob, commit = pairs[0]
        assert commit == repo.head()
        assert adapter.cat_blobs([blob]) == {blob: "payload\n"}


class TestWorktrees:
    def test_primary_worktree_first(self, tmp_path, repo):
        extra = tmp_path / "extra"
        repo.git("worktree", "add", "-q", "-b", "side", str(extra))
        paths = [p.resolve() for p in repo.adapter.worktrees()]
        assert paths == [repo.path.resolve(), extra.resolve()]
        assert repo.adapter.for_worktree(extra).current_branch() == "side"
