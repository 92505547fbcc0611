# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Git adapter for GitVan.

A narrow, blocking wrapper around the git CLI. Every invocation runs with
an explicit cwd, TZ=UTC, LANG=C and a bounded timeout so that output is
deterministic and parseable.
"""

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from gitvan.errors import GitOperationError, NoHeadError, NoTagsError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

# Unit and record separators for machine-readable log formats
FIELD_SEP = "\x1f"
RECORD_SEP = "\x1e"

SIGNED_STATUSES = {"G", "U", "X", "Y"}


@dataclass
class ChangeSet:
    """Paths touched by a commit or range, relative to the worktree root."""

    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    renamed: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def changed(self) -> List[str]:
        """Every path touched, including both sides of a rename."""
        paths = list(self.added) + list(self.modified) + list(self.deleted)
        for old, new in self.renamed:
            paths.extend([old, new])
        return sorted(set(paths))


@dataclass
class CommitInfo:
    """Parsed commit header."""

    sha: str
    parents: List[str]
    author_name: str
    author_email: str
    authored_at: str
    signed: bool
    subject: str
    message: str

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1


def git_env(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Build the deterministic environment every git call inherits."""
    env = os.environ.copy()
    if extra:
        env.update(extra)
    env["TZ"] = "UTC"
    env["LANG"] = "C"
    env["LC_ALL"] = "C"
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


def parse_name_status(output: str) -> ChangeSet:
    """Parse `git diff --name-status` output into a ChangeSet."""
    changes = ChangeSet()
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        status = parts[0][:1]
        if status == "A":
            changes.added.append(parts[1])
        elif status in ("M", "T"):
            changes.modified.append(parts[1])
        elif status == "D":
            changes.deleted.append(parts[1])
        elif status == "R" and len(parts) >= 3:
            changes.renamed.append((parts[1], parts[2]))
        elif status == "C" and len(parts) >= 3:
            changes.added.append(parts[2])
    return changes


class GitAdapter:
    """Blocking git CLI wrapper bound to one worktree."""

    def __init__(self, cwd: Path, timeout: float = DEFAULT_TIMEOUT, env: Optional[Dict[str, str]] = None):
        self.cwd = Path(cwd)
        self.timeout = timeout
        self.env = git_env(env)

    def run(
        self,
        args: Sequence[str],
        input: Optional[str] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run `git <args>` and return the completed process.

        Raises:
            GitOperationError: On nonzero exit (when check) or timeout.
        """
        cmd = ["git", "-c", "core.quotepath=off", *args]
        operation = args[0] if args else "git"
        logger.debug(f"Executing: {' '.join(cmd)} (cwd={self.cwd})")
        try:
            result = subprocess.run(
                cmd,
                cwd=self.cwd,
                env=self.env,
                input=input,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise GitOperationError(operation, None, f"timed out after {self.timeout}s")
        except FileNotFoundError as e:
            raise GitOperationError(operation, None, str(e))

        if check and result.returncode != 0:
            raise GitOperationError(operation, result.returncode, result.stderr)
        return result

    def output(self, args: Sequence[str], input: Optional[str] = None) -> str:
        """Run git and return stripped stdout."""
        return self.run(args, input=input).stdout.strip()

    # -------------------------------------------------------------------------
    # Repository state
    # -------------------------------------------------------------------------

    def head(self) -> str:
        """Return the 40-hex HEAD commit.

        Raises:
            NoHeadError: If the repository has no commits.
        """
        result = self.run(["rev-parse", "--verify", "--quiet", "HEAD^{commit}"], check=False)
        if result.returncode != 0:
            raise NoHeadError("rev-parse", result.returncode, "repository has no HEAD commit")
        return result.stdout.strip()

    def current_branch(self) -> str:
        """Return the short branch name, or "HEAD" when detached."""
        result = self.run(["symbolic-ref", "--quiet", "--short", "HEAD"], check=False)
        if result.returncode != 0:
            return "HEAD"
        return result.stdout.strip()

    def toplevel(self) -> Path:
        return Path(self.output(["rev-parse", "--show-toplevel"]))

    def is_repository(self) -> bool:
        result = self.run(["rev-parse", "--is-inside-work-tree"], check=False)
        return result.returncode == 0 and result.stdout.strip() == "true"

    def log(self, format: str, args: Optional[Sequence[str]] = None) -> List[str]:
        """Return `git log` lines newest first. Callers parse the fields."""
        result = self.run(["log", f"--format={format}", *(args or [])])
        return [line for line in result.stdout.splitlines() if line]

    def rev_list(self, spec: str, reverse: bool = False, first_parent: bool = False) -> List[str]:
        args = ["rev-list"]
        if reverse:
            args.append("--reverse")
        if first_parent:
            args.append("--first-parent")
        args.append(spec)
        return self.output(args).split()

    def new_commits(self, tip: str, known: Sequence[str] = ()) -> List[str]:
        """Commits reachable from `tip` but from none of `known`, oldest first."""
        args = ["rev-list", "--reverse", tip]
        if known:
            args.append("--not")
            args.extend(known)
        return self.output(args).split()

    def commit_info(self, sha: str) -> CommitInfo:
        fmt = FIELD_SEP.join(["%H", "%P", "%an", "%ae", "%aI", "%G?", "%s", "%B"])
        raw = self.run(["show", "-s", f"--format={fmt}", sha]).stdout
        parts = raw.split(FIELD_SEP)
        if len(parts) < 8:
            raise GitOperationError("show", None, f"unexpected commit format for {sha}")
        return CommitInfo(
            sha=parts[0].strip(),
            parents=parts[1].split(),
            author_name=parts[2],
            author_email=parts[3],
            authored_at=parts[4],
            signed=parts[5].strip() in SIGNED_STATUSES,
            subject=parts[6],
            message=parts[7].strip(),
        )

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self.run(["merge-base", "--is-ancestor", ancestor, descendant], check=False)
        return result.returncode == 0

    def name_rev(self, sha: str) -> Optional[str]:
        """Best-effort branch name for a commit (tags excluded)."""
        result = self.run(["name-rev", "--name-only", "--exclude=tags/*", sha], check=False)
        name = result.stdout.strip()
        if result.returncode != 0 or not name or name == "undefined":
            return None
        # Strip ancestry suffixes such as feature~2 or feature^2
        for sep in ("~", "^"):
            name = name.split(sep)[0]
        return name

    # -------------------------------------------------------------------------
    # Tags & branches
    # -------------------------------------------------------------------------

    def tag(self, name: str, commit: Optional[str] = None, message: Optional[str] = None) -> None:
        args = ["tag"]
        if message:
            args += ["-a", "-m", message]
        args.append(name)
        if commit:
            args.append(commit)
        self.run(args)

    def describe(self, commit: str = "HEAD", tags: bool = True, abbrev: Optional[int] = 0) -> str:
        """Resolve the nearest tag.

        Raises:
            NoTagsError: If no tag is reachable from the commit.
        """
        args = ["describe"]
        if tags:
            args.append("--tags")
        if abbrev is not None:
            args.append(f"--abbrev={abbrev}")
        args.append(commit)
        result = self.run(args, check=False)
        if result.returncode != 0:
            stderr = result.stderr.lower()
            if "no names found" in stderr or "no tags can describe" in stderr or "cannot describe" in stderr:
                raise NoTagsError("describe", result.returncode, result.stderr)
            raise GitOperationError("describe", result.returncode, result.stderr)
        return result.stdout.strip()

    def latest_tag(self, commit: str = "HEAD") -> Optional[str]:
        """Nearest tag, or None when the history has none."""
        try:
            return self.describe(commit)
        except NoTagsError:
            return None

    def tags(self) -> Dict[str, str]:
        """Map tag name to the commit it points at (annotated tags peeled)."""
        fmt = "%(refname:short)%09%(*objectname)%09%(objectname)"
        tags = {}
        for line in self.output(["for-each-ref", f"--format={fmt}", "refs/tags"]).splitlines():
            name, peeled, obj = (line.split("\t") + ["", ""])[:3]
            tags[name] = peeled or obj
        return tags

    def branches(self) -> Dict[str, str]:
        """Map local branch name to its tip commit."""
        fmt = "%(refname:short)%09%(objectname)"
        branches = {}
        for line in self.output(["for-each-ref", f"--format={fmt}", "refs/heads"]).splitlines():
            name, sha = line.split("\t", 1)
            branches[name] = sha
        return branches

    # -------------------------------------------------------------------------
    # Changes
    # -------------------------------------------------------------------------

    def changed_files(self, range: Optional[str] = None) -> ChangeSet:
        """Files touched by a range ("a..b"), a single commit, or the index.

        Without a range, staged changes are compared against HEAD.
        """
        if range is None:
            return parse_name_status(self.output(["diff", "--cached", "--name-status", "-M"]))
        if ".." in range:
            return parse_name_status(self.output(["diff", "--name-status", "-M", range]))
        return self.commit_changes(range)

    def commit_changes(self, sha: str) -> ChangeSet:
        """Files touched by one commit, diffed against its first parent."""
        info = self.commit_info(sha)
        if not info.parents:
            output = self.output(["diff-tree", "-r", "--root", "--no-commit-id", "--name-status", "-M", sha])
        else:
            output = self.output(["diff", "--name-status", "-M", info.parents[0], sha])
        return parse_name_status(output)

    # -------------------------------------------------------------------------
    # Notes
    # -------------------------------------------------------------------------

    def note(self, ref: str, commit: str, payload: str) -> None:
        """Write (replace) the note on a commit."""
        self.run(["notes", "--ref", ref, "add", "-f", "-F", "-", commit], input=payload)

    def note_read(self, ref: str, commit: str) -> Optional[str]:
        """Read the note on a commit, or None when absent."""
        result = self.run(["notes", "--ref", ref, "show", commit], check=False)
        if result.returncode != 0:
            if "no note found" in result.stderr.lower():
                return None
            raise GitOperationError("notes", result.returncode, result.stderr)
        return result.stdout

    def note_list(self, ref: str) -> List[Tuple[str, str]]:
        """List (note blob, annotated commit) pairs under a notes ref."""
        result = self.run(["notes", "--ref", ref, "list"], check=False)
        if result.returncode != 0:
            stderr = result.stderr.lower()
            if "not a valid ref" in stderr or "does not exist" in stderr or not stderr.strip():
                return []
            raise GitOperationError("notes", result.returncode, result.stderr)
        pairs = []
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) == 2:
                pairs.append((parts[0], parts[1]))
        return pairs

    def cat_blobs(self, shas: Sequence[str]) -> Dict[str, str]:
        """Read many blobs in one `git cat-file --batch` call."""
        if not shas:
            return {}
        cmd = ["git", "cat-file", "--batch"]
        try:
            proc = subprocess.run(
                cmd,
                cwd=self.cwd,
                env=self.env,
                input=("\n".join(shas) + "\n").encode(),
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise GitOperationError("cat-file", None, f"timed out after {self.timeout}s")
        if proc.returncode != 0:
            raise GitOperationError("cat-file", proc.returncode, proc.stderr.decode(errors="replace"))

        blobs: Dict[str, str] = {}
        data = proc.stdout
        pos = 0
        while pos < len(data):
            header_end = data.index(b"\n", pos)
            header = data[pos:header_end].decode().split()
            pos = header_end + 1
            if len(header) < 3 or header[1] == "missing":
                continue
            size = int(header[2])
            blobs[header[0]] = data[pos:pos + size].decode("utf-8", errors="replace")
            pos += size + 1
        return blobs

    # -------------------------------------------------------------------------
    # Worktrees
    # -------------------------------------------------------------------------

    def worktrees(self) -> List[Path]:
        """Absolute worktree paths, main worktree first."""
        paths = []
        for line in self.output(["worktree", "list", "--porcelain"]).splitlines():
            if line.startswith("worktree "):
                paths.append(Path(line[len("worktree "):]))
        return paths

    def for_worktree(self, path: Path) -> "GitAdapter":
        """Adapter bound to another worktree with the same settings."""
        adapter = GitAdapter(path, timeout=self.timeout)
        adapter.env = dict(self.env)
        return adapter
