# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Build EventMetadata from git state or from plain mappings."""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from gitvan.errors import ValidationError
from gitvan.git import CommitInfo, GitAdapter
from gitvan.schemas.events import EventMetadata, PullRequest

MERGE_BRANCH = re.compile(r"^Merge (?:remote-tracking )?branch '([^']+)'(?: into (\S+))?")
MERGE_PR = re.compile(r"^Merge pull request #(\d+) from (\S+)")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _merge_source(git: GitAdapter, info: CommitInfo) -> Optional[str]:
    match = MERGE_BRANCH.match(info.subject)
    if match:
        return match.group(1)
    match = MERGE_PR.match(info.subject)
    if match:
        source = match.group(2)
        return source.split("/", 1)[1] if "/" in source else source
    return git.name_rev(info.parents[1])


def _pull_request(info: CommitInfo) -> Optional[PullRequest]:
    match = MERGE_PR.match(info.subject)
    if not match:
        return None
    body = info.message.splitlines()
    title = body[2] if len(body) > 2 else ""
    return PullRequest(number=int(match.group(1)), title=title, state="merged")


def from_commit(git: GitAdapter, sha: str, branch: Optional[str] = None) -> EventMetadata:
    """Metadata for one commit, diffed against its first parent."""
    info = git.commit_info(sha)
    changes = git.commit_changes(sha)
    meta = EventMetadata(
        timestamp=utc_now_iso(),
        commit=info.sha,
        branch=branch,
        files_changed=changes.changed,
        files_added=sorted(changes.added + [new for _, new in changes.renamed]),
        files_modified=sorted(changes.modified),
        files_deleted=sorted(changes.deleted + [old for old, _ in changes.renamed]),
        message=info.message,
        author_name=info.author_name,
        author_email=info.author_email,
        signed=info.signed,
    )
    if info.is_merge:
        meta.merged_to = branch
        meta.merged_from = _merge_source(git, info)
        meta.pull_request = _pull_request(info)
    return meta


def from_tag(git: GitAdapter, tag: str, sha: str, branch: Optional[str] = None) -> EventMetadata:
    """Metadata for a newly created tag, anchored at the tagged commit."""
    info = git.commit_info(sha)
    return EventMetadata(
        timestamp=utc_now_iso(),
        commit=info.sha,
        branch=branch,
        tags_created=[tag],
        message=info.message,
        author_name=info.author_name,
        author_email=info.author_email,
        signed=info.signed,
    )


def from_branch_created(git: GitAdapter, branch: str, sha: str) -> EventMetadata:
    info = git.commit_info(sha)
    return EventMetadata(
        timestamp=utc_now_iso(),
        commit=info.sha,
        branch=branch,
        branch_created=branch,
        message=info.message,
        author_name=info.author_name,
        author_email=info.author_email,
        signed=info.signed,
    )


_FIELD_ALIASES = {
    "filesChanged": "files_changed",
    "filesAdded": "files_added",
    "filesModified": "files_modified",
    "filesDeleted": "files_deleted",
    "tagsCreated": "tags_created",
    "mergedTo": "merged_to",
    "mergedFrom": "merged_from",
    "branchCreated": "branch_created",
    "authorName": "author_name",
    "authorEmail": "author_email",
    "pullRequest": "pull_request",
}


def from_dict(data: Dict[str, Any]) -> EventMetadata:
    """Metadata from a camelCase or snake_case mapping (simulation input)."""
    values: Dict[str, Any] = {"timestamp": utc_now_iso()}
    known = set(EventMetadata.__dataclass_fields__)
    for key, value in data.items():
        name = _FIELD_ALIASES.get(key, key)
        if name not in known:
            raise ValidationError(f"metadata.{key}", value, "unknown metadata field")
        values[name] = value

    pr = values.get("pull_request")
    if isinstance(pr, dict):
        values["pull_request"] = PullRequest(
            number=int(pr.get("number", 0)),
            title=pr.get("title", ""),
            state=pr.get("state", "open"),
        )

    meta = EventMetadata(**values)
    if not meta.files_changed:
        meta.files_changed = sorted(set(meta.files_added + meta.files_modified + meta.files_deleted))
    return meta
