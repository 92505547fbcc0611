# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Event metadata and predicate schemas."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Pattern


@dataclass
class PullRequest:
    number: int
    title: str = ""
    state: str = "open"


@dataclass
class EventMetadata:
    """Snapshot of a single candidate trigger."""
    timestamp: str
    commit: Optional[str] = None
    branch: Optional[str] = None
    files_changed: List[str] = field(default_factory=list)
    files_added: List[str] = field(default_factory=list)
    files_modified: List[str] = field(default_factory=list)
    files_deleted: List[str] = field(default_factory=list)
    tags_created: List[str] = field(default_factory=list)
    merged_to: Optional[str] = None
    merged_from: Optional[str] = None
    branch_created: Optional[str] = None
    message: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    signed: bool = False
    pull_request: Optional[PullRequest] = None

    @property
    def event_key(self) -> str:
        """Identifies what happened at the commit, for fingerprints."""
        if self.tags_created:
            return "tag:" + ",".join(sorted(self.tags_created))
        if self.branch_created:
            return "branch:" + self.branch_created
        return "commit"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "timestamp": data["timestamp"],
            "commit": data["commit"],
            "branch": data["branch"],
            "filesChanged": data["files_changed"],
            "filesAdded": data["files_added"],
            "filesModified": data["files_modified"],
            "filesDeleted": data["files_deleted"],
            "tagsCreated": data["tags_created"],
            "mergedTo": data["merged_to"],
            "mergedFrom": data["merged_from"],
            "branchCreated": data["branch_created"],
            "message": data["message"],
            "authorName": data["author_name"],
            "authorEmail": data["author_email"],
            "signed": data["signed"],
            "pullRequest": data["pull_request"],
        }


@dataclass
class EventPredicate:
    """Validated, compiled predicate tree.

    `leaves` holds matcher key -> raw value; `patterns` caches compiled
    regexes keyed by matcher key so evaluation never recompiles.
    """
    leaves: Dict[str, Any] = field(default_factory=dict)
    any: Optional[List["EventPredicate"]] = None
    all: Optional[List["EventPredicate"]] = None
    patterns: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)
    source: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def pattern(self, key: str) -> Optional[Pattern]:
        return self.patterns.get(key)

    def matcher_keys(self) -> List[str]:
        keys = list(self.leaves)
        for child in (self.any or []) + (self.all or []):
            keys.extend(child.matcher_keys())
        return keys
