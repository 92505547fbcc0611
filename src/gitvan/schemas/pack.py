# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Pack, pack state and snapshot schemas."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

TRANSFORM_OPS = ("write", "template", "merge", "skip", "json-merge", "delete")

ACTION_CREATED = "created"
ACTION_MODIFIED = "modified"
ACTION_DELETED = "deleted"


@dataclass
class Transform:
    """One file transform inside a pack."""
    op: str
    target: str
    content: Optional[str] = None
    src: Optional[str] = None
    data: Optional[Dict[str, Any]] = None  # json-merge payload

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"op": self.op, "target": self.target}
        if self.content is not None:
            data["content"] = self.content
        if self.src is not None:
            data["src"] = self.src
        if self.data is not None:
            data["data"] = self.data
        return data


@dataclass
class PackSpec:
    """A reusable bundle of file transforms."""
    id: str
    version: str
    description: str = ""
    dependencies: Dict[str, str] = field(default_factory=dict)
    peer_dependencies: Dict[str, str] = field(default_factory=dict)
    dev_dependencies: Dict[str, str] = field(default_factory=dict)
    transforms: List[Transform] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)
    path: Optional[Path] = None

    def all_dependencies(self) -> Dict[str, str]:
        """Direct, peer and dev constraints, in that precedence order."""
        merged: Dict[str, str] = {}
        for deps in (self.dev_dependencies, self.peer_dependencies, self.dependencies):
            merged.update(deps)
        return merged


@dataclass
class PackArtifact:
    """A file a pack touched, with what it takes to undo it."""
    path: str
    action: str  # created | modified | deleted
    hash: Optional[str] = None  # content hash after apply; None when deleted
    snapshot: Optional[str] = None
    type: str = "file"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "path": self.path,
            "action": self.action,
            "hash": self.hash,
            "snapshot": self.snapshot,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackArtifact":
        return cls(
            path=data["path"],
            action=data.get("action", ACTION_MODIFIED if data.get("snapshot") else ACTION_CREATED),
            hash=data.get("hash"),
            snapshot=data.get("snapshot"),
            type=data.get("type", "file"),
        )


@dataclass
class PackState:
    """Installed pack record."""
    pack_id: str
    version: str
    fingerprint: str
    installed_at: str
    artifacts: List[PackArtifact] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "fingerprint": self.fingerprint,
            "installedAt": self.installed_at,
            "artifacts": [a.to_dict() for a in self.artifacts],
        }

    @classmethod
    def from_dict(cls, pack_id: str, data: Dict[str, Any]) -> "PackState":
        return cls(
            pack_id=pack_id,
            version=data["version"],
            fingerprint=data["fingerprint"],
            installed_at=data.get("installedAt", ""),
            artifacts=[PackArtifact.from_dict(a) for a in data.get("artifacts", [])],
        )


@dataclass
class Snapshot:
    """Pre-apply backup of a file."""
    snapshot_id: str
    path: str
    hash: Optional[str]  # None when the file did not exist
    created_at: str
    existed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.snapshot_id,
            "path": self.path,
            "hash": self.hash,
            "createdAt": self.created_at,
            "existed": self.existed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        return cls(
            snapshot_id=data["id"],
            path=data["path"],
            hash=data.get("hash"),
            created_at=data.get("createdAt", ""),
            existed=data.get("existed", data.get("hash") is not None),
        )
