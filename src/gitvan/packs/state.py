# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Installed-pack records in <worktree>/.gitvan/state/packs.json."""

from pathlib import Path
from typing import Any, Dict, List, Optional

from gitvan.schemas.pack import PackState
from gitvan.state import load_json, state_dir, utc_now_iso, write_json_atomic

STATE_VERSION = "1.0"
STATE_FILE = "packs.json"
MAX_OPERATIONS = 100


class PackStateFile:
    """Read-modify-write wrapper around packs.json."""

    def __init__(self, worktree: Path):
        self.path = state_dir(worktree) / STATE_FILE
        self.packs: Dict[str, PackState] = {}
        self.operations: List[Dict[str, Any]] = []
        self.last_updated: Optional[str] = None
        self.load()

    def load(self) -> None:
        data = load_json(self.path) or {}
        self.packs = {
            pack_id: PackState.from_dict(pack_id, entry)
            for pack_id, entry in (data.get("packs") or {}).items()
        }
        self.operations = list(data.get("operations") or [])
        self.last_updated = data.get("lastUpdated")

    def save(self) -> None:
        self.last_updated = utc_now_iso()
        write_json_atomic(self.path, {
            "version": STATE_VERSION,
            "packs": {pid: state.to_dict() for pid, state in sorted(self.packs.items())},
            "operations": self.operations[-MAX_OPERATIONS:],
            "lastUpdated": self.last_updated,
        })

    def get(self, pack_id: str) -> Optional[PackState]:
        return self.packs.get(pack_id)

    def put(self, state: PackState) -> None:
        self.packs[state.pack_id] = state

    def remove(self, pack_id: str) -> Optional[PackState]:
        return self.packs.pop(pack_id, None)

    def log(self, operation: str, pack_id: str, **details: Any) -> None:
        self.operations.append({"op": operation, "packId": pack_id, "at": utc_now_iso(), **details})
        del self.operations[:-MAX_OPERATIONS]

    def snapshot_ids(self) -> List[str]:
        """Snapshots still referenced by an installed pack."""
        return [
            artifact.snapshot
            for state in self.packs.values()
            for artifact in state.artifacts
            if artifact.snapshot
        ]
