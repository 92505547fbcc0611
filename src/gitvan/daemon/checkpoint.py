# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Per-worktree poll checkpoint: last seen branch tips, tags and cron minute."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from gitvan.state import load_json, state_dir, utc_now_iso, write_json_atomic

CHECKPOINT_VERSION = 1
CHECKPOINT_FILE = "checkpoint.json"


@dataclass
class Checkpoint:
    branches: Dict[str, str] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)
    last_cron_minute: Optional[str] = None
    updated_at: Optional[str] = None
    exists: bool = False

    @classmethod
    def path_for(cls, worktree: Path) -> Path:
        return state_dir(worktree) / CHECKPOINT_FILE

    @classmethod
    def load(cls, worktree: Path) -> "Checkpoint":
        data = load_json(cls.path_for(worktree))
        if data is None:
            return cls()
        return cls(
            branches=dict(data.get("branches") or {}),
            tags=dict(data.get("tags") or {}),
            last_cron_minute=data.get("lastCronMinute"),
            updated_at=data.get("updatedAt"),
            exists=True,
        )

    def save(self, worktree: Path) -> None:
        self.updated_at = utc_now_iso()
        write_json_atomic(self.path_for(worktree), {
            "version": CHECKPOINT_VERSION,
            "branches": self.branches,
            "tags": self.tags,
            "lastCronMinute": self.last_cron_minute,
            "updatedAt": self.updated_at,
        })
        self.exists = True
