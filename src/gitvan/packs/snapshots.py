# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Pre-apply file snapshots.

Layout under <worktree>/.gitvan/state/snapshots/:

    <id>.json   sidecar: path, content hash, createdAt, existed
    <id>.blob   file bytes (absent when the file did not exist)

A snapshot of a missing file is still recorded so restore() can delete
whatever a pack created there.
"""

import hashlib
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from gitvan.errors import FilesystemError
from gitvan.schemas.pack import Snapshot
from gitvan.state import age_days, load_json, state_dir, utc_now_iso, write_json_atomic

logger = logging.getLogger(__name__)


def file_sha256(path: Path) -> Optional[str]:
    """Content hash of a file, or None when it does not exist."""
    try:
        with open(path, "rb") as f:
            return hashlib.sha256(f.read()).hexdigest()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise FilesystemError(path, f"cannot hash: {e}")


def write_bytes_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.gitvan-{uuid.uuid4().hex[:8]}")
    try:
        with open(tmp, "wb") as f:
            f.write(data)
        if path.exists():
            os.chmod(tmp, path.stat().st_mode)
        os.replace(tmp, path)
    except OSError:
        if tmp.exists():
            tmp.unlink()
        raise


class SnapshotStore:
    def __init__(self, worktree: Path):
        self.worktree = Path(worktree)
        self.root = state_dir(self.worktree) / "snapshots"

    def _sidecar(self, snapshot_id: str) -> Path:
        return self.root / f"{snapshot_id}.json"

    def _blob(self, snapshot_id: str) -> Path:
        return self.root / f"{snapshot_id}.blob"

    def capture(self, rel_path: str) -> Snapshot:
        """Back up `rel_path` (relative to the worktree) before it is touched."""
        target = self.worktree / rel_path
        snapshot = Snapshot(
            snapshot_id=uuid.uuid4().hex,
            path=rel_path,
            hash=None,
            created_at=utc_now_iso(),
            existed=target.is_file(),
        )
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            if snapshot.existed:
                data = target.read_bytes()
                snapshot.hash = hashlib.sha256(data).hexdigest()
                self._blob(snapshot.snapshot_id).write_bytes(data)
        except OSError as e:
            raise FilesystemError(target, f"cannot snapshot: {e}")
        write_json_atomic(self._sidecar(snapshot.snapshot_id), snapshot.to_dict())
        logger.debug(f"Snapshot {snapshot.snapshot_id[:8]} of {rel_path} (existed={snapshot.existed})")
        return snapshot

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        data = load_json(self._sidecar(snapshot_id))
        return Snapshot.from_dict(data) if data else None

    def restore(self, snapshot_id: str) -> Snapshot:
        """Put the file back the way it was at capture time.

        Raises:
            FilesystemError: If the snapshot is missing, damaged or the
                write fails.
        """
        snapshot = self.get(snapshot_id)
        if snapshot is None:
            raise FilesystemError(self._sidecar(snapshot_id), "snapshot not found")
        target = self.worktree / snapshot.path

        if not snapshot.existed:
            try:
                target.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise FilesystemError(target, f"cannot remove: {e}")
            return snapshot

        try:
            data = self._blob(snapshot_id).read_bytes()
        except OSError as e:
            raise FilesystemError(self._blob(snapshot_id), f"snapshot content unreadable: {e}")
        if hashlib.sha256(data).hexdigest() != snapshot.hash:
            raise FilesystemError(self._blob(snapshot_id), "snapshot content does not match its hash")
        try:
            write_bytes_atomic(target, data)
        except OSError as e:
            raise FilesystemError(target, f"cannot restore: {e}")
        return snapshot

    def delete(self, snapshot_id: str) -> None:
        for path in (self._sidecar(snapshot_id), self._blob(snapshot_id)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    def list(self) -> List[Snapshot]:
        if not self.root.is_dir():
            return []
        snapshots = []
        for sidecar in sorted(self.root.glob("*.json")):
            data = load_json(sidecar)
            if data and "id" in data:
                snapshots.append(Snapshot.from_dict(data))
        return snapshots

    def prune(
        self,
        retention_days: int,
        keep: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Delete snapshots older than `retention_days` not listed in `keep`.

        Returns:
            Ids of removed snapshots.
        """
        keep = set(keep)
        removed = []
        for snapshot in self.list():
            if snapshot.snapshot_id in keep:
                continue
            age = age_days(snapshot.created_at, now)
            if age is None or age <= retention_days:
                continue
            self.delete(snapshot.snapshot_id)
            removed.append(snapshot.snapshot_id)
        return removed
