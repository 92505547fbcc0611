# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Receipt store backed by git notes.

Receipts live under a notes ref (default refs/notes/gitvan/results). Each
note holds one JSON receipt per line, so several receipts can share the note
on one commit. An in-memory index keyed by (jobId, fingerprint) answers
has() in O(1); refresh() reads only note blobs it has not seen yet.

record() is idempotent: an identical status for an existing key is a no-op,
a divergent status raises ReceiptConflict. Writes are serialized behind a
repository-wide lock so concurrent writers cannot lose each other's lines.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from gitvan.config import DEFAULT_NOTES_REF
from gitvan.errors import ReceiptConflict
from gitvan.git import GitAdapter
from gitvan.hooks import HookBus
from gitvan.locks import LockManager
from gitvan.schemas.receipt import Receipt, parse_note

logger = logging.getLogger(__name__)

WRITE_LOCK_WAIT = 10.0


def _parse_ts(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None


class ReceiptStore:
    """Exactly-once gate and audit trail."""

    def __init__(
        self,
        git: GitAdapter,
        locks: LockManager,
        notes_ref: str = DEFAULT_NOTES_REF,
        hooks: Optional[HookBus] = None,
    ):
        self.git = git
        self.locks = locks
        self.notes_ref = notes_ref
        self.hooks = hooks or HookBus()
        self._index: Dict[Tuple[str, str], Receipt] = {}
        self._seen_blobs: Set[str] = set()
        self._loaded = False
        self._mutex = threading.RLock()

    @property
    def _lock_name(self) -> str:
        return f"receipts:{self.notes_ref}"

    def refresh(self) -> int:
        """Load receipts from note blobs not indexed yet.

        Returns:
            Number of receipts newly indexed.
        """
        with self._mutex:
            pairs = self.git.note_list(self.notes_ref)
            new_pairs = [(blob, commit) for blob, commit in pairs if blob not in self._seen_blobs]
            blobs = self.git.cat_blobs([blob for blob, _ in new_pairs])
            added = 0
            for blob, commit in new_pairs:
                content = blobs.get(blob)
                if content is None:
                    continue
                self._seen_blobs.add(blob)
                for receipt in parse_note(content, commit=commit):
                    if receipt.key not in self._index:
                        added += 1
                        self._index[receipt.key] = receipt
            self._loaded = True
            if added:
                logger.debug(f"Indexed {added} receipts from {self.notes_ref}")
            return added

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.refresh()

    def has(self, job_id: str, fingerprint: str, refresh: bool = False) -> bool:
        with self._mutex:
            if refresh or not self._loaded:
                self.refresh()
            return (job_id, fingerprint) in self._index

    def get(self, job_id: str, fingerprint: str) -> Optional[Receipt]:
        with self._mutex:
            self._ensure_loaded()
            return self._index.get((job_id, fingerprint))

    def record(self, receipt: Receipt, anchor: Optional[str] = None) -> Receipt:
        """Persist a receipt idempotently.

        Args:
            receipt: The outcome to record.
            anchor: Commit to attach the note to (defaults to HEAD).

        Returns:
            The stored receipt (the pre-existing one on an identical replay).

        Raises:
            ReceiptConflict: If the key exists with a different status.
        """
        with self._mutex, self.locks.hold(self._lock_name, wait=WRITE_LOCK_WAIT):
            self.refresh()
            existing = self._index.get(receipt.key)
            if existing is not None:
                if existing.status == receipt.status:
                    logger.debug(f"Receipt for {receipt.job_id}@{receipt.fingerprint[:12]} already recorded")
                    return existing
                raise ReceiptConflict(receipt.job_id, receipt.fingerprint, existing.status, receipt.status)

            commit = anchor or self.git.head()
            current = self.git.note_read(self.notes_ref, commit) or ""
            lines = [line for line in current.splitlines() if line.strip()]
            lines.append(receipt.to_line())
            self.git.note(self.notes_ref, commit, "\n".join(lines) + "\n")

            receipt.commit = commit
            self._index[receipt.key] = receipt
            # The rewritten note is a new blob; pick it up without re-reading old ones
            self.refresh()

        self.hooks.emit("receipt:write", {
            "job_id": receipt.job_id,
            "fingerprint": receipt.fingerprint,
            "status": receipt.status,
            "commit": commit,
            "ref": self.notes_ref,
        })
        return receipt

    def list(
        self,
        job_id: Optional[str] = None,
        status: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Receipt]:
        """Receipts matching a filter, newest first."""
        with self._mutex:
            self.refresh()
            receipts = list(self._index.values())

        since_dt = _parse_ts(since) if since else None
        until_dt = _parse_ts(until) if until else None
        filtered = []
        for receipt in receipts:
            if job_id and receipt.job_id != job_id:
                continue
            if status and receipt.status != status:
                continue
            ts = _parse_ts(receipt.timestamp)
            if since_dt and (ts is None or ts < since_dt):
                continue
            if until_dt and (ts is None or ts > until_dt):
                continue
            filtered.append(receipt)

        filtered.sort(key=lambda r: r.timestamp, reverse=True)
        if limit is not None:
            filtered = filtered[:limit]
        return filtered

    def compact(self) -> int:
        """Rewrite notes dropping duplicate and unparseable lines.

        Returns:
            Number of notes rewritten.
        """
        rewritten = 0
        with self._mutex, self.locks.hold(self._lock_name, wait=WRITE_LOCK_WAIT):
            for _, commit in self.git.note_list(self.notes_ref):
                content = self.git.note_read(self.notes_ref, commit) or ""
                seen = set()
                kept = []
                for receipt in parse_note(content, commit=commit):
                    if receipt.key in seen:
                        continue
                    seen.add(receipt.key)
                    kept.append(receipt.to_line())
                compacted = "\n".join(kept) + "\n" if kept else ""
                if compacted != content and kept:
                    self.git.note(self.notes_ref, commit, compacted)
                    rewritten += 1
            self._seen_blobs.clear()
            self._index.clear()
            self.refresh()
        if rewritten:
            logger.info(f"Compacted {rewritten} receipt notes")
        return rewritten
