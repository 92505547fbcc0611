# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Named locks for run exclusivity and index updates.

Each lock is a lock file created with O_EXCL under a lock directory, plus an
in-process registry so threads in one daemon see each other immediately.
Lock files record the holder's pid and host; a lock whose holder process is
gone on this host is considered stale and broken on the next acquire.
"""

import json
import logging
import os
import socket
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from gitvan.errors import FilesystemError, LockUnavailable
from gitvan.fingerprint import sha256_hex

logger = logging.getLogger(__name__)


@dataclass
class LockHandle:
    name: str
    path: Path
    acquired_at: str


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class LockManager:
    """Acquire and release named locks backed by files in `lock_dir`."""

    def __init__(self, lock_dir: Path):
        self.lock_dir = Path(lock_dir)
        self._held: Dict[str, LockHandle] = {}
        self._mutex = threading.Lock()
        self._host = socket.gethostname()

    def _path_for(self, name: str) -> Path:
        return self.lock_dir / f"{sha256_hex(name)[:32]}.lock"

    def _read_holder(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError):
            return None

    def _is_stale(self, path: Path) -> bool:
        holder = self._read_holder(path)
        if not holder:
            return False
        if holder.get("host") != self._host:
            return False
        pid = holder.get("pid")
        return isinstance(pid, int) and pid != os.getpid() and not pid_alive(pid)

    def _create(self, name: str, path: Path, metadata: Optional[Dict[str, Any]]) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            raise FilesystemError(path, f"cannot create lock: {e}")
        holder = {
            "name": name,
            "pid": os.getpid(),
            "host": self._host,
            "thread": threading.get_ident(),
            "acquiredAt": datetime.now(timezone.utc).isoformat(),
            "metadata": metadata or {},
        }
        with os.fdopen(fd, "w") as f:
            json.dump(holder, f)
        return True

    def acquire(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> LockHandle:
        """Acquire a lock or fail fast.

        Raises:
            LockUnavailable: If another thread or live process holds it.
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self._path_for(name)
        with self._mutex:
            if name in self._held:
                raise LockUnavailable(name, "this process")
            if not self._create(name, path, metadata):
                if self._is_stale(path):
                    logger.warning(f"Breaking stale lock '{name}' at {path}")
                    try:
                        path.unlink()
                    except FileNotFoundError:
                        pass
                    if not self._create(name, path, metadata):
                        raise LockUnavailable(name, self._describe_holder(path))
                else:
                    raise LockUnavailable(name, self._describe_holder(path))
            handle = LockHandle(name=name, path=path, acquired_at=datetime.now(timezone.utc).isoformat())
            self._held[name] = handle
        logger.debug(f"Acquired lock '{name}'")
        return handle

    def acquire_wait(
        self,
        name: str,
        timeout: float = 10.0,
        interval: float = 0.05,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LockHandle:
        """Acquire a lock, polling until `timeout` elapses."""
        deadline = time.monotonic() + timeout
        while True:
            try:
                return self.acquire(name, metadata)
            except LockUnavailable:
                if time.monotonic() >= deadline:
                    raise
                time.sleep(interval)

    def release(self, handle: LockHandle) -> None:
        with self._mutex:
            self._held.pop(handle.name, None)
            try:
                handle.path.unlink()
            except FileNotFoundError:
                logger.warning(f"Lock file for '{handle.name}' vanished before release")
        logger.debug(f"Released lock '{handle.name}'")

    def is_locked(self, name: str) -> bool:
        with self._mutex:
            if name in self._held:
                return True
        path = self._path_for(name)
        return path.exists() and not self._is_stale(path)

    @contextmanager
    def hold(self, name: str, wait: Optional[float] = None, metadata: Optional[Dict[str, Any]] = None) -> Iterator[LockHandle]:
        """Context manager; waits up to `wait` seconds when given."""
        if wait is None:
            handle = self.acquire(name, metadata)
        else:
            handle = self.acquire_wait(name, timeout=wait, metadata=metadata)
        try:
            yield handle
        finally:
            self.release(handle)

    def _describe_holder(self, path: Path) -> Optional[str]:
        holder = self._read_holder(path)
        if not holder:
            return None
        return f"pid {holder.get('pid')} on {holder.get('host')}"
