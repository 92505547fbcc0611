# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Daemon - long-running supervisor for every worktree of a repository.

State machine:

    idle -> starting -> running -> draining -> stopped
                ^                                 |
                +---------------------------------+   (restart)

The daemon owns one WorktreeSupervisor per worktree, each polled on its
own thread. A semaphore caps how many worktrees poll at once
(min(worktree count, max_parallel)). The Daemon is a plain value created
by the CLI; there is no process-wide instance.
"""

import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from gitvan.config import GitVanConfig
from gitvan.cron import utc_now
from gitvan.daemon.worktree import WorktreeSupervisor
from gitvan.errors import GitOperationError, GitVanError
from gitvan.git import GitAdapter
from gitvan.hooks import HookBus
from gitvan.jobs.registry import JobRegistry
from gitvan.jobs.runner import JobRunner
from gitvan.locks import LockManager
from gitvan.packs.engine import PackEngine
from gitvan.receipts import ReceiptStore
from gitvan.state import load_json, write_json_atomic

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_STARTING = "starting"
STATE_RUNNING = "running"
STATE_DRAINING = "draining"
STATE_STOPPED = "stopped"

TRANSITIONS = {
    STATE_IDLE: {STATE_STARTING},
    STATE_STARTING: {STATE_RUNNING, STATE_STOPPED},
    STATE_RUNNING: {STATE_DRAINING},
    STATE_DRAINING: {STATE_STOPPED},
    STATE_STOPPED: {STATE_STARTING},
}

PIDFILE = "daemon.json"


class InvalidTransition(GitVanError):
    """Raised when a lifecycle call does not fit the current state."""


class Daemon:
    """Supervisor for all worktrees under `config.root_dir`."""

    def __init__(
        self,
        config: GitVanConfig,
        hooks: Optional[HookBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.hooks = hooks or HookBus()
        self.clock = clock
        self.supervisors: List[WorktreeSupervisor] = []
        self.receipts: Optional[ReceiptStore] = None
        self._state = STATE_IDLE
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._slots: Optional[threading.Semaphore] = None
        self.started_at: Optional[str] = None

    @property
    def state(self) -> str:
        return self._state

    def _transition(self, target: str) -> None:
        with self._state_lock:
            if target not in TRANSITIONS[self._state]:
                raise InvalidTransition(f"cannot go from {self._state} to {target}")
            previous, self._state = self._state, target
        logger.info(f"Daemon {previous} -> {target}")
        self.hooks.emit("daemon:state", {"from": previous, "to": target, "status": target})

    @property
    def parallelism(self) -> int:
        return max(1, min(len(self.supervisors) or 1, self.config.max_parallel))

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def _build(self) -> None:
        root = GitAdapter(self.config.root_dir, timeout=self.config.git_timeout)
        if not root.is_repository():
            raise GitOperationError("rev-parse", None, f"{self.config.root_dir} is not a git worktree")

        locks = LockManager(self.config.locks_dir)
        self.receipts = ReceiptStore(root, locks, notes_ref=self.config.notes_ref, hooks=self.hooks)
        self.receipts.refresh()

        worktrees = root.worktrees() or [self.config.root_dir]
        self.supervisors = []
        for index, worktree in enumerate(worktrees):
            git = root.for_worktree(worktree)
            registry = JobRegistry(
                job_roots=[worktree / d for d in self.config.jobs_dirs],
                event_roots=[worktree / d for d in self.config.events_dirs],
                hooks=self.hooks,
            )
            registry.scan()
            runner = JobRunner(git, self.receipts, locks, hooks=self.hooks, config=self.config, worktree=worktree)
            self.supervisors.append(WorktreeSupervisor(
                worktree=worktree,
                git=git,
                registry=registry,
                runner=runner,
                config=self.config,
                hooks=self.hooks,
                primary=index == 0,
                foreign_branches=self._foreign_branches,
                clock=self.clock,
            ))
        logger.info(f"Supervising {len(self.supervisors)} worktree(s)")

    def _foreign_branches(self) -> Set[str]:
        """Branches checked out in secondary worktrees."""
        branches = set()
        for supervisor in self.supervisors[1:]:
            try:
                branches.add(supervisor.git.current_branch())
            except GitOperationError as e:
                logger.warning(f"{supervisor.worktree}: {e}")
        return branches

    def _prune_snapshots(self) -> None:
        for supervisor in self.supervisors:
            engine = PackEngine(supervisor.worktree, self.config, hooks=self.hooks)
            removed = engine.prune_snapshots()
            if removed:
                logger.info(f"{supervisor.worktree}: pruned {len(removed)} expired snapshots")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, background: bool = True) -> None:
        """Load worktrees and begin polling.

        Args:
            background: Start poll threads. False leaves the daemon running
                without threads so callers drive it with poll_once().

        Raises:
            GitVanError: If the adapter or registry cannot be initialised;
                the daemon ends in `stopped`.
        """
        self._transition(STATE_STARTING)
        try:
            self._build()
            self._prune_snapshots()
        except GitVanError:
            self._transition(STATE_STOPPED)
            raise

        self._stop_event.clear()
        self._slots = threading.Semaphore(self.parallelism)
        self._threads = []
        if background:
            for supervisor in self.supervisors:
                thread = threading.Thread(
                    target=self._loop,
                    args=(supervisor,),
                    name=f"gitvan-poll-{supervisor.worktree.name}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        self.started_at = datetime.now(timezone.utc).isoformat()
        self._transition(STATE_RUNNING)

    def _loop(self, supervisor: WorktreeSupervisor) -> None:
        while not self._stop_event.is_set():
            with self._slots:
                self._poll(supervisor)
            self._stop_event.wait(self.config.poll_interval)

    def _poll(self, supervisor: WorktreeSupervisor) -> None:
        try:
            supervisor.poll_once()
        except GitVanError as e:
            supervisor.stats.last_error = str(e)
            logger.error(f"{supervisor.worktree}: poll failed: {e}")
        except Exception as e:
            # the poll thread keeps running; the next cycle retries
            supervisor.stats.last_error = f"{type(e).__name__}: {e}"
            logger.exception(f"{supervisor.worktree}: unexpected poll failure")

    def poll_once(self) -> None:
        """Poll every worktree once on the calling thread."""
        if self._state != STATE_RUNNING:
            raise InvalidTransition(f"cannot poll while {self._state}")
        for supervisor in self.supervisors:
            self._poll(supervisor)

    def stop(self) -> None:
        """Drain in-flight runs up to the drain deadline, then hard-cancel."""
        if self._state != STATE_RUNNING:
            logger.info(f"Daemon not running ({self._state}); nothing to stop")
            return
        self._transition(STATE_DRAINING)
        self._stop_event.set()
        for supervisor in self.supervisors:
            supervisor.stop_accepting()

        deadline = time.monotonic() + self.config.drain_deadline
        for thread in self._threads:
            thread.join(max(deadline - time.monotonic(), 0))

        stragglers = [t for t in self._threads if t.is_alive()]
        if stragglers:
            logger.warning(f"Drain deadline passed with {len(stragglers)} worktree(s) busy; cancelling runs")
            for supervisor in self.supervisors:
                supervisor.runner.cancel_all()
            for thread in stragglers:
                thread.join(self.config.timeout_grace)
        self._threads = []
        self._transition(STATE_STOPPED)

    def restart(self, background: bool = True) -> None:
        self.stop()
        self.start(background=background)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is requested."""
        return self._stop_event.wait(timeout)

    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state,
            "pid": os.getpid(),
            "startedAt": self.started_at,
            "parallelism": self.parallelism if self.supervisors else 0,
            "worktrees": {
                str(s.worktree): {**s.stats.to_dict(), "primary": s.primary}
                for s in self.supervisors
            },
        }


# =============================================================================
# PID file (for `daemon status` / `daemon stop` from another process)
# =============================================================================

def pidfile_path(config: GitVanConfig) -> Path:
    return config.state_dir / PIDFILE


def write_pidfile(config: GitVanConfig, status: Dict[str, Any]) -> None:
    write_json_atomic(pidfile_path(config), status)


def read_pidfile(config: GitVanConfig) -> Optional[Dict[str, Any]]:
    return load_json(pidfile_path(config))


def clear_pidfile(config: GitVanConfig) -> None:
    try:
        pidfile_path(config).unlink()
    except FileNotFoundError:
        pass
