# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Per-worktree poll cycle.

One cycle:
1. rescan the registry (under the worktree index lock)
2. diff refs against the checkpoint and build EventMetadata per advance
3. match metadata against every (predicate, job) binding
4. ask the cron scheduler for elapsed minutes (primary worktree only)
5. run matches in observation order, at most `per_worktree_parallel` at once
6. persist the checkpoint

Only the primary worktree watches tags, branch creation, branches not
checked out elsewhere and cron, so shared refs are not processed twice.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from gitvan.config import GitVanConfig
from gitvan.cron import CronScheduler, minute_key, parse_minute, utc_now
from gitvan.daemon.checkpoint import Checkpoint
from gitvan.errors import AlreadyRunning, GitVanError, NoHeadError
from gitvan.events import metadata as event_metadata
from gitvan.events.predicate import evaluate
from gitvan.git import GitAdapter
from gitvan.hooks import HookBus
from gitvan.jobs.registry import JobRegistry
from gitvan.jobs.runner import JobRunner
from gitvan.schemas.events import EventMetadata
from gitvan.schemas.job_def import KIND_CRON, KIND_EVENT, JobDefinition
from gitvan.schemas.receipt import Trigger

logger = logging.getLogger(__name__)


@dataclass
class WorkItem:
    job: JobDefinition
    trigger: Trigger
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        if self.trigger.kind == KIND_CRON:
            return f"{self.job.id}@{self.trigger.minute_utc}"
        return f"{self.job.id}@{(self.trigger.commit or '')[:12]}:{self.trigger.matcher_key}"


@dataclass
class WorktreeStats:
    polls: int = 0
    events: int = 0
    matched: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    busy: int = 0
    in_flight: int = 0
    last_poll: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class WorktreeSupervisor:
    """Polls one worktree and feeds matches to its JobRunner."""

    def __init__(
        self,
        worktree: Path,
        git: GitAdapter,
        registry: JobRegistry,
        runner: JobRunner,
        config: GitVanConfig,
        hooks: Optional[HookBus] = None,
        primary: bool = True,
        foreign_branches: Callable[[], Set[str]] = set,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.worktree = Path(worktree)
        self.git = git
        self.registry = registry
        self.runner = runner
        self.config = config
        self.hooks = hooks or HookBus()
        self.primary = primary
        self.foreign_branches = foreign_branches
        self.stats = WorktreeStats()
        self._stats_lock = threading.Lock()
        self.index_lock = threading.Lock()
        self.checkpoint = Checkpoint.load(self.worktree)
        last = parse_minute(self.checkpoint.last_cron_minute) if self.checkpoint.last_cron_minute else None
        self.scheduler = CronScheduler(
            jobs=self.registry.cron_jobs,
            clock=clock,
            catchup_minutes=config.cron_catchup_minutes,
            last_minute=last,
        )
        self._accepting = threading.Event()
        self._accepting.set()

    def stop_accepting(self) -> None:
        self._accepting.clear()

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def _watched_branches(self, branches: Dict[str, str]) -> Dict[str, str]:
        if self.primary:
            foreign = self.foreign_branches()
            return {name: sha for name, sha in branches.items() if name not in foreign}
        current = self.git.current_branch()
        return {current: branches[current]} if current in branches else {}

    def observe(self) -> List[EventMetadata]:
        """EventMetadata for every ref movement since the checkpoint, in order.

        Updates the in-memory checkpoint; callers persist it.
        """
        try:
            head = self.git.head()
        except NoHeadError:
            logger.debug(f"{self.worktree}: no commits yet")
            return []

        events: List[EventMetadata] = []
        seen_commits: Set[str] = set()
        branches = self.git.branches()
        watched = self._watched_branches(branches)
        first_run = not self.checkpoint.exists

        if first_run:
            branch = self.git.current_branch()
            events.append(event_metadata.from_commit(self.git, head, branch))
            seen_commits.add(head)
        else:
            known_tips = sorted(set(self.checkpoint.branches.values()))
            for name in sorted(watched):
                sha = watched[name]
                old = self.checkpoint.branches.get(name)
                if old == sha:
                    continue
                if old is None:
                    if self.primary:
                        events.append(event_metadata.from_branch_created(self.git, name, sha))
                    commits = self.git.new_commits(sha, known_tips) if known_tips else [sha]
                elif self.git.is_ancestor(old, sha):
                    commits = self.git.new_commits(sha, [old])
                else:
                    # history rewritten; only the new tip is observable
                    commits = [sha]
                for commit in commits:
                    if commit in seen_commits:
                        continue
                    seen_commits.add(commit)
                    events.append(event_metadata.from_commit(self.git, commit, name))

        if self.primary:
            tags = self.git.tags()
            for name in sorted(tags):
                if name in self.checkpoint.tags:
                    continue
                if first_run and tags[name] != head:
                    continue
                events.append(event_metadata.from_tag(self.git, name, tags[name], self.git.current_branch()))
            self.checkpoint.tags = tags

        self.checkpoint.branches.update(watched)
        for name in list(self.checkpoint.branches):
            if name not in branches:
                del self.checkpoint.branches[name]
        return events

    def match(self, events: List[EventMetadata]) -> List[WorkItem]:
        items = []
        queued = set()
        bindings = self.registry.bindings()
        for meta in events:
            for predicate, job in bindings:
                key = (job.id, meta.commit, meta.event_key)
                if key in queued or not evaluate(predicate, meta):
                    continue
                queued.add(key)
                items.append(WorkItem(
                    job=job,
                    trigger=Trigger(kind=KIND_EVENT, commit=meta.commit, matcher_key=meta.event_key),
                    meta=meta.to_dict(),
                ))
        return items

    def cron_items(self) -> List[WorkItem]:
        if not self.primary:
            return []
        items = []
        for tick in self.scheduler.tick():
            self.hooks.emit("cron:tick", {"job_id": tick.job.id, "minute": tick.minute_utc})
            items.append(WorkItem(
                job=tick.job,
                trigger=Trigger(kind=KIND_CRON, minute_utc=tick.minute_utc),
                meta={"scheduledMinute": tick.minute_utc},
            ))
        if self.scheduler.last_minute is not None:
            self.checkpoint.last_cron_minute = minute_key(self.scheduler.last_minute)
        return items

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _execute(self, item: WorkItem) -> None:
        try:
            result = self.runner.run(item.job, item.trigger, meta=item.meta)
        except AlreadyRunning:
            self._bump("busy")
            logger.info(f"{item.label} already running elsewhere")
            return
        except GitVanError as e:
            self._bump("failed", error=str(e))
            logger.error(f"{item.label}: {e}")
            return
        except Exception as e:
            # job errors never take the daemon down
            self._bump("failed", error=f"{type(e).__name__}: {e}")
            logger.exception(f"{item.label}: unexpected error")
            return

        if result.skipped:
            self._bump("skipped")
        elif result.success:
            self._bump("succeeded")
        else:
            self._bump("failed", error=result.error)

    def _bump(self, counter: str, delta: int = 1, error: Optional[str] = None) -> None:
        with self._stats_lock:
            setattr(self.stats, counter, getattr(self.stats, counter) + delta)
            if error is not None:
                self.stats.last_error = error

    def run_items(self, items: List[WorkItem]) -> int:
        """Run items in observation order with a bounded worker pool.

        Returns the number of items left undispatched because a drain began.
        """
        if not items:
            return 0
        dispatched = 0
        with ThreadPoolExecutor(
            max_workers=self.config.per_worktree_parallel,
            thread_name_prefix=f"gitvan-{self.worktree.name}",
        ) as pool:
            pending = []
            for item in items:
                if not self._accepting.is_set():
                    break
                if not item.job.options.parallel and pending:
                    wait(pending)
                    pending = []
                self._bump("in_flight")
                future = pool.submit(self._execute, item)
                future.add_done_callback(lambda _: self._bump("in_flight", -1))
                pending.append(future)
                dispatched += 1
                if not item.job.options.parallel:
                    wait(pending)
                    pending = []
        deferred = len(items) - dispatched
        if deferred:
            logger.info(f"{self.worktree}: draining, {deferred} item(s) deferred")
        return deferred

    def poll_once(self) -> List[WorkItem]:
        """One full poll cycle; returns the work items that were queued.

        Nothing is observed once draining has begun. If a drain cuts a cycle
        short the checkpoint is left where it was, so the deferred events
        and cron minutes are seen again after a restart; receipts skip the
        ones that already ran.
        """
        if not self._accepting.is_set():
            return []
        with self.index_lock:
            self.registry.scan()
            events = self.observe()
            items = self.match(events) + self.cron_items()

        self.stats.polls += 1
        self.stats.events += len(events)
        self.stats.matched += len(items)
        self.stats.last_poll = utc_now().isoformat()
        if items:
            logger.info(f"{self.worktree}: {len(events)} events, {len(items)} runs queued")

        if self.run_items(items):
            return items

        with self.index_lock:
            self.checkpoint.save(self.worktree)
        return items
