# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Job and event definition schemas.

Two flavours of job share one runner contract:
- callable jobs: a Python `run(ctx, payload, meta)` function
- declarative jobs: YAML `steps` compiled to a JobInstance and executed op by op
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from gitvan.errors import JobTimeoutError

if TYPE_CHECKING:
    from gitvan.config import GitVanConfig
    from gitvan.git import GitAdapter
    from gitvan.schemas.events import EventPredicate

KIND_ON_DEMAND = "on-demand"
KIND_CRON = "cron"
KIND_EVENT = "event"
JOB_KINDS = (KIND_ON_DEMAND, KIND_CRON, KIND_EVENT)


@dataclass
class StepInstance:
    """A compiled step ready for execution.

    All @ctx.*, @payload.*, @self.* refs are resolved.
    Only @run.* refs may remain for runtime resolution.
    """
    step_id: str
    op: str  # e.g., "shell.run"
    params: Dict[str, Any] = field(default_factory=dict)
    timeout_s: int = 300
    continue_on_error: bool = False
    condition: Optional[Dict[str, Any]] = None


@dataclass
class JobInstance:
    """A compiled declarative job ready for execution."""
    job_id: str
    job_version: str
    compiled_at: datetime
    steps: Tuple[StepInstance, ...]


@dataclass
class StepOutcome:
    """Result of executing a single step."""
    step_id: str
    status: str  # "completed", "failed", "skipped"
    output: Any = None
    error: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)


@dataclass
class RunRecord:
    """Result of executing a declarative job."""
    run_id: str
    job_id: str
    success: bool
    started_at: datetime
    completed_at: Optional[datetime] = None
    outcomes: List[StepOutcome] = field(default_factory=list)

    @property
    def artifacts(self) -> List[str]:
        paths: List[str] = []
        for outcome in self.outcomes:
            paths.extend(outcome.artifacts)
        return paths


@dataclass
class JobMeta:
    """Descriptive job metadata."""
    desc: str = ""
    tags: List[str] = field(default_factory=list)
    version: str = "1.0.0"
    author: Optional[str] = None
    priority: int = 5


@dataclass
class JobOptions:
    """Execution options."""
    timeout: Optional[float] = None  # seconds; None means the configured default
    retries: int = 0
    parallel: bool = True
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    idempotent: bool = True


RunCallable = Callable[["JobContext", Dict[str, Any], Dict[str, Any]], Any]


@dataclass
class JobDefinition:
    """An executable unit discovered from disk or defined in code."""
    id: str
    kind: str = KIND_ON_DEMAND
    cron: Optional[str] = None
    on: Optional["EventPredicate"] = None
    run: Optional[RunCallable] = None
    steps: Optional[List[Dict[str, Any]]] = None
    defaults: Dict[str, Any] = field(default_factory=dict)
    meta: JobMeta = field(default_factory=JobMeta)
    options: JobOptions = field(default_factory=JobOptions)
    source: Optional[Path] = None
    source_hash: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def version(self) -> str:
        return self.meta.version

    @property
    def is_declarative(self) -> bool:
        return self.run is None and self.steps is not None


@dataclass
class EventDefinition:
    """A rule binding a predicate to an action."""
    id: str
    on: "EventPredicate"
    run: Optional[RunCallable] = None
    steps: Optional[List[Dict[str, Any]]] = None
    job: Optional[str] = None  # route matches to an existing job id
    priority: int = 5
    version: str = "1.0.0"
    desc: str = ""
    source: Optional[Path] = None
    source_hash: Optional[str] = None

    def as_job(self) -> JobDefinition:
        """View an inline event action as an event-kind job."""
        return JobDefinition(
            id=f"event:{self.id}",
            kind=KIND_EVENT,
            on=self.on,
            run=self.run,
            steps=self.steps,
            meta=JobMeta(desc=self.desc, version=self.version, priority=self.priority),
            source=self.source,
            source_hash=self.source_hash,
        )


@dataclass
class JobContext:
    """Per-invocation environment handed to `run`.

    Capabilities (git, hooks) are bound at runner construction; the job
    never looks them up ambiently.
    """
    id: str
    job: JobDefinition
    start_time: str  # ISO 8601 UTC
    worktree: Path
    branch: str
    head: Optional[str]
    env: Dict[str, str]
    fingerprint: str
    trigger: Dict[str, Any]
    payload: Dict[str, Any] = field(default_factory=dict)
    git: Optional["GitAdapter"] = None
    config: Optional["GitVanConfig"] = None
    attempt: int = 1
    deadline: Optional[float] = None  # monotonic seconds
    cancel_event: threading.Event = field(default_factory=threading.Event)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("gitvan.job"))

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        """Cooperative cancellation point for long-running jobs."""
        if self.cancel_event.is_set():
            raise JobTimeoutError(f"job {self.job.id} cancelled at its deadline")

    def path(self, relative: str) -> Path:
        return self.worktree / relative


@dataclass
class JobResult:
    """Outcome of one job execution."""
    success: bool
    output: Any = None
    error: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    duration: int = 0  # milliseconds
    exit_code: int = 0
    status: str = "success"  # success | error | skipped
    fingerprint: Optional[str] = None
    run_id: Optional[str] = None
    attempts: int = 0

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"
