# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Job runner.

Runs a job at most once per (job, fingerprint):

1. build a JobContext
2. take the run lock for (worktree, job, fingerprint); held -> AlreadyRunning
3. receipt already present -> skipped
4. invoke the job under a soft deadline (cooperative cancel via
   ctx.cancel_event) and a hard deadline of timeout + grace
5. retry failures with exponential backoff (base 250 ms, cap 30 s, +/-20% jitter)
6. record a receipt, release the lock, emit job:success / job:error

A job thread that outlives the hard deadline cannot be killed from Python;
it is abandoned (daemon thread) and the run is recorded as a timeout.
"""

import logging
import random
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import tenacity
import ulid

from gitvan.config import GitVanConfig
from gitvan.errors import (
    AlreadyRunning,
    ContextSetupError,
    GitOperationError,
    GitVanError,
    JobTimeoutError,
    LockUnavailable,
    ReceiptConflict,
    UserError,
)
from gitvan.fingerprint import compute_fingerprint, payload_hash
from gitvan.git import GitAdapter, git_env
from gitvan.hooks import HookBus
from gitvan.jobs.compiler import compile_job
from gitvan.jobs.executor import execute
from gitvan.locks import LockManager
from gitvan.receipts import ReceiptStore
from gitvan.schemas.job_def import KIND_ON_DEMAND, JobContext, JobDefinition, JobResult
from gitvan.schemas.receipt import STATUS_ERROR, STATUS_SUCCESS, Receipt, Trigger

logger = logging.getLogger(__name__)

BACKOFF_BASE = 0.25
BACKOFF_CAP = 30.0
BACKOFF_JITTER = 0.2

STATUS_SKIPPED = "skipped"


def new_run_id() -> str:
    """Sortable 26-char ULID."""
    return str(ulid.new())


def backoff_delay(attempt: int, rng: Callable[[], float] = random.random) -> float:
    """Delay before retry number `attempt` (1-based)."""
    delay = min(BACKOFF_CAP, BACKOFF_BASE * (2 ** (attempt - 1)))
    return delay * (1 + BACKOFF_JITTER * (2 * rng() - 1))


def on_demand_trigger(payload: Optional[Dict[str, Any]]) -> Trigger:
    return Trigger(kind=KIND_ON_DEMAND, payload_hash=payload_hash(payload))


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize(value: Any) -> JobResult:
    """Accept the shapes a run callable may return."""
    if isinstance(value, JobResult):
        return value
    if value is None:
        return JobResult(success=True)
    if isinstance(value, dict) and ({"ok", "success", "artifacts", "error"} & set(value)):
        ok = value.get("ok", value.get("success", "error" not in value))
        return JobResult(
            success=bool(ok),
            output=value.get("output", {k: v for k, v in value.items() if k not in ("ok", "success", "artifacts")}),
            error=value.get("error"),
            artifacts=[str(a) for a in value.get("artifacts") or []],
        )
    return JobResult(success=True, output=value)


class JobRunner:
    """Executes jobs for one worktree.

    Args:
        git: Adapter bound to the worktree.
        receipts: Receipt store for the repository.
        locks: Lock manager for run locks.
        hooks: Hook bus for lifecycle events.
        config: Timeouts and defaults.
        sleep: Injected for retry backoff.
        rng: Injected jitter source returning [0, 1).
    """

    def __init__(
        self,
        git: GitAdapter,
        receipts: ReceiptStore,
        locks: LockManager,
        hooks: Optional[HookBus] = None,
        config: Optional[GitVanConfig] = None,
        worktree: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.git = git
        self.receipts = receipts
        self.locks = locks
        self.hooks = hooks or HookBus()
        self.config = config or GitVanConfig(root_dir=Path(git.cwd))
        self.worktree = Path(worktree or git.cwd)
        self.sleep = sleep
        self.rng = rng
        self.monotonic = monotonic
        self._active: Dict[str, JobContext] = {}
        self._active_lock = threading.Lock()
        self._draining = threading.Event()

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    def fingerprint(self, job: JobDefinition, trigger: Trigger) -> str:
        return compute_fingerprint(job.id, job.version, trigger.to_dict())

    def build_context(
        self,
        job: JobDefinition,
        trigger: Trigger,
        payload: Optional[Dict[str, Any]] = None,
    ) -> JobContext:
        """Assemble the JobContext handed to run().

        Raises:
            ContextSetupError: If the worktree state cannot be read.
        """
        try:
            head = self.git.head()
            branch = self.git.current_branch()
        except GitOperationError as e:
            raise ContextSetupError(f"cannot build context for {job.id}: {e}")

        worktree = self.worktree
        if job.options.cwd:
            worktree = (self.worktree / job.options.cwd).resolve()
            if not worktree.is_dir():
                raise ContextSetupError(f"job {job.id} cwd does not exist: {worktree}")

        return JobContext(
            id=new_run_id(),
            job=job,
            start_time=_utc_iso(),
            worktree=worktree,
            branch=branch,
            head=head,
            env=git_env(job.options.env),
            fingerprint=self.fingerprint(job, trigger),
            trigger=trigger.to_dict(),
            payload=dict(payload or {}),
            git=self.git,
            config=self.config,
            logger=logging.getLogger(f"gitvan.job.{job.id}"),
        )

    def active(self) -> Dict[str, JobContext]:
        with self._active_lock:
            return dict(self._active)

    def cancel_all(self) -> int:
        """Signal cooperative cancellation to every in-flight run.

        Cancelled runs are not retried.
        """
        self._draining.set()
        with self._active_lock:
            contexts = list(self._active.values())
        for ctx in contexts:
            ctx.cancel_event.set()
        return len(contexts)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        job: JobDefinition,
        trigger: Optional[Trigger] = None,
        payload: Optional[Dict[str, Any]] = None,
        force: bool = False,
        meta: Optional[Dict[str, Any]] = None,
        raise_on_error: bool = False,
    ) -> JobResult:
        """Run a job for one trigger.

        Args:
            job: The definition to run.
            trigger: What caused the run; defaults to on-demand keyed on the payload.
            payload: Input handed to run(ctx, payload, meta).
            force: Run even if a receipt exists; the receipt is not rewritten.
            meta: Trigger metadata handed to run() (e.g. EventMetadata.to_dict()).
            raise_on_error: Re-raise UserError / JobTimeoutError after recording.

        Raises:
            AlreadyRunning: The run lock is held; nothing is recorded.
            ContextSetupError: The context could not be built.
            ReceiptConflict: A divergent receipt already exists.
        """
        trigger = trigger or on_demand_trigger(payload)
        ctx = self.build_context(job, trigger, payload)
        lock_name = f"run:{self.worktree}:{job.id}:{ctx.fingerprint}"

        try:
            lock = self.locks.acquire(lock_name, {"job": job.id, "run_id": ctx.id})
        except LockUnavailable as e:
            raise AlreadyRunning(lock_name, e.holder)
        self.hooks.emit("lock:acquire", {"name": lock_name, "job_id": job.id, "run_id": ctx.id})

        try:
            idempotent = job.options.idempotent and not force
            if idempotent and self.receipts.has(job.id, ctx.fingerprint, refresh=True):
                logger.info(f"Skipping {job.id}: receipt exists for {ctx.fingerprint[:12]}")
                self.hooks.emit("job:skipped", {"job_id": job.id, "fingerprint": ctx.fingerprint, "run_id": ctx.id})
                return JobResult(success=True, status=STATUS_SKIPPED, fingerprint=ctx.fingerprint, run_id=ctx.id)

            result, error = self._attempt_all(job, ctx, payload or {}, meta or {})
            if idempotent or not self.receipts.has(job.id, ctx.fingerprint):
                self._record(job, ctx, trigger, result)
        finally:
            self.locks.release(lock)
            self.hooks.emit("lock:release", {"name": lock_name, "job_id": job.id, "run_id": ctx.id})

        if result.success:
            self.hooks.emit("job:success", {
                "job_id": job.id, "run_id": ctx.id, "fingerprint": ctx.fingerprint,
                "duration": result.duration, "artifacts": result.artifacts, "status": "success",
            })
        else:
            logger.error(f"Job {job.id} failed after {result.attempts} attempt(s): {result.error}")
            self.hooks.emit("job:error", {
                "job_id": job.id, "run_id": ctx.id, "fingerprint": ctx.fingerprint,
                "duration": result.duration, "error": result.error, "status": "error",
            })
            if raise_on_error and error is not None:
                raise error
        return result

    def _attempt_all(self, job: JobDefinition, ctx: JobContext, payload: Dict[str, Any], meta: Dict[str, Any]):
        timeout = job.options.timeout or self.config.job_timeout
        started = self.monotonic()
        error: Optional[GitVanError] = None

        self.hooks.emit("job:start", {"job_id": job.id, "run_id": ctx.id, "fingerprint": ctx.fingerprint})
        logger.info(f"Running {job.id} ({ctx.trigger.get('kind')}) fingerprint={ctx.fingerprint[:12]}")

        def attempt() -> JobResult:
            ctx.attempt += 1
            # an abandoned earlier attempt keeps its own, already set, event
            attempt_ctx = replace(ctx, attempt=ctx.attempt, cancel_event=threading.Event())
            return self._invoke(job, attempt_ctx, payload, meta, timeout)

        retryer = tenacity.Retrying(
            retry=tenacity.retry_if_exception_type((UserError, JobTimeoutError)),
            wait=lambda state: backoff_delay(state.attempt_number, self.rng),
            stop=(
                tenacity.stop_after_attempt(job.options.retries + 1)
                | tenacity.stop_when_event_set(self._draining)
            ),
            sleep=self.sleep,
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        ctx.attempt = 0
        try:
            result = retryer(attempt)
        except (UserError, JobTimeoutError) as e:
            error = e
            result = JobResult(success=False, error=str(e), exit_code=e.exit_code)

        result.attempts = ctx.attempt
        result.duration = int((self.monotonic() - started) * 1000)
        result.fingerprint = ctx.fingerprint
        result.run_id = ctx.id
        result.status = STATUS_SUCCESS if result.success else STATUS_ERROR
        return result, error

    def _invoke(
        self,
        job: JobDefinition,
        ctx: JobContext,
        payload: Dict[str, Any],
        meta: Dict[str, Any],
        timeout: float,
    ) -> JobResult:
        outcome: Dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["value"] = self._call(job, ctx, payload, meta)
            except BaseException as e:  # re-raised on the runner thread
                outcome["error"] = e

        ctx.deadline = self.monotonic() + timeout
        thread = threading.Thread(target=target, name=f"gitvan-job-{job.id}", daemon=True)
        with self._active_lock:
            self._active[ctx.id] = ctx
        try:
            thread.start()
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Job {job.id} passed its {timeout}s deadline; cancelling")
                ctx.cancel_event.set()
                thread.join(self.config.timeout_grace)
                if thread.is_alive():
                    raise JobTimeoutError(
                        f"job {job.id} exceeded hard deadline ({timeout}s + {self.config.timeout_grace}s grace)"
                    )
                raise JobTimeoutError(f"job {job.id} exceeded its {timeout}s deadline")
        finally:
            with self._active_lock:
                self._active.pop(ctx.id, None)

        if "error" in outcome:
            exc = outcome["error"]
            if isinstance(exc, (JobTimeoutError, UserError)):
                raise exc
            if ctx.cancelled:
                raise JobTimeoutError(f"job {job.id} was cancelled: {exc}")
            raise UserError(f"{type(exc).__name__}: {exc}") from exc

        result = _normalize(outcome.get("value"))
        if not result.success:
            raise UserError(result.error or f"job {job.id} reported failure")
        return result

    def _call(self, job: JobDefinition, ctx: JobContext, payload: Dict[str, Any], meta: Dict[str, Any]) -> Any:
        if job.run is not None:
            return job.run(ctx, payload, meta)

        instance = compile_job(job, ctx, payload)
        record = execute(instance, ctx)
        if not record.success:
            failed = next((o for o in record.outcomes if o.status == "failed"), None)
            reason = f"step '{failed.step_id}' failed: {failed.error}" if failed else "job failed"
            return JobResult(success=False, error=reason, artifacts=record.artifacts)
        return JobResult(
            success=True,
            output={o.step_id: o.output for o in record.outcomes if o.output is not None},
            artifacts=record.artifacts,
        )

    def _record(self, job: JobDefinition, ctx: JobContext, trigger: Trigger, result: JobResult) -> None:
        receipt = Receipt(
            job_id=job.id,
            fingerprint=ctx.fingerprint,
            status=result.status,
            timestamp=_utc_iso(),
            artifacts=list(result.artifacts),
            duration=result.duration,
            metadata={
                "runId": ctx.id,
                "jobVersion": job.version,
                "trigger": ctx.trigger,
                "attempts": result.attempts,
                "worktree": str(self.worktree),
                "branch": ctx.branch,
                "head": ctx.head,
            },
            error=result.error,
        )
        anchor = trigger.commit if trigger.kind == "event" and trigger.commit else ctx.head
        try:
            self.receipts.record(receipt, anchor=anchor)
        except ReceiptConflict:
            logger.error(f"Receipt conflict for {job.id}@{ctx.fingerprint[:12]}")
            raise
