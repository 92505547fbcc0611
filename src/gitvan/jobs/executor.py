# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Executor - run a compiled JobInstance step by step.

Resolves @run.<step_id>.<path> references from earlier step outputs,
dispatches each step's op and collects a RunRecord.

Ops:
- shell.run   {command | commands, env?, check?}     -> {stdout, stderr, exit_code}
- file.read   {path}                                 -> {content, path}
- file.write  {path, content, mode?}                 -> {path, bytes}; path is an artifact
- git.tag     {name, commit?, message?}              -> {tag, commit}
- git.note    {content, ref?, commit?}               -> {ref, commit}
- pack.apply  {path | id, constraint?, inputs?, force?} -> {packId, version, status}; touched files are artifacts

Relative paths resolve against the worktree.
"""

import json
import re
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from gitvan.errors import FilesystemError, GitVanError, JobTimeoutError
from gitvan.jobs.shell import CommandRunner
from gitvan.packs.engine import PackEngine
from gitvan.schemas.job_def import JobContext, JobInstance, RunRecord, StepInstance, StepOutcome

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

DEFAULT_NOTES_REF = "refs/notes/gitvan/steps"

RUN_REF_PATTERN = re.compile(r"@run\.([A-Za-z_][A-Za-z0-9_.\[\]]*)")
INDEXED_SEGMENT = re.compile(r"^(\w+)\[(\d+)\]$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# @run.* Resolution
# =============================================================================

def _follow(ref: str, outputs: Dict[str, Any]) -> Any:
    parts = RUN_REF_PATTERN.match(ref).group(1).split(".")
    step_id = parts[0]
    if step_id not in outputs:
        raise ValueError(f"@run reference to unknown step: {step_id}")

    value = outputs[step_id]
    for part in parts[1:]:
        indexed = INDEXED_SEGMENT.match(part)
        key, index = (indexed.group(1), int(indexed.group(2))) if indexed else (part, None)
        if not isinstance(value, dict) or key not in value:
            raise ValueError(f"@run path not found: {ref} (missing '{key}')")
        value = value[key]
        if index is not None:
            if not isinstance(value, list) or index >= len(value):
                raise ValueError(f"@run index out of bounds: {ref}")
            value = value[index]
    return value


def resolve_run_refs(value: Any, outputs: Dict[str, Any]) -> Any:
    """Substitute @run.* references with values from previous step outputs."""
    if isinstance(value, dict):
        return {k: resolve_run_refs(v, outputs) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_run_refs(v, outputs) for v in value]
    if isinstance(value, str) and RUN_REF_PATTERN.fullmatch(value):
        return _follow(value, outputs)
    return value


# =============================================================================
# Ops
# =============================================================================

class StepFailed(Exception):
    """Raised inside an op handler to fail the step with a message."""


def _step_timeout(step: StepInstance, ctx: JobContext) -> float:
    timeout = float(step.timeout_s)
    if ctx.deadline is not None:
        timeout = min(timeout, max(ctx.deadline - time.monotonic(), 0.1))
    return timeout


def _worktree_path(ctx: JobContext, raw: Any) -> Path:
    if not isinstance(raw, str) or not raw:
        raise StepFailed("requires a 'path' parameter")
    path = Path(raw).expanduser()
    return path if path.is_absolute() else ctx.worktree / path


def _artifact_name(ctx: JobContext, path: Path) -> str:
    try:
        return path.relative_to(ctx.worktree).as_posix()
    except ValueError:
        return str(path)


def _op_shell_run(step: StepInstance, params: Dict[str, Any], ctx: JobContext, dry_run: bool) -> StepOutcome:
    runner = CommandRunner(ctx.worktree, env={**ctx.env, **params.get("env", {})}, dry_run=dry_run)
    variables = params.get("variables", {})
    timeout = _step_timeout(step, ctx)
    check = params.get("check", True)

    if "commands" in params:
        results = runner.run_multiple(params["commands"], variables, timeout=timeout)
        stdout = "".join(r.stdout for r in results if r is not None)
        stderr = "".join(r.stderr for r in results if r is not None)
        exit_code = next((r.returncode for r in reversed(results) if r is not None), 0)
    elif "command" in params:
        result = runner.run(params["command"], variables, timeout=timeout, check=check)
        stdout = result.stdout if result else ""
        stderr = result.stderr if result else ""
        exit_code = result.returncode if result else 0
    else:
        raise StepFailed("shell.run requires 'command' or 'commands'")

    return StepOutcome(
        step_id=step.step_id,
        status=STATUS_COMPLETED,
        output={"stdout": stdout, "stderr": stderr, "exit_code": exit_code},
    )


def _op_file_read(step: StepInstance, params: Dict[str, Any], ctx: JobContext, dry_run: bool) -> StepOutcome:
    # Always executes, even in dry-run: later steps resolve @run refs from it
    path = _worktree_path(ctx, params.get("path"))
    if not path.exists():
        raise StepFailed(f"file not found: {path}")
    content = path.read_text()
    if params.get("format") == "json":
        content = json.loads(content)
    return StepOutcome(
        step_id=step.step_id,
        status=STATUS_COMPLETED,
        output={"content": content, "path": str(path)},
    )


def _op_file_write(step: StepInstance, params: Dict[str, Any], ctx: JobContext, dry_run: bool) -> StepOutcome:
    path = _worktree_path(ctx, params.get("path"))
    content = params.get("content", "")
    if not isinstance(content, str):
        content = json.dumps(content, indent=2, sort_keys=True) + "\n"
    mode = params.get("mode", "overwrite")
    if mode not in ("overwrite", "append", "create"):
        raise StepFailed(f"unknown write mode '{mode}'")

    if mode == "create" and path.exists():
        return StepOutcome(step_id=step.step_id, status=STATUS_SKIPPED, output={"path": str(path), "bytes": 0})
    if dry_run:
        return StepOutcome(step_id=step.step_id, status=STATUS_COMPLETED, output={"dry_run": True, "path": str(path)})

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a" if mode == "append" else "w") as f:
            f.write(content)
    except OSError as e:
        raise FilesystemError(path, str(e))

    return StepOutcome(
        step_id=step.step_id,
        status=STATUS_COMPLETED,
        output={"path": str(path), "bytes": len(content.encode())},
        artifacts=[_artifact_name(ctx, path)],
    )


def _op_git_tag(step: StepInstance, params: Dict[str, Any], ctx: JobContext, dry_run: bool) -> StepOutcome:
    name = params.get("name")
    if not name:
        raise StepFailed("git.tag requires 'name'")
    commit = params.get("commit") or ctx.head
    if not dry_run:
        ctx.git.tag(name, commit=commit, message=params.get("message"))
    return StepOutcome(step_id=step.step_id, status=STATUS_COMPLETED, output={"tag": name, "commit": commit})


def _op_git_note(step: StepInstance, params: Dict[str, Any], ctx: JobContext, dry_run: bool) -> StepOutcome:
    content = params.get("content")
    if content is None:
        raise StepFailed("git.note requires 'content'")
    if not isinstance(content, str):
        content = json.dumps(content, sort_keys=True)
    ref = params.get("ref", DEFAULT_NOTES_REF)
    commit = params.get("commit") or ctx.head
    if not dry_run:
        ctx.git.note(ref, commit, content)
    return StepOutcome(step_id=step.step_id, status=STATUS_COMPLETED, output={"ref": ref, "commit": commit})


def _op_pack_apply(step: StepInstance, params: Dict[str, Any], ctx: JobContext, dry_run: bool) -> StepOutcome:
    if ctx.config is None:
        raise StepFailed("pack.apply needs a configured runner")
    source = params.get("path")
    pack_id = params.get("id")
    if not source and not pack_id:
        raise StepFailed("pack.apply requires 'path' or 'id'")
    if dry_run:
        return StepOutcome(step_id=step.step_id, status=STATUS_COMPLETED, output={"dry_run": True})

    engine = PackEngine(ctx.worktree, ctx.config)
    inputs = params.get("inputs") or {}
    if source:
        result = engine.apply(_worktree_path(ctx, source), inputs=inputs, force=bool(params.get("force")))
    else:
        result = engine.install(pack_id, params.get("constraint", "*"), inputs=inputs)
    return StepOutcome(
        step_id=step.step_id,
        status=STATUS_COMPLETED if result.status == "installed" else STATUS_SKIPPED,
        output={"packId": result.pack_id, "version": result.version, "status": result.status},
        artifacts=[a.path for a in result.artifacts] if result.status == "installed" else [],
    )


OpHandler = Callable[[StepInstance, Dict[str, Any], JobContext, bool], StepOutcome]

OPS: Dict[str, OpHandler] = {
    "shell.run": _op_shell_run,
    "file.read": _op_file_read,
    "file.write": _op_file_write,
    "git.tag": _op_git_tag,
    "git.note": _op_git_note,
    "pack.apply": _op_pack_apply,
}


def _dispatch_op(step: StepInstance, params: Dict[str, Any], ctx: JobContext, dry_run: bool) -> StepOutcome:
    handler = OPS.get(step.op)
    if handler is None:
        return StepOutcome(step_id=step.step_id, status=STATUS_FAILED, error=f"Unknown op: {step.op}")
    try:
        return handler(step, params, ctx, dry_run)
    except StepFailed as e:
        return StepOutcome(step_id=step.step_id, status=STATUS_FAILED, error=f"{step.op}: {e}")
    except subprocess.CalledProcessError as e:
        tail = (e.stderr or "").strip().splitlines()[-10:]
        return StepOutcome(
            step_id=step.step_id,
            status=STATUS_FAILED,
            error=f"command exited with {e.returncode}" + (": " + "\n".join(tail) if tail else ""),
            output={"stdout": e.stdout or "", "stderr": e.stderr or "", "exit_code": e.returncode},
        )
    except (OSError, ValueError) as e:
        return StepOutcome(step_id=step.step_id, status=STATUS_FAILED, error=str(e))
    except JobTimeoutError:
        raise
    except GitVanError as e:
        return StepOutcome(step_id=step.step_id, status=STATUS_FAILED, error=str(e))


# =============================================================================
# Job Execution
# =============================================================================

def execute(instance: JobInstance, ctx: JobContext, dry_run: bool = False) -> RunRecord:
    """
    Execute a compiled JobInstance.

    Steps run in order. A failed step stops the job unless it sets
    continue_on_error. Cancellation is checked between steps.

    Raises:
        JobTimeoutError: If the context is cancelled or a command times out.
    """
    started_at = _utcnow()
    outputs: Dict[str, Any] = {}
    outcomes: List[StepOutcome] = []
    success = True
    condition_runner: Optional[CommandRunner] = None

    for step in instance.steps:
        ctx.check_cancelled()

        if step.condition:
            condition_runner = condition_runner or CommandRunner(ctx.worktree, env=ctx.env)
            if not condition_runner.evaluate_condition(step.condition):
                outcomes.append(StepOutcome(step_id=step.step_id, status=STATUS_SKIPPED))
                continue

        try:
            params = resolve_run_refs(step.params, outputs)
        except ValueError as e:
            outcome = StepOutcome(step_id=step.step_id, status=STATUS_FAILED, error=str(e))
        else:
            ctx.logger.debug(f"Step {step.step_id}: {step.op}")
            outcome = _dispatch_op(step, params, ctx, dry_run)

        outcomes.append(outcome)
        if outcome.output is not None:
            outputs[step.step_id] = outcome.output

        if outcome.status == STATUS_FAILED and not step.continue_on_error:
            success = False
            break

    return RunRecord(
        run_id=ctx.id,
        job_id=instance.job_id,
        success=success,
        started_at=started_at,
        completed_at=_utcnow(),
        outcomes=outcomes,
    )
