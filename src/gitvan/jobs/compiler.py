# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Compiler - turn a declarative job's steps + context into a JobInstance.

Compile-time references inside step params:
- @ctx.*      worktree, branch, head, fingerprint, trigger.*, job_id, env.*
- @payload.*  the run payload merged over the job's `defaults`
- @self.*     the job's own YAML mapping

@run.* references are left untouched for the executor.

A path segment may itself be a reference, which is resolved first:

    @self.targets.@payload.env.url
    -> payload["env"] == "prod" -> self["targets"]["prod"]["url"]

References embedded inside longer strings are interpolated:

    "tag {@payload.tag} at {@ctx.head}"
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from gitvan.errors import ValidationError
from gitvan.schemas.job_def import JobContext, JobDefinition, JobInstance, StepInstance

DEFAULT_STEP_TIMEOUT = 300

NAMESPACES = ("ctx", "payload", "self")
OPTIONAL_NAMESPACES = ("ctx", "payload")

DYNAMIC_SEGMENT = re.compile(r"\.@(ctx|payload)\.([A-Za-z_][A-Za-z0-9_]*)")
INLINE_REF = re.compile(r"\{@((?:ctx|payload|self)(?:\.[A-Za-z0-9_@-]+)+)\}")


class CompileError(ValidationError):
    """Raised when a step reference cannot be resolved."""

    def __init__(self, ref: str, reason: str):
        super().__init__("steps.params", ref, reason)


def context_namespace(ctx: Optional[JobContext]) -> Dict[str, Any]:
    """The @ctx namespace exposed to declarative steps."""
    if ctx is None:
        return {}
    return {
        "job_id": ctx.job.id,
        "run_id": ctx.id,
        "worktree": str(ctx.worktree),
        "branch": ctx.branch,
        "head": ctx.head,
        "fingerprint": ctx.fingerprint,
        "start_time": ctx.start_time,
        "attempt": ctx.attempt,
        "trigger": dict(ctx.trigger),
        "env": dict(ctx.env),
    }


def compile_job(
    job: JobDefinition,
    ctx: Optional[JobContext] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> JobInstance:
    """Compile a declarative job into a JobInstance.

    Raises:
        CompileError: When a @self path is missing or a dynamic key is unusable.
    """
    if job.steps is None:
        raise CompileError(job.id, "job has no steps to compile")

    scope = {
        "ctx": context_namespace(ctx),
        "payload": {**job.defaults, **(payload or {})},
        "self": job.raw,
    }

    steps = []
    for step in job.steps:
        steps.append(StepInstance(
            step_id=step["step_id"],
            op=step["op"],
            params=_resolve(step.get("params", {}), scope),
            timeout_s=step.get("timeout_s", DEFAULT_STEP_TIMEOUT),
            continue_on_error=step.get("continue_on_error", False),
            condition=_resolve(step["condition"], scope) if step.get("condition") else None,
        ))

    return JobInstance(
        job_id=job.id,
        job_version=job.version,
        compiled_at=datetime.now(timezone.utc),
        steps=tuple(steps),
    )


def _resolve(value: Any, scope: Dict[str, Dict[str, Any]]) -> Any:
    if isinstance(value, dict):
        return {k: _resolve(v, scope) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve(v, scope) for v in value]
    if not isinstance(value, str) or value.startswith("@run."):
        return value
    if value.startswith("@") and value[1:].split(".", 1)[0] in NAMESPACES:
        return _lookup(_expand_segments(value, scope), scope)
    if "{@" in value:
        return INLINE_REF.sub(lambda m: _stringify(_lookup(_expand_segments("@" + m.group(1), scope), scope)), value)
    return value


def _stringify(value: Any) -> str:
    return "" if value is None else str(value)


def _expand_segments(ref: str, scope: Dict[str, Dict[str, Any]]) -> str:
    def substitute(match: "re.Match") -> str:
        namespace, key = match.group(1), match.group(2)
        value = scope[namespace].get(key)
        if value is None:
            raise CompileError(ref, f"dynamic key @{namespace}.{key} is not set")
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise CompileError(ref, f"dynamic key @{namespace}.{key} must be a string or integer")
        return f".{value}"

    return DYNAMIC_SEGMENT.sub(substitute, ref)


def _lookup(ref: str, scope: Dict[str, Dict[str, Any]]) -> Any:
    namespace, _, path = ref[1:].partition(".")
    if namespace not in scope:
        raise CompileError(ref, f"unknown namespace @{namespace}")

    value: Any = scope[namespace]
    for part in path.split(".") if path else []:
        if isinstance(value, dict):
            if part not in value:
                # missing @ctx / @payload keys are optional inputs
                if namespace in OPTIONAL_NAMESPACES:
                    return None
                raise CompileError(ref, f"path not found (missing '{part}')")
            value = value[part]
        elif isinstance(value, list):
            try:
                value = value[int(part)]
            except (ValueError, IndexError):
                raise CompileError(ref, f"invalid list index '{part}'")
        else:
            raise CompileError(ref, f"cannot descend into {type(value).__name__} at '{part}'")
    return value
