# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Job and event definitions: construction, validation and loading.

A job can be written three ways:

    # jobs/docs/build.py
    from gitvan.jobs import define_job

    job = define_job(
        meta={"desc": "Build docs", "tags": ["docs"]},
        on={"pathChanged": ["docs/**"]},
        run=lambda ctx, payload, meta: {"ok": True},
    )

    # jobs/cleanup.py -- module-level attributes
    cron = "0 2 * * *"
    def run(ctx, payload, meta): ...

    # jobs/release.yaml -- declarative steps
    on: {semverTag: true}
    steps:
      - step_id: notify
        op: file.write
        params: {path: "dist/release.json", content: "..."}

Validation happens here, at load. Nothing that passes validation is
rejected later at run time for shape reasons.
"""

import hashlib
import importlib.util
import re
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from gitvan.cron import validate_cron
from gitvan.errors import FilesystemError, ValidationError
from gitvan.events.predicate import compile_predicate
from gitvan.schemas.job_def import (
    JOB_KINDS,
    KIND_CRON,
    KIND_EVENT,
    KIND_ON_DEMAND,
    EventDefinition,
    JobDefinition,
    JobMeta,
    JobOptions,
)

ID_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.:/-]*$")
STEP_ID_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

JOB_KEYS = {"id", "kind", "cron", "on", "run", "steps", "defaults", "meta", "options", "version"}
EVENT_KEYS = {"id", "on", "run", "steps", "job", "priority", "version", "desc", "meta"}
META_KEYS = {"desc", "tags", "version", "author", "priority"}
OPTION_KEYS = {"timeout", "retries", "parallel", "env", "cwd", "idempotent"}
STEP_KEYS = {"step_id", "op", "params", "timeout_s", "continue_on_error", "condition"}

MAX_PRIORITY = 10
MAX_RETRIES = 5

YAML_SUFFIXES = (".yaml", ".yml")
PY_SUFFIXES = (".py",)


# =============================================================================
# Field validation
# =============================================================================

def _check_unknown(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown = sorted(k for k in data if k not in allowed)
    if unknown:
        raise ValidationError(path, unknown, f"unknown keys: {', '.join(unknown)}")


def _validate_id(value: Any, field: str = "id") -> str:
    if not isinstance(value, str) or not ID_PATTERN.match(value):
        raise ValidationError(field, value, "must be a non-empty identifier")
    return value


def _validate_priority(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_PRIORITY:
        raise ValidationError(field, value, f"priority must be an integer in 0..{MAX_PRIORITY}")
    return value


def validate_meta(data: Union[JobMeta, Dict[str, Any], None]) -> JobMeta:
    if isinstance(data, JobMeta):
        data = {
            "desc": data.desc, "tags": data.tags, "version": data.version,
            "author": data.author, "priority": data.priority,
        }
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("meta", data, "must be a mapping")
    data = dict(data)
    _check_unknown(data, META_KEYS, "meta")

    meta = JobMeta()
    if "desc" in data:
        if not isinstance(data["desc"], str):
            raise ValidationError("meta.desc", data["desc"], "must be a string")
        meta.desc = data["desc"]
    if "tags" in data:
        tags = data["tags"]
        if not isinstance(tags, list) or not all(isinstance(t, str) and t for t in tags):
            raise ValidationError("meta.tags", tags, "must be a list of strings")
        meta.tags = list(tags)
    if "version" in data:
        version = data["version"]
        if isinstance(version, (int, float)) and not isinstance(version, bool):
            version = str(version)
        if not isinstance(version, str) or not version:
            raise ValidationError("meta.version", data["version"], "must be a non-empty string")
        meta.version = version
    if data.get("author") is not None:
        if not isinstance(data["author"], str):
            raise ValidationError("meta.author", data["author"], "must be a string")
        meta.author = data["author"]
    if "priority" in data:
        meta.priority = _validate_priority(data["priority"], "meta.priority")
    return meta


def validate_options(data: Union[JobOptions, Dict[str, Any], None]) -> JobOptions:
    if isinstance(data, JobOptions):
        data = {
            "timeout": data.timeout, "retries": data.retries, "parallel": data.parallel,
            "env": data.env, "cwd": data.cwd, "idempotent": data.idempotent,
        }
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("options", data, "must be a mapping")
    data = dict(data)
    _check_unknown(data, OPTION_KEYS, "options")

    options = JobOptions()
    timeout = data.get("timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValidationError("options.timeout", timeout, "must be a positive number of seconds")
        options.timeout = float(timeout)
    if "retries" in data:
        retries = data["retries"]
        if isinstance(retries, bool) or not isinstance(retries, int) or not 0 <= retries <= MAX_RETRIES:
            raise ValidationError("options.retries", retries, f"must be an integer in 0..{MAX_RETRIES}")
        options.retries = retries
    for flag in ("parallel", "idempotent"):
        if flag in data:
            if not isinstance(data[flag], bool):
                raise ValidationError(f"options.{flag}", data[flag], "must be a boolean")
            setattr(options, flag, data[flag])
    if "env" in data and data["env"] is not None:
        env = data["env"]
        if not isinstance(env, dict):
            raise ValidationError("options.env", env, "must be a mapping")
        options.env = {str(k): str(v) for k, v in env.items()}
    if data.get("cwd") is not None:
        if not isinstance(data["cwd"], str):
            raise ValidationError("options.cwd", data["cwd"], "must be a string")
        options.cwd = data["cwd"]
    return options


def validate_steps(steps: Any, field: str = "steps") -> List[Dict[str, Any]]:
    if not isinstance(steps, list) or not steps:
        raise ValidationError(field, steps, "must be a non-empty list of steps")
    seen = set()
    for i, step in enumerate(steps):
        step_path = f"{field}[{i}]"
        if not isinstance(step, dict):
            raise ValidationError(step_path, step, "step must be a mapping")
        _check_unknown(step, STEP_KEYS, step_path)
        step_id = step.get("step_id")
        if not isinstance(step_id, str) or not STEP_ID_PATTERN.match(step_id):
            raise ValidationError(f"{step_path}.step_id", step_id, "must be an identifier")
        if step_id in seen:
            raise ValidationError(f"{step_path}.step_id", step_id, "duplicate step id")
        seen.add(step_id)
        if not isinstance(step.get("op"), str) or not step["op"]:
            raise ValidationError(f"{step_path}.op", step.get("op"), "must be an op name")
        if "params" in step and not isinstance(step["params"], dict):
            raise ValidationError(f"{step_path}.params", step["params"], "must be a mapping")
    return steps


def _infer_kind(kind: Optional[str], cron: Optional[str], on: Any) -> str:
    if kind is None:
        if cron:
            return KIND_CRON
        if on is not None:
            return KIND_EVENT
        return KIND_ON_DEMAND
    if kind not in JOB_KINDS:
        raise ValidationError("kind", kind, f"must be one of {', '.join(JOB_KINDS)}")
    if kind == KIND_CRON and not cron:
        raise ValidationError("cron", cron, "cron jobs need a cron expression")
    if kind == KIND_EVENT and on is None:
        raise ValidationError("on", on, "event jobs need an 'on' predicate")
    return kind


# =============================================================================
# Construction
# =============================================================================

def job_from_dict(
    data: Dict[str, Any],
    default_id: Optional[str] = None,
    source: Optional[Path] = None,
    source_hash: Optional[str] = None,
) -> JobDefinition:
    """Validate a job mapping and build a JobDefinition.

    Raises:
        ValidationError: On any schema violation.
    """
    if not isinstance(data, dict):
        raise ValidationError("job", data, "definition must be a mapping")
    _check_unknown(data, JOB_KEYS, "job")

    job_id = data.get("id") or default_id
    job_id = _validate_id(job_id)

    run = data.get("run")
    steps = data.get("steps")
    if run is not None and not callable(run):
        raise ValidationError("run", run, "must be callable")
    if run is None and steps is None:
        raise ValidationError("run", None, "job needs a run callable or steps")
    if run is not None and steps is not None:
        raise ValidationError("steps", steps, "job cannot have both run and steps")
    if steps is not None:
        steps = validate_steps(steps)

    cron = data.get("cron")
    if cron is not None:
        cron = validate_cron(cron)
    on = data.get("on")
    predicate = compile_predicate(on) if on is not None else None

    meta_data = dict(data.get("meta") or {})
    if "version" in data and "version" not in meta_data:
        meta_data["version"] = data["version"]
    meta = validate_meta(meta_data)
    options = validate_options(data.get("options"))

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ValidationError("defaults", defaults, "must be a mapping")

    return JobDefinition(
        id=job_id,
        kind=_infer_kind(data.get("kind"), cron, predicate),
        cron=cron,
        on=predicate,
        run=run,
        steps=steps,
        defaults=dict(defaults),
        meta=meta,
        options=options,
        source=source,
        source_hash=source_hash,
        raw={k: v for k, v in data.items() if k != "run"},
    )


def event_from_dict(
    data: Dict[str, Any],
    default_id: Optional[str] = None,
    source: Optional[Path] = None,
    source_hash: Optional[str] = None,
) -> EventDefinition:
    """Validate an event mapping and build an EventDefinition."""
    if not isinstance(data, dict):
        raise ValidationError("event", data, "definition must be a mapping")
    _check_unknown(data, EVENT_KEYS, "event")

    event_id = _validate_id(data.get("id") or default_id)
    if data.get("on") is None:
        raise ValidationError("on", None, "event needs an 'on' predicate")
    predicate = compile_predicate(data["on"])

    actions = [key for key in ("run", "steps", "job") if data.get(key) is not None]
    if len(actions) != 1:
        raise ValidationError("event", actions, "event needs exactly one of run, steps, job")
    run = data.get("run")
    if run is not None and not callable(run):
        raise ValidationError("run", run, "must be callable")
    steps = validate_steps(data["steps"]) if data.get("steps") is not None else None
    job = _validate_id(data["job"], "job") if data.get("job") is not None else None

    meta = validate_meta(data.get("meta"))
    priority = _validate_priority(data["priority"], "priority") if "priority" in data else meta.priority
    version = str(data.get("version") or meta.version)

    return EventDefinition(
        id=event_id,
        on=predicate,
        run=run,
        steps=steps,
        job=job,
        priority=priority,
        version=version,
        desc=data.get("desc") or meta.desc,
        source=source,
        source_hash=source_hash,
    )


def define_job(
    run=None,
    *,
    id: Optional[str] = None,
    kind: Optional[str] = None,
    cron: Optional[str] = None,
    on: Optional[Dict[str, Any]] = None,
    steps: Optional[List[Dict[str, Any]]] = None,
    defaults: Optional[Dict[str, Any]] = None,
    meta: Optional[Dict[str, Any]] = None,
    options: Optional[Dict[str, Any]] = None,
) -> JobDefinition:
    """Define a job in code.

    `id` may be omitted in a job module; the registry then derives it from
    the module's path.
    """
    data: Dict[str, Any] = {"run": run, "steps": steps}
    for key, value in (("kind", kind), ("cron", cron), ("on", on), ("defaults", defaults),
                       ("meta", meta), ("options", options)):
        if value is not None:
            data[key] = value
    data = {k: v for k, v in data.items() if v is not None}
    job = job_from_dict(data, default_id=id or "_anonymous")
    if id is None:
        job.id = ""
    return job


def define_event(
    on: Dict[str, Any],
    run=None,
    *,
    id: Optional[str] = None,
    job: Optional[str] = None,
    steps: Optional[List[Dict[str, Any]]] = None,
    priority: int = 5,
    version: str = "1.0.0",
    desc: str = "",
) -> EventDefinition:
    data: Dict[str, Any] = {"on": on, "priority": priority, "version": version, "desc": desc}
    for key, value in (("run", run), ("job", job), ("steps", steps)):
        if value is not None:
            data[key] = value
    event = event_from_dict(data, default_id=id or "_anonymous")
    if id is None:
        event.id = ""
    return event


# =============================================================================
# Loading from files
# =============================================================================

def file_hash(path: Path) -> str:
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError as e:
        raise FilesystemError(path, f"cannot read: {e}")


def derive_id(path: Path, root: Path) -> str:
    """jobs/docs/build.py under root jobs/ -> "docs.build"."""
    relative = path.relative_to(root).with_suffix("")
    return ".".join(relative.parts)


# definition path -> module name currently registered in sys.modules
_loaded_modules: Dict[Path, str] = {}


def _import_module(path: Path, content_hash: str):
    name = f"gitvan_definitions.{content_hash[:16]}_{path.stem}"
    previous = _loaded_modules.pop(path, None)
    if previous and previous != name:
        sys.modules.pop(previous, None)
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise ValidationError("source", str(path), "not an importable Python module")
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(name, None)
        raise ValidationError("source", str(path), f"import failed: {type(e).__name__}: {e}")
    _loaded_modules[path] = name
    return module


def _module_fields(module, keys: set) -> Dict[str, Any]:
    namespace = vars(module)
    return {key: namespace[key] for key in keys if key in namespace}


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except UnicodeDecodeError as e:
        raise ValidationError("source", str(path), f"not valid UTF-8: {e}")
    except OSError as e:
        raise FilesystemError(path, f"cannot read: {e}")
    except yaml.YAMLError as e:
        raise ValidationError("source", str(path), f"invalid YAML: {e}")
    if not isinstance(data, dict):
        raise ValidationError("source", str(path), "YAML definition must be a mapping")
    # YAML 1.1 reads a bare `on` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)
    return data


def load_job_file(path: Path, root: Path) -> JobDefinition:
    """Load one job definition file (.py or .yaml)."""
    content_hash = file_hash(path)
    default_id = derive_id(path, root)

    if path.suffix in YAML_SUFFIXES:
        return job_from_dict(_read_yaml(path), default_id, source=path, source_hash=content_hash)

    module = _import_module(path, content_hash)
    job = getattr(module, "job", None)
    if isinstance(job, JobDefinition):
        return replace(job, id=job.id or default_id, source=path, source_hash=content_hash)
    if isinstance(job, dict):
        return job_from_dict(job, default_id, source=path, source_hash=content_hash)
    fields = _module_fields(module, JOB_KEYS)
    if "run" not in fields and "steps" not in fields:
        raise ValidationError("source", str(path), "module defines neither 'job' nor 'run'")
    return job_from_dict(fields, default_id, source=path, source_hash=content_hash)


def load_event_file(path: Path, root: Path) -> EventDefinition:
    """Load one event definition file (.py or .yaml)."""
    content_hash = file_hash(path)
    default_id = derive_id(path, root)

    if path.suffix in YAML_SUFFIXES:
        return event_from_dict(_read_yaml(path), default_id, source=path, source_hash=content_hash)

    module = _import_module(path, content_hash)
    event = getattr(module, "event", None)
    if isinstance(event, EventDefinition):
        return replace(event, id=event.id or default_id, source=path, source_hash=content_hash)
    if isinstance(event, dict):
        return event_from_dict(event, default_id, source=path, source_hash=content_hash)
    fields = _module_fields(module, EVENT_KEYS)
    if "on" not in fields:
        raise ValidationError("source", str(path), "module defines neither 'event' nor 'on'")
    return event_from_dict(fields, default_id, source=path, source_hash=content_hash)
