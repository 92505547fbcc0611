# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
File transforms a pack applies to a worktree.

Each transform touches exactly one target path and reports what it did:
created, modified, deleted, or None when the file was left alone.
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import jinja2

from gitvan.errors import FilesystemError, ValidationError
from gitvan.packs.snapshots import write_bytes_atomic
from gitvan.packs.spec import source_text
from gitvan.schemas.pack import ACTION_CREATED, ACTION_DELETED, ACTION_MODIFIED, PackSpec, Transform

logger = logging.getLogger(__name__)

MERGE_SEPARATOR = "\n\n"


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `overlay` into a copy of `base`; overlay wins on scalars."""
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def render_template(text: str, variables: Dict[str, Any], name: str = "<template>") -> str:
    """Render Jinja2 text. Undefined variables are errors, not blanks."""
    try:
        env = jinja2.Environment(autoescape=False, undefined=jinja2.StrictUndefined, keep_trailing_newline=True)
        return env.from_string(text).render(**variables)
    except jinja2.TemplateError as e:
        raise ValidationError("template", name, f"render failed: {e}")


def _write(path: Path, text: str) -> str:
    action = ACTION_MODIFIED if path.exists() else ACTION_CREATED
    try:
        write_bytes_atomic(path, text.encode("utf-8"))
    except OSError as e:
        raise FilesystemError(path, f"cannot write: {e}")
    return action


def _read(path: Path) -> str:
    try:
        return path.read_text()
    except OSError as e:
        raise FilesystemError(path, f"cannot read: {e}")


def _op_write(path, pack, transform, variables):
    return _write(path, source_text(pack, transform))


def _op_template(path, pack, transform, variables):
    name = transform.src or transform.target
    return _write(path, render_template(source_text(pack, transform), variables, name))


def _op_merge(path, pack, transform, variables):
    content = source_text(pack, transform)
    if path.exists():
        existing = _read(path)
        if content in existing:
            return None
        content = existing + MERGE_SEPARATOR + content
    return _write(path, content)


def _op_skip(path, pack, transform, variables):
    if path.exists():
        logger.debug(f"Skipped existing: {transform.target}")
        return None
    return _write(path, source_text(pack, transform))


def _op_json_merge(path, pack, transform, variables):
    current: Dict[str, Any] = {}
    if path.exists():
        try:
            current = json.loads(_read(path) or "{}")
        except json.JSONDecodeError as e:
            raise ValidationError("json-merge", transform.target, f"existing file is not JSON: {e}")
        if not isinstance(current, dict):
            raise ValidationError("json-merge", transform.target, "existing JSON is not an object")
    merged = deep_merge(current, transform.data or {})
    if path.exists() and merged == current:
        return None
    return _write(path, json.dumps(merged, indent=2) + "\n")


def _op_delete(path, pack, transform, variables):
    if not path.exists():
        return None
    try:
        path.unlink()
    except OSError as e:
        raise FilesystemError(path, f"cannot delete: {e}")
    return ACTION_DELETED


OPS: Dict[str, Callable[[Path, PackSpec, Transform, Dict[str, Any]], Optional[str]]] = {
    "write": _op_write,
    "template": _op_template,
    "merge": _op_merge,
    "skip": _op_skip,
    "json-merge": _op_json_merge,
    "delete": _op_delete,
}


def apply_transform(
    worktree: Path,
    pack: PackSpec,
    transform: Transform,
    variables: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """Apply one transform under `worktree`.

    Returns:
        The artifact action, or None if the file was not changed.
    """
    handler = OPS.get(transform.op)
    if handler is None:
        raise ValidationError("op", transform.op, "unknown transform op")
    path = Path(worktree) / transform.target
    action = handler(path, pack, transform, variables or {})
    logger.debug(f"{pack.id}: {transform.op} {transform.target} -> {action or 'unchanged'}")
    return action
