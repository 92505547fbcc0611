# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Event predicate engine.

A predicate is a JSON/YAML mapping of matcher keys plus optional recursive
`any` / `all` arrays:

    {"any": [{"tagCreate": "v.*"}, {"semverTag": true}]}
    {"all": [{"commitType": "feat"}, {"commitScope": "api"}]}
    {"pathChanged": ["src/**/*.js"]}

compile_predicate() validates a mapping once (unknown keys, types, regex
syntax) and caches compiled regexes; evaluate() is then a pure function of
(predicate, metadata) that never raises.

Node semantics:
- leaves only: disjunction of the leaf matchers
- `any`: true iff some child is true (empty -> false)
- `all`: true iff every child is true (empty -> true)
- a node carrying several of leaves / any / all is the conjunction of them
- a node with nothing in it evaluates to false
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional

from gitvan.errors import ValidationError
from gitvan.events.glob import any_glob_match, compile_glob
from gitvan.schemas.events import EventMetadata, EventPredicate

logger = logging.getLogger(__name__)

PATH_KEYS = ("pathChanged", "pathAdded", "pathModified", "pathDeleted")
REGEX_KEYS = ("tagCreate", "branchCreate", "mergeFrom")
CI_REGEX_KEYS = ("message", "authorEmail", "authorName")
LITERAL_KEYS = ("tagPrefix", "tagSuffix", "mergeTo", "pushTo")
BOOL_KEYS = ("semverTag", "pullRequest", "signed")
CONVENTIONAL_KEYS = ("commitType", "commitScope")

MATCHER_KEYS = PATH_KEYS + REGEX_KEYS + CI_REGEX_KEYS + LITERAL_KEYS + BOOL_KEYS + CONVENTIONAL_KEYS
COMPOSITE_KEYS = ("any", "all")

SEMVER_TAG = re.compile(
    r"^v(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


# =============================================================================
# Compilation
# =============================================================================

def _compile_regex(path: str, value: str, flags: int = 0):
    try:
        return re.compile(value, flags)
    except re.error as e:
        raise ValidationError(path, value, f"invalid regular expression: {e}")


def _compile_leaf(node: EventPredicate, key: str, value: Any, path: str) -> None:
    field_path = f"{path}.{key}"

    if key in PATH_KEYS:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not value or not all(isinstance(v, str) and v for v in value):
            raise ValidationError(field_path, value, "must be a non-empty list of glob patterns")
        for pattern in value:
            compile_glob(pattern)
        node.leaves[key] = list(value)
        return

    if key in BOOL_KEYS:
        if not isinstance(value, bool):
            raise ValidationError(field_path, value, "must be a boolean")
        node.leaves[key] = value
        return

    if value is None:
        value = ""
    if not isinstance(value, str):
        raise ValidationError(field_path, value, "must be a string")

    if key in LITERAL_KEYS:
        if not value:
            raise ValidationError(field_path, value, "must not be empty")
        node.leaves[key] = value
    elif key in REGEX_KEYS:
        node.leaves[key] = value
        node.patterns[key] = _compile_regex(field_path, value)
    elif key in CI_REGEX_KEYS:
        if not value:
            raise ValidationError(field_path, value, "must not be empty")
        node.leaves[key] = value
        node.patterns[key] = _compile_regex(field_path, value, re.IGNORECASE)
    elif key == "commitType":
        if not value:
            raise ValidationError(field_path, value, "must not be empty")
        node.leaves[key] = value
        node.patterns[key] = _compile_regex(field_path, rf"^(?:{value})(\(.*\))?:", re.IGNORECASE)
    elif key == "commitScope":
        if not value:
            raise ValidationError(field_path, value, "must not be empty")
        node.leaves[key] = value
        node.patterns[key] = _compile_regex(field_path, rf"^\w+\((?:{value})\):", re.IGNORECASE)


def compile_predicate(data: Any, path: str = "on") -> EventPredicate:
    """Validate a predicate mapping and compile it.

    Raises:
        ValidationError: On unknown keys, wrong types, malformed regexes, an
            empty mapping, or an empty `all` with no leaves.
    """
    if isinstance(data, EventPredicate):
        return data
    if not isinstance(data, dict):
        raise ValidationError(path, data, "predicate must be a mapping")

    unknown = sorted(k for k in data if k not in MATCHER_KEYS and k not in COMPOSITE_KEYS)
    if unknown:
        raise ValidationError(path, unknown, f"unknown matcher keys: {', '.join(unknown)}")

    node = EventPredicate(source=dict(data))
    for key, value in data.items():
        if key in COMPOSITE_KEYS:
            if not isinstance(value, list):
                raise ValidationError(f"{path}.{key}", value, "must be a list of predicates")
            children = [compile_predicate(child, f"{path}.{key}[{i}]") for i, child in enumerate(value)]
            setattr(node, key, children)
        else:
            _compile_leaf(node, key, value, path)

    # an empty `any` is a valid (always false) node; an empty `all` alone is not
    if not node.leaves and node.any is None and not node.all:
        raise ValidationError(path, data, "predicate has no matchers")
    return node


def predicate_to_dict(predicate: EventPredicate) -> Dict[str, Any]:
    data: Dict[str, Any] = dict(predicate.leaves)
    if predicate.any is not None:
        data["any"] = [predicate_to_dict(child) for child in predicate.any]
    if predicate.all is not None:
        data["all"] = [predicate_to_dict(child) for child in predicate.all]
    return data


# =============================================================================
# Leaf matchers
# =============================================================================

def _search(predicate: EventPredicate, key: str, text: Optional[str]) -> bool:
    if text is None:
        return False
    return predicate.pattern(key).search(text) is not None


def _match_leaf(predicate: EventPredicate, key: str, value: Any, meta: EventMetadata) -> bool:
    if key == "pathChanged":
        return any_glob_match(meta.files_changed, value)
    if key == "pathAdded":
        return any_glob_match(meta.files_added, value)
    if key == "pathModified":
        return any_glob_match(meta.files_modified, value)
    if key == "pathDeleted":
        return any_glob_match(meta.files_deleted, value)

    if key == "tagCreate":
        return any(predicate.pattern(key).search(tag) for tag in meta.tags_created)
    if key == "semverTag":
        if not meta.tags_created:
            return False
        is_semver = any(SEMVER_TAG.match(tag) for tag in meta.tags_created)
        return is_semver if value else not is_semver
    if key == "tagPrefix":
        return any(tag.startswith(value) for tag in meta.tags_created)
    if key == "tagSuffix":
        return any(tag.endswith(value) for tag in meta.tags_created)

    if key == "mergeTo":
        return meta.merged_to is not None and meta.merged_to == value
    if key == "pushTo":
        return meta.branch is not None and meta.branch == value
    if key == "branchCreate":
        if meta.branch_created is None:
            return False
        return value == "" or _search(predicate, key, meta.branch_created)
    if key == "mergeFrom":
        if meta.merged_from is None:
            return False
        return value == "" or _search(predicate, key, meta.merged_from)

    if key == "pullRequest":
        return (meta.pull_request is not None) == value
    if key == "signed":
        return meta.signed == value

    if key == "message":
        return _search(predicate, key, meta.message)
    if key == "authorEmail":
        return _search(predicate, key, meta.author_email)
    if key == "authorName":
        return _search(predicate, key, meta.author_name)
    if key in CONVENTIONAL_KEYS:
        return _search(predicate, key, meta.message)

    return False


# =============================================================================
# Evaluation
# =============================================================================

def evaluate(predicate: Optional[EventPredicate], meta: EventMetadata) -> bool:
    """Decide whether metadata satisfies a compiled predicate."""
    if predicate is None:
        return False

    parts: List[Callable[[], bool]] = []
    if predicate.leaves:
        parts.append(lambda: any(
            _match_leaf(predicate, key, value, meta) for key, value in predicate.leaves.items()
        ))
    if predicate.any is not None:
        parts.append(lambda: any(evaluate(child, meta) for child in predicate.any))
    if predicate.all is not None:
        parts.append(lambda: all(evaluate(child, meta) for child in predicate.all))

    if not parts:
        return False
    return all(part() for part in parts)


def explain(predicate: EventPredicate, meta: EventMetadata) -> Dict[str, Any]:
    """Per-matcher breakdown of an evaluation, for dry runs."""
    report: Dict[str, Any] = {
        key: _match_leaf(predicate, key, value, meta) for key, value in predicate.leaves.items()
    }
    if predicate.any is not None:
        report["any"] = [explain(child, meta) for child in predicate.any]
    if predicate.all is not None:
        report["all"] = [explain(child, meta) for child in predicate.all]
    report["result"] = evaluate(predicate, meta)
    return report
