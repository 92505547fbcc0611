# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Pack manifest loading.

A pack is a directory holding pack.yaml (or pack.json):

    id: node-basics
    version: 1.2.0
    description: Baseline files for a Node project
    dependencies:
      editorconfig: ^1.0.0
    transforms:
      - op: template
        target: package.json
        src: templates/package.json.j2
      - op: skip
        target: .nvmrc
        content: "20\\n"
    options:
      license: MIT
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from gitvan.errors import FilesystemError, ValidationError
from gitvan.fingerprint import hash_object
from gitvan.packs import semver
from gitvan.schemas.pack import TRANSFORM_OPS, PackSpec, Transform

MANIFEST_NAMES = ("pack.yaml", "pack.yml", "pack.json")
PACK_ID_PATTERN = re.compile(r"^(@[a-z0-9._-]+/)?[a-z0-9][a-z0-9._-]*$")
PACK_KEYS = {
    "id", "name", "version", "description", "dependencies", "peerDependencies",
    "devDependencies", "transforms", "options",
}

# ops that need something to write
CONTENT_OPS = {"write", "template", "merge", "skip"}


def find_manifest(pack_dir: Path) -> Optional[Path]:
    for name in MANIFEST_NAMES:
        candidate = Path(pack_dir) / name
        if candidate.is_file():
            return candidate
    return None


def _validate_target(target: Any, index: int) -> str:
    field = f"transforms[{index}].target"
    if not isinstance(target, str) or not target.strip():
        raise ValidationError(field, target, "must be a non-empty path")
    path = Path(target)
    if path.is_absolute() or ".." in path.parts:
        raise ValidationError(field, target, "must be relative and stay inside the worktree")
    return path.as_posix()


def parse_transform(data: Any, index: int) -> Transform:
    """Validate one transform entry.

    Raises:
        ValidationError: If the op is unknown or its inputs are missing.
    """
    if not isinstance(data, dict):
        raise ValidationError(f"transforms[{index}]", data, "must be a mapping")
    op = data.get("op") or data.get("action")
    if op not in TRANSFORM_OPS:
        raise ValidationError(f"transforms[{index}].op", op, f"must be one of {', '.join(TRANSFORM_OPS)}")
    target = _validate_target(data.get("target"), index)

    content = data.get("content")
    src = data.get("src")
    payload = data.get("data")

    if content is not None and not isinstance(content, str):
        raise ValidationError(f"transforms[{index}].content", content, "must be a string")
    if src is not None and not isinstance(src, str):
        raise ValidationError(f"transforms[{index}].src", src, "must be a path string")
    if op in CONTENT_OPS and content is None and src is None:
        raise ValidationError(f"transforms[{index}]", op, "needs 'content' or 'src'")
    if op == "json-merge":
        if not isinstance(payload, dict):
            raise ValidationError(f"transforms[{index}].data", payload, "json-merge needs a mapping")

    return Transform(op=op, target=target, content=content, src=src, data=payload)


def _dependency_map(data: Dict[str, Any], key: str) -> Dict[str, str]:
    deps = data.get(key) or {}
    if not isinstance(deps, dict):
        raise ValidationError(key, deps, "must map pack ids to version constraints")
    result = {}
    for pack_id, constraint in deps.items():
        constraint = str(constraint)
        semver.parse_range(constraint)
        result[str(pack_id)] = constraint
    return result


def pack_from_dict(data: Dict[str, Any], path: Optional[Path] = None) -> PackSpec:
    """Build a PackSpec from a parsed manifest.

    Raises:
        ValidationError: On a bad id, version, dependency or transform.
    """
    if not isinstance(data, dict):
        raise ValidationError("pack", data, "manifest must be a mapping")
    unknown = set(data) - PACK_KEYS
    if unknown:
        raise ValidationError("pack", sorted(unknown), "unknown keys")

    pack_id = data.get("id") or data.get("name")
    if not isinstance(pack_id, str) or not PACK_ID_PATTERN.match(pack_id):
        raise ValidationError("id", pack_id, "must be a lowercase pack id")

    version = data.get("version")
    if not isinstance(version, str):
        raise ValidationError("version", version, "must be a semantic version string")
    version = str(semver.parse_version(version))

    transforms = data.get("transforms") or []
    if not isinstance(transforms, list):
        raise ValidationError("transforms", transforms, "must be a list")

    options = data.get("options") or {}
    if not isinstance(options, dict):
        raise ValidationError("options", options, "must be a mapping")

    return PackSpec(
        id=pack_id,
        version=version,
        description=str(data.get("description") or ""),
        dependencies=_dependency_map(data, "dependencies"),
        peer_dependencies=_dependency_map(data, "peerDependencies"),
        dev_dependencies=_dependency_map(data, "devDependencies"),
        transforms=[parse_transform(t, i) for i, t in enumerate(transforms)],
        options=options,
        path=path,
    )


def load_pack(pack_dir: Path) -> PackSpec:
    """Load the pack manifest in `pack_dir`.

    Raises:
        FilesystemError: If there is no readable manifest.
        ValidationError: If the manifest is malformed.
    """
    pack_dir = Path(pack_dir)
    manifest = find_manifest(pack_dir)
    if manifest is None:
        raise FilesystemError(pack_dir, f"no {' or '.join(MANIFEST_NAMES)} found")
    try:
        text = manifest.read_text()
    except OSError as e:
        raise FilesystemError(manifest, str(e))
    try:
        if manifest.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError("pack", str(manifest), f"cannot parse manifest: {e}")
    return pack_from_dict(data, path=pack_dir)


def source_text(pack: PackSpec, transform: Transform) -> str:
    """Inline content, or the text of `src` relative to the pack directory."""
    if transform.content is not None:
        return transform.content
    base = pack.path or Path.cwd()
    source = (base / transform.src).resolve()
    try:
        return source.read_text()
    except OSError as e:
        raise FilesystemError(source, f"cannot read transform source: {e}")


def pack_fingerprint(pack: PackSpec, inputs: Optional[Dict[str, Any]] = None) -> str:
    """SHA-256 over (id, version, transforms, options).

    Transform sources are hashed by content so editing a template file
    changes the fingerprint.
    """
    transforms: List[Dict[str, Any]] = []
    for transform in pack.transforms:
        entry = transform.to_dict()
        if transform.src is not None and transform.content is None:
            entry["srcHash"] = hash_object(source_text(pack, transform))
        transforms.append(entry)
    options = dict(pack.options)
    options.update(inputs or {})
    return hash_object({
        "packId": pack.id,
        "version": pack.version,
        "transforms": transforms,
        "options": options,
    })
