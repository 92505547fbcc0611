# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Configuration loading for GitVan.

Precedence, lowest first:
- built-in defaults
- YAML file (gitvan.config.yaml, .gitvan/config.yaml, or an explicit path)
- environment variables (GITVAN_ROOT_DIR, GITVAN_NOTES_REF, GITVAN_MAX_PARALLEL)
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from gitvan.errors import FilesystemError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_NOTES_REF = "refs/notes/gitvan/results"
CONFIG_FILENAMES = ("gitvan.config.yaml", ".gitvan/config.yaml")


@dataclass
class GitVanConfig:
    """Resolved GitVan configuration."""

    root_dir: Path = field(default_factory=Path.cwd)
    jobs_dirs: List[str] = field(default_factory=lambda: ["jobs"])
    events_dirs: List[str] = field(default_factory=lambda: ["events"])
    packs_dirs: List[str] = field(default_factory=lambda: ["packs"])
    notes_ref: str = DEFAULT_NOTES_REF
    max_parallel: int = field(default_factory=lambda: os.cpu_count() or 1)
    per_worktree_parallel: int = 4
    poll_interval: float = 5.0
    git_timeout: float = 30.0
    job_timeout: float = 600.0
    timeout_grace: float = 10.0
    drain_deadline: float = 30.0
    snapshot_retention_days: int = 30
    cron_catchup_minutes: int = 1440
    event_log: Optional[str] = ".gitvan/events.jsonl"

    def validate(self) -> None:
        """Validate numeric ranges.

        Raises:
            ValidationError: If a value is out of range.
        """
        for name in ("max_parallel", "per_worktree_parallel"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ValidationError(name, value, "must be a positive integer")
        for name in ("poll_interval", "git_timeout", "job_timeout", "drain_deadline"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ValidationError(name, value, "must be a positive number")
        if self.timeout_grace < 0:
            raise ValidationError("timeout_grace", self.timeout_grace, "must not be negative")
        if self.snapshot_retention_days < 0:
            raise ValidationError(
                "snapshot_retention_days", self.snapshot_retention_days, "must not be negative"
            )
        if not self.notes_ref.startswith("refs/notes/"):
            raise ValidationError("notes_ref", self.notes_ref, "must live under refs/notes/")

    def resolve(self, relative: str) -> Path:
        """Resolve a config-relative path against the root dir."""
        path = Path(relative).expanduser()
        if path.is_absolute():
            return path
        return self.root_dir / path

    @property
    def state_dir(self) -> Path:
        return self.root_dir / ".gitvan" / "state"

    @property
    def locks_dir(self) -> Path:
        return self.root_dir / ".gitvan" / "locks"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["root_dir"] = str(self.root_dir)
        return data


_LIST_KEYS = {"jobs_dirs", "events_dirs", "packs_dirs"}
_INT_KEYS = {"max_parallel", "per_worktree_parallel", "snapshot_retention_days", "cron_catchup_minutes"}
_FLOAT_KEYS = {"poll_interval", "git_timeout", "job_timeout", "timeout_grace", "drain_deadline"}


def _find_config_file(root: Path) -> Optional[Path]:
    for name in CONFIG_FILENAMES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None


def _coerce(key: str, value: Any) -> Any:
    if key in _LIST_KEYS:
        if isinstance(value, str):
            return [value]
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ValidationError(key, value, "must be a list of paths")
        return value
    if key in _INT_KEYS:
        if isinstance(value, bool):
            raise ValidationError(key, value, "must be an integer")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(key, value, "must be an integer")
    if key in _FLOAT_KEYS:
        if isinstance(value, bool):
            raise ValidationError(key, value, "must be a number")
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationError(key, value, "must be a number")
    if key == "root_dir":
        return Path(str(value)).expanduser()
    return value


def load_config(
    root: Optional[Path] = None,
    config_path: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> GitVanConfig:
    """Load configuration from defaults, YAML and environment.

    Args:
        root: Repository root. Defaults to $GITVAN_ROOT_DIR or cwd.
        config_path: Explicit YAML path; must exist when given.
        env: Environment mapping (defaults to os.environ).

    Returns:
        Validated GitVanConfig.

    Raises:
        FilesystemError: If an explicit config file is missing or unreadable.
        ValidationError: If a value has the wrong type or range.
    """
    env = os.environ if env is None else env
    values: Dict[str, Any] = {}

    if root is None:
        root = Path(env.get("GITVAN_ROOT_DIR") or Path.cwd())
    root = Path(root).expanduser().resolve()
    values["root_dir"] = root

    if config_path:
        path = Path(config_path).expanduser()
        if not path.is_file():
            raise FilesystemError(path, "config file not found")
    else:
        path = _find_config_file(root)

    if path is not None:
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ValidationError("config", str(path), f"invalid YAML: {e}")
        except OSError as e:
            raise FilesystemError(path, str(e))
        if not isinstance(data, dict):
            raise ValidationError("config", str(path), "must contain a YAML mapping")

        known = {f.name for f in fields(GitVanConfig)}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Unknown config key '{key}' in {path}")
                continue
            values[key] = _coerce(key, value)
        logger.debug(f"Loaded config from {path}")

    if env.get("GITVAN_NOTES_REF"):
        values["notes_ref"] = env["GITVAN_NOTES_REF"]
    if env.get("GITVAN_MAX_PARALLEL"):
        values["max_parallel"] = _coerce("max_parallel", env["GITVAN_MAX_PARALLEL"])

    config = GitVanConfig(**values)
    if not config.root_dir.is_absolute():
        config.root_dir = (root / config.root_dir).resolve()
    config.validate()
    return config
