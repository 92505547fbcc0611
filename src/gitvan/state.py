# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""JSON state files under <worktree>/.gitvan/state.

Written atomically (temp file + rename) so a crash never leaves a torn
file behind. Corrupt files load as empty state with a warning.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from gitvan.errors import FilesystemError

logger = logging.getLogger(__name__)


def state_dir(worktree: Path) -> Path:
    return Path(worktree) / ".gitvan" / "state"


def load_json(path: Path) -> Optional[Dict[str, Any]]:
    """Load a JSON state file.

    Returns:
        The mapping, or None when the file is missing or corrupt.
    """
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring corrupt state file {path}: {e}")
        return None
    except OSError as e:
        raise FilesystemError(path, str(e))
    if not isinstance(data, dict):
        logger.warning(f"Ignoring state file {path}: not a JSON object")
        return None
    return data


def write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    """Write JSON via a temp file + rename so readers never see a partial file."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        raise FilesystemError(path, f"cannot write: {e}")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError as e:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise FilesystemError(path, f"cannot write: {e}")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def age_days(timestamp: str, now: Optional[datetime] = None) -> Optional[float]:
    """Days elapsed since an ISO timestamp, or None when unparseable."""
    try:
        then = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return (now - then).total_seconds() / 86400
