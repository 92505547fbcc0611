# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Error taxonomy for GitVan.

Every error raised by the core derives from GitVanError and carries the
CLI exit code it maps to:

- 0: success
- 1: user error / validation / dependency
- 2: operational (Git, filesystem, timeout, receipt conflict)
- 3: lock unavailable
"""

from typing import Any, List, Optional

EXIT_OK = 0
EXIT_USER = 1
EXIT_OPERATIONAL = 2
EXIT_LOCKED = 3


class GitVanError(Exception):
    """Base class for all GitVan errors."""

    exit_code = EXIT_OPERATIONAL


class ValidationError(GitVanError):
    """Raised when a job, event, pack or config definition is malformed."""

    exit_code = EXIT_USER

    def __init__(self, field: str, value: Any, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"{field}: {reason} (got {value!r})")


class GitOperationError(GitVanError):
    """Raised when a git subprocess exits nonzero or times out."""

    def __init__(self, operation: str, exit_code: Optional[int], stderr: str = ""):
        self.operation = operation
        self.git_exit_code = exit_code
        lines = (stderr or "").strip().splitlines()
        self.stderr = "\n".join(lines[-10:])
        message = f"git {operation} failed"
        if exit_code is not None:
            message += f" with exit code {exit_code}"
        if self.stderr:
            message += f": {self.stderr}"
        super().__init__(message)


class NoHeadError(GitOperationError):
    """Raised when the repository has no commits yet."""


class NoTagsError(GitOperationError):
    """Raised by describe when no tag is reachable. Callers may recover."""


class FilesystemError(GitVanError):
    """Raised on missing files, permission problems and other IO failures."""

    def __init__(self, path: Any, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"{self.path}: {reason}")


class JobTimeoutError(GitVanError):
    """Raised when a job exceeds its soft or hard deadline."""


class UserError(GitVanError):
    """Raised when a job's run callback raised."""

    exit_code = EXIT_USER


class ContextSetupError(GitVanError):
    """Raised when the runner cannot build a JobContext."""


class LockUnavailable(GitVanError):
    """Raised when a named lock is already held."""

    exit_code = EXIT_LOCKED

    def __init__(self, name: str, holder: Optional[str] = None):
        self.name = name
        self.holder = holder
        message = f"lock '{name}' is held"
        if holder:
            message += f" by {holder}"
        super().__init__(message)


class AlreadyRunning(LockUnavailable):
    """Raised when the same (worktree, job, fingerprint) is already executing."""


class ReceiptConflict(GitVanError):
    """Raised when a divergent outcome is recorded for an existing receipt."""

    def __init__(self, job_id: str, fingerprint: str, existing: str, attempted: str):
        self.job_id = job_id
        self.fingerprint = fingerprint
        self.existing = existing
        self.attempted = attempted
        super().__init__(
            f"receipt for {job_id}@{fingerprint[:12]} already recorded as "
            f"'{existing}', refusing to record '{attempted}'"
        )


class DependencyError(GitVanError):
    """Raised when pack dependencies cannot be satisfied."""

    exit_code = EXIT_USER


class UnresolvedDependency(DependencyError):
    """No available version satisfies a constraint."""

    def __init__(self, pack_id: str, constraint: str, required_by: Optional[str] = None):
        self.pack_id = pack_id
        self.constraint = constraint
        self.required_by = required_by
        message = f"no version of '{pack_id}' satisfies '{constraint}'"
        if required_by:
            message += f" (required by {required_by})"
        super().__init__(message)


class VersionConflict(DependencyError):
    """Two constraints on one pack cannot both be satisfied."""


class CircularDependency(DependencyError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__("circular dependency: " + " -> ".join(self.cycle))
