# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
PackEngine - apply packs to a worktree at most once, and undo them.

apply():
1. resolve dependencies (greatest satisfying version, DFS cycle check)
2. fingerprint (id, version, transforms, options); same fingerprint
   already installed -> skipped
3. snapshot every file a transform touches
4. run transforms in order; any failure restores this batch's snapshots
5. persist PackState with artifacts (path, action, hash, snapshot)

rollback() walks the artifacts in reverse: created files are deleted,
modified and deleted files are restored from their snapshots. Per-step
errors are collected rather than aborting the walk.

All reads and writes of packs.json happen under the `packs:<worktree>` lock.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from gitvan.config import GitVanConfig
from gitvan.errors import GitVanError, ValidationError
from gitvan.hooks import HookBus
from gitvan.locks import LockManager
from gitvan.packs import semver
from gitvan.packs.registry import PackRegistry
from gitvan.packs.resolver import DependencyResolver
from gitvan.packs.snapshots import SnapshotStore, file_sha256
from gitvan.packs.spec import load_pack, pack_fingerprint
from gitvan.packs.state import PackStateFile
from gitvan.packs.transforms import apply_transform
from gitvan.schemas.pack import (
    ACTION_CREATED,
    ACTION_DELETED,
    ACTION_MODIFIED,
    PackArtifact,
    PackSpec,
    PackState,
    Snapshot,
)
from gitvan.state import utc_now_iso

logger = logging.getLogger(__name__)

STATUS_INSTALLED = "installed"
STATUS_SKIPPED = "skipped"

STATE_LOCK_WAIT = 10.0


@dataclass
class PackResult:
    pack_id: str
    version: str
    status: str  # installed | skipped
    fingerprint: str
    artifacts: List[PackArtifact] = field(default_factory=list)
    dependencies: List["PackResult"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "packId": self.pack_id,
            "version": self.version,
            "status": self.status,
            "fingerprint": self.fingerprint,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "dependencies": [d.to_dict() for d in self.dependencies],
        }


@dataclass
class RollbackStep:
    path: str
    action: str  # what undoing did: deleted | restored
    ok: bool
    error: Optional[str] = None


@dataclass
class RollbackReport:
    pack_id: str
    version: str
    steps: List[RollbackStep] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps)

    @property
    def errors(self) -> List[str]:
        return [f"{s.path}: {s.error}" for s in self.steps if not s.ok]


@dataclass
class VerifyReport:
    pack_id: str
    version: str
    intact: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing and not self.modified


class PackEngine:
    """Pack install/apply/rollback/verify for one worktree."""

    def __init__(
        self,
        worktree: Path,
        config: GitVanConfig,
        hooks: Optional[HookBus] = None,
        registry: Optional[PackRegistry] = None,
    ):
        self.worktree = Path(worktree)
        self.config = config
        self.hooks = hooks or HookBus()
        self.registry = registry or PackRegistry(
            [config.resolve(d) for d in config.packs_dirs]
            + [self.worktree / d for d in config.packs_dirs if not Path(d).is_absolute()]
        )
        self.snapshots = SnapshotStore(self.worktree)
        self.locks = LockManager(config.locks_dir)

    def _state_lock(self):
        return self.locks.hold(f"packs:{self.worktree}", wait=STATE_LOCK_WAIT)

    # -------------------------------------------------------------------------
    # Apply / install
    # -------------------------------------------------------------------------

    def install(self, pack_id: str, constraint: str = "*", inputs: Optional[Dict[str, Any]] = None) -> PackResult:
        """Resolve `pack_id` from the registry and apply it with its dependencies."""
        pack = self.registry.resolve(pack_id, constraint)
        logger.info(f"Resolved {pack_id}@{constraint} -> {pack.version}")
        return self.apply(pack, inputs=inputs)

    def apply(
        self,
        source: Union[PackSpec, Path, str],
        inputs: Optional[Dict[str, Any]] = None,
        force: bool = False,
    ) -> PackResult:
        """Apply a pack (a PackSpec or a pack directory) and its dependencies.

        Dependencies are applied first in topological order; `inputs` only
        reach the root pack.

        Raises:
            DependencyError: On unresolved, conflicting or cyclic dependencies.
            ValidationError, FilesystemError: If a transform fails; the
                failing pack's batch is rolled back first.
        """
        pack = source if isinstance(source, PackSpec) else load_pack(Path(source))
        order = DependencyResolver(self.registry).resolve(pack)

        results = []
        for item in order:
            is_root = item is pack
            results.append(self._apply_one(item, inputs if is_root else None, force and is_root))
        root = results[-1]
        root.dependencies = results[:-1]
        self.prune_snapshots()
        return root

    def _apply_one(self, pack: PackSpec, inputs: Optional[Dict[str, Any]], force: bool) -> PackResult:
        fingerprint = pack_fingerprint(pack, inputs)

        with self._state_lock():
            state = PackStateFile(self.worktree)
            existing = state.get(pack.id)
            if existing and existing.fingerprint == fingerprint and not force:
                logger.info(f"Pack {pack.id}@{pack.version} already applied; skipping")
                state.log("skip", pack.id, version=pack.version, fingerprint=fingerprint)
                state.save()
                self.hooks.emit("pack:skipped", {
                    "packId": pack.id, "version": pack.version, "fingerprint": fingerprint,
                })
                return PackResult(pack.id, pack.version, STATUS_SKIPPED, fingerprint, list(existing.artifacts))

            variables = dict(pack.options)
            variables.update(inputs or {})
            variables["pack"] = {"id": pack.id, "version": pack.version}

            captured: Dict[str, Snapshot] = {}
            touched: List[str] = []
            try:
                for transform in pack.transforms:
                    if transform.target not in captured:
                        captured[transform.target] = self.snapshots.capture(transform.target)
                    action = apply_transform(self.worktree, pack, transform, variables)
                    if action and transform.target not in touched:
                        touched.append(transform.target)
            except (GitVanError, OSError) as e:
                logger.error(f"Pack {pack.id}@{pack.version} failed: {e}; rolling back batch")
                self._restore_batch(captured)
                state.log("apply-failed", pack.id, version=pack.version, error=str(e))
                state.save()
                raise

            artifacts = self._artifacts(existing, captured, touched)
            keep = {a.snapshot for a in artifacts if a.snapshot}
            for snapshot in captured.values():
                if snapshot.snapshot_id not in keep:
                    self.snapshots.delete(snapshot.snapshot_id)

            state.put(PackState(
                pack_id=pack.id,
                version=pack.version,
                fingerprint=fingerprint,
                installed_at=utc_now_iso(),
                artifacts=artifacts,
            ))
            state.log("apply", pack.id, version=pack.version, fingerprint=fingerprint)
            state.save()

        logger.info(f"Applied {pack.id}@{pack.version} ({len(touched)} file(s) changed)")
        self.hooks.emit("pack:applied", {
            "packId": pack.id,
            "version": pack.version,
            "fingerprint": fingerprint,
            "artifacts": [a.path for a in artifacts],
        })
        return PackResult(pack.id, pack.version, STATUS_INSTALLED, fingerprint, artifacts)

    def _restore_batch(self, captured: Dict[str, Snapshot]) -> None:
        for snapshot in reversed(list(captured.values())):
            try:
                self.snapshots.restore(snapshot.snapshot_id)
            except GitVanError as e:
                logger.error(f"Could not restore {snapshot.path}: {e}")
                continue
            self.snapshots.delete(snapshot.snapshot_id)

    def _artifacts(
        self,
        previous: Optional[PackState],
        captured: Dict[str, Snapshot],
        touched: List[str],
    ) -> List[PackArtifact]:
        """Artifacts of the new install.

        Paths an earlier version of the pack already owned keep their
        original snapshot, so rollback always returns to the state before
        the first install.
        """
        baseline = {a.path: a for a in previous.artifacts} if previous else {}
        paths = list(baseline) + [p for p in touched if p not in baseline]

        artifacts = []
        for path in paths:
            if path in baseline:
                original = baseline[path]
                existed_before = original.action != ACTION_CREATED
                snapshot_id = original.snapshot
            else:
                snapshot = captured[path]
                existed_before = snapshot.existed
                snapshot_id = snapshot.snapshot_id if snapshot.existed else None

            current = file_sha256(self.worktree / path)
            if not existed_before and current is None:
                continue
            if not existed_before:
                action = ACTION_CREATED
            elif current is None:
                action = ACTION_DELETED
            else:
                action = ACTION_MODIFIED
            artifacts.append(PackArtifact(path=path, action=action, hash=current, snapshot=snapshot_id))
        return artifacts

    # -------------------------------------------------------------------------
    # Rollback / verify / list
    # -------------------------------------------------------------------------

    def rollback(self, pack_id: str) -> RollbackReport:
        """Undo an installed pack.

        On partial failure the pack stays installed with only the artifacts
        that could not be undone, so rollback can be retried.

        Raises:
            ValidationError: If the pack is not installed.
        """
        with self._state_lock():
            state = PackStateFile(self.worktree)
            installed = state.get(pack_id)
            if installed is None:
                raise ValidationError("pack", pack_id, "is not installed")

            report = RollbackReport(pack_id=pack_id, version=installed.version)
            remaining: List[PackArtifact] = []
            for artifact in reversed(installed.artifacts):
                step = self._undo(artifact)
                report.steps.append(step)
                if not step.ok:
                    remaining.insert(0, artifact)

            if remaining:
                installed.artifacts = remaining
                state.put(installed)
            else:
                state.remove(pack_id)
                for artifact in installed.artifacts:
                    if artifact.snapshot:
                        self.snapshots.delete(artifact.snapshot)
            state.log("rollback", pack_id, version=installed.version, ok=report.ok, errors=report.errors)
            state.save()

        if report.ok:
            logger.info(f"Rolled back {pack_id}@{installed.version}")
        else:
            logger.error(f"Rollback of {pack_id} incomplete: {'; '.join(report.errors)}")
        self.hooks.emit("pack:rollback", {
            "packId": pack_id,
            "version": installed.version,
            "ok": report.ok,
            "errors": report.errors,
        })
        return report

    def _undo(self, artifact: PackArtifact) -> RollbackStep:
        try:
            if artifact.action == ACTION_CREATED:
                path = self.worktree / artifact.path
                if path.exists():
                    path.unlink()
                return RollbackStep(artifact.path, "deleted", True)
            if not artifact.snapshot:
                return RollbackStep(artifact.path, "restored", False, "no snapshot recorded")
            self.snapshots.restore(artifact.snapshot)
            return RollbackStep(artifact.path, "restored", True)
        except (GitVanError, OSError) as e:
            return RollbackStep(artifact.path, "deleted" if artifact.action == ACTION_CREATED else "restored", False, str(e))

    def verify(self, pack_id: str) -> VerifyReport:
        """Compare current file hashes with the recorded ones.

        Raises:
            ValidationError: If the pack is not installed.
        """
        installed = PackStateFile(self.worktree).get(pack_id)
        if installed is None:
            raise ValidationError("pack", pack_id, "is not installed")
        report = VerifyReport(pack_id=pack_id, version=installed.version)
        for artifact in installed.artifacts:
            current = file_sha256(self.worktree / artifact.path)
            if artifact.action == ACTION_DELETED:
                (report.intact if current is None else report.modified).append(artifact.path)
            elif current is None:
                report.missing.append(artifact.path)
            elif current != artifact.hash:
                report.modified.append(artifact.path)
            else:
                report.intact.append(artifact.path)
        return report

    def list(self) -> List[Dict[str, Any]]:
        """Installed packs with the newest available version, if newer."""
        rows = []
        for pack_id, installed in sorted(PackStateFile(self.worktree).packs.items()):
            available = self.registry.versions(pack_id)
            latest = None
            try:
                latest = semver.update_available(installed.version, available)
            except ValidationError as e:
                logger.warning(f"{pack_id}: {e}")
            rows.append({
                "packId": pack_id,
                "version": installed.version,
                "installedAt": installed.installed_at,
                "fingerprint": installed.fingerprint,
                "artifacts": len(installed.artifacts),
                "latest": latest or installed.version,
                "updateAvailable": latest is not None,
            })
        return rows

    def prune_snapshots(self, now: Optional[datetime] = None) -> List[str]:
        """Drop snapshots past the retention window that no installed pack needs."""
        keep = PackStateFile(self.worktree).snapshot_ids()
        removed = self.snapshots.prune(self.config.snapshot_retention_days, keep=keep, now=now)
        if removed:
            logger.debug(f"Pruned {len(removed)} snapshot(s) older than {self.config.snapshot_retention_days} days")
        return removed
