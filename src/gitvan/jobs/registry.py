# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Job & event registry.

Discovers definition files under the configured jobs and events roots,
validates them, and keeps an indexed catalog. Rescans are incremental:
files whose mtime is unchanged are not reopened, and files whose mtime
moved but whose content hash did not are not reloaded.

Lifecycle events on the hook bus:
- job:discovered  new or changed definition loaded
- job:validate    definition passed validation and entered the catalog
- job:rejected    schema violation or parse failure (file skipped)
- job:removed     definition file disappeared
- job:conflict    two sources claimed one id; the loser is reported
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from gitvan.errors import GitVanError
from gitvan.hooks import HookBus
from gitvan.jobs.define import (
    PY_SUFFIXES,
    YAML_SUFFIXES,
    file_hash,
    load_event_file,
    load_job_file,
)
from gitvan.schemas.events import EventPredicate
from gitvan.schemas.job_def import EventDefinition, JobDefinition

logger = logging.getLogger(__name__)

KIND_JOB = "job"
KIND_EVENT_DEF = "event"

Definition = Union[JobDefinition, EventDefinition]


@dataclass
class _FileEntry:
    mtime_ns: int
    size: int
    content_hash: str
    definition: Optional[Definition] = None
    error: Optional[str] = None


@dataclass
class ScanReport:
    """What changed during one scan."""
    discovered: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    rejected: List[Tuple[str, str]] = field(default_factory=list)
    conflicts: List[Tuple[str, str, str]] = field(default_factory=list)  # (id, winner, loser)

    @property
    def changed(self) -> bool:
        return bool(self.discovered or self.removed)


def _priority(definition: Definition) -> int:
    if isinstance(definition, JobDefinition):
        return definition.meta.priority
    return definition.priority


def _wins(candidate: Definition, incumbent: Definition) -> bool:
    """Greater priority wins; ties go to the lexicographically smaller path."""
    if _priority(candidate) != _priority(incumbent):
        return _priority(candidate) > _priority(incumbent)
    return str(candidate.source or "") < str(incumbent.source or "")


def _iter_definition_files(root: Path) -> Iterable[Path]:
    suffixes = PY_SUFFIXES + YAML_SUFFIXES
    for path in sorted(root.rglob("*")):
        if not path.is_file() or path.suffix not in suffixes:
            continue
        relative = path.relative_to(root)
        if any(part.startswith((".", "_")) for part in relative.parts):
            continue
        yield path


class JobRegistry:
    """Indexed catalog of jobs and events for one worktree."""

    def __init__(
        self,
        job_roots: Iterable[Path],
        event_roots: Iterable[Path] = (),
        hooks: Optional[HookBus] = None,
    ):
        self.job_roots = [Path(p) for p in job_roots]
        self.event_roots = [Path(p) for p in event_roots]
        self.hooks = hooks or HookBus()
        self._files: Dict[Path, _FileEntry] = {}
        self._jobs: Dict[str, JobDefinition] = {}
        self._events: Dict[str, EventDefinition] = {}
        self._code_jobs: Dict[str, JobDefinition] = {}
        self._scanned = False
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config, hooks: Optional[HookBus] = None) -> "JobRegistry":
        return cls(
            job_roots=[config.resolve(p) for p in config.jobs_dirs],
            event_roots=[config.resolve(p) for p in config.events_dirs],
            hooks=hooks,
        )

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    def scan(self) -> ScanReport:
        """Walk all roots, reload what changed, rebuild the catalog."""
        report = ScanReport()
        with self._lock:
            seen = set()
            for kind, roots in ((KIND_JOB, self.job_roots), (KIND_EVENT_DEF, self.event_roots)):
                for root in roots:
                    if not root.is_dir():
                        continue
                    for path in _iter_definition_files(root):
                        seen.add(path)
                        self._refresh_file(path, root, kind, report)

            for path in sorted(set(self._files) - seen):
                entry = self._files.pop(path)
                if entry.definition is not None:
                    report.removed.append(entry.definition.id)
                    self.hooks.emit("job:removed", {"id": entry.definition.id, "source": str(path)})
                    logger.info(f"Definition removed: {entry.definition.id} ({path})")

            if report.discovered or report.removed or report.rejected or not self._scanned:
                self._rebuild(report)
            self._scanned = True
        return report

    def _reject(self, path: Path, error: str, report: ScanReport) -> None:
        report.rejected.append((str(path), error))
        logger.warning(f"Rejected definition {path}: {error}")
        self.hooks.emit("job:rejected", {"source": str(path), "error": error})

    def _refresh_file(self, path: Path, root: Path, kind: str, report: ScanReport) -> None:
        try:
            stat = path.stat()
        except OSError as e:
            self._reject(path, str(e), report)
            return

        entry = self._files.get(path)
        if entry and entry.mtime_ns == stat.st_mtime_ns and entry.size == stat.st_size:
            return

        try:
            content_hash = file_hash(path)
        except GitVanError as e:
            self._reject(path, str(e), report)
            return
        if entry and entry.content_hash == content_hash:
            entry.mtime_ns, entry.size = stat.st_mtime_ns, stat.st_size
            return

        entry = _FileEntry(mtime_ns=stat.st_mtime_ns, size=stat.st_size, content_hash=content_hash)
        self._files[path] = entry
        try:
            if kind == KIND_JOB:
                entry.definition = load_job_file(path, root)
            else:
                entry.definition = load_event_file(path, root)
        except GitVanError as e:
            entry.error = str(e)
            self._reject(path, entry.error, report)
            return

        report.discovered.append(entry.definition.id)
        logger.debug(f"Discovered {kind} {entry.definition.id} from {path}")
        self.hooks.emit("job:discovered", {
            "id": entry.definition.id,
            "kind": kind,
            "source": str(path),
            "hash": content_hash,
        })

    def _rebuild(self, report: ScanReport) -> None:
        jobs: Dict[str, JobDefinition] = dict(self._code_jobs)
        events: Dict[str, EventDefinition] = {}

        for path in sorted(self._files):
            definition = self._files[path].definition
            if definition is None:
                continue
            catalog = jobs if isinstance(definition, JobDefinition) else events
            incumbent = catalog.get(definition.id)
            if incumbent is None:
                catalog[definition.id] = definition
                continue
            winner, loser = (definition, incumbent) if _wins(definition, incumbent) else (incumbent, definition)
            catalog[definition.id] = winner
            report.conflicts.append((definition.id, str(winner.source), str(loser.source)))
            logger.warning(
                f"Duplicate id '{definition.id}': using {winner.source}, ignoring {loser.source}"
            )
            self.hooks.emit("job:conflict", {
                "id": definition.id,
                "winner": str(winner.source),
                "loser": str(loser.source),
            })

        newly_valid = set(report.discovered)
        for definition in list(jobs.values()) + list(events.values()):
            if definition.id in newly_valid:
                self.hooks.emit("job:validate", {"id": definition.id, "source": str(definition.source)})

        self._jobs = jobs
        self._events = events

    def add(self, job: JobDefinition) -> None:
        """Register a job defined in code; it survives rescans."""
        with self._lock:
            self._code_jobs[job.id] = job
            self._jobs[job.id] = job
        self.hooks.emit("job:discovered", {"id": job.id, "kind": KIND_JOB, "source": None})

    # -------------------------------------------------------------------------
    # Catalog queries
    # -------------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[JobDefinition]:
        with self._lock:
            return self._jobs.get(job_id)

    def get_event(self, event_id: str) -> Optional[EventDefinition]:
        with self._lock:
            return self._events.get(event_id)

    def jobs(self) -> List[JobDefinition]:
        with self._lock:
            return [self._jobs[k] for k in sorted(self._jobs)]

    def events(self) -> List[EventDefinition]:
        with self._lock:
            return [self._events[k] for k in sorted(self._events)]

    def by_tag(self, tag: str) -> List[JobDefinition]:
        return [job for job in self.jobs() if tag in job.meta.tags]

    def cron_jobs(self) -> List[JobDefinition]:
        return [job for job in self.jobs() if job.cron]

    def event_jobs(self) -> List[JobDefinition]:
        return [job for job in self.jobs() if job.on is not None]

    def bindings(self) -> List[Tuple[EventPredicate, JobDefinition]]:
        """Every (predicate, job to run) pair evaluated on git events.

        Jobs with an `on` predicate trigger themselves. Event definitions
        either carry an inline action or route to a catalog job by id.
        """
        pairs = [(job.on, job) for job in self.event_jobs()]
        for event in self.events():
            if event.job is None:
                pairs.append((event.on, event.as_job()))
                continue
            target = self.get(event.job)
            if target is None:
                logger.warning(f"Event '{event.id}' routes to unknown job '{event.job}'")
                continue
            pairs.append((event.on, target))
        return pairs

    def rejected(self) -> List[Tuple[str, str]]:
        with self._lock:
            return [(str(p), e.error) for p, e in sorted(self._files.items()) if e.error]
