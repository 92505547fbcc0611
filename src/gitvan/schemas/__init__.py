# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""GitVan schemas."""

from gitvan.schemas.events import EventMetadata, EventPredicate, PullRequest
from gitvan.schemas.job_def import (
    EventDefinition,
    JobContext,
    JobDefinition,
    JobInstance,
    JobMeta,
    JobOptions,
    JobResult,
    RunRecord,
    StepInstance,
    StepOutcome,
)
from gitvan.schemas.pack import PackArtifact, PackSpec, PackState, Snapshot, Transform
from gitvan.schemas.receipt import Receipt, Trigger

__all__ = [
    "EventDefinition",
    "EventMetadata",
    "EventPredicate",
    "JobContext",
    "JobDefinition",
    "JobInstance",
    "JobMeta",
    "JobOptions",
    "JobResult",
    "PackArtifact",
    "PackSpec",
    "PackState",
    "PullRequest",
    "Receipt",
    "RunRecord",
    "Snapshot",
    "StepInstance",
    "StepOutcome",
    "Transform",
    "Trigger",
]
