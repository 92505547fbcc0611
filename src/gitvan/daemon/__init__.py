# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Daemon, per-worktree pollers and checkpoints."""

from gitvan.daemon.checkpoint import Checkpoint
from gitvan.daemon.daemon import (
    STATE_DRAINING,
    STATE_IDLE,
    STATE_RUNNING,
    STATE_STARTING,
    STATE_STOPPED,
    Daemon,
    InvalidTransition,
)
from gitvan.daemon.worktree import WorkItem, WorktreeSupervisor

__all__ = [
    "Checkpoint",
    "Daemon",
    "InvalidTransition",
    "STATE_DRAINING",
    "STATE_IDLE",
    "STATE_RUNNING",
    "STATE_STARTING",
    "STATE_STOPPED",
    "WorkItem",
    "WorktreeSupervisor",
]
