# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Job definition, discovery and execution."""

from gitvan.jobs.define import define_event, define_job
from gitvan.jobs.registry import JobRegistry, ScanReport
from gitvan.jobs.runner import JobRunner, on_demand_trigger

__all__ = [
    "define_event",
    "define_job",
    "JobRegistry",
    "JobRunner",
    "ScanReport",
    "on_demand_trigger",
]
