# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Event predicate engine and event metadata construction."""

from gitvan.events.glob import compile_glob, glob_match
from gitvan.events.predicate import (
    MATCHER_KEYS,
    compile_predicate,
    evaluate,
    explain,
    predicate_to_dict,
)

__all__ = [
    "MATCHER_KEYS",
    "compile_glob",
    "compile_predicate",
    "evaluate",
    "explain",
    "glob_match",
    "predicate_to_dict",
]
