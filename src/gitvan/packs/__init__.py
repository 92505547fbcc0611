# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Pack idempotency engine: versioned bundles of file transforms."""

from gitvan.packs.engine import PackEngine, PackResult, RollbackReport, VerifyReport
from gitvan.packs.registry import PackRegistry
from gitvan.packs.resolver import DependencyResolver
from gitvan.packs.spec import load_pack, pack_fingerprint

__all__ = [
    "DependencyResolver",
    "PackEngine",
    "PackRegistry",
    "PackResult",
    "RollbackReport",
    "VerifyReport",
    "load_pack",
    "pack_fingerprint",
]
