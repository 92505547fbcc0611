# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Local pack registry: every pack directory under the configured roots."""

import logging
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from gitvan.errors import GitVanError, UnresolvedDependency
from gitvan.packs import semver
from gitvan.packs.spec import MANIFEST_NAMES, load_pack
from gitvan.schemas.pack import PackSpec

logger = logging.getLogger(__name__)


class PackRegistry:
    """Index of available packs by id and version."""

    def __init__(self, roots: Iterable[Path]):
        self.roots = [Path(r) for r in roots]
        self._packs: Dict[str, Dict[str, PackSpec]] = defaultdict(dict)
        self._loaded = False

    def _manifest_dirs(self) -> List[Path]:
        dirs = set()
        for root in self.roots:
            if not root.is_dir():
                continue
            for name in MANIFEST_NAMES:
                for manifest in root.rglob(name):
                    dirs.add(manifest.parent)
        return sorted(dirs)

    def scan(self) -> int:
        """(Re)load every pack manifest. Returns the number of packs loaded."""
        self._packs = defaultdict(dict)
        count = 0
        for pack_dir in self._manifest_dirs():
            try:
                pack = load_pack(pack_dir)
            except GitVanError as e:
                logger.warning(f"Skipping pack at {pack_dir}: {e}")
                continue
            existing = self._packs[pack.id].get(pack.version)
            if existing is not None:
                logger.warning(
                    f"Pack {pack.id}@{pack.version} found in both {existing.path} and {pack_dir}; "
                    f"keeping {existing.path}"
                )
                continue
            self._packs[pack.id][pack.version] = pack
            count += 1
        self._loaded = True
        logger.debug(f"Pack registry loaded {count} pack version(s)")
        return count

    def _ensure(self) -> None:
        if not self._loaded:
            self.scan()

    def add(self, pack: PackSpec) -> None:
        self._ensure()
        self._packs[pack.id][pack.version] = pack

    def ids(self) -> List[str]:
        self._ensure()
        return sorted(pid for pid, versions in self._packs.items() if versions)

    def versions(self, pack_id: str) -> List[str]:
        """All available versions, lowest first."""
        self._ensure()
        return sorted(self._packs.get(pack_id, {}), key=semver.parse_version)

    def get(self, pack_id: str, version: str) -> Optional[PackSpec]:
        self._ensure()
        return self._packs.get(pack_id, {}).get(version)

    def latest(self, pack_id: str) -> Optional[PackSpec]:
        versions = self.versions(pack_id)
        stable = [v for v in versions if not semver.parse_version(v).prerelease]
        chosen = (stable or versions or [None])[-1]
        return self.get(pack_id, chosen) if chosen else None

    def resolve(self, pack_id: str, constraint: str = "*", required_by: Optional[str] = None) -> PackSpec:
        """Greatest available version satisfying `constraint`.

        Raises:
            UnresolvedDependency: If no version satisfies the constraint.
        """
        version = semver.max_satisfying(self.versions(pack_id), constraint)
        if version is None:
            raise UnresolvedDependency(pack_id, constraint, required_by)
        return self._packs[pack_id][version]
