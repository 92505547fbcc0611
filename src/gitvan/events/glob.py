# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Path globs for event predicates.

`*` matches any run of characters (including `/`), anchored to the full
path. A `**/` segment also matches zero directories, so `src/**/*.js`
matches both `src/a.js` and `src/lib/a.js`. Every other character is
literal.
"""

import re
from functools import lru_cache
from typing import Iterable, Pattern


@lru_cache(maxsize=1024)
def compile_glob(pattern: str) -> Pattern:
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern[i] == "*":
            parts.append(".*")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def glob_match(path: str, pattern: str) -> bool:
    return compile_glob(pattern).match(path) is not None


def any_glob_match(paths: Iterable[str], patterns: Iterable[str]) -> bool:
    """True if any path matches any pattern."""
    compiled = [compile_glob(p) for p in patterns]
    for path in paths:
        for regex in compiled:
            if regex.match(path):
                return True
    return False
