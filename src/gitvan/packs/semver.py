# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
SemVer 2.0 versions and npm-style range constraints.

Supported constraint forms:
- exact:       1.2.3, =1.2.3, v1.2.3
- comparators: >=1.2.3, >1.2.3, <=1.2.3, <1.2.3
- caret:       ^1.2.3 (>=1.2.3 <2.0.0), ^0.2.3 (<0.3.0), ^0.0.3 (<0.0.4)
- tilde:       ~1.2.3 (>=1.2.3 <1.3.0), ~1 (>=1.0.0 <2.0.0)
- x-ranges:    *, x, 1.x, 1.2.x, 1, 1.2
- hyphen:      1.2.3 - 2.3.4
- intersection by whitespace, union by ||

Pre-releases only satisfy a range when one of its comparators names the
same major.minor.patch with a pre-release tag, as in npm.
"""

import re
from dataclasses import dataclass
from functools import total_ordering
from typing import Iterable, List, Optional, Tuple, Union

from gitvan.errors import ValidationError

_NUMERIC = r"0|[1-9]\d*"
_PRE_ID = r"(?:0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*)"
_BUILD_ID = r"[0-9A-Za-z-]+"

VERSION_RE = re.compile(
    rf"^v?(?P<major>{_NUMERIC})\.(?P<minor>{_NUMERIC})\.(?P<patch>{_NUMERIC})"
    rf"(?:-(?P<pre>{_PRE_ID}(?:\.{_PRE_ID})*))?"
    rf"(?:\+(?P<build>{_BUILD_ID}(?:\.{_BUILD_ID})*))?$"
)
PARTIAL_RE = re.compile(
    r"^v?(?P<major>\d+|[xX*])(?:\.(?P<minor>\d+|[xX*]))?(?:\.(?P<patch>\d+|[xX*]))?"
    rf"(?:-(?P<pre>{_PRE_ID}(?:\.{_PRE_ID})*))?(?:\+{_BUILD_ID}(?:\.{_BUILD_ID})*)?$"
)
COMPARATOR_RE = re.compile(r"^(?P<op><=|>=|<|>|=|\^|~>?)?\s*(?P<version>\S+)$")
WILDCARDS = ("x", "X", "*")


@total_ordering
@dataclass(frozen=True)
class Version:
    major: int
    minor: int
    patch: int
    prerelease: Tuple[Union[int, str], ...] = ()
    build: Tuple[str, ...] = ()

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += "-" + ".".join(str(p) for p in self.prerelease)
        if self.build:
            text += "+" + ".".join(self.build)
        return text

    @property
    def core(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def _key(self):
        # Release sorts after any pre-release of the same core; numeric
        # identifiers sort before alphanumeric ones. Build metadata is ignored.
        if not self.prerelease:
            return (self.core, 1, ())
        ids = tuple((0, p, "") if isinstance(p, int) else (1, 0, p) for p in self.prerelease)
        return (self.core, 0, ids)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() < other._key()

    def __hash__(self) -> int:
        return hash(self._key())


def _split_pre(pre: Optional[str]) -> Tuple[Union[int, str], ...]:
    if not pre:
        return ()
    return tuple(int(p) if p.isdigit() else p for p in pre.split("."))


def parse_version(text: str) -> Version:
    """Parse a full SemVer 2.0 version (a leading "v" is tolerated).

    Raises:
        ValidationError: If `text` is not a valid version.
    """
    match = VERSION_RE.match(text.strip()) if isinstance(text, str) else None
    if not match:
        raise ValidationError("version", text, "not a valid semantic version")
    return Version(
        int(match.group("major")),
        int(match.group("minor")),
        int(match.group("patch")),
        _split_pre(match.group("pre")),
        tuple(match.group("build").split(".")) if match.group("build") else (),
    )


def is_valid(text: str) -> bool:
    try:
        parse_version(text)
    except ValidationError:
        return False
    return True


def compare(a: Union[str, Version], b: Union[str, Version]) -> int:
    va = a if isinstance(a, Version) else parse_version(a)
    vb = b if isinstance(b, Version) else parse_version(b)
    return (va > vb) - (va < vb)


# =============================================================================
# Ranges
# =============================================================================

@dataclass(frozen=True)
class Comparator:
    op: str  # one of <, <=, >, >=, =
    version: Version

    def test(self, version: Version) -> bool:
        if self.op == "=":
            return version == self.version
        if self.op == "<":
            return version < self.version
        if self.op == "<=":
            return version <= self.version
        if self.op == ">":
            return version > self.version
        return version >= self.version


ComparatorSet = List[Comparator]


def _partial(text: str, constraint: str):
    match = PARTIAL_RE.match(text)
    if not match:
        raise ValidationError("constraint", constraint, f"invalid version '{text}'")
    parts = []
    for name in ("major", "minor", "patch"):
        value = match.group(name)
        parts.append(None if value is None or value in WILDCARDS else int(value))
    # anything after a wildcard is a wildcard
    for i in range(1, 3):
        if parts[i - 1] is None:
            parts[i] = None
    return parts[0], parts[1], parts[2], _split_pre(match.group("pre"))


def _expand(op: str, text: str, constraint: str) -> ComparatorSet:
    major, minor, patch, pre = _partial(text, constraint)

    if major is None:
        if op in ("<", ">"):
            # <* and >* match nothing
            return [Comparator("<", Version(0, 0, 0, (0,)))]
        return []

    low = Version(major, minor or 0, patch or 0, pre)

    if op == "^":
        if major > 0 or minor is None:
            high = Version(major + 1, 0, 0, (0,))
        elif minor > 0 or patch is None:
            high = Version(0, minor + 1, 0, (0,))
        else:
            high = Version(0, 0, patch + 1, (0,))
        return [Comparator(">=", low), Comparator("<", high)]

    if op in ("~", "~>"):
        if minor is None:
            high = Version(major + 1, 0, 0, (0,))
        else:
            high = Version(major, minor + 1, 0, (0,))
        return [Comparator(">=", low), Comparator("<", high)]

    if minor is None or patch is None:
        # x-range with a comparator, e.g. "1.x", ">=1.2", "<1"
        if minor is None:
            upper = Version(major + 1, 0, 0, (0,))
        else:
            upper = Version(major, minor + 1, 0, (0,))
        if op in ("", "="):
            return [Comparator(">=", low), Comparator("<", upper)]
        if op == ">":
            return [Comparator(">=", Version(*upper.core))]
        if op == "<=":
            return [Comparator("<", upper)]
        return [Comparator(op, low)]

    return [Comparator(op or "=", low)]


def _parse_set(text: str, constraint: str) -> ComparatorSet:
    text = text.strip()
    if not text or text in ("*", "latest"):
        return []

    hyphen = re.match(r"^(\S+)\s+-\s+(\S+)$", text)
    if hyphen:
        lo_major, lo_minor, lo_patch, lo_pre = _partial(hyphen.group(1), constraint)
        lower = _expand(">=", hyphen.group(1), constraint) if lo_major is not None else []
        upper = _expand("<=", hyphen.group(2), constraint)
        return lower + upper

    # allow "> = 1.2.3"-style spacing between operator and version
    tokens = re.sub(r"(<=|>=|<|>|=|\^|~>?)\s+", r"\1", text).split()
    comparators: ComparatorSet = []
    for token in tokens:
        match = COMPARATOR_RE.match(token)
        if not match:
            raise ValidationError("constraint", constraint, f"invalid comparator '{token}'")
        comparators.extend(_expand(match.group("op") or "", match.group("version"), constraint))
    return comparators


@dataclass(frozen=True)
class Range:
    raw: str
    sets: Tuple[Tuple[Comparator, ...], ...]

    def test(self, version: Union[str, Version], include_prerelease: bool = False) -> bool:
        v = version if isinstance(version, Version) else parse_version(version)
        return any(self._test_set(cs, v, include_prerelease) for cs in self.sets)

    @staticmethod
    def _test_set(comparators: Tuple[Comparator, ...], version: Version, include_prerelease: bool) -> bool:
        if not all(c.test(version) for c in comparators):
            return False
        if not version.prerelease or include_prerelease:
            return True
        return any(c.version.prerelease and c.version.core == version.core for c in comparators)


def parse_range(constraint: str) -> Range:
    """Parse a constraint string.

    Raises:
        ValidationError: If the constraint is malformed.
    """
    if not isinstance(constraint, str):
        raise ValidationError("constraint", constraint, "must be a string")
    sets = tuple(tuple(_parse_set(part, constraint)) for part in constraint.split("||"))
    return Range(raw=constraint, sets=sets)


def satisfies(version: Union[str, Version], constraint: str, include_prerelease: bool = False) -> bool:
    try:
        v = version if isinstance(version, Version) else parse_version(version)
    except ValidationError:
        return False
    return parse_range(constraint).test(v, include_prerelease)


def max_satisfying(versions: Iterable[Union[str, Version]], constraint: str) -> Optional[str]:
    """Greatest version in `versions` satisfying `constraint`, or None."""
    rng = parse_range(constraint)
    best: Optional[Version] = None
    best_text: Optional[str] = None
    for candidate in versions:
        try:
            v = candidate if isinstance(candidate, Version) else parse_version(candidate)
        except ValidationError:
            continue
        if rng.test(v) and (best is None or v > best):
            best, best_text = v, str(candidate)
    return best_text


def update_available(current: str, versions: Iterable[str]) -> Optional[str]:
    """Newest stable version greater than `current`, or None."""
    base = parse_version(current)
    newer = []
    for text in versions:
        try:
            v = parse_version(text)
        except ValidationError:
            continue
        if v > base and (not v.prerelease or base.prerelease):
            newer.append((v, text))
    return max(newer)[1] if newer else None
