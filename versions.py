"""Version grammar and ordering.

Only dot-separated non-negative integers are understood ("1", "1.2",
"10.11.4").  Anything else is compared for equality only.
"""

import re
from enum import Enum
from typing import Optional, Tuple

_SEGMENT_RE = re.compile(r'^[0-9]+$')


class VersionOrdering(Enum):
    """Result of comparing two version strings."""
    LESS = "less"
    EQUAL = "equal"
    GREATER = "greater"
    INCOMPARABLE = "incomparable"


def parse_version(version: str) -> Optional[Tuple[int, ...]]:
    """Split a version into integer segments, or None if it is not a version."""
    if not version:
        return None
    segments = version.split('.')
    if not all(_SEGMENT_RE.match(s) for s in segments):
        return None
    return tuple(int(s) for s in segments)


def is_valid_version(version: str) -> bool:
    return parse_version(version) is not None


def _pad(parts: Tuple[int, ...], length: int) -> Tuple[int, ...]:
    return parts + (0,) * (length - len(parts))


def compare(a: str, b: str) -> VersionOrdering:
    """Compare version *a* against *b*.

    Missing trailing segments count as zero, so "1.2" equals "1.2.0".
    When either side is not a valid version the strings are only checked
    for equality and any difference is INCOMPARABLE.
    """
    pa = parse_version(a)
    pb = parse_version(b)

    if pa is None or pb is None:
        return VersionOrdering.EQUAL if a == b else VersionOrdering.INCOMPARABLE

    width = max(len(pa), len(pb))
    pa, pb = _pad(pa, width), _pad(pb, width)
    if pa < pb:
        return VersionOrdering.LESS
    if pa > pb:
        return VersionOrdering.GREATER
    return VersionOrdering.EQUAL


def is_upgrade(current: str, latest: str) -> bool:
    """True when *latest* should replace *current*.

    A non-version tag that changed still counts as drift worth acting on.
    """
    ordering = compare(latest, current)
    return ordering in (VersionOrdering.GREATER, VersionOrdering.INCOMPARABLE)
