"""Turn raw registry tags into comparable version candidates.

Two selection policies exist:

* ``select_latest`` picks the highest valid version from a tag list.
* ``select_after_sentinel`` handles registries that publish a rolling list
  of commit-style tags; the tag right after ``main`` is taken as latest.
  This depends on the order the registry returns tags in, which no registry
  documents as stable.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from registry_api import RegistryKind
from versions import VersionOrdering, compare, is_valid_version

logger = logging.getLogger(__name__)

SENTINEL_TAG = "main"


class TagSelectionError(Exception):
    """No usable tag could be selected from a registry tag list."""


class NoValidTagsFound(TagSelectionError):
    def __init__(self, total: int = 0):
        self.total = total
        super().__init__(f"No valid version among {total} tag(s)")


class SentinelNotFound(TagSelectionError):
    def __init__(self, sentinel: str = SENTINEL_TAG):
        self.sentinel = sentinel
        super().__init__(f"Sentinel tag '{sentinel}' not found")


class NoTagAfterSentinel(TagSelectionError):
    def __init__(self, sentinel: str = SENTINEL_TAG):
        self.sentinel = sentinel
        super().__init__(f"Sentinel tag '{sentinel}' is the last tag in the list")


@dataclass(frozen=True)
class TagCandidate:
    """A registry tag and its normalized form."""
    raw: str
    normalized: str
    is_valid_version: bool

    @property
    def version(self) -> str:
        """Value used for comparison and persistence."""
        return self.normalized if self.is_valid_version else self.raw


def normalize(raw_tag: str, architecture_filter: Optional[str] = None) -> TagCandidate:
    """Strip the version marker and suffix from a tag and classify it.

    Without an architecture filter everything from the first '-' is dropped,
    so "1.2.3-rc1" and "1.2.3" are the same version.
    """
    tag = raw_tag
    if tag.startswith('v'):
        tag = tag[1:]

    if architecture_filter:
        suffix = f"-{architecture_filter}"
        if tag.endswith(suffix):
            tag = tag[:-len(suffix)]
    else:
        tag = tag.split('-', 1)[0]

    return TagCandidate(raw=raw_tag, normalized=tag, is_valid_version=is_valid_version(tag))


def select_latest(candidates: Iterable[TagCandidate]) -> TagCandidate:
    """Return the highest valid candidate; the first one seen wins ties."""
    best: Optional[TagCandidate] = None
    total = 0
    for candidate in candidates:
        total += 1
        if not candidate.is_valid_version:
            continue
        if best is None or compare(candidate.normalized, best.normalized) is VersionOrdering.GREATER:
            best = candidate

    if best is None:
        raise NoValidTagsFound(total)
    return best


def select_after_sentinel(tags: Sequence[str], sentinel: str = SENTINEL_TAG) -> TagCandidate:
    """Return the tag that follows the first sentinel tag in *tags*."""
    try:
        index = list(tags).index(sentinel)
    except ValueError:
        raise SentinelNotFound(sentinel) from None

    if index + 1 >= len(tags):
        raise NoTagAfterSentinel(sentinel)

    tag = tags[index + 1]
    return TagCandidate(raw=tag, normalized=tag, is_valid_version=is_valid_version(tag))


def resolve_latest(tags: Sequence[str], kind: str,
                   architecture_filter: Optional[str] = None) -> TagCandidate:
    """Pick the latest tag for a registry kind.

    GHCR repositories without any version-like tag fall back to the
    sentinel policy.
    """
    candidates: List[TagCandidate] = [normalize(t, architecture_filter) for t in tags]

    if RegistryKind.parse(kind) is RegistryKind.GHCR and not any(c.is_valid_version for c in candidates):
        logger.debug(f"No version tags among {len(tags)} GHCR tag(s), using '{SENTINEL_TAG}' sentinel")
        return select_after_sentinel(tags)

    return select_latest(candidates)
