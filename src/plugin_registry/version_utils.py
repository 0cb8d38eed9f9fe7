"""
Version comparison for release tags and plugin header versions.

Tags such as ``v1.2.0``, ``1.2`` and ``2.0.0-beta.1`` are compared as
semantic versions. Anything semver cannot parse (``1.2.3.4``, ``2024.01``,
``1.0-rc2``) falls back to a numeric-segment comparison rather than a
lexical one.
"""

import re
from itertools import zip_longest
from typing import Optional, Tuple

import semver

_SEGMENT_RE = re.compile(r'(\d+|[a-zA-Z]+)')

# Pre-release words rank below a bare release; unknown words rank with them
_PRERELEASE_RANK = {
    'dev': 0,
    'alpha': 1,
    'a': 1,
    'beta': 2,
    'b': 2,
    'rc': 3,
    'pre': 3,
}
_RELEASE_RANK = 4
_PATCH_LEVEL_RANK = {'pl': 5, 'p': 5, 'patch': 5}


def normalize_version(version: Optional[str]) -> str:
    """Strip whitespace and a leading ``v``/``V`` from a tag."""
    value = (version or '').strip()
    if len(value) > 1 and value[0] in 'vV' and value[1].isdigit():
        value = value[1:]
    return value


def _parse_semver(version: str) -> Optional[semver.Version]:
    try:
        return semver.Version.parse(version, optional_minor_and_patch=True)
    except (ValueError, TypeError):
        return None


def _segment_key(version: str) -> Tuple[Tuple[int, int], ...]:
    """
    Sortable key for versions semver rejects.

    Numbers compare numerically; words rank by _PRERELEASE_RANK.
    """
    key = []
    for token in _SEGMENT_RE.findall(version):
        if token.isdigit():
            key.append((_RELEASE_RANK, int(token)))
        else:
            word = token.lower()
            rank = _PATCH_LEVEL_RANK.get(word, _PRERELEASE_RANK.get(word, 0))
            key.append((rank, 0))

    return tuple(key)


def compare_versions(left: Optional[str], right: Optional[str]) -> int:
    """
    Compare two version strings.

    Returns:
        -1 if left < right, 0 if equal, 1 if left > right
    """
    a = normalize_version(left)
    b = normalize_version(right)

    if a == b:
        return 0
    # Anything beats nothing
    if not a:
        return -1
    if not b:
        return 1

    parsed_a = _parse_semver(a)
    parsed_b = _parse_semver(b)
    if parsed_a is not None and parsed_b is not None:
        return parsed_a.compare(parsed_b)

    # Missing segments count as zero so 1.0 equals 1.0.0 and 1.0 beats 1.0-rc2
    for seg_a, seg_b in zip_longest(_segment_key(a), _segment_key(b), fillvalue=(_RELEASE_RANK, 0)):
        if seg_a != seg_b:
            return 1 if seg_a > seg_b else -1
    return 0


def is_newer(candidate: Optional[str], current: Optional[str]) -> bool:
    """True when ``candidate`` is strictly greater than ``current``."""
    return compare_versions(candidate, current) > 0
