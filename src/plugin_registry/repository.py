"""
Repository reference parsing and slug generation.
"""

import re
import unicodedata
from dataclasses import dataclass

from src.plugin_registry.exceptions import InvalidUrlError

# Tried in order; first match wins
_REFERENCE_PATTERNS = (
    re.compile(r'github\.com[/:]([^/]+)/([^/?#]+)'),
    re.compile(r'^[a-zA-Z][a-zA-Z0-9+.-]*://[^/]+/([^/]+)/([^/?#]+)'),
    re.compile(r'^([^/\s]+)/([^/\s]+)$'),
)

_GIT_SUFFIX = re.compile(r'\.git$')


@dataclass(frozen=True)
class RepositoryReference:
    """Normalized ``owner/repo`` pair."""

    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def slug(self) -> str:
        return generate_slug(self.owner, self.repo)


def resolve(reference: str) -> RepositoryReference:
    """
    Parse a GitHub URL or ``owner/repo`` shorthand.

    Args:
        reference: e.g. ``https://github.com/Acme/Widget.git`` or ``Acme/Widget``

    Returns:
        RepositoryReference with the ``.git`` suffix stripped from the repo

    Raises:
        InvalidUrlError: If no pattern matches
    """
    value = (reference or '').strip()

    for pattern in _REFERENCE_PATTERNS:
        match = pattern.search(value)
        if not match:
            continue
        owner = match.group(1)
        repo = _GIT_SUFFIX.sub('', match.group(2).rstrip('/'))
        if owner and repo:
            return RepositoryReference(owner=owner, repo=repo)

    raise InvalidUrlError(f"Invalid GitHub URL: {reference!r}")


def sanitize_title(title: str) -> str:
    """
    Lowercase, URL-safe form of ``title``.

    Accents are folded to ASCII, anything other than letters, digits,
    hyphens and underscores becomes a hyphen, and runs of hyphens collapse.
    """
    value = unicodedata.normalize('NFKD', title).encode('ascii', 'ignore').decode('ascii')
    value = value.lower()
    value = re.sub(r'[\s.]+', '-', value)
    value = re.sub(r'[^a-z0-9_-]', '', value)
    value = re.sub(r'-+', '-', value)
    return value.strip('-')


def generate_slug(owner: str, repo: str) -> str:
    """Deterministic registry key for ``owner/repo``."""
    return sanitize_title(f"{owner}-{repo}")
