"""
GitHub Plugin Registry

Installs, tracks and updates plugins sourced from GitHub repositories:
- repository reference parsing and slug generation
- release lookups and tarball downloads through the GitHub API
- archive installation into the live plugins directory
- a durable registry of installed plugins and an audit log
- the lifecycle manager tying them together
"""

__version__ = "1.0.0"

__all__ = [
    '__version__',
]
