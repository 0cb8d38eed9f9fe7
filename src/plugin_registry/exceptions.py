"""
Exception hierarchy for the plugin registry.

Components raise these; PluginLifecycleManager converts them into
``{'success': False, 'error': ...}`` results at its boundary.
"""

from typing import Optional


class PluginRegistryError(Exception):
    """Base exception for plugin registry errors."""

    pass


class InvalidUrlError(PluginRegistryError):
    """Raised when a repository reference cannot be parsed."""

    pass


class ApiError(PluginRegistryError):
    """
    Raised when a GitHub API call fails.

    Attributes:
        status_code: HTTP status returned by GitHub, or None for transport errors
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code in (403, 429) and 'rate limit' in str(self).lower()


class DownloadError(PluginRegistryError):
    """Raised when an archive download fails."""

    pass


class InstallError(PluginRegistryError):
    """Raised when an archive cannot be extracted into the plugins directory."""

    pass


class NoRootFolderError(InstallError):
    """Raised when an archive has no single top-level directory."""

    pass


class HostError(PluginRegistryError):
    """Raised when the host plugin system rejects an activation or deactivation."""

    pass


class SettingsError(PluginRegistryError):
    """Raised when the settings file is unreadable or fails schema validation."""

    pass
