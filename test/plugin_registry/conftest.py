"""
Pytest fixtures for the plugin registry tests.
"""

import io
import shutil
import sys
import tarfile
from pathlib import Path
from typing import Any, Dict, Optional, Union
from unittest.mock import MagicMock

import pytest
from requests.structures import CaseInsensitiveDict

# Add project root to path
project_root = Path(__file__).parent.parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.plugin_registry.activity_log import ActivityLogger  # noqa: E402
from src.plugin_registry.archive_installer import ArchiveInstaller  # noqa: E402
from src.plugin_registry.exceptions import ApiError, DownloadError  # noqa: E402
from src.plugin_registry.github_client import GitHubClient  # noqa: E402
from src.plugin_registry.host import LocalHostPluginSystem  # noqa: E402
from src.plugin_registry.manager import PluginLifecycleManager  # noqa: E402
from src.plugin_registry.notifier import WorkflowNotifier  # noqa: E402
from src.plugin_registry.registry import PluginRegistry  # noqa: E402
from src.plugin_registry.settings import RegistryPaths, SettingsStore  # noqa: E402


def plugin_header(name: str = 'Demo', version: str = '1.0.0') -> str:
    return (
        "<?php\n"
        "/**\n"
        f" * Plugin Name: {name}\n"
        f" * Version: {version}\n"
        " * Author: Acme\n"
        " */\n"
    )


def build_tarball(path: Path, root: Optional[str], files: Dict[str, Union[str, bytes]]) -> Path:
    """Write a gzip tarball with every file under ``root/`` (or top level when root is None)."""
    with tarfile.open(path, 'w:gz') as tar:
        if root:
            info = tarfile.TarInfo(root)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, content in files.items():
            data = content.encode('utf-8') if isinstance(content, str) else content
            info = tarfile.TarInfo(f"{root}/{name}" if root else name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return path


def make_response(status_code: int = 200, json_data: Any = None, headers: Optional[Dict[str, str]] = None,
                  chunks: Optional[list] = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.headers = CaseInsensitiveDict(headers or {})
    if json_data is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = json_data
    response.iter_content.return_value = chunks or []
    return response


class FakeGitHub:
    """
    Stand-in for GitHubClient driven by in-memory releases and archives.

    ``archives`` maps (owner, repo, ref) to a tarball path; ``releases``
    maps (owner, repo) to a tag name or an ApiError to raise.
    """

    def __init__(self):
        self.archives: Dict[tuple, Path] = {}
        self.releases: Dict[tuple, Any] = {}
        self.download_calls = []
        self.release_calls = []

    def download_tarball(self, owner, repo, ref, destination):
        self.download_calls.append((owner, repo, ref))
        source = self.archives.get((owner, repo, ref))
        if source is None:
            Path(destination).unlink(missing_ok=True)
            raise DownloadError("HTTP 404")
        shutil.copyfile(source, destination)
        return Path(destination)

    def get_latest_release(self, owner, repo):
        self.release_calls.append((owner, repo))
        release = self.releases.get((owner, repo))
        if release is None:
            raise ApiError('Not Found', status_code=404)
        if isinstance(release, Exception):
            raise release
        return {'tag_name': release, 'html_url': f"https://github.com/{owner}/{repo}/releases/tag/{release}"}


@pytest.fixture
def paths(tmp_path) -> RegistryPaths:
    registry_paths = RegistryPaths(data_dir=tmp_path / 'data', plugins_dir=tmp_path / 'plugins')
    registry_paths.ensure()
    return registry_paths


@pytest.fixture
def settings(paths) -> SettingsStore:
    return SettingsStore(paths.settings_file)


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def archive_dir(tmp_path) -> Path:
    directory = tmp_path / 'archives'
    directory.mkdir()
    return directory


@pytest.fixture
def add_archive(fake_github, archive_dir):
    """Register a tarball for owner/repo@ref with the fake GitHub."""
    def _add(owner: str, repo: str, ref: str, files: Dict[str, Union[str, bytes]], root: Optional[str] = None) -> Path:
        root = root if root is not None else f"{repo}-{ref}"
        path = build_tarball(archive_dir / f"{owner}-{repo}-{ref}.tar.gz", root or None, files)
        fake_github.archives[(owner, repo, ref)] = path
        return path
    return _add


@pytest.fixture
def registry(paths) -> PluginRegistry:
    return PluginRegistry(paths.registry_file)


@pytest.fixture
def activity_logger(paths) -> ActivityLogger:
    return ActivityLogger(paths.activity_log_file)


@pytest.fixture
def host(settings, paths) -> LocalHostPluginSystem:
    return LocalHostPluginSystem(settings, paths.plugins_dir)


@pytest.fixture
def mock_notifier() -> MagicMock:
    notifier = MagicMock(spec=WorkflowNotifier)
    skipped = {'success': False, 'skipped': True, 'message': 'Trigger is disabled'}
    for method in ('on_install', 'on_update', 'on_uninstall', 'on_update_available', 'on_new_release'):
        getattr(notifier, method).return_value = skipped
    return notifier


@pytest.fixture
def manager(registry, fake_github, paths, host, activity_logger, mock_notifier) -> PluginLifecycleManager:
    return PluginLifecycleManager(
        registry=registry,
        github=fake_github,
        installer=ArchiveInstaller(fake_github, paths.plugins_dir),
        host=host,
        activity_logger=activity_logger,
        notifier=mock_notifier,
    )


@pytest.fixture
def mock_session() -> MagicMock:
    return MagicMock()


@pytest.fixture
def github_client(mock_session) -> GitHubClient:
    return GitHubClient(token=None, session=mock_session)
