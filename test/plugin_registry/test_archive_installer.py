"""
Tests for ArchiveInstaller.
"""

import io
import os
import tarfile
from pathlib import Path

import pytest

from src.plugin_registry.archive_installer import ArchiveInstaller, find_root_folder
from src.plugin_registry.exceptions import DownloadError, InstallError, NoRootFolderError

from conftest import build_tarball, plugin_header


@pytest.fixture
def installer(fake_github, paths) -> ArchiveInstaller:
    return ArchiveInstaller(fake_github, paths.plugins_dir)


def _add_entry(tar: tarfile.TarFile, name: str, data: bytes = b'', **attrs) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    for key, value in attrs.items():
        setattr(info, key, value)
    tar.addfile(info, io.BytesIO(data) if data else None)


class TestInstall:
    """Test downloading and installing archives."""

    def test_strips_root_folder(self, installer, add_archive, paths):
        add_archive('acme', 'widget', 'v1.0.0', {
            'plugin.php': plugin_header(),
            'includes/helpers.php': '<?php // helpers',
        })

        destination = installer.install('acme', 'widget', 'v1.0.0', 'acme-widget')

        assert destination == paths.plugins_dir / 'acme-widget'
        assert (destination / 'plugin.php').is_file()
        assert (destination / 'includes' / 'helpers.php').is_file()
        assert not (destination / 'widget-v1.0.0').exists()

    def test_archive_without_root_folder(self, installer, add_archive, paths):
        add_archive('acme', 'widget', 'main', {'plugin.php': plugin_header()}, root='')

        with pytest.raises(NoRootFolderError):
            installer.install('acme', 'widget', 'main', 'acme-widget')

        assert not (paths.plugins_dir / 'acme-widget').exists()

    def test_reinstall_replaces_instead_of_merging(self, installer, add_archive, paths):
        add_archive('acme', 'widget', 'v1', {'plugin.php': plugin_header(version='1'), 'old.php': 'x'})
        add_archive('acme', 'widget', 'v2', {'plugin.php': plugin_header(version='2')})

        installer.install('acme', 'widget', 'v1', 'acme-widget')
        destination = installer.install('acme', 'widget', 'v2', 'acme-widget')

        assert 'Version: 2' in (destination / 'plugin.php').read_text()
        assert not (destination / 'old.php').exists()

    def test_failed_extraction_keeps_previous_install(self, installer, add_archive, fake_github, archive_dir, paths):
        add_archive('acme', 'widget', 'v1', {'plugin.php': plugin_header(version='1')})
        installer.install('acme', 'widget', 'v1', 'acme-widget')

        corrupt = archive_dir / 'corrupt.tar.gz'
        corrupt.write_bytes(b'this is not a tarball')
        fake_github.archives[('acme', 'widget', 'v2')] = corrupt

        with pytest.raises(InstallError):
            installer.install('acme', 'widget', 'v2', 'acme-widget')

        assert 'Version: 1' in (paths.plugins_dir / 'acme-widget' / 'plugin.php').read_text()

    def test_no_staging_or_backup_left_behind(self, installer, add_archive, paths):
        add_archive('acme', 'widget', 'v1', {'plugin.php': plugin_header()})
        add_archive('acme', 'widget', 'v2', {'plugin.php': plugin_header()})

        installer.install('acme', 'widget', 'v1', 'acme-widget')
        installer.install('acme', 'widget', 'v2', 'acme-widget')

        assert [p.name for p in paths.plugins_dir.iterdir()] == ['acme-widget']

    def test_download_failure_removes_temp_file(self, installer, fake_github, monkeypatch, tmp_path):
        temp_dir = tmp_path / 'tmp'
        temp_dir.mkdir()
        monkeypatch.setattr('tempfile.tempdir', str(temp_dir))

        with pytest.raises(DownloadError):
            installer.install('acme', 'missing', 'main', 'acme-missing')

        assert list(temp_dir.iterdir()) == []

    def test_temp_file_removed_after_success(self, installer, add_archive, monkeypatch, tmp_path):
        temp_dir = tmp_path / 'tmp'
        temp_dir.mkdir()
        monkeypatch.setattr('tempfile.tempdir', str(temp_dir))
        add_archive('acme', 'widget', 'main', {'plugin.php': plugin_header()})

        installer.install('acme', 'widget', 'main', 'acme-widget')

        assert list(temp_dir.iterdir()) == []


class TestUnsafeArchives:
    """Test that archives cannot write outside the plugin directory."""

    def test_parent_traversal_rejected(self, installer, tmp_path, paths):
        archive = tmp_path / 'evil.tar.gz'
        with tarfile.open(archive, 'w:gz') as tar:
            _add_entry(tar, 'root/plugin.php', plugin_header().encode())
            _add_entry(tar, 'root/../../escaped.php', b'<?php')

        with pytest.raises(InstallError, match='Unsafe path'):
            installer.install_archive(archive, 'evil')

        assert not (paths.plugins_dir / 'evil').exists()
        assert not (tmp_path / 'escaped.php').exists()

    def test_escaping_symlink_rejected(self, installer, tmp_path, paths):
        archive = tmp_path / 'evil.tar.gz'
        with tarfile.open(archive, 'w:gz') as tar:
            _add_entry(tar, 'root/plugin.php', plugin_header().encode())
            _add_entry(tar, 'root/link', type=tarfile.SYMTYPE, linkname='../../../etc/passwd')

        with pytest.raises(InstallError, match='Unsafe symlink'):
            installer.install_archive(archive, 'evil')

        assert not (paths.plugins_dir / 'evil').exists()

    def test_internal_symlink_allowed(self, installer, tmp_path):
        archive = tmp_path / 'ok.tar.gz'
        with tarfile.open(archive, 'w:gz') as tar:
            _add_entry(tar, 'root/plugin.php', plugin_header().encode())
            _add_entry(tar, 'root/alias.php', type=tarfile.SYMTYPE, linkname='plugin.php')

        destination = installer.install_archive(archive, 'ok')

        assert (destination / 'alias.php').is_symlink()
        assert (destination / 'alias.php').read_text() == plugin_header()

    def test_entries_outside_root_are_skipped(self, installer, tmp_path):
        archive = tmp_path / 'mixed.tar.gz'
        with tarfile.open(archive, 'w:gz') as tar:
            _add_entry(tar, 'root/plugin.php', plugin_header().encode())
            _add_entry(tar, 'other/stray.php', b'<?php')

        destination = installer.install_archive(archive, 'mixed')

        assert sorted(p.name for p in destination.iterdir()) == ['plugin.php']


def test_find_root_folder(tmp_path):
    archive = build_tarball(tmp_path / 'a.tar.gz', 'acme-widget-abc123', {'plugin.php': '<?php'})
    with tarfile.open(archive) as tar:
        assert find_root_folder(tar) == 'acme-widget-abc123'


def test_find_root_folder_flat_archive(tmp_path):
    archive = build_tarball(tmp_path / 'a.tar.gz', None, {'plugin.php': '<?php'})
    with tarfile.open(archive) as tar:
        assert find_root_folder(tar) is None


def test_installed_files_keep_owner_write(installer, tmp_path):
    archive = tmp_path / 'ro.tar.gz'
    with tarfile.open(archive, 'w:gz') as tar:
        _add_entry(tar, 'root/plugin.php', plugin_header().encode(), mode=0o444)

    destination = installer.install_archive(archive, 'ro')

    assert Path(destination / 'plugin.php').stat().st_mode & 0o600 == 0o600


def _truncate(path: Path) -> None:
    data = path.read_bytes()
    path.write_bytes(data[:len(data) // 2])


class TestTruncatedArchives:
    """Test archives cut off mid-download."""

    def test_truncated_gzip_raises_install_error(self, installer, tmp_path, paths):
        archive = build_tarball(tmp_path / 'cut.tar.gz', 'repo-main', {
            'plugin.php': plugin_header(),
            'assets/blob.bin': os.urandom(200_000),
        })
        _truncate(archive)

        with pytest.raises(InstallError):
            installer.install_archive(archive, 'cut')

        assert list(paths.plugins_dir.iterdir()) == []

    def test_truncated_update_keeps_previous_install(self, installer, add_archive, fake_github, paths):
        add_archive('acme', 'widget', 'v1', {'plugin.php': plugin_header(version='1')})
        installer.install('acme', 'widget', 'v1', 'acme-widget')
        cut = add_archive('acme', 'widget', 'v2', {
            'plugin.php': plugin_header(version='2'),
            'assets/blob.bin': os.urandom(200_000),
        })
        _truncate(cut)

        with pytest.raises(InstallError):
            installer.install('acme', 'widget', 'v2', 'acme-widget')

        assert 'Version: 1' in (paths.plugins_dir / 'acme-widget' / 'plugin.php').read_text()
        assert [p.name for p in paths.plugins_dir.iterdir()] == ['acme-widget']
