"""
Archive Installer

Downloads a repository tarball and installs it as ``<plugins_dir>/<slug>``.

The archive is extracted into a staging directory beside the destination,
with its single top-level folder stripped, and then renamed into place. An
existing installation is moved aside first and only deleted once the new
directory is in place, so a failed extraction leaves the previous version
untouched.
"""

import logging
import os
import shutil
import tarfile
import tempfile
import uuid
import zlib
from pathlib import Path, PurePosixPath
from typing import Optional

from src.common.fs_utils import remove_file, safe_remove_directory
from src.plugin_registry.exceptions import DownloadError, InstallError, NoRootFolderError
from src.plugin_registry.github_client import GitHubClient

STAGING_PREFIX = '.staging-'
BACKUP_PREFIX = '.previous-'


def _entry_parts(name: str) -> tuple:
    """Path segments of an archive entry name, ignoring leading slashes and dots."""
    return tuple(p for p in PurePosixPath(name).parts if p not in ('/', '.'))


def find_root_folder(archive: tarfile.TarFile) -> Optional[str]:
    """
    Name of the archive's top-level directory.

    The first entry whose name contains a path separator decides it.

    Returns:
        Root folder name, or None if every entry sits at the top level
    """
    for member in archive:
        parts = _entry_parts(member.name)
        if len(parts) > 1:
            return parts[0]
    return None


class ArchiveInstaller:
    """
    Installs GitHub tarballs into the plugins directory.

    Args:
        github: Client used to download archives
        plugins_dir: Live plugins directory
    """

    def __init__(self, github: GitHubClient, plugins_dir: Path):
        self.github = github
        self.plugins_dir = Path(plugins_dir)
        self.logger = logging.getLogger(__name__)

    def install(self, owner: str, repo: str, ref: str, slug: str) -> Path:
        """
        Download ``owner/repo@ref`` and install it under ``slug``.

        Returns:
            Path to the installed plugin directory

        Raises:
            DownloadError: If the archive could not be downloaded
            NoRootFolderError: If the archive has no top-level folder
            InstallError: If the archive is unreadable or extraction fails
        """
        self.plugins_dir.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix='plugin_registry_', suffix='.tar.gz')
        os.close(fd)
        archive_path = Path(tmp_name)

        try:
            try:
                self.github.download_tarball(owner, repo, ref, archive_path)
            except DownloadError:
                self.logger.error(f"Download failed for {owner}/{repo}@{ref}")
                raise
            return self.install_archive(archive_path, slug)
        finally:
            if not remove_file(archive_path):
                self.logger.warning(f"Temporary archive left behind: {archive_path}")

    def install_archive(self, archive_path: Path, slug: str) -> Path:
        """
        Install an already-downloaded tarball under ``slug``.

        Returns:
            Path to the installed plugin directory
        """
        destination = self.plugins_dir / slug
        staging = self.plugins_dir / f"{STAGING_PREFIX}{slug}-{uuid.uuid4().hex[:8]}"

        try:
            try:
                with tarfile.open(archive_path, 'r:*') as archive:
                    root_folder = find_root_folder(archive)
                    if not root_folder:
                        raise NoRootFolderError('Could not determine root folder')
                    self._extract_stripped(archive, root_folder, staging)
            except (tarfile.TarError, EOFError, zlib.error) as e:
                # Truncated gzip streams surface as EOFError or zlib.error
                raise InstallError(f"Could not read archive: {e}") from e
            except OSError as e:
                raise InstallError(f"Extraction failed: {e}") from e

            self._swap_into_place(staging, destination)
        finally:
            if staging.exists():
                safe_remove_directory(staging)

        self.logger.info(f"Installed archive into {destination}")
        return destination

    def _extract_stripped(self, archive: tarfile.TarFile, root_folder: str, staging: Path) -> None:
        """Extract every entry under ``root_folder`` into ``staging`` with the prefix removed."""
        staging.mkdir(parents=True)
        staging_resolved = staging.resolve()
        deferred_links = []

        for member in archive.getmembers():
            parts = _entry_parts(member.name)
            if not parts or parts[0] != root_folder:
                self.logger.debug(f"Skipping entry outside root folder: {member.name!r}")
                continue
            relative = parts[1:]
            if not relative:
                continue
            if any(part == '..' for part in relative):
                raise InstallError(f"Unsafe path in archive: {member.name!r}")

            target = staging.joinpath(*relative)
            if not target.resolve().is_relative_to(staging_resolved):
                raise InstallError(f"Unsafe path in archive: {member.name!r}")

            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.isfile():
                target.parent.mkdir(parents=True, exist_ok=True)
                source = archive.extractfile(member)
                if source is None:
                    continue
                with source, open(target, 'wb') as out:
                    shutil.copyfileobj(source, out)
                # Keep the archive's permission bits but always owner read/write
                os.chmod(target, (member.mode & 0o777) | 0o600)
            elif member.issym() or member.islnk():
                deferred_links.append((member, target))
            else:
                self.logger.debug(f"Skipping special archive entry: {member.name!r}")

        # Links last so their targets exist
        for member, target in deferred_links:
            self._extract_link(member, root_folder, target, staging_resolved)

    def _extract_link(self, member: tarfile.TarInfo, root_folder: str, target: Path, staging_resolved: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)

        if member.issym():
            link_dest = (target.parent / member.linkname).resolve()
            if os.path.isabs(member.linkname) or not link_dest.is_relative_to(staging_resolved):
                raise InstallError(f"Unsafe symlink in archive: {member.name!r} -> {member.linkname!r}")
            os.symlink(member.linkname, target)
            return

        # Hard links name another archive entry; copy it
        link_parts = _entry_parts(member.linkname)
        if not link_parts or link_parts[0] != root_folder or '..' in link_parts:
            raise InstallError(f"Unsafe hard link in archive: {member.name!r} -> {member.linkname!r}")
        source = staging_resolved.joinpath(*link_parts[1:])
        if source.is_file():
            shutil.copy2(source, target)

    def _swap_into_place(self, staging: Path, destination: Path) -> None:
        """Rename ``staging`` to ``destination``, keeping the old copy until that succeeds."""
        backup = None
        if destination.exists():
            backup = destination.with_name(f"{BACKUP_PREFIX}{destination.name}-{uuid.uuid4().hex[:8]}")
            try:
                os.replace(destination, backup)
            except OSError as e:
                raise InstallError(f"Could not move existing plugin directory aside: {e}") from e

        try:
            os.replace(staging, destination)
        except OSError as e:
            if backup is not None:
                try:
                    os.replace(backup, destination)
                except OSError as restore_error:
                    self.logger.error(f"Could not restore previous plugin directory from {backup}: {restore_error}")
            raise InstallError(f"Could not move plugin into place: {e}") from e

        if backup is not None and not safe_remove_directory(backup):
            self.logger.warning(f"Previous plugin directory left behind: {backup}")
