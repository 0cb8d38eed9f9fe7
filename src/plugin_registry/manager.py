"""
Plugin Lifecycle Manager

Orchestrates install, update, activate, deactivate, uninstall and update
checks for plugins installed from GitHub.

Every public method returns ``{'success': True, ...}`` or
``{'success': False, 'error': str}`` and never raises for expected
failures. Ordering rules:
- a registry record is written only after the archive is fully in place
- an update deactivates the plugin before its files are replaced
- uninstall runs the plugin's uninstall script before deleting its files,
  and drops the registry record even if the delete fails

Notifier dispatch, temp-file cleanup, deactivate-before-update,
deactivate-before-uninstall and the uninstall-time directory delete are
best-effort: their outcome is logged and otherwise ignored.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from src.common.fs_utils import safe_remove_directory
from src.plugin_registry.activity_log import ActivityEntry, ActivityLogger, ActorContext
from src.plugin_registry.archive_installer import ArchiveInstaller
from src.plugin_registry.exceptions import ApiError, HostError, InvalidUrlError, PluginRegistryError
from src.plugin_registry.github_client import GitHubClient
from src.plugin_registry.host import HostPluginSystem, LocalHostPluginSystem
from src.plugin_registry.notifier import WorkflowNotifier
from src.plugin_registry.registry import PluginRecord, PluginRegistry
from src.plugin_registry.repository import resolve
from src.plugin_registry.settings import RegistryPaths, SettingsStore
from src.plugin_registry.version_prober import find_main_file, read_version
from src.plugin_registry.version_utils import is_newer

DEFAULT_REF = 'main'
DEFAULT_UPDATE_WORKERS = 4
UNINSTALL_SCRIPT = 'uninstall.php'

UP_TO_DATE_MESSAGE = 'Plugin is already up to date'

LIST_STATUSES = ('all', 'active', 'inactive', 'update')


def _error(message: str, **extra: Any) -> Dict[str, Any]:
    result = {'success': False, 'error': message}
    result.update(extra)
    return result


class PluginLifecycleManager:
    """
    Lifecycle engine for GitHub-sourced plugins.

    All collaborators are passed in; use ``from_paths`` for the default wiring.

    Args:
        registry: Plugin registry
        github: GitHub API client
        installer: Archive installer writing into the plugins directory
        host: Host plugin system (activation, headers, uninstall scripts)
        activity_logger: Audit log
        notifier: Optional workflow-dispatch notifier
        max_update_workers: Concurrent release lookups in check_for_updates
    """

    def __init__(
        self,
        registry: PluginRegistry,
        github: GitHubClient,
        installer: ArchiveInstaller,
        host: HostPluginSystem,
        activity_logger: ActivityLogger,
        notifier: Optional[WorkflowNotifier] = None,
        max_update_workers: int = DEFAULT_UPDATE_WORKERS,
    ):
        self.registry = registry
        self.github = github
        self.installer = installer
        self.host = host
        self.activity_logger = activity_logger
        self.notifier = notifier
        self.max_update_workers = max(1, int(max_update_workers))
        self.logger = logging.getLogger(__name__)

        # slug -> [lock, number of callers holding or waiting]
        self._slug_locks: Dict[str, List[Any]] = {}
        self._slug_locks_guard = threading.Lock()

    @classmethod
    def from_paths(
        cls,
        paths: Optional[RegistryPaths] = None,
        settings: Optional[SettingsStore] = None,
        session: Optional[requests.Session] = None,
        host: Optional[HostPluginSystem] = None,
        actor: Optional[ActorContext] = None,
    ) -> 'PluginLifecycleManager':
        """Build a manager with file-backed stores under ``paths``."""
        paths = paths or RegistryPaths.from_env()
        paths.ensure()
        settings = settings or SettingsStore(paths.settings_file)
        github = GitHubClient.from_settings(settings, session=session)
        return cls(
            registry=PluginRegistry(paths.registry_file),
            github=github,
            installer=ArchiveInstaller(github, paths.plugins_dir),
            host=host or LocalHostPluginSystem(settings, paths.plugins_dir),
            activity_logger=ActivityLogger(paths.activity_log_file, actor=actor),
            notifier=WorkflowNotifier(settings, session=session),
        )

    @contextmanager
    def _slug_lock(self, slug: str) -> Iterator[None]:
        """
        Serialize install/update/uninstall for one slug.

        Entries are dropped once no caller holds or waits on them.
        """
        with self._slug_locks_guard:
            entry = self._slug_locks.setdefault(slug, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._slug_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._slug_locks[slug]

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    def install(self, url: str, ref: str = DEFAULT_REF) -> Dict[str, Any]:
        """
        Install a plugin from a GitHub URL or ``owner/repo``.

        Args:
            url: Repository reference
            ref: Branch, tag or commit to install

        Returns:
            ``{'success': True, 'slug', 'path', 'version'}`` or an error
        """
        ref = ref or DEFAULT_REF
        try:
            reference = resolve(url)
        except InvalidUrlError:
            return _error('Invalid GitHub URL')

        owner, repo = reference.owner, reference.repo
        slug = reference.slug
        self.logger.info(f"Installing plugin from GitHub: {owner}/{repo} (ref: {ref})")

        with self._slug_lock(slug):
            if self.registry.exists(slug):
                return _error('Plugin is already installed', slug=slug)

            try:
                path = self.installer.install(owner, repo, ref, slug)
            except (PluginRegistryError, OSError) as e:
                self.logger.error(f"Failed to install {slug}: {e}")
                self.activity_logger.log_install(slug, ref, url, False, str(e))
                return _error(str(e), slug=slug)

            installed_version = read_version(path, self.host)

            try:
                release = self.github.get_latest_release(owner, repo)
                latest_version = release.get('tag_name') or ref
            except ApiError as e:
                # The plugin is on disk; the release API being unavailable must not undo that
                self.logger.info(f"No release information for {owner}/{repo} ({e}); using ref {ref}")
                latest_version = ref

            self.registry.add(PluginRecord(
                slug=slug,
                owner=owner,
                repo=repo,
                local_path=str(path),
                installed_version=installed_version,
                latest_version=latest_version,
                source_url=url,
                branch=ref,
            ))

            self.activity_logger.log_install(slug, installed_version, url, True)
            self._notify(slug, 'install', lambda: self.notifier.on_install(owner, repo, installed_version))

        self.logger.info(f"Successfully installed plugin: {slug} (v{installed_version or 'unknown'})")
        return {
            'success': True,
            'slug': slug,
            'path': str(path),
            'version': installed_version,
        }

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(self, slug: str, ref: Optional[str] = None) -> Dict[str, Any]:
        """
        Update a plugin to its latest release.

        With ``ref`` the plugin is reinstalled from that ref without a
        version comparison.

        Returns:
            ``{'success': True, 'slug', 'old_version', 'new_version', 'was_active'}``,
            ``{'success': True, 'up_to_date': True, 'message', ...}`` when
            nothing newer exists, or an error
        """
        with self._slug_lock(slug):
            record = self.registry.get(slug)
            if record is None:
                return _error('Plugin not found in registry')

            old_version = record.installed_version

            if ref:
                target_ref = ref
                latest_version = ref
            else:
                try:
                    release = self.github.get_latest_release(record.owner, record.repo)
                except ApiError as e:
                    self.activity_logger.log_update_check(slug, old_version, '', False, success=False, error=str(e))
                    return _error(str(e))

                latest_version = release.get('tag_name', '')
                has_update = is_newer(latest_version, old_version)
                self.activity_logger.log_update_check(slug, old_version, latest_version, has_update)

                if not has_update:
                    self.logger.info(f"Plugin {slug} already at latest version {old_version}")
                    return {
                        'success': True,
                        'up_to_date': True,
                        'message': UP_TO_DATE_MESSAGE,
                        'current_version': old_version,
                        'latest_version': latest_version,
                    }
                target_ref = latest_version

            deactivation = self._deactivate_record(record)
            was_active = deactivation.get('was_active', False)
            if not deactivation['success']:
                self.logger.warning(f"Continuing update of {slug} after failed deactivation: {deactivation['error']}")

            try:
                path = self.installer.install(record.owner, record.repo, target_ref, slug)
            except (PluginRegistryError, OSError) as e:
                self.logger.error(f"Failed to update {slug}: {e}")
                self.activity_logger.log_update(slug, old_version, latest_version, False, str(e))
                return _error(str(e), was_active=was_active)

            new_version = read_version(path, self.host)
            changes = {
                'local_path': str(path),
                'installed_version': new_version,
                'latest_version': latest_version,
                'has_update': False,
            }
            if ref:
                changes['branch'] = ref
            self.registry.update(slug, changes)

            self.activity_logger.log_update(slug, old_version, new_version, True)
            self._notify(slug, 'update', lambda: self.notifier.on_update(record.owner, record.repo, old_version, new_version))

        self.logger.info(f"Updated plugin {slug} from v{old_version} to v{new_version}")
        return {
            'success': True,
            'slug': slug,
            'old_version': old_version,
            'new_version': new_version,
            'was_active': was_active,
        }

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def activate(self, slug: str) -> Dict[str, Any]:
        record = self.registry.get(slug)
        if record is None:
            return _error('Plugin not found')

        main_file = find_main_file(record.local_path)
        if main_file is None:
            self.activity_logger.log_activate(slug, False, 'Main plugin file not found')
            return _error('Main plugin file not found')

        try:
            self.host.activate(main_file)
        except HostError as e:
            self.activity_logger.log_activate(slug, False, str(e))
            return _error(str(e))

        self.activity_logger.log_activate(slug, True)
        return {'success': True, 'message': 'Plugin activated'}

    def deactivate(self, slug: str) -> Dict[str, Any]:
        record = self.registry.get(slug)
        if record is None:
            return _error('Plugin not found')

        result = self._deactivate_record(record)
        if not result['success']:
            return _error(result['error'])
        return {'success': True, 'message': 'Plugin deactivated'}

    def _deactivate_record(self, record: PluginRecord, silent: bool = False) -> Dict[str, Any]:
        """
        Deactivate ``record`` through the host and write the audit entry.

        Returns:
            Result dict with ``was_active``; callers on a best-effort path
            log a failure and carry on
        """
        main_file = find_main_file(record.local_path)
        if main_file is None:
            self.activity_logger.log_deactivate(record.slug, False, 'Main plugin file not found')
            return {'success': False, 'error': 'Main plugin file not found', 'was_active': False}

        try:
            was_active = self.host.is_active(main_file)
            self.host.deactivate(main_file, silent=silent)
        except HostError as e:
            self.activity_logger.log_deactivate(record.slug, False, str(e))
            return {'success': False, 'error': str(e), 'was_active': False}

        self.activity_logger.log_deactivate(record.slug, True)
        return {'success': True, 'was_active': was_active}

    # ------------------------------------------------------------------
    # Uninstall
    # ------------------------------------------------------------------

    def uninstall(self, slug: str) -> Dict[str, Any]:
        """
        Deactivate, run the plugin's uninstall script, delete its files and
        drop its registry record.
        """
        with self._slug_lock(slug):
            record = self.registry.get(slug)
            if record is None:
                return _error('Plugin not found')

            plugin_path = Path(record.local_path)
            problems: List[str] = []

            main_file = find_main_file(plugin_path)
            if main_file is not None:
                try:
                    self.host.deactivate(main_file, silent=True)
                except HostError as e:
                    self.logger.warning(f"Ignoring deactivation failure while uninstalling {slug}: {e}")

            uninstall_script = plugin_path / UNINSTALL_SCRIPT
            if uninstall_script.is_file():
                try:
                    self.host.run_uninstall_script(uninstall_script, main_file)
                except HostError as e:
                    self.logger.warning(f"Uninstall script for {slug} failed: {e}")
                    problems.append(str(e))

            if plugin_path.exists():
                if not self._is_inside_plugins_dir(plugin_path):
                    self.logger.error(f"Refusing to delete {plugin_path}: outside {self.installer.plugins_dir}")
                    problems.append(f"Refused to delete {plugin_path}")
                elif not safe_remove_directory(plugin_path):
                    problems.append(f"Could not delete {plugin_path}")
            else:
                self.logger.info(f"Plugin directory for {slug} already gone: {plugin_path}")

            self.registry.remove(slug)

            self.activity_logger.log_uninstall(slug, record.installed_version, True, '; '.join(problems))
            self._notify(slug, 'uninstall', lambda: self.notifier.on_uninstall(record.owner, record.repo, record.installed_version))

        self.logger.info(f"Uninstalled plugin: {slug}")
        result = {'success': True, 'message': 'Plugin uninstalled'}
        if problems:
            result['warnings'] = problems
        return result

    def _is_inside_plugins_dir(self, path: Path) -> bool:
        try:
            return path.resolve().is_relative_to(self.installer.plugins_dir.resolve())
        except OSError:
            return False

    # ------------------------------------------------------------------
    # Update checks
    # ------------------------------------------------------------------

    def check_for_updates(self) -> List[Dict[str, Any]]:
        """
        Refresh ``latest_version`` / ``has_update`` for every plugin.

        Release lookups run concurrently; a failed lookup is logged and that
        plugin is left as it was and omitted from the result.

        Returns:
            One ``{'slug', 'current_version', 'latest_version', 'download_url'}``
            per plugin with an update available
        """
        records = self.registry.get_all()
        if not records:
            return []

        def fetch(record: PluginRecord) -> Optional[Dict[str, Any]]:
            try:
                return self.github.get_latest_release(record.owner, record.repo)
            except ApiError as e:
                self.logger.warning(f"Update check failed for {record.slug}: {e}")
            except Exception as e:
                self.logger.error(f"Unexpected error checking {record.slug} for updates: {e}", exc_info=True)
            return None

        workers = min(self.max_update_workers, len(records))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='update-check') as executor:
            releases = list(executor.map(fetch, records))

        updates = []
        for record, release in zip(records, releases):
            if not release:
                continue

            latest_version = release.get('tag_name', '')

            # Re-read under the lock; an update may have finished during the fan-out
            with self._slug_lock(record.slug):
                current = self.registry.get(record.slug)
                if current is None:
                    continue
                has_update = is_newer(latest_version, current.installed_version)
                newly_available = has_update and (not current.has_update or current.latest_version != latest_version)
                self.registry.update(record.slug, {
                    'latest_version': latest_version,
                    'has_update': has_update,
                })
            record = current

            if not has_update:
                continue

            updates.append({
                'slug': record.slug,
                'current_version': record.installed_version,
                'latest_version': latest_version,
                'download_url': release.get('html_url', ''),
            })
            if newly_available:
                self._notify(
                    record.slug,
                    'update_available',
                    lambda r=record, v=latest_version: self.notifier.on_update_available(r.owner, r.repo, r.installed_version, v),
                )

        self.logger.info(f"Update check complete: {len(updates)} of {len(records)} plugins have updates")
        return updates

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_plugin_version(self, plugin_path: str) -> str:
        return read_version(plugin_path, self.host)

    def _describe(self, record: PluginRecord) -> Dict[str, Any]:
        info = record.to_dict()
        main_file = find_main_file(record.local_path)
        info['main_file'] = str(main_file) if main_file else ''
        info['is_active'] = bool(main_file) and self.host.is_active(main_file)
        info['plugin_data'] = self.host.read_header_fields(main_file) if main_file else {}
        return info

    def list_plugins(self, status: str = 'all') -> List[Dict[str, Any]]:
        """
        Registered plugins, optionally filtered.

        Args:
            status: 'all', 'active', 'inactive' or 'update'
        """
        status = status or 'all'
        if status not in LIST_STATUSES:
            raise ValueError(f"Unknown status filter: {status}")

        if status == 'update':
            return [self._describe(record) for record in self.registry.get_with_pending_updates()]

        plugins = [self._describe(record) for record in self.registry.get_all()]
        if status == 'active':
            return [p for p in plugins if p['is_active']]
        if status == 'inactive':
            return [p for p in plugins if not p['is_active']]
        return plugins

    def get_plugin_info(self, slug: str) -> Dict[str, Any]:
        record = self.registry.get(slug)
        if record is None:
            return _error('Plugin not found')
        return {'success': True, 'plugin': self._describe(record)}

    def get_plugin_info_by_path(self, plugin_path: str) -> Dict[str, Any]:
        """Look a plugin up by its installed directory instead of its slug."""
        record = self.registry.find_by_path(plugin_path)
        if record is None:
            return _error('Plugin not found')
        return {'success': True, 'plugin': self._describe(record)}

    def get_activity_logs(self, limit: int = 50, offset: int = 0, action: str = '', plugin_slug: str = '') -> List[ActivityEntry]:
        return self.activity_logger.get_all(limit, offset, action, plugin_slug)

    def get_recent_activity(self, limit: int = 10) -> List[ActivityEntry]:
        return self.activity_logger.get_recent(limit)

    def clear_activity_logs(self, plugin_slug: str = '') -> int:
        if plugin_slug:
            return self.activity_logger.clear_plugin_logs(plugin_slug)
        return self.activity_logger.clear_all()

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _notify(self, slug: str, event_type: str, send: Callable[[], Dict[str, Any]]) -> None:
        """Run a notifier call; the outcome is audited but never changes the caller's result."""
        if self.notifier is None:
            return

        try:
            result = send()
        except Exception as e:
            self.logger.warning(f"Notification {event_type} for {slug} raised: {e}")
            self.activity_logger.log_notification(slug, event_type, False, str(e))
            return

        if result.get('skipped'):
            return
        if result.get('success'):
            self.activity_logger.log_notification(slug, event_type, True)
        else:
            self.logger.warning(f"Notification {event_type} for {slug} failed: {result.get('error')}")
            self.activity_logger.log_notification(slug, event_type, False, result.get('error', ''))
