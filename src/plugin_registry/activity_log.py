"""
Activity Log

Append-only audit trail of lifecycle transitions. Entries are never edited;
they are only removed by explicit clearing or age-based retention. Entries
may name slugs that are no longer registered.
"""

import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from src.common.fs_utils import atomic_write_json, read_json
from src.common.time_utils import days_ago, parse_iso, utc_now_iso
from src.plugin_registry.exceptions import PluginRegistryError

ACTION_INSTALL = 'install'
ACTION_UPDATE = 'update'
ACTION_ACTIVATE = 'activate'
ACTION_DEACTIVATE = 'deactivate'
ACTION_UNINSTALL = 'uninstall'
ACTION_UPDATE_CHECK = 'update_check'
ACTION_NOTIFICATION = 'notification'


@dataclass(frozen=True)
class ActorContext:
    """Who triggered an operation, recorded on every entry."""

    actor_id: int = 0
    source_addr: str = ''


@dataclass
class ActivityEntry:
    id: int
    action: str
    plugin_slug: str
    message: str
    extra_data: Dict[str, Any]
    actor_id: int
    source_addr: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ActivityLogger:
    """
    JSON-file backed audit log.

    Args:
        log_file: File holding every entry
        actor: Default actor recorded on entries
    """

    def __init__(self, log_file: Union[str, Path], actor: Optional[ActorContext] = None):
        self.log_file = Path(log_file)
        self.actor = actor or ActorContext()
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()

    def _read(self) -> Dict[str, Any]:
        try:
            data = read_json(self.log_file, default=None)
        except ValueError as e:
            raise PluginRegistryError(f"Activity log {self.log_file} is corrupt: {e}") from e
        if not isinstance(data, dict):
            return {'next_id': 1, 'entries': []}
        data.setdefault('next_id', 1)
        data.setdefault('entries', [])
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        atomic_write_json(self.log_file, data)

    def log(self, action: str, plugin_slug: str, message: str = '', extra: Optional[Dict[str, Any]] = None,
            actor: Optional[ActorContext] = None) -> int:
        """
        Append an entry.

        Returns:
            The new entry id
        """
        actor = actor or self.actor
        with self._lock:
            data = self._read()
            entry = ActivityEntry(
                id=data['next_id'],
                action=action,
                plugin_slug=plugin_slug,
                message=message,
                extra_data=dict(extra or {}),
                actor_id=actor.actor_id,
                source_addr=actor.source_addr,
                created_at=utc_now_iso(),
            )
            data['entries'].append(entry.to_dict())
            data['next_id'] = entry.id + 1
            self._write(data)
        return entry.id

    def log_install(self, plugin_slug: str, version: str, source_url: str, success: bool = True, error: str = '') -> int:
        if success:
            message = f"Plugin installed from GitHub: {plugin_slug} v{version}"
        else:
            message = f"Plugin install failed: {plugin_slug} ({version}): {error}"
        return self.log(ACTION_INSTALL, plugin_slug, message, {
            'version': version,
            'source_url': source_url,
            'success': success,
            'error': error,
        })

    def log_update(self, plugin_slug: str, old_version: str, new_version: str, success: bool = True, error: str = '') -> int:
        if success:
            message = f"Plugin updated: {plugin_slug} from v{old_version} to v{new_version}"
        else:
            message = f"Plugin update failed: {plugin_slug} v{old_version} -> v{new_version}: {error}"
        return self.log(ACTION_UPDATE, plugin_slug, message, {
            'old_version': old_version,
            'new_version': new_version,
            'success': success,
            'error': error,
        })

    def log_activate(self, plugin_slug: str, success: bool = True, error: str = '') -> int:
        message = f"Plugin activated: {plugin_slug}" if success else f"Plugin activation failed: {plugin_slug}: {error}"
        return self.log(ACTION_ACTIVATE, plugin_slug, message, {'success': success, 'error': error})

    def log_deactivate(self, plugin_slug: str, success: bool = True, error: str = '') -> int:
        message = f"Plugin deactivated: {plugin_slug}" if success else f"Plugin deactivation failed: {plugin_slug}: {error}"
        return self.log(ACTION_DEACTIVATE, plugin_slug, message, {'success': success, 'error': error})

    def log_uninstall(self, plugin_slug: str, version: str, success: bool = True, error: str = '') -> int:
        if success:
            message = f"Plugin uninstalled: {plugin_slug} (v{version})"
        else:
            message = f"Plugin uninstall failed: {plugin_slug} (v{version}): {error}"
        return self.log(ACTION_UNINSTALL, plugin_slug, message, {
            'version': version,
            'success': success,
            'error': error,
        })

    def log_update_check(self, plugin_slug: str, current_version: str, latest_version: str, has_update: bool,
                         success: bool = True, error: str = '') -> int:
        return self.log(ACTION_UPDATE_CHECK, plugin_slug, 'Update check performed', {
            'current_version': current_version,
            'latest_version': latest_version,
            'has_update': has_update,
            'success': success,
            'error': error,
        })

    def log_notification(self, plugin_slug: str, event_type: str, success: bool = True, error: str = '') -> int:
        message = f"GitHub Action triggered: {event_type} for {plugin_slug}"
        return self.log(ACTION_NOTIFICATION, plugin_slug, message, {
            'event_type': event_type,
            'success': success,
            'error': error,
        })

    def _filtered(self, action: str = '', plugin_slug: str = '') -> List[Dict[str, Any]]:
        with self._lock:
            entries = self._read()['entries']
        if action:
            entries = [e for e in entries if e['action'] == action]
        if plugin_slug:
            entries = [e for e in entries if e['plugin_slug'] == plugin_slug]
        return sorted(entries, key=lambda e: (e['created_at'], e['id']), reverse=True)

    def get_all(self, limit: int = 50, offset: int = 0, action: str = '', plugin_slug: str = '') -> List[ActivityEntry]:
        """Entries newest first, optionally filtered by action and slug."""
        entries = self._filtered(action, plugin_slug)[offset:offset + limit]
        return [ActivityEntry(**e) for e in entries]

    def get_by_plugin(self, plugin_slug: str, limit: int = 20) -> List[ActivityEntry]:
        return self.get_all(limit=limit, plugin_slug=plugin_slug)

    def get_recent(self, limit: int = 10) -> List[ActivityEntry]:
        return self.get_all(limit=limit)

    def get_count(self, action: str = '') -> int:
        return len(self._filtered(action))

    def get_action_types(self) -> List[str]:
        with self._lock:
            entries = self._read()['entries']
        return sorted({e['action'] for e in entries})

    def clear_plugin_logs(self, plugin_slug: str) -> int:
        """Delete every entry for ``plugin_slug``. Returns the number removed."""
        with self._lock:
            data = self._read()
            kept = [e for e in data['entries'] if e['plugin_slug'] != plugin_slug]
            removed = len(data['entries']) - len(kept)
            data['entries'] = kept
            self._write(data)
        return removed

    def clear_all(self) -> int:
        with self._lock:
            data = self._read()
            removed = len(data['entries'])
            data['entries'] = []
            self._write(data)
        return removed

    def delete_old_logs(self, days: int = 30) -> int:
        """
        Retention: drop entries older than ``days`` days.

        Returns:
            Number of entries removed
        """
        cutoff = days_ago(days)
        with self._lock:
            data = self._read()
            kept = []
            for entry in data['entries']:
                created = parse_iso(entry.get('created_at', ''))
                if created is None or created >= cutoff:
                    kept.append(entry)
            removed = len(data['entries']) - len(kept)
            if removed:
                data['entries'] = kept
                self._write(data)
        if removed:
            self.logger.info(f"Deleted {removed} activity log entries older than {days} days")
        return removed
