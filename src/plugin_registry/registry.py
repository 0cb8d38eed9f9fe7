"""
Plugin Registry

Durable store of installed GitHub plugins, keyed by slug. One JSON document
holds every record; writes replace the file atomically.

The registry does no network or plugin-directory I/O of its own. Records
whose ``local_path`` no longer exists are still returned; readers check
``is_missing``.
"""

import logging
import threading
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from src.common.fs_utils import atomic_write_json, read_json
from src.common.time_utils import utc_now_iso
from src.plugin_registry.exceptions import PluginRegistryError

# Fields an update() call may change; identity fields are fixed at creation
MUTABLE_FIELDS = frozenset({
    'local_path',
    'installed_version',
    'latest_version',
    'branch',
    'has_update',
})

STORE_VERSION = 1


@dataclass
class PluginRecord:
    """
    One installed GitHub plugin.

    Attributes:
        slug: Registry key derived from owner/repo
        owner: GitHub owner
        repo: GitHub repository
        local_path: Absolute path of the installed plugin directory
        installed_version: Version read from the installed files ('' if unknown)
        latest_version: Latest version seen on GitHub
        source_url: Reference string the user installed from
        branch: Ref the user asked to track
        has_update: Cached ``latest_version > installed_version``
        created_at: ISO timestamp
        updated_at: ISO timestamp
    """

    slug: str
    owner: str
    repo: str
    local_path: str
    installed_version: str = ''
    latest_version: str = ''
    source_url: str = ''
    branch: str = 'main'
    has_update: bool = False
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def local_dir(self) -> str:
        return Path(self.local_path).name

    @property
    def is_missing(self) -> bool:
        return not Path(self.local_path).is_dir()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['local_dir'] = self.local_dir
        data['is_missing'] = self.is_missing
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PluginRecord':
        known = {f.name for f in fields(cls)}
        record = cls(**{k: v for k, v in data.items() if k in known})
        record.has_update = bool(record.has_update)
        return record


class PluginRegistry:
    """
    CRUD over PluginRecords.

    Args:
        registry_file: JSON file backing the registry
    """

    def __init__(self, registry_file: Union[str, Path]):
        self.registry_file = Path(registry_file)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()

    def _read(self) -> Dict[str, Dict[str, Any]]:
        try:
            data = read_json(self.registry_file, default={})
        except ValueError as e:
            raise PluginRegistryError(f"Registry file {self.registry_file} is corrupt: {e}") from e
        return data.get('plugins', {}) if isinstance(data, dict) else {}

    def _write(self, plugins: Dict[str, Dict[str, Any]]) -> None:
        atomic_write_json(self.registry_file, {'version': STORE_VERSION, 'plugins': plugins})

    def get_all(self) -> List[PluginRecord]:
        with self._lock:
            rows = self._read()
        return [PluginRecord.from_dict(row) for _, row in sorted(rows.items())]

    def get(self, slug: str) -> Optional[PluginRecord]:
        with self._lock:
            row = self._read().get(slug)
        return PluginRecord.from_dict(row) if row else None

    def add(self, record: PluginRecord) -> PluginRecord:
        """Insert or replace the record for ``record.slug``."""
        with self._lock:
            plugins = self._read()
            now = utc_now_iso()
            record.created_at = now
            record.updated_at = now
            plugins[record.slug] = asdict(record)
            self._write(plugins)
        self.logger.debug(f"Registered plugin {record.slug}")
        return record

    def update(self, slug: str, changes: Dict[str, Any]) -> Optional[PluginRecord]:
        """
        Apply ``changes`` to an existing record and bump ``updated_at``.

        Returns:
            The updated record, or None if ``slug`` is not registered

        Raises:
            ValueError: If ``changes`` names an immutable or unknown field
        """
        invalid = set(changes) - MUTABLE_FIELDS
        if invalid:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(invalid))}")

        with self._lock:
            plugins = self._read()
            row = plugins.get(slug)
            if row is None:
                return None
            row.update(changes)
            if 'has_update' in changes:
                row['has_update'] = bool(changes['has_update'])
            row['updated_at'] = utc_now_iso()
            plugins[slug] = row
            self._write(plugins)
        return PluginRecord.from_dict(row)

    def remove(self, slug: str) -> bool:
        """Delete the record for ``slug``. Returns False if it was not registered."""
        with self._lock:
            plugins = self._read()
            if slug not in plugins:
                return False
            del plugins[slug]
            self._write(plugins)
        self.logger.debug(f"Removed plugin {slug} from registry")
        return True

    def exists(self, slug: str) -> bool:
        with self._lock:
            return slug in self._read()

    def find_by_path(self, path: Union[str, Path]) -> Optional[PluginRecord]:
        target = Path(path).resolve()
        for record in self.get_all():
            if Path(record.local_path).resolve() == target:
                return record
        return None

    def get_with_pending_updates(self) -> List[PluginRecord]:
        return [record for record in self.get_all() if record.has_update]
