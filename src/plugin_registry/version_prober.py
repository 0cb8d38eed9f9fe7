"""
Locates a plugin's main file and reads its declared version.
"""

import re
from pathlib import Path
from typing import Optional, Union

from src.logging_config import get_logger
from src.plugin_registry.host import HostPluginSystem, read_header_fields

MAIN_FILE_MARKER = re.compile(r'Plugin Name:', re.IGNORECASE)
SOURCE_EXTENSION = 'php'

logger = get_logger(__name__)


def find_main_file(plugin_dir: Union[str, Path], extension: str = SOURCE_EXTENSION) -> Optional[Path]:
    """
    Find the main plugin file in ``plugin_dir``.

    Scans top-level ``*.<extension>`` files in name order for a
    ``Plugin Name:`` header, then falls back to ``<dir>/<dir name>.<extension>``.

    Returns:
        Path to the main file, or None
    """
    plugin_dir = Path(plugin_dir)
    if not plugin_dir.is_dir():
        return None

    for candidate in sorted(plugin_dir.glob(f'*.{extension}')):
        if not candidate.is_file():
            continue
        try:
            content = candidate.read_text(encoding='utf-8', errors='replace')
        except OSError as e:
            logger.debug(f"Could not read {candidate}: {e}")
            continue
        if MAIN_FILE_MARKER.search(content):
            return candidate

    fallback = plugin_dir / f'{plugin_dir.name}.{extension}'
    return fallback if fallback.is_file() else None


def read_version(plugin_dir: Union[str, Path], host: Optional[HostPluginSystem] = None) -> str:
    """
    Declared ``Version:`` of the plugin in ``plugin_dir``.

    Never raises; returns '' when there is no main file or no version header.
    """
    main_file = find_main_file(plugin_dir)
    if main_file is None:
        return ''

    try:
        fields = host.read_header_fields(main_file) if host else read_header_fields(main_file)
    except Exception as e:
        logger.warning(f"Could not read plugin headers from {main_file}: {e}")
        return ''
    return fields.get('Version', '') or ''
