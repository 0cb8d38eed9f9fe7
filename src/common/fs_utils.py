"""
Filesystem helpers shared by the registry stores and the archive installer.
"""

import json
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

from src.logging_config import get_logger

logger = get_logger(__name__)


def safe_remove_directory(path: Union[str, Path]) -> bool:
    """
    Remove a directory tree, handling read-only files.

    Attempts removal in two stages:
    1. Normal shutil.rmtree()
    2. Fix permissions via os.chmod() then retry (works for same-owner files)

    Args:
        path: Path to directory to remove

    Returns:
        True if the directory is gone afterwards, False otherwise
    """
    path = Path(path)
    if not path.exists():
        return True  # Already removed

    try:
        shutil.rmtree(path)
        return True
    except OSError:
        logger.warning(f"Permission error removing {path}, attempting chmod fix...")

    try:
        for root, _dirs, files in os.walk(path):
            root_path = Path(root)
            try:
                os.chmod(root_path, stat.S_IRWXU)
            except OSError:
                pass
            for file in files:
                try:
                    os.chmod(root_path / file, stat.S_IRWXU)
                except OSError:
                    pass
        shutil.rmtree(path)
        logger.info(f"Removed {path} after fixing permissions")
        return True
    except OSError as e:
        logger.warning(f"chmod fix failed for {path}: {e}")

    # Partial removal may still have got everything
    if not path.exists():
        return True

    logger.error(f"All removal strategies failed for {path}")
    return False


def remove_file(path: Union[str, Path]) -> bool:
    """Delete a file if present. Returns False only when deletion failed."""
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning(f"Could not remove file {path}: {e}")
        return False


def read_json(path: Union[str, Path], default: Optional[Any] = None) -> Any:
    """Load JSON from ``path``; return ``default`` when the file does not exist."""
    path = Path(path)
    if not path.exists():
        return default
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def atomic_write_json(path: Union[str, Path], data: Any) -> None:
    """
    Write JSON to ``path`` via a sibling temp file and ``os.replace``.

    Readers never observe a half-written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        remove_file(tmp_path)
        raise
