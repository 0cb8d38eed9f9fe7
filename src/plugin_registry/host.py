"""
Host platform collaborators.

The lifecycle engine never activates plugins or parses plugin headers
itself; it asks a HostPluginSystem. LocalHostPluginSystem is the default
implementation: activation state is a list kept in the settings store and
uninstall scripts run under an external interpreter.
"""

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Dict, List, Union

from src.plugin_registry.exceptions import HostError
from src.plugin_registry.settings import SettingsStore

# Header field -> "Name:" label, as plugin authors write them
PLUGIN_HEADERS = {
    'Name': 'Plugin Name',
    'PluginURI': 'Plugin URI',
    'Version': 'Version',
    'Description': 'Description',
    'Author': 'Author',
    'AuthorURI': 'Author URI',
    'TextDomain': 'Text Domain',
    'DomainPath': 'Domain Path',
    'Network': 'Network',
    'RequiresWP': 'Requires at least',
    'RequiresPHP': 'Requires PHP',
    'UpdateURI': 'Update URI',
}

# Headers must appear near the top of the file
HEADER_READ_BYTES = 8192

UNINSTALL_TIMEOUT = 120


def _cleanup_header_comment(value: str) -> str:
    return re.sub(r'\s*(?:\*/|\?>).*', '', value).strip()


def read_header_fields(file_path: Union[str, Path], headers: Dict[str, str] = PLUGIN_HEADERS) -> Dict[str, str]:
    """
    Parse ``Label: value`` header lines from the top of a source file.

    Args:
        file_path: File to read
        headers: Mapping of result key to header label

    Returns:
        Dict with one entry per key in ``headers``; missing fields are ''
    """
    try:
        with open(file_path, 'rb') as f:
            raw = f.read(HEADER_READ_BYTES)
    except OSError:
        return {key: '' for key in headers}

    text = raw.decode('utf-8', errors='replace').replace('\r\n', '\n').replace('\r', '\n')

    fields = {}
    for key, label in headers.items():
        pattern = re.compile(
            r'^(?:[ \t]*<\?php)?[ \t/*#@]*' + re.escape(label) + r':(.*)$',
            re.IGNORECASE | re.MULTILINE,
        )
        match = pattern.search(text)
        fields[key] = _cleanup_header_comment(match.group(1)) if match else ''
    return fields


class HostPluginSystem:
    """Interface to the platform that actually runs plugins."""

    def activate(self, main_file: Path) -> None:
        """
        Raises:
            HostError: With the host's own message when activation is refused
        """
        raise NotImplementedError

    def deactivate(self, main_file: Path, silent: bool = False) -> None:
        raise NotImplementedError

    def is_active(self, main_file: Path) -> bool:
        raise NotImplementedError

    def run_uninstall_script(self, script: Path, main_file: Path) -> None:
        """
        Raises:
            HostError: If the script could not be run or exited non-zero
        """
        raise NotImplementedError

    def read_header_fields(self, file_path: Path) -> Dict[str, str]:
        return read_header_fields(file_path)


class LocalHostPluginSystem(HostPluginSystem):
    """
    Host backed by the settings store.

    Active plugins are stored as paths relative to the plugins directory
    (``<slug>/<main file>``) under the ``active_plugins`` key.

    Args:
        settings: Settings store holding ``active_plugins``
        plugins_dir: Live plugins directory
        interpreter: Command used to run uninstall scripts
    """

    ACTIVE_KEY = 'active_plugins'

    def __init__(self, settings: SettingsStore, plugins_dir: Path, interpreter: str = 'php'):
        self.settings = settings
        self.plugins_dir = Path(plugins_dir)
        self.interpreter = interpreter
        self.logger = logging.getLogger(__name__)

    def plugin_basename(self, main_file: Path) -> str:
        main_file = Path(main_file)
        try:
            return main_file.resolve().relative_to(self.plugins_dir.resolve()).as_posix()
        except ValueError:
            return main_file.as_posix()

    def _active_plugins(self) -> List[str]:
        return list(self.settings.get(self.ACTIVE_KEY, []))

    def activate(self, main_file: Path) -> None:
        main_file = Path(main_file)
        if not main_file.is_file():
            raise HostError('Plugin file does not exist.')
        if not self.read_header_fields(main_file).get('Name'):
            raise HostError('The plugin does not have a valid header.')

        basename = self.plugin_basename(main_file)
        active = self._active_plugins()
        if basename in active:
            return
        active.append(basename)
        self.settings.set(self.ACTIVE_KEY, sorted(active))
        self.logger.info(f"Activated {basename}")

    def deactivate(self, main_file: Path, silent: bool = False) -> None:
        basename = self.plugin_basename(main_file)
        active = self._active_plugins()
        if basename not in active:
            return
        active.remove(basename)
        self.settings.set(self.ACTIVE_KEY, active)
        if not silent:
            self.logger.info(f"Deactivated {basename}")

    def is_active(self, main_file: Path) -> bool:
        return self.plugin_basename(main_file) in self._active_plugins()

    def run_uninstall_script(self, script: Path, main_file: Path) -> None:
        script = Path(script)
        env = dict(os.environ)
        env['WP_UNINSTALL_PLUGIN'] = self.plugin_basename(main_file) if main_file else ''

        self.logger.info(f"Running uninstall script {script}")
        try:
            subprocess.run(
                [self.interpreter, str(script)],
                cwd=str(script.parent),
                env=env,
                capture_output=True,
                text=True,
                timeout=UNINSTALL_TIMEOUT,
                check=True,
            )
        except FileNotFoundError as e:
            raise HostError(f"Interpreter not found: {self.interpreter}") from e
        except subprocess.TimeoutExpired as e:
            raise HostError(f"Uninstall script timed out after {UNINSTALL_TIMEOUT}s") from e
        except subprocess.CalledProcessError as e:
            output = (e.stderr or e.stdout or '').strip()
            raise HostError(f"Uninstall script exited with {e.returncode}: {output}") from e
