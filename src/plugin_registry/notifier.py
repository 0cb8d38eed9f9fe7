"""
GitHub Actions workflow-dispatch notifier.

Fires a workflow in the plugin's own repository after selected lifecycle
events. Every method returns a result dict and never raises; the lifecycle
engine records the outcome and carries on regardless.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from src.plugin_registry.github_client import API_BASE, API_VERSION, USER_AGENT
from src.plugin_registry.repository import generate_slug
from src.plugin_registry.settings import SettingsStore

DISPATCH_TIMEOUT = 30
LIST_TIMEOUT = 15
SOURCE_NAME = 'github-plugin-registry'

AVAILABLE_TRIGGERS = {
    'on_release': {
        'name': 'On New Release',
        'description': 'Trigger when a new release is published',
        'default': True,
    },
    'on_update_available': {
        'name': 'On Update Available',
        'description': 'Trigger when a new version is available',
        'default': False,
    },
    'on_install': {
        'name': 'On Plugin Install',
        'description': 'Trigger when a plugin is installed',
        'default': False,
    },
    'on_update': {
        'name': 'On Plugin Update',
        'description': 'Trigger when a plugin is updated',
        'default': True,
    },
    'on_uninstall': {
        'name': 'On Plugin Uninstall',
        'description': 'Trigger when a plugin is uninstalled',
        'default': False,
    },
}


class WorkflowNotifier:
    """
    Dispatches ``workflow_dispatch`` events.

    Settings read: ``github_actions_enabled``, ``github_token`` and
    ``github_actions_triggers`` (per-trigger booleans plus
    ``repo_overrides``).
    """

    def __init__(self, settings: SettingsStore, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()
        self.logger = logging.getLogger(__name__)

    @property
    def token(self) -> Optional[str]:
        return self.settings.get_github_token()

    def is_enabled(self) -> bool:
        return bool(self.settings.get('github_actions_enabled', False)) and bool(self.token)

    def _triggers(self) -> Dict[str, Any]:
        return self.settings.get('github_actions_triggers', {}) or {}

    def is_trigger_enabled(self, trigger_name: str) -> bool:
        if not self.is_enabled():
            return False
        default = AVAILABLE_TRIGGERS.get(trigger_name, {}).get('default', False)
        return bool(self._triggers().get(trigger_name, default))

    def save_settings(self, enabled: bool, token: str = '', triggers: Optional[Dict[str, Any]] = None) -> None:
        self.settings.set('github_actions_enabled', enabled)
        if token:
            self.settings.set('github_token', token)
        self.settings.set('github_actions_triggers', triggers or {})

    def _headers(self) -> Dict[str, str]:
        return {
            'Accept': 'application/vnd.github+json',
            'Authorization': f'Bearer {self.token}',
            'X-GitHub-Api-Version': API_VERSION,
            'User-Agent': USER_AGENT,
        }

    def trigger(self, owner: str, repo: str, event_type: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Dispatch ``event_type`` to ``owner/repo`` if enabled.

        Returns:
            ``{'success': True}``, ``{'success': False, 'skipped': True, ...}``
            when disabled, or ``{'success': False, 'error': ...}``
        """
        payload = payload or {}
        if not self.is_enabled():
            return {'success': False, 'skipped': True, 'message': 'GitHub Actions is not enabled'}

        trigger_key = 'on_' + event_type.lower().replace('-', '_')
        if not self.is_trigger_enabled(trigger_key):
            return {'success': False, 'skipped': True, 'message': 'Trigger is disabled'}

        overrides = self._triggers().get('repo_overrides', {}) or {}
        repo_settings = overrides.get(f"{owner}/{repo}", {})
        if repo_settings.get('enabled') is False:
            return {'success': False, 'skipped': True, 'message': 'GitHub Actions disabled for this repository'}

        return self._dispatch_workflow(owner, repo, event_type, payload)

    def get_workflows(self, owner: str, repo: str) -> List[Dict[str, Any]]:
        url = f"{API_BASE}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}/actions/workflows"
        try:
            response = self.session.get(url, headers=self._headers(), timeout=LIST_TIMEOUT)
        except requests.RequestException as e:
            self.logger.warning(f"Could not list workflows for {owner}/{repo}: {e}")
            return []
        if response.status_code != 200:
            return []
        try:
            return response.json().get('workflows', [])
        except ValueError:
            return []

    def _dispatch_workflow(self, owner: str, repo: str, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        workflows = self.get_workflows(owner, repo)
        if not workflows:
            return {'success': False, 'error': 'No workflows found in repository'}

        workflow_id = workflows[0]['id']
        url = (
            f"{API_BASE}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"
            f"/actions/workflows/{workflow_id}/dispatches"
        )
        body = {
            'ref': payload.get('ref', 'main'),
            'inputs': {
                'event_type': event_type,
                'plugin_slug': payload.get('plugin_slug', ''),
                'version': payload.get('version', ''),
                'source': SOURCE_NAME,
            },
        }

        try:
            response = self.session.post(url, json=body, headers=self._headers(), timeout=DISPATCH_TIMEOUT)
        except requests.RequestException as e:
            return {'success': False, 'error': str(e)}

        if response.status_code == 204:
            self.logger.info(f"Triggered workflow {workflow_id} on {owner}/{repo} for {event_type}")
            return {'success': True, 'message': 'Workflow triggered successfully'}
        if response.status_code == 404:
            return {
                'success': False,
                'error': 'Workflow not found. Make sure the repository has GitHub Actions workflows.',
            }
        if response.status_code == 422:
            return {
                'success': False,
                'error': 'Workflow cannot be triggered. Check workflow permissions and inputs.',
            }
        return {'success': False, 'error': 'Unknown error occurred', 'code': response.status_code}

    def on_new_release(self, owner: str, repo: str, release_tag: str, version: str) -> Dict[str, Any]:
        return self.trigger(owner, repo, 'release', {
            'version': version,
            'release_tag': release_tag,
            'plugin_slug': generate_slug(owner, repo),
        })

    def on_update_available(self, owner: str, repo: str, current_version: str, latest_version: str) -> Dict[str, Any]:
        return self.trigger(owner, repo, 'update_available', {
            'current_version': current_version,
            'version': latest_version,
            'plugin_slug': generate_slug(owner, repo),
        })

    def on_install(self, owner: str, repo: str, version: str) -> Dict[str, Any]:
        return self.trigger(owner, repo, 'install', {
            'version': version,
            'plugin_slug': generate_slug(owner, repo),
        })

    def on_update(self, owner: str, repo: str, old_version: str, new_version: str) -> Dict[str, Any]:
        return self.trigger(owner, repo, 'update', {
            'old_version': old_version,
            'version': new_version,
            'plugin_slug': generate_slug(owner, repo),
        })

    def on_uninstall(self, owner: str, repo: str, version: str) -> Dict[str, Any]:
        return self.trigger(owner, repo, 'uninstall', {
            'version': version,
            'plugin_slug': generate_slug(owner, repo),
        })
