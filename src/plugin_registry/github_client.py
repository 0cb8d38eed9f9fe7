"""
GitHub REST API client.

Read calls go through ``_request``; archive downloads through
``download_tarball``. Nothing here retries: a failed call raises once and the
caller decides what to do. The rate-limit snapshot is advisory and never
blocks a request.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import requests

from src.common.fs_utils import remove_file
from src.plugin_registry import __version__
from src.plugin_registry.exceptions import ApiError, DownloadError

API_BASE = 'https://api.github.com'
API_VERSION = '2022-11-28'
USER_AGENT = f'GitHub-Plugin-Registry/{__version__}'

REQUEST_TIMEOUT = 15
DOWNLOAD_TIMEOUT = 300
CHUNK_SIZE = 8192

# GitHub's anonymous quota
ANONYMOUS_RATE_LIMIT = 60


class GitHubClient:
    """
    Thin client over the endpoints the lifecycle engine needs.

    Args:
        token: Personal access token; None or empty means anonymous access
        session: Optional requests.Session (tests inject a mock)
    """

    def __init__(self, token: Optional[str] = None, session: Optional[requests.Session] = None):
        self.token = token or None
        self.session = session or requests.Session()
        self.logger = logging.getLogger(__name__)
        self.rate_limit_remaining: Optional[int] = ANONYMOUS_RATE_LIMIT
        self.rate_limit_reset: Optional[int] = None

    @classmethod
    def from_settings(cls, settings, session: Optional[requests.Session] = None) -> 'GitHubClient':
        """Build a client with the token stored in a SettingsStore."""
        return cls(token=settings.get_github_token(), session=session)

    def _headers(self) -> Dict[str, str]:
        headers = {
            'Accept': 'application/vnd.github+json',
            'X-GitHub-Api-Version': API_VERSION,
            'User-Agent': USER_AGENT,
        }
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    @staticmethod
    def _path(*segments: str) -> str:
        return '/'.join(quote(str(s), safe='') for s in segments)

    def _update_rate_limit(self, response: requests.Response) -> None:
        remaining = response.headers.get('x-ratelimit-remaining')
        reset = response.headers.get('x-ratelimit-reset')
        try:
            if remaining is not None:
                self.rate_limit_remaining = int(remaining)
            if reset is not None:
                self.rate_limit_reset = int(reset)
        except ValueError:
            self.logger.debug(f"Ignoring malformed rate limit headers: {remaining!r} / {reset!r}")

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return 'API request failed'
        if isinstance(body, dict) and body.get('message'):
            return str(body['message'])
        return 'API request failed'

    def _request(self, endpoint: str) -> Any:
        """
        GET ``endpoint`` and return the decoded JSON body.

        Raises:
            ApiError: On transport failure or HTTP status >= 400
        """
        url = f"{API_BASE}{endpoint}"
        try:
            response = self.session.get(url, headers=self._headers(), timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            self.logger.warning(f"GitHub API request failed for {url}: {e}")
            raise ApiError(f"Network error: {e}") from e

        self._update_rate_limit(response)

        if response.status_code >= 400:
            message = self._error_message(response)
            if response.status_code == 403 and not self.token:
                self.logger.warning(
                    f"GitHub API returned 403 for {url}. "
                    f"Configure a GitHub token to raise the anonymous rate limit."
                )
            else:
                self.logger.warning(f"GitHub API request failed: {response.status_code} for {url}: {message}")
            raise ApiError(message, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"Invalid JSON from GitHub: {e}", status_code=response.status_code) from e

    def get_latest_release(self, owner: str, repo: str) -> Dict[str, Any]:
        """Latest published release; the body carries ``tag_name`` and ``html_url``."""
        return self._request(f"/repos/{self._path(owner, repo)}/releases/latest")

    def get_release_by_tag(self, owner: str, repo: str, tag: str) -> Dict[str, Any]:
        return self._request(f"/repos/{self._path(owner, repo)}/releases/tags/{self._path(tag)}")

    def list_releases(self, owner: str, repo: str, per_page: int = 30) -> List[Dict[str, Any]]:
        return self._request(f"/repos/{self._path(owner, repo)}/releases?per_page={int(per_page)}")

    def get_repo_info(self, owner: str, repo: str) -> Dict[str, Any]:
        return self._request(f"/repos/{self._path(owner, repo)}")

    def get_rate_limit_status(self) -> Dict[str, Optional[int]]:
        return {
            'remaining': self.rate_limit_remaining,
            'reset': self.rate_limit_reset,
        }

    def test_connection(self) -> Dict[str, Any]:
        """Check the configured token against ``/user``."""
        if not self.token:
            return {'success': False, 'error': 'No GitHub token configured'}
        try:
            user = self._request('/user')
        except ApiError as e:
            return {'success': False, 'error': f'Authentication failed: {e}', 'code': e.status_code}
        return {'success': True, 'message': f"Connected successfully as {user.get('login', '')}"}

    def get_tarball_url(self, owner: str, repo: str, ref: str) -> str:
        """
        Download URL for a gzip tarball of ``ref``.

        With a token the credentials ride in the URL itself, which is what
        the github.com tarball endpoint accepts for private repositories.
        """
        path = f"{self._path(owner, repo)}/tarball/{self._path(ref)}"
        if self.token:
            return f"https://{quote(self.token, safe='')}:x-oauth-basic@github.com/{path}"
        return f"{API_BASE}/repos/{path}"

    def download_tarball(self, owner: str, repo: str, ref: str, destination: Union[str, Path]) -> Path:
        """
        Stream the tarball for ``ref`` to ``destination``.

        Raises:
            DownloadError: On transport error or non-200 status; the partial
                file is deleted first
        """
        destination = Path(destination)
        url = self.get_tarball_url(owner, repo, ref)
        self.logger.info(f"Downloading {owner}/{repo}@{ref}")

        try:
            response = self.session.get(
                url,
                headers={'User-Agent': USER_AGENT},
                timeout=DOWNLOAD_TIMEOUT,
                stream=True,
                allow_redirects=True,
                verify=True,
            )
            try:
                if response.status_code != 200:
                    remove_file(destination)
                    raise DownloadError(f"HTTP {response.status_code}")

                with open(destination, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
            finally:
                response.close()
        except requests.RequestException as e:
            remove_file(destination)
            # Never echo the credential-bearing URL
            raise DownloadError(f"Download failed for {owner}/{repo}@{ref}: {type(e).__name__}") from None
        except OSError as e:
            remove_file(destination)
            raise DownloadError(f"Could not write archive to {destination}: {e}") from e

        return destination
