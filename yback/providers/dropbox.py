"""
Dropbox uploader (Dropbox HTTP API v2 over requests).

Small files go through a single files/upload call; large ones through an
upload session in CHUNK_SIZE pieces.
"""

import json
import os
import logging
from typing import Optional

import requests

from yback.exceptions import UploadFailure
from .storage import UploadResult, describe_file

logger = logging.getLogger(__name__)

API_URL = 'https://api.dropboxapi.com/2'
CONTENT_URL = 'https://content.dropboxapi.com/2'
TOKEN_URL = 'https://api.dropbox.com/oauth2/token'


class DropboxUploader:
    """
    Config keys: access_token, and optionally refresh_token + app_key +
    app_secret (used to obtain a new access token on 401), folder_path.
    """

    SINGLE_UPLOAD_LIMIT = 150 * 1024 * 1024
    CHUNK_SIZE = 8 * 1024 * 1024

    def __init__(self, config: dict, timeout: int = 60):
        self.access_token = config.get('access_token')
        self.refresh_token = config.get('refresh_token')
        self.app_key = config.get('app_key')
        self.app_secret = config.get('app_secret')
        self.folder_path = config.get('folder_path') or '/backups'
        self.timeout = timeout

        if not self.access_token and not self._can_refresh:
            raise UploadFailure("Dropbox access token is not configured")

    @property
    def _can_refresh(self) -> bool:
        return bool(self.refresh_token and self.app_key and self.app_secret)

    def refresh_access_token(self) -> str:
        """
        Exchange the refresh token for a new access token.

        Raises:
            UploadFailure: If refresh credentials are missing or rejected
        """
        if not self._can_refresh:
            raise UploadFailure("Dropbox token expired and no refresh credentials are configured")

        try:
            response = requests.post(
                TOKEN_URL,
                data={
                    'grant_type': 'refresh_token',
                    'refresh_token': self.refresh_token,
                    'client_id': self.app_key,
                    'client_secret': self.app_secret
                },
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise UploadFailure(f"Dropbox token refresh failed: {e}")

        if response.status_code != 200:
            raise UploadFailure(f"Dropbox token refresh failed: HTTP {response.status_code}")

        self.access_token = response.json()['access_token']
        logger.info("Dropbox access token refreshed")
        return self.access_token

    def remote_path(self, key: str) -> str:
        return f"{self.folder_path.rstrip('/')}/{key.lstrip('/')}"

    def upload(self, local_path: str, key: str) -> UploadResult:
        """
        Upload a file to <folder_path>/<key>.

        Raises:
            UploadFailure: On any HTTP or API error
        """
        if not os.path.exists(local_path):
            raise UploadFailure(f"Local file not found: {local_path}")

        if not self.access_token:
            self.refresh_access_token()

        path = self.remote_path(key)
        size = os.path.getsize(local_path)

        if size < self.SINGLE_UPLOAD_LIMIT:
            with open(local_path, 'rb') as f:
                data = self._content_call('files/upload', f.read(), self._commit(path))
        else:
            data = self._upload_session(local_path, path, size)

        logger.info(f"Uploaded {os.path.basename(local_path)} to Dropbox {path}")
        return describe_file(local_path, data.get('path_display', path))

    def _upload_session(self, local_path: str, path: str, size: int) -> dict:
        with open(local_path, 'rb') as f:
            chunk = f.read(self.CHUNK_SIZE)
            started = self._content_call('files/upload_session/start', chunk, {'close': False})
            session_id = started['session_id']
            offset = len(chunk)

            while True:
                chunk = f.read(self.CHUNK_SIZE)
                cursor = {'session_id': session_id, 'offset': offset}

                if offset + len(chunk) >= size:
                    return self._content_call(
                        'files/upload_session/finish',
                        chunk,
                        {'cursor': cursor, 'commit': self._commit(path)}
                    )

                self._content_call('files/upload_session/append_v2', chunk, {'cursor': cursor})
                offset += len(chunk)

    @staticmethod
    def _commit(path: str) -> dict:
        return {'path': path, 'mode': 'overwrite', 'autorename': False}

    def _content_call(self, endpoint: str, body: bytes, api_arg: dict) -> dict:
        """POST to the content endpoint, refreshing the token once on 401."""
        response = self._post_content(endpoint, body, api_arg)

        if response.status_code == 401 and self._can_refresh:
            self.refresh_access_token()
            response = self._post_content(endpoint, body, api_arg)

        if response.status_code != 200:
            raise UploadFailure(f"Dropbox {endpoint} failed: HTTP {response.status_code} {self._summary(response)}")

        return response.json() if response.content else {}

    def _post_content(self, endpoint: str, body: bytes, api_arg: dict):
        try:
            return requests.post(
                f"{CONTENT_URL}/{endpoint}",
                data=body,
                headers={
                    'Authorization': f"Bearer {self.access_token}",
                    'Content-Type': 'application/octet-stream',
                    'Dropbox-API-Arg': json.dumps(api_arg)
                },
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise UploadFailure(f"Dropbox {endpoint} failed: {e}")

    @staticmethod
    def _summary(response) -> Optional[str]:
        try:
            return response.json().get('error_summary', '')
        except ValueError:
            return response.text

    def test_connection(self) -> bool:
        try:
            response = requests.post(
                f"{API_URL}/users/get_current_account",
                headers={'Authorization': f"Bearer {self.access_token}"},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise UploadFailure(f"Dropbox connection failed: {e}")
        return response.status_code == 200
