"""
Google Drive uploader (Drive v3 REST API over requests).

- Files below CHUNK_SIZE: one multipart/related request
- Larger files: resumable session, CHUNK_SIZE pieces with Content-Range
- Uploads land in a backup folder that is found or created on first use
"""

import json
import os
import uuid
import logging
from typing import Optional

import requests

from yback.exceptions import UploadFailure
from .storage import UploadResult, describe_file

logger = logging.getLogger(__name__)

API_URL = 'https://www.googleapis.com/drive/v3'
UPLOAD_URL = 'https://www.googleapis.com/upload/drive/v3'
TOKEN_URL = 'https://oauth2.googleapis.com/token'
FOLDER_MIME = 'application/vnd.google-apps.folder'


class GoogleDriveUploader:
    """
    Config keys: client_id, client_secret, refresh_token, optional
    access_token, folder_id or folder_name.
    """

    # Multiple of 256 KiB as Drive requires for resumable chunks
    CHUNK_SIZE = 8 * 1024 * 1024
    DEFAULT_FOLDER = 'yback backups'

    def __init__(self, config: dict, timeout: int = 60):
        self.client_id = config.get('client_id')
        self.client_secret = config.get('client_secret')
        self.refresh_token = config.get('refresh_token')
        self.access_token = config.get('access_token')
        self.folder_id = config.get('folder_id')
        self.folder_name = config.get('folder_name') or self.DEFAULT_FOLDER
        self.timeout = timeout

        if not self.access_token and not self._can_refresh:
            raise UploadFailure("Google Drive credentials are not configured")

    @property
    def _can_refresh(self) -> bool:
        return bool(self.refresh_token and self.client_id and self.client_secret)

    def refresh_access_token(self) -> str:
        """
        Raises:
            UploadFailure: If refresh credentials are missing or rejected
        """
        if not self._can_refresh:
            raise UploadFailure("Google Drive token expired and no refresh credentials are configured")

        try:
            response = requests.post(
                TOKEN_URL,
                data={
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                    'refresh_token': self.refresh_token,
                    'grant_type': 'refresh_token'
                },
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise UploadFailure(f"Google token refresh failed: {e}")

        if response.status_code != 200:
            raise UploadFailure(f"Google token refresh failed: HTTP {response.status_code}")

        self.access_token = response.json()['access_token']
        logger.info("Google Drive access token refreshed")
        return self.access_token

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = {'Authorization': f"Bearer {self.access_token}"}
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, url: str, **kwargs):
        """Send a request, refreshing the token once on 401."""
        extra_headers = kwargs.pop('headers', None)

        for attempt in range(2):
            try:
                response = requests.request(
                    method, url,
                    headers=self._headers(extra_headers),
                    timeout=self.timeout,
                    **kwargs
                )
            except requests.RequestException as e:
                raise UploadFailure(f"Google Drive request failed: {e}")

            if response.status_code == 401 and attempt == 0 and self._can_refresh:
                self.refresh_access_token()
                continue
            return response

    def ensure_folder(self) -> str:
        """
        Return the id of the backup folder, creating it when needed.
        """
        if self.folder_id:
            response = self._request('GET', f"{API_URL}/files/{self.folder_id}", params={'fields': 'id,name'})
            if response.status_code == 200:
                return self.folder_id
            logger.warning(f"Configured Drive folder {self.folder_id} not accessible, falling back to name lookup")

        query = f"name='{self.folder_name}' and mimeType='{FOLDER_MIME}' and trashed=false"
        response = self._request('GET', f"{API_URL}/files", params={'q': query, 'fields': 'files(id,name)'})
        if response.status_code != 200:
            raise UploadFailure(f"Google Drive folder lookup failed: HTTP {response.status_code}")

        files = response.json().get('files', [])
        if files:
            self.folder_id = files[0]['id']
            return self.folder_id

        response = self._request(
            'POST', f"{API_URL}/files",
            json={'name': self.folder_name, 'mimeType': FOLDER_MIME}
        )
        if response.status_code not in (200, 201):
            raise UploadFailure(f"Google Drive folder creation failed: HTTP {response.status_code}")

        self.folder_id = response.json()['id']
        logger.info(f"Created Google Drive folder {self.folder_name} ({self.folder_id})")
        return self.folder_id

    def upload(self, local_path: str, key: str) -> UploadResult:
        """
        Upload a file into the backup folder, named after the last part of key.

        Returns:
            UploadResult whose provider_path is the Drive file id

        Raises:
            UploadFailure: On any HTTP or API error
        """
        if not os.path.exists(local_path):
            raise UploadFailure(f"Local file not found: {local_path}")

        if not self.access_token:
            self.refresh_access_token()

        metadata = {'name': os.path.basename(key), 'parents': [self.ensure_folder()]}
        size = os.path.getsize(local_path)

        if size < self.CHUNK_SIZE:
            data = self._multipart_upload(local_path, metadata)
        else:
            data = self._resumable_upload(local_path, metadata, size)

        logger.info(f"Uploaded {metadata['name']} to Google Drive ({data['id']})")
        return describe_file(local_path, data['id'])

    def _multipart_upload(self, local_path: str, metadata: dict) -> dict:
        boundary = f"yback-{uuid.uuid4().hex}"

        with open(local_path, 'rb') as f:
            content = f.read()

        body = (
            f"--{boundary}\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n\r\n"
            f"{json.dumps(metadata)}\r\n"
            f"--{boundary}\r\n"
            "Content-Type: application/octet-stream\r\n\r\n"
        ).encode('utf-8') + content + f"\r\n--{boundary}--".encode('utf-8')

        response = self._request(
            'POST', f"{UPLOAD_URL}/files",
            params={'uploadType': 'multipart', 'fields': 'id,name,size'},
            data=body,
            headers={'Content-Type': f"multipart/related; boundary={boundary}"}
        )
        if response.status_code not in (200, 201):
            raise UploadFailure(f"Google Drive upload failed: HTTP {response.status_code}")

        return response.json()

    def _resumable_upload(self, local_path: str, metadata: dict, size: int) -> dict:
        response = self._request(
            'POST', f"{UPLOAD_URL}/files",
            params={'uploadType': 'resumable', 'fields': 'id,name,size'},
            json=metadata,
            headers={
                'X-Upload-Content-Type': 'application/octet-stream',
                'X-Upload-Content-Length': str(size)
            }
        )
        if response.status_code != 200 or 'Location' not in response.headers:
            raise UploadFailure(f"Google Drive resumable session failed: HTTP {response.status_code}")

        session_url = response.headers['Location']
        offset = 0

        with open(local_path, 'rb') as f:
            while offset < size:
                chunk = f.read(self.CHUNK_SIZE)
                end = offset + len(chunk) - 1

                response = self._request(
                    'PUT', session_url,
                    data=chunk,
                    headers={'Content-Range': f"bytes {offset}-{end}/{size}"}
                )

                if response.status_code in (200, 201):
                    return response.json()
                if response.status_code != 308:
                    raise UploadFailure(f"Google Drive chunk upload failed: HTTP {response.status_code}")

                offset = end + 1

        raise UploadFailure("Google Drive upload ended without a completed file")

    def test_connection(self) -> bool:
        if not self.access_token:
            self.refresh_access_token()
        response = self._request('GET', f"{API_URL}/about", params={'fields': 'user'})
        return response.status_code == 200
