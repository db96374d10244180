"""
Google Cloud Storage backend (google-cloud-storage).

Authenticates with a service account, either from a key file on disk or from
the key JSON stored in the provider config.
"""

import os
import json
import logging
from typing import Optional, Union

from google.api_core import exceptions as gcloud_exceptions
from google.auth.exceptions import GoogleAuthError
from google.cloud import storage
from google.oauth2 import service_account

from yback.exceptions import UploadFailure

logger = logging.getLogger(__name__)

# Files above this size go through a resumable upload in chunks of this size
# (must be a multiple of 256 KiB)
RESUMABLE_CHUNK_SIZE = 8 * 1024 * 1024


class GCSStorage:
    """
    Handler for uploading backups to a GCS bucket.
    """

    def __init__(self, bucket_name: str, project_id: str, key_filename: Optional[str] = None,
                 credentials: Optional[Union[dict, str]] = None, timeout: int = 60):
        """
        Initialize GCS storage handler.

        Args:
            bucket_name: Target bucket
            project_id: Google Cloud project id
            key_filename: Path to a service account key file
            credentials: Service account key as a dict or JSON string
            timeout: Per-request timeout in seconds

        Raises:
            UploadFailure: If no credentials are given or they cannot be loaded
        """
        self.bucket_name = bucket_name
        self.timeout = timeout

        try:
            if key_filename:
                self.client = storage.Client.from_service_account_json(key_filename, project=project_id)
            elif credentials:
                info = json.loads(credentials) if isinstance(credentials, str) else credentials
                self.client = storage.Client(
                    project=project_id,
                    credentials=service_account.Credentials.from_service_account_info(info)
                )
            else:
                raise UploadFailure("GCS provider requires key_filename or credentials")
        except (GoogleAuthError, ValueError, OSError) as e:
            raise UploadFailure(f"Failed to initialize GCS client: {e}")

        self.bucket = self.client.bucket(bucket_name)

    def store(self, local_path: str, key: str) -> str:
        """
        Upload a file to gs://bucket/key.

        Returns:
            Object name of the uploaded file

        Raises:
            UploadFailure: If upload fails
        """
        if not os.path.exists(local_path):
            raise UploadFailure(f"Local file not found: {local_path}")

        blob = self.bucket.blob(key)
        if os.path.getsize(local_path) > RESUMABLE_CHUNK_SIZE:
            blob.chunk_size = RESUMABLE_CHUNK_SIZE
        blob.metadata = {'original-name': os.path.basename(local_path)}

        try:
            blob.upload_from_filename(local_path, timeout=self.timeout)
        except gcloud_exceptions.GoogleAPICallError as e:
            raise UploadFailure(f"GCS upload failed ({e.code}): {e.message}")
        except (GoogleAuthError, OSError) as e:
            raise UploadFailure(f"GCS upload failed: {e}")

        logger.info(f"Uploaded {os.path.basename(local_path)} to gs://{self.bucket_name}/{key}")
        return key

    def test_connection(self) -> bool:
        try:
            return self.bucket.exists(timeout=self.timeout)
        except gcloud_exceptions.GoogleAPICallError as e:
            raise UploadFailure(f"GCS bucket check failed ({e.code}): {e.message}")
        except GoogleAuthError as e:
            raise UploadFailure(f"GCS authentication failed: {e}")
