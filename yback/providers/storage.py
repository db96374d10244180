"""
Storage backends for replicated backups.

Supports:
- S3Storage: Upload to AWS S3 (or any S3-compatible endpoint)
- LocalStorage: Copy into a local directory
- GenericUploader: Adapts either backend to the uploader interface
"""

import os
import shutil
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from yback.exceptions import UploadFailure

logger = logging.getLogger(__name__)

# Files above this size use S3 multipart upload
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


@dataclass
class UploadResult:
    """Where an artifact ended up, with what size and md5 checksum."""
    provider_path: str
    size_bytes: int
    checksum: str


def file_md5(path: str, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.md5()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            digest.update(chunk)
    return digest.hexdigest()


def describe_file(local_path: str, provider_path: str) -> UploadResult:
    return UploadResult(
        provider_path=provider_path,
        size_bytes=os.path.getsize(local_path),
        checksum=file_md5(local_path)
    )


class S3Storage:
    """
    Handler for uploading backups to AWS S3.
    """

    def __init__(self, access_key: str, secret_key: str, bucket_name: str, region: str = 'us-east-1',
                 endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services
        """
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except (BotoCoreError, ValueError) as e:
            raise UploadFailure(f"Failed to initialize S3 client: {e}")

    def store(self, local_path: str, key: str) -> str:
        """
        Upload a file to S3 under the given key.

        Returns:
            S3 key of uploaded file

        Raises:
            UploadFailure: If upload fails
        """
        if not os.path.exists(local_path):
            raise UploadFailure(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                self._simple_upload(local_path, key)

            logger.info(f"Uploaded {os.path.basename(local_path)} to s3://{self.bucket_name}/{key}")
            return key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadFailure(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise UploadFailure(f"S3 upload failed: {e}")

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, key: str):
        """
        Upload a large file in MULTIPART_CHUNK_SIZE parts, aborting the
        upload if any part fails.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Could not abort multipart upload {upload_id}: {abort_error}")
            raise

    def test_connection(self) -> bool:
        """Check that the bucket exists and these credentials can reach it."""
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadFailure(f"S3 bucket {self.bucket_name} not usable ({error_code})")
        except BotoCoreError as e:
            raise UploadFailure(f"S3 endpoint unreachable: {e}")
        return True


class LocalStorage:
    """
    Handler for copying backups into a local directory, keeping the same key
    layout as the remote backends.
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise UploadFailure(f"Failed to create local storage directory: {e}")

    def store(self, source_path: str, key: str) -> str:
        """
        Copy a file to base_path/key.

        Returns:
            Full path of the stored file

        Raises:
            UploadFailure: If the copy fails
        """
        if not os.path.exists(source_path):
            raise UploadFailure(f"Source file not found: {source_path}")

        dest_path = self.base_path / key

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source_path, dest_path)
            return str(dest_path)

        except PermissionError as e:
            raise UploadFailure(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise UploadFailure(f"Failed to store locally: {e}")

    def test_connection(self) -> bool:
        return os.access(self.base_path, os.W_OK)


class GenericUploader:
    """Uploader for backends whose whole upload is one store() call."""

    def __init__(self, storage, provider_type: str):
        self.storage = storage
        self.provider_type = provider_type

    def upload(self, local_path: str, key: str) -> UploadResult:
        if not os.path.exists(local_path):
            raise UploadFailure(f"Local file not found: {local_path}")

        provider_path = self.storage.store(local_path, key)
        return describe_file(local_path, provider_path)

    def test_connection(self) -> bool:
        return self.storage.test_connection()
