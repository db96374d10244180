"""
Storage providers for backup replication.

- local, aws-s3, gcs: GenericUploader over LocalStorage / S3Storage / GCSStorage
- dropbox: DropboxUploader (chunked upload sessions)
- google-drive: GoogleDriveUploader (resumable uploads)
"""

from yback.exceptions import UploadFailure
from .storage import UploadResult, LocalStorage, S3Storage, GenericUploader
from .gcs import GCSStorage
from .dropbox import DropboxUploader
from .google_drive import GoogleDriveUploader


def _provider_config(provider) -> dict:
    try:
        return provider.get_config()
    except (TypeError, ValueError) as e:
        raise UploadFailure(f"Invalid configuration for provider {provider.name}: {e}")


def create_uploader(provider):
    """
    Factory function to create the uploader for a Provider row.

    Raises:
        UploadFailure: If the provider type is unknown or its config is invalid
    """
    config = _provider_config(provider)

    if provider.type == 'local':
        path = config.get('path')
        if not path:
            raise UploadFailure(f"Local provider {provider.name} has no path configured")
        return GenericUploader(LocalStorage(path), 'local')

    elif provider.type == 'aws-s3':
        missing = [k for k in ('bucket', 'access_key_id', 'secret_access_key') if not config.get(k)]
        if missing:
            raise UploadFailure(f"S3 provider {provider.name} is missing: {', '.join(missing)}")
        storage = S3Storage(
            access_key=config['access_key_id'],
            secret_key=config['secret_access_key'],
            bucket_name=config['bucket'],
            region=config.get('region') or 'us-east-1',
            endpoint_url=config.get('endpoint')
        )
        return GenericUploader(storage, 'aws-s3')

    elif provider.type == 'gcs':
        missing = [k for k in ('bucket', 'project_id') if not config.get(k)]
        if missing:
            raise UploadFailure(f"GCS provider {provider.name} is missing: {', '.join(missing)}")
        storage = GCSStorage(
            bucket_name=config['bucket'],
            project_id=config['project_id'],
            key_filename=config.get('key_filename'),
            credentials=config.get('credentials')
        )
        return GenericUploader(storage, 'gcs')

    elif provider.type == 'dropbox':
        return DropboxUploader(config)

    elif provider.type == 'google-drive':
        return GoogleDriveUploader(config)

    else:
        raise UploadFailure(f"Unsupported provider type: {provider.type}")


__all__ = [
    'create_uploader',
    'UploadResult',
    'LocalStorage',
    'S3Storage',
    'GCSStorage',
    'GenericUploader',
    'DropboxUploader',
    'GoogleDriveUploader',
]
