"""
Replication of backup artifacts to storage providers.

Each Backup row tracks its own replication state:

    pending/failed --sync--> syncing --upload ok--> synced
                                     --upload error--> failed

Entering `syncing` is an atomic conditional UPDATE, so two workers can never
upload the same backup at once. `synced` is final unless a sync is forced.
"""

import logging
from datetime import datetime

from yback import db
from yback.exceptions import YBackError
from yback.models import Backup
from yback.providers import create_uploader

logger = logging.getLogger(__name__)


def remote_key(backup: Backup) -> str:
    """backups/<equipment_id>/<timestamp>_<filename>"""
    stamp = (backup.created_at or datetime.utcnow()).strftime('%Y%m%dT%H%M%SZ')
    return f"backups/{backup.equipment_id}/{stamp}_{backup.filename}"


class ReplicationService:
    """
    Drives the replication state machine of Backup rows.

    Args:
        uploader_factory: Callable building an uploader from a Provider row
    """

    def __init__(self, uploader_factory=create_uploader):
        self.uploader_factory = uploader_factory

    def claim(self, backup: Backup, provider, force: bool = False) -> bool:
        """
        Move a backup to `syncing` if nobody else holds it.

        Returns:
            True if this caller now owns the upload
        """
        allowed = ['pending', 'failed']
        if force:
            allowed.append('synced')

        rows = Backup.query.filter(
            Backup.id == backup.id,
            Backup.sync_status.in_(allowed)
        ).update({
            Backup.sync_status: 'syncing',
            Backup.sync_provider_id: provider.id,
            Backup.sync_error: None
        }, synchronize_session=False)
        db.session.commit()
        db.session.refresh(backup)

        return rows == 1

    def sync(self, backup: Backup, provider, force: bool = False) -> str:
        """
        Upload a backup to a provider.

        Args:
            backup: Backup row to replicate
            provider: Target Provider row
            force: Upload again even if already synced

        Returns:
            Resulting sync status
        """
        if backup.sync_status == 'synced' and not force:
            logger.info(f"Backup {backup.id} already synced, skipping")
            return backup.sync_status

        if not self.claim(backup, provider, force=force):
            logger.info(f"Backup {backup.id} is {backup.sync_status}, not claimed")
            return backup.sync_status

        logger.info(f"Replicating backup {backup.id} to provider {provider.name} ({provider.type})")

        try:
            uploader = self.uploader_factory(provider)
            result = uploader.upload(backup.local_path, remote_key(backup))

        except Exception as e:
            logger.exception(f"Replication of backup {backup.id} failed")
            backup.sync_status = 'failed'
            backup.sync_error = str(e)
            db.session.commit()
            return backup.sync_status

        backup.sync_status = 'synced'
        backup.sync_remote_path = result.provider_path
        backup.sync_error = None
        backup.synced_at = datetime.utcnow()
        backup.size_bytes = result.size_bytes
        backup.checksum = backup.checksum or result.checksum
        db.session.commit()

        logger.info(f"Backup {backup.id} synced to {result.provider_path}")
        return backup.sync_status

    def check_provider(self, provider) -> dict:
        """
        Verify a provider is usable before replicating to it.

        Returns:
            {'ok': bool, 'provider': name, 'type': provider type, 'error': message or None}
        """
        report = {'ok': False, 'provider': provider.name, 'type': provider.type, 'error': None}

        try:
            uploader = self.uploader_factory(provider)
            report['ok'] = bool(uploader.test_connection())
            if not report['ok']:
                report['error'] = f"Provider {provider.name} rejected the connection check"
        except YBackError as e:
            report['error'] = str(e)
        except Exception as e:
            logger.exception(f"Connection check of provider {provider.name} failed")
            report['error'] = f"Unexpected error: {e}"

        return report
