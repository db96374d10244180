"""
Shared pytest fixtures for yback tests.

This module provides fixtures for:
- Flask app with the testing config and a fresh in-memory database
- Equipment, provider, replication job and backup records
- Mock fixtures for external services (S3, SSH, APScheduler)
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from yback import create_app, db as _db
from yback.models import Equipment, Provider, ReplicationJob, Backup


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    The scheduler is disabled; artifacts go to a per-test directory.
    """
    app = create_app('testing')
    app.config.update({
        'AUTO_BACKUP_DIR': str(tmp_path / 'auto_backups'),
    })
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def mikrotik_device(db):
    """Mikrotik router reachable over SSH with password auth."""
    device = Equipment(
        name='core-router',
        address='10.0.0.1',
        device_type='mikrotik',
        ssh_enabled=True,
        ssh_port=22,
        ssh_username='admin',
        ssh_password='secret',
        auto_backup_enabled=True,
        auto_backup_cron='0 3 * * *'
    )
    db.session.add(device)
    db.session.commit()
    return device


@pytest.fixture(scope='function')
def mimosa_device(db):
    """Mimosa radio managed over its web interface."""
    device = Equipment(
        name='ptp-link',
        address='10.0.0.2',
        device_type='mimosa',
        http_enabled=True,
        http_port=80,
        http_scheme='http',
        http_username='admin',
        http_password='secret'
    )
    db.session.add(device)
    db.session.commit()
    return device


@pytest.fixture(scope='function')
def zte_device(db):
    """ZTE OLT reachable only over Telnet."""
    device = Equipment(
        name='olt-01',
        address='10.0.0.3',
        device_type='zte',
        telnet_enabled=True,
        telnet_port=23,
        telnet_username='zte',
        telnet_password='zte'
    )
    db.session.add(device)
    db.session.commit()
    return device


@pytest.fixture(scope='function')
def local_provider(db, tmp_path):
    """Local filesystem provider writing under tmp_path/replica."""
    provider = Provider(
        name='nas',
        type='local',
        config=json.dumps({'path': str(tmp_path / 'replica')}),
        active=True
    )
    db.session.add(provider)
    db.session.commit()
    return provider


@pytest.fixture(scope='function')
def s3_provider(db):
    """S3 provider pointing at the moto test bucket."""
    provider = Provider(
        name='s3',
        type='aws-s3',
        config=json.dumps({
            'bucket': 'test-bucket',
            'access_key_id': 'testing',
            'secret_access_key': 'testing',
            'region': 'us-east-1'
        }),
        active=True
    )
    db.session.add(provider)
    db.session.commit()
    return provider


@pytest.fixture(scope='function')
def replication_job(db, mikrotik_device, local_provider):
    """Active nightly replication job for the Mikrotik router."""
    job = ReplicationJob(
        equipment_id=mikrotik_device.id,
        provider_id=local_provider.id,
        cron_expr='0 2 * * *',
        active=True,
        status='pending'
    )
    db.session.add(job)
    db.session.commit()
    return job


@pytest.fixture(scope='function')
def backup_record(db, mikrotik_device, tmp_path):
    """Pending Backup row whose artifact exists on disk."""
    artifact = tmp_path / 'artifact.rsc'
    artifact.write_text('/interface bridge\nadd name=bridge1\n')

    backup = Backup(
        equipment_id=mikrotik_device.id,
        filename='artifact.rsc',
        local_path=str(artifact),
        size_bytes=artifact.stat().st_size,
        sync_status='pending'
    )
    db.session.add(backup)
    db.session.commit()
    return backup


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


class FakeChannel:
    """
    Stand-in for a paramiko Channel fed by a scripted remote command.

    Output is handed out in window-sized pieces. When ``window_bound`` is set,
    the exit status only arrives after the reader drained all stdout, the way
    a server stalls on a full channel window. ``exits=False`` models a command
    that never terminates.
    """

    def __init__(self, out=b'', err=b'', exit_status=0, exits=True, window_bound=False, endless=False):
        self.out = bytearray(out)
        self.err = bytearray(err)
        self.exit_status = exit_status
        self.exits = exits
        self.window_bound = window_bound
        self.endless = endless
        self.closed = False

    def recv_ready(self):
        return self.endless or bool(self.out)

    def recv(self, nbytes):
        if self.endless:
            return b'.'
        chunk, self.out = bytes(self.out[:nbytes]), self.out[nbytes:]
        return chunk

    def recv_stderr_ready(self):
        return bool(self.err)

    def recv_stderr(self, nbytes):
        chunk, self.err = bytes(self.err[:nbytes]), self.err[nbytes:]
        return chunk

    def exit_status_ready(self):
        if not self.exits or self.endless:
            return False
        return not (self.window_bound and self.out)

    def recv_exit_status(self):
        if not self.exit_status_ready():
            raise AssertionError("recv_exit_status() would block forever")
        return self.exit_status

    def close(self):
        self.closed = True


def make_exec_result(**channel_kwargs):
    """Build the (stdin, stdout, stderr) triple returned by exec_command."""
    channel = FakeChannel(**channel_kwargs)
    stdout = MagicMock()
    stdout.channel = channel
    stderr = MagicMock()
    stderr.channel = channel
    return MagicMock(), stdout, stderr


@pytest.fixture
def ssh_exec():
    """Factory for scripted exec_command results."""
    return make_exec_result


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Commands succeed with exit status 0 unless a test reconfigures
    exec_command.
    """
    with patch('paramiko.SSHClient') as mock_ssh:
        instance = mock_ssh.return_value
        instance.connect.return_value = None
        instance.get_transport.return_value.is_active.return_value = True

        instance.exec_command.side_effect = lambda *args, **kwargs: make_exec_result(out=b'ok')

        mock_sftp = MagicMock()
        instance.open_sftp.return_value = mock_sftp

        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler instance; every add_job call returns a fresh handle.
    """
    scheduler_instance = MagicMock()
    scheduler_instance.running = False
    scheduler_instance.state = 0
    scheduler_instance.get_jobs.return_value = []

    def add_job(**kwargs):
        handle = MagicMock()
        handle.id = kwargs.get('id')
        return handle

    scheduler_instance.add_job.side_effect = add_job
    return scheduler_instance
