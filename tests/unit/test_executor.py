"""
Unit tests for the backup executor (yback/backup/executor.py).

Protocol clients are replaced with mocks; these tests cover recipe dispatch,
fail-fast vs best-effort sequencing, artifact selection and cleanup.
"""

import os
import re
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from yback.backup.executor import BackupExecutor, Credentials, credentials_for
from yback.backup.recipes import HTTPRecipe
from yback.exceptions import DeviceConnectionError
from yback.protocols import SSHConfig, HTTPConfig, TelnetConfig, StepResult, ProbeResult


def _device(device_type, device_id=7, name='core router', address='10.0.0.1'):
    return SimpleNamespace(id=device_id, name=name, address=address, device_type=device_type)


def _mock_client(client_class):
    client = MagicMock()
    client.__enter__.return_value = client
    client.__exit__.return_value = False
    client_class.return_value = client
    return client


def _ok(commands):
    return [StepResult(success=True, command=c, output='ok') for c in commands]


def _writing_transfer(available):
    """transfer_file side effect that writes files whose remote name is available."""
    def transfer(remote, local):
        if remote in available:
            with open(local, 'w') as f:
                f.write(f"contents of {remote}")
            return StepResult(success=True, command=f"sftp get {remote}")
        return StepResult(success=False, command=f"sftp get {remote}", error=f"Remote file not found: {remote}")
    return transfer


@pytest.fixture
def executor(tmp_path):
    return BackupExecutor(backup_dir=str(tmp_path / 'backups'), ssh_settle_delay=0, telnet_command_pause=0)


@pytest.fixture
def ssh_credentials():
    return Credentials(ssh=SSHConfig(host='10.0.0.1', username='admin', password='secret'))


class TestSSHRecipes:
    """Test SSH recipe execution."""

    @patch('yback.backup.executor.SSHClient')
    def test_mikrotik_prefers_export(self, mock_ssh_class, executor, ssh_credentials, tmp_path):
        client = _mock_client(mock_ssh_class)
        client.run_commands.side_effect = _ok
        client.transfer_file.side_effect = _writing_transfer({'yback-auto-export.rsc', 'yback-auto-backup.backup'})
        os.makedirs(executor.backup_dir)

        result = executor.run(_device('mikrotik'), ssh_credentials)

        assert result.success, result.error
        assert result.local_path.endswith('.rsc')
        assert result.remote_file == 'yback-auto-export.rsc'
        assert os.path.exists(result.local_path)
        # The fallback binary is not kept next to the chosen export
        assert [f for f in os.listdir(executor.backup_dir) if f.endswith('.backup')] == []
        client.run_command.assert_called_once_with('/file remove [find name~"yback-auto"]')
        client.__exit__.assert_called_once()

    @patch('yback.backup.executor.SSHClient')
    def test_mikrotik_falls_back_to_binary(self, mock_ssh_class, executor, ssh_credentials):
        client = _mock_client(mock_ssh_class)
        client.run_commands.side_effect = _ok
        client.transfer_file.side_effect = _writing_transfer({'yback-auto-backup.backup'})
        os.makedirs(executor.backup_dir)

        result = executor.run(_device('mikrotik'), ssh_credentials)

        assert result.success
        assert result.local_path.endswith('.backup')
        assert result.remote_file == 'yback-auto-backup.backup'

    @patch('yback.backup.executor.SSHClient')
    def test_failed_command_prevents_transfer(self, mock_ssh_class, executor, ssh_credentials):
        client = _mock_client(mock_ssh_class)
        client.run_commands.return_value = [
            StepResult(success=True, command='/system backup save name=yback-auto-backup'),
            StepResult(success=False, command=':delay 3', error='syntax error'),
        ]

        result = executor.run(_device('mikrotik'), ssh_credentials)

        assert not result.success
        assert result.error_type == 'CommandFailure'
        assert 'syntax error' in result.error
        assert result.local_path is None
        client.transfer_file.assert_not_called()
        client.__exit__.assert_called_once()

    @patch('yback.backup.executor.SSHClient')
    def test_no_artifact_retrieved(self, mock_ssh_class, executor, ssh_credentials):
        client = _mock_client(mock_ssh_class)
        client.run_commands.side_effect = _ok
        client.transfer_file.side_effect = _writing_transfer(set())

        result = executor.run(_device('mikrotik'), ssh_credentials)

        assert not result.success
        assert result.error_type == 'ArtifactNotFound'
        client.run_command.assert_not_called()

    @patch('yback.backup.executor.SSHClient')
    def test_ubiquiti_reads_file_with_cat(self, mock_ssh_class, executor, ssh_credentials):
        client = _mock_client(mock_ssh_class)
        client.run_commands.side_effect = _ok
        client.run_command.side_effect = [
            StepResult(success=True, command='cat', output='aaa.status=enabled\n'),
            StepResult(success=True, command='rm'),
        ]

        result = executor.run(_device('ubiquiti'), ssh_credentials)

        assert result.success
        assert result.local_path.endswith('.cfg')
        with open(result.local_path) as f:
            assert f.read() == 'aaa.status=enabled\n'
        client.transfer_file.assert_not_called()
        assert client.run_command.call_args_list[1][0][0].startswith('rm -f')

    @patch('yback.backup.executor.SSHClient')
    def test_huawei_uses_longer_timeout(self, mock_ssh_class, executor, ssh_credentials):
        client = _mock_client(mock_ssh_class)
        client.run_commands.side_effect = _ok
        client.transfer_file.side_effect = _writing_transfer({'yback-auto-backup.cfg'})
        os.makedirs(executor.backup_dir)

        result = executor.run(_device('huawei'), ssh_credentials)

        assert result.success
        assert client.connect.call_args[0][0].timeout == 20

    @patch('yback.backup.executor.SSHClient')
    def test_connection_error_is_reported(self, mock_ssh_class, executor, ssh_credentials):
        client = _mock_client(mock_ssh_class)
        client.connect.side_effect = DeviceConnectionError("SSH authentication failed")

        result = executor.run(_device('mikrotik'), ssh_credentials)

        assert not result.success
        assert result.error_type == 'DeviceConnectionError'
        client.__exit__.assert_called_once()
        assert result.completed_at is not None


class TestHTTPRecipes:
    """Test HTTP recipe execution."""

    @pytest.fixture
    def credentials(self):
        return Credentials(http=HTTPConfig(host='10.0.0.2', username='admin', password='secret'))

    @patch('yback.backup.executor.HTTPClient')
    def test_mimosa_backup(self, mock_http_class, executor, credentials):
        client = _mock_client(mock_http_class)
        client.login.return_value = StepResult(success=True, command='POST /cgi-bin/login (json)')
        client.transfer_file.side_effect = _writing_transfer({'mimosa.conf'})
        os.makedirs(executor.backup_dir)

        result = executor.run(_device('mimosa', address='10.0.0.2'), credentials)

        assert result.success
        assert result.local_path.endswith('.conf')
        assert client.transfer_file.call_args[0][0] == 'mimosa.conf'
        client.__exit__.assert_called_once()

    @patch('yback.backup.executor.HTTPClient')
    def test_login_failure(self, mock_http_class, executor, credentials):
        client = _mock_client(mock_http_class)
        client.login.return_value = StepResult(success=False, command='login', error='Login failed: HTTP 401')

        result = executor.run(_device('mimosa'), credentials)

        assert not result.success
        assert result.error_type == 'CommandFailure'
        client.transfer_file.assert_not_called()

    @patch('yback.backup.executor.HTTPClient')
    def test_artifact_not_found(self, mock_http_class, executor, credentials):
        client = _mock_client(mock_http_class)
        client.login.return_value = StepResult(success=True, command='login')
        client.transfer_file.return_value = StepResult(
            success=False, command='download mimosa.conf', error='Could not locate the configuration file'
        )

        result = executor.run(_device('mimosa'), credentials)

        assert not result.success
        assert result.error_type == 'ArtifactNotFound'

    @patch('yback.backup.executor.HTTPClient')
    def test_actions_run_in_recipe_order(self, mock_http_class, executor, credentials):
        client = _mock_client(mock_http_class)
        client.login.return_value = StepResult(success=True, command='POST /login (json)')
        client.transfer_file.side_effect = _writing_transfer({'mimosa.conf'})
        os.makedirs(executor.backup_dir)

        executor.run(_device('mimosa'), credentials)

        calls = [c[0] for c in client.method_calls if c[0] in ('connect', 'login', 'transfer_file', 'disconnect')]
        assert calls == ['connect', 'login', 'transfer_file', 'disconnect']

    @patch('yback.backup.executor.resolve')
    @patch('yback.backup.executor.HTTPClient')
    def test_recipe_without_login(self, mock_http_class, mock_resolve, executor, credentials):
        mock_resolve.return_value = HTTPRecipe(
            key='openconf', name='Open config', commands=('backup',),
            file_pattern='running.conf', description='Unauthenticated download'
        )
        client = _mock_client(mock_http_class)
        client.transfer_file.side_effect = _writing_transfer({'running.conf'})
        os.makedirs(executor.backup_dir)

        result = executor.run(_device('openconf'), credentials)

        assert result.success
        client.login.assert_not_called()
        client.disconnect.assert_not_called()

    @patch('yback.backup.executor.resolve')
    @patch('yback.backup.executor.HTTPClient')
    def test_recipe_without_backup_action(self, mock_http_class, mock_resolve, executor, credentials):
        mock_resolve.return_value = HTTPRecipe(
            key='loginonly', name='Login only', commands=('login', 'logout'),
            file_pattern='x.conf', description='Nothing to fetch'
        )
        client = _mock_client(mock_http_class)
        client.login.return_value = StepResult(success=True, command='login')

        result = executor.run(_device('loginonly'), credentials)

        assert not result.success
        assert result.error_type == 'ArtifactNotFound'


class TestTelnetRecipes:
    """Test best-effort Telnet execution."""

    @pytest.fixture
    def credentials(self):
        return Credentials(telnet=TelnetConfig(host='10.0.0.3', username='zte', password='zte'))

    @patch('yback.backup.executor.TelnetClient')
    def test_partial_success_writes_transcript(self, mock_telnet_class, executor, credentials):
        client = _mock_client(mock_telnet_class)
        client.run_commands.return_value = [
            StepResult(success=False, command='terminal length 0', error='timeout'),
            StepResult(success=True, command='show running-config', output='interface gpon-olt_1/2/1'),
            StepResult(success=False, command='show version-running', error='timeout'),
        ]

        result = executor.run(_device('zte', address='10.0.0.3'), credentials)

        assert result.success
        assert result.local_path.endswith('.txt')
        with open(result.local_path) as f:
            transcript = f.read()
        assert 'interface gpon-olt_1/2/1' in transcript
        assert '1/3 succeeded' in transcript
        assert client.connect.call_args[0][0].device_type == 'zte_zxros_telnet'

    @patch('yback.backup.executor.TelnetClient')
    def test_all_commands_failed(self, mock_telnet_class, executor, credentials):
        client = _mock_client(mock_telnet_class)
        client.run_commands.return_value = [
            StepResult(success=False, command='paginate false', error='refused'),
            StepResult(success=False, command='show running-config', error='refused'),
        ]

        result = executor.run(_device('datacom'), credentials)

        assert not result.success
        assert result.error_type == 'AllCommandsFailed'
        assert result.local_path is None


class TestExecutorErrors:
    """Test resolution and credential errors."""

    def test_unsupported_device_type(self, executor, ssh_credentials):
        result = executor.run(_device('cisco'), ssh_credentials)

        assert not result.success
        assert result.error_type == 'UnsupportedDeviceType'
        assert result.error == 'Device type not supported for automatic backup: cisco'

    def test_missing_protocol_profile(self, executor):
        result = executor.run(_device('mimosa'), Credentials())

        assert not result.success
        assert result.error_type == 'DeviceConnectionError'

    @patch('yback.backup.executor.SSHClient')
    def test_unexpected_exception_is_captured(self, mock_ssh_class, executor, ssh_credentials):
        client = _mock_client(mock_ssh_class)
        client.run_commands.side_effect = RuntimeError("boom")

        result = executor.run(_device('mikrotik'), ssh_credentials)

        assert not result.success
        assert result.error_type == 'UnexpectedError'
        client.__exit__.assert_called_once()

    @patch('yback.backup.executor.SSHClient')
    def test_artifact_filename(self, mock_ssh_class, executor, ssh_credentials):
        client = _mock_client(mock_ssh_class)
        client.run_commands.side_effect = _ok
        client.transfer_file.side_effect = _writing_transfer({'yback-auto-backup.cfg'})
        os.makedirs(executor.backup_dir)

        result = executor.run(_device('huawei', device_id=12, name='edge sw/1', address='192.168.1.1'), ssh_credentials)

        filename = os.path.basename(result.local_path)
        assert re.fullmatch(r'12_edge_sw_1-192.168.1.1-\d{8}T\d{6}Z\.cfg', filename)


class TestCapability:
    """Test capability checks and credential building."""

    def test_unsupported(self, executor):
        report = executor.check_capability(_device('cisco'), Credentials())
        assert report['can_backup'] is False
        assert report['recipe'] is None

    @patch('yback.backup.executor.SSHClient')
    def test_probes_recipe_protocol(self, mock_ssh_class, executor, ssh_credentials):
        client = mock_ssh_class.return_value
        client.probe.return_value = ProbeResult(reachable=True, protocol_reachable=True, latency_ms=2.0)

        report = executor.check_capability(_device('mikrotik'), ssh_credentials)

        assert report['can_backup'] is True
        assert report['recipe'] == 'mikrotik'
        assert report['probe']['latency_ms'] == 2.0

    def test_credentials_for_enabled_profiles_only(self):
        equipment = SimpleNamespace(
            address='10.0.0.9',
            ssh_enabled=True, ssh_port=2222, ssh_username='admin', ssh_password='pw', ssh_private_key=None,
            http_enabled=False, http_port=None, http_scheme='http', http_username=None, http_password=None,
            ignore_cert_errors=False,
            telnet_enabled=False, telnet_port=23, telnet_username=None, telnet_password=None
        )

        credentials = credentials_for(equipment, ssh_timeout=7, ssh_command_timeout=60)

        assert credentials.ssh.port == 2222
        assert credentials.ssh.timeout == 7
        assert credentials.ssh.command_timeout == 60
        assert credentials.http is None
        assert credentials.telnet is None
