"""
Backup executor - runs a recipe against one device.

Workflow:
1. Resolve the recipe for the device type
2. Dispatch on the recipe kind (ssh, http, telnet)
3. Run the recipe commands through the protocol client
4. Retrieve the artifact into AUTO_BACKUP_DIR
5. Disconnect every client, whatever happened

The executor never raises: failures are reported through ExecutionResult.
"""

import os
import re
import time
import logging
import dataclasses
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List

from yback.exceptions import (
    YBackError, UnsupportedDeviceType, DeviceConnectionError,
    CommandFailure, AllCommandsFailed, ArtifactNotFound
)
from yback.protocols import (
    SSHClient, HTTPClient, TelnetClient,
    SSHConfig, HTTPConfig, TelnetConfig, StepResult
)
from .recipes import resolve, SSHRecipe, HTTPRecipe, TelnetRecipe

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]+')


@dataclass
class Credentials:
    """Per-protocol connection settings; a profile is None when disabled."""
    ssh: Optional[SSHConfig] = None
    http: Optional[HTTPConfig] = None
    telnet: Optional[TelnetConfig] = None


@dataclass
class ExecutionResult:
    """Outcome of one executor run. success implies local_path exists."""
    success: bool = False
    recipe_key: Optional[str] = None
    steps: List[StepResult] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    remote_file: Optional[str] = None
    local_path: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'recipe': self.recipe_key,
            'steps': [step.to_dict() for step in self.steps],
            'logs': list(self.logs),
            'remote_file': self.remote_file,
            'local_path': self.local_path,
            'error': self.error,
            'error_type': self.error_type,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None
        }


def credentials_for(equipment, ssh_timeout: int = 10, http_timeout: int = 15, telnet_timeout: int = 15,
                    ssh_command_timeout: int = 300) -> Credentials:
    """
    Build connection settings from an Equipment row.

    Only enabled profiles are populated.
    """
    credentials = Credentials()

    if equipment.ssh_enabled:
        credentials.ssh = SSHConfig(
            host=equipment.address,
            port=equipment.ssh_port or 22,
            username=equipment.ssh_username or '',
            password=equipment.ssh_password,
            private_key=equipment.ssh_private_key,
            timeout=ssh_timeout,
            command_timeout=ssh_command_timeout
        )

    if equipment.http_enabled:
        credentials.http = HTTPConfig(
            host=equipment.address,
            port=equipment.http_port,
            scheme=equipment.http_scheme or 'http',
            username=equipment.http_username or '',
            password=equipment.http_password or '',
            ignore_cert_errors=bool(equipment.ignore_cert_errors),
            timeout=http_timeout
        )

    if equipment.telnet_enabled:
        credentials.telnet = TelnetConfig(
            host=equipment.address,
            port=equipment.telnet_port or 23,
            username=equipment.telnet_username or '',
            password=equipment.telnet_password or '',
            timeout=telnet_timeout
        )

    return credentials


def sanitize(value) -> str:
    return _UNSAFE_CHARS.sub('_', str(value)).strip('_') or 'device'


class BackupExecutor:
    """
    Runs backup recipes and stores artifacts under backup_dir.
    """

    def __init__(self, backup_dir: str, ssh_settle_delay: float = 2, telnet_command_pause: float = 0.5,
                 ping_count: int = 3, ping_timeout: int = 5):
        """
        Initialize backup executor.

        Args:
            backup_dir: Directory where artifacts are written
            ssh_settle_delay: Seconds to wait between SSH commands and transfer,
                so the device finishes writing the file
            telnet_command_pause: Seconds between Telnet commands
            ping_count: ICMP echo requests sent by capability checks
            ping_timeout: Seconds to wait for each echo reply
        """
        self.backup_dir = backup_dir
        self.ssh_settle_delay = ssh_settle_delay
        self.telnet_command_pause = telnet_command_pause
        self.ping_count = ping_count
        self.ping_timeout = ping_timeout

        self._handlers = {
            'ssh': self._run_ssh,
            'http': self._run_http,
            'telnet': self._run_telnet,
        }

    @classmethod
    def from_app_config(cls, app_config) -> 'BackupExecutor':
        return cls(
            backup_dir=app_config['AUTO_BACKUP_DIR'],
            ssh_settle_delay=app_config.get('SSH_SETTLE_DELAY', 2),
            telnet_command_pause=app_config.get('TELNET_COMMAND_PAUSE', 0.5),
            ping_count=app_config.get('PING_COUNT', 3),
            ping_timeout=app_config.get('PING_TIMEOUT', 5)
        )

    def run(self, device, credentials: Credentials) -> ExecutionResult:
        """
        Execute the backup recipe for a device.

        Args:
            device: Equipment (needs id, name, address, device_type)
            credentials: Connection settings for the device

        Returns:
            ExecutionResult; errors are captured in error / error_type
        """
        result = ExecutionResult()
        self._log(result, f"Starting backup of {device.name} ({device.address}), type {device.device_type}")

        try:
            recipe = resolve(device.device_type)
            if recipe is None:
                raise UnsupportedDeviceType(device.device_type)

            result.recipe_key = recipe.key
            self._log(result, f"Using recipe {recipe.key} ({recipe.kind})")

            with ExitStack() as stack:
                self._handlers[recipe.kind](recipe, device, credentials, stack, result)

            if not result.local_path or not os.path.exists(result.local_path):
                raise ArtifactNotFound("Backup finished but no local artifact was written")

            result.success = True
            self._log(result, f"Backup completed: {result.local_path}")

        except YBackError as e:
            result.success = False
            result.error = str(e)
            result.error_type = type(e).__name__
            self._log(result, f"Backup failed: {e}", level=logging.WARNING)

        except Exception as e:
            logger.exception(f"Unexpected error backing up {device.name}")
            result.success = False
            result.error = str(e)
            result.error_type = 'UnexpectedError'
            self._log(result, f"Backup failed: {e}", level=logging.ERROR)

        finally:
            result.completed_at = datetime.now(timezone.utc)

        return result

    def check_capability(self, device, credentials: Credentials) -> dict:
        """
        Tell whether a device can be backed up automatically.

        Probes only the protocol its recipe needs.

        Returns:
            Dict with can_backup, recipe, probe and error
        """
        recipe = resolve(device.device_type)
        if recipe is None:
            return {
                'can_backup': False,
                'recipe': None,
                'probe': None,
                'error': str(UnsupportedDeviceType(device.device_type))
            }

        config = getattr(credentials, recipe.kind)
        if config is None:
            return {
                'can_backup': False,
                'recipe': recipe.key,
                'probe': None,
                'error': f"{recipe.kind.upper()} access is not configured for this device"
            }

        client = self._new_client(recipe.kind)
        probe = client.probe(config, ping_count=self.ping_count, ping_timeout=self.ping_timeout)

        return {
            'can_backup': probe.reachable and probe.protocol_reachable,
            'recipe': recipe.key,
            'probe': probe.to_dict(),
            'error': probe.error
        }

    # Recipe handlers

    def _run_ssh(self, recipe: SSHRecipe, device, credentials: Credentials, stack: ExitStack, result: ExecutionResult):
        config = self._require(credentials.ssh, 'SSH')
        if recipe.connect_timeout and recipe.connect_timeout > config.timeout:
            config = dataclasses.replace(config, timeout=recipe.connect_timeout)

        client = stack.enter_context(self._new_client('ssh'))
        client.connect(config)
        self._log(result, f"SSH connected to {config.host}:{config.port}")

        steps = client.run_commands(list(recipe.commands))
        self._record(result, steps)

        failed = [step for step in steps if not step.success]
        if failed or len(steps) < len(recipe.commands):
            raise CommandFailure('; '.join(f"{step.command}: {step.error}" for step in failed))

        if self.ssh_settle_delay:
            time.sleep(self.ssh_settle_delay)

        if recipe.transfer == 'cat':
            self._dump_artifact(recipe, device, client, result)
        else:
            self._download_artifacts(recipe, device, client, result)

        if recipe.cleanup_command:
            cleanup = client.run_command(recipe.cleanup_command)
            self._record(result, [cleanup])
            if not cleanup.success:
                self._log(result, f"Cleanup failed (ignored): {cleanup.error}", level=logging.WARNING)

    def _download_artifacts(self, recipe: SSHRecipe, device, client, result: ExecutionResult):
        """Download every artifact; keep the most preferred one that arrived."""
        retrieved = []

        for artifact in recipe.artifacts:
            local_path = self._artifact_path(device, artifact.extension)
            step = client.transfer_file(artifact.remote_name, local_path)
            self._record(result, [step])
            if step.success:
                retrieved.append((artifact, local_path))

        if not retrieved:
            names = ', '.join(artifact.remote_name for artifact in recipe.artifacts)
            raise ArtifactNotFound(f"No artifact could be retrieved ({names})")

        chosen, local_path = retrieved[0]
        for _, other in retrieved[1:]:
            os.remove(other)

        result.remote_file = chosen.remote_name
        result.local_path = local_path
        self._log(result, f"Retrieved {chosen.remote_name}")

    def _dump_artifact(self, recipe: SSHRecipe, device, client, result: ExecutionResult):
        artifact = recipe.artifacts[0]
        step = client.run_command(recipe.dump_command)
        self._record(result, [step])

        if not step.success or not step.output:
            raise ArtifactNotFound(f"Could not read {artifact.remote_name}: {step.error or 'empty output'}")

        local_path = self._artifact_path(device, artifact.extension)
        self._write_text(local_path, step.output)

        result.remote_file = artifact.remote_name
        result.local_path = local_path
        self._log(result, f"Captured {artifact.remote_name} ({len(step.output)} bytes)")

    def _run_http(self, recipe: HTTPRecipe, device, credentials: Credentials, stack: ExitStack, result: ExecutionResult):
        config = self._require(credentials.http, 'HTTP')

        client = stack.enter_context(self._new_client('http'))
        client.connect(config)
        self._log(result, f"HTTP connected to {config.base_url}")

        local_path = self._artifact_path(device, recipe.extension)

        for action in recipe.commands:
            if action == 'login':
                login = client.login()
                self._record(result, [login])
                if not login.success:
                    raise CommandFailure(login.error or "Login failed")

            elif action == 'backup':
                download = client.transfer_file(recipe.file_pattern, local_path)
                self._record(result, [download])
                if not download.success:
                    raise ArtifactNotFound(download.error or f"Could not download {recipe.file_pattern}")
                result.remote_file = recipe.file_pattern
                result.local_path = local_path

            elif action == 'logout':
                client.disconnect()
                self._log(result, "HTTP session closed")

        if result.local_path is None:
            raise ArtifactNotFound(f"Recipe {recipe.key} has no backup action")

    def _run_telnet(self, recipe: TelnetRecipe, device, credentials: Credentials, stack: ExitStack, result: ExecutionResult):
        config = self._require(credentials.telnet, 'Telnet')
        config = dataclasses.replace(config, device_type=recipe.netmiko_device_type)

        client = stack.enter_context(self._new_client('telnet'))
        client.connect(config)

        steps = client.run_commands(list(recipe.commands))
        self._record(result, steps)

        succeeded = [step for step in steps if step.success]
        if not succeeded:
            raise AllCommandsFailed(f"All {len(steps)} Telnet commands failed")

        local_path = self._artifact_path(device, recipe.extension)
        self._write_text(local_path, self._transcript(device, recipe, steps))

        result.remote_file = recipe.file_pattern
        result.local_path = local_path
        self._log(result, f"Transcript saved ({len(succeeded)}/{len(steps)} commands succeeded)")

    # Helpers

    def _new_client(self, kind: str):
        if kind == 'ssh':
            return SSHClient()
        if kind == 'http':
            return HTTPClient()
        return TelnetClient(command_pause=self.telnet_command_pause)

    @staticmethod
    def _require(config, protocol: str):
        if config is None:
            raise DeviceConnectionError(f"{protocol} access is not configured for this device")
        return config

    def _artifact_path(self, device, extension: str) -> str:
        """<id>_<name>-<address>-<UTC timestamp><ext> under backup_dir"""
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')
        filename = f"{device.id}_{sanitize(device.name)}-{sanitize(device.address)}-{timestamp}{extension}"
        return os.path.join(self.backup_dir, filename)

    @staticmethod
    def _write_text(local_path: str, content: str):
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        with open(local_path, 'w', encoding='utf-8') as f:
            f.write(content)

    @staticmethod
    def _transcript(device, recipe: TelnetRecipe, steps: List[StepResult]) -> str:
        lines = [
            f"# {recipe.name} backup of {device.name} ({device.address})",
            f"# Generated {datetime.now(timezone.utc).isoformat()}",
            f"# Commands: {sum(1 for s in steps if s.success)}/{len(steps)} succeeded",
            ''
        ]
        for step in steps:
            status = 'OK' if step.success else 'FAILED'
            lines.append(f"### {step.command} [{status}]")
            lines.append((step.output or '') if step.success else f"ERROR: {step.error}")
            lines.append('')
        return '\n'.join(lines)

    def _record(self, result: ExecutionResult, steps: List[StepResult]):
        for step in steps:
            result.steps.append(step)
            status = 'ok' if step.success else f"failed: {step.error}"
            self._log(result, f"{step.command} -> {status}")

    @staticmethod
    def _log(result: ExecutionResult, message: str, level: int = logging.INFO):
        """Add a timestamped line to the run log and the module logger."""
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S')
        result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
