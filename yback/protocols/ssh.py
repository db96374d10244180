"""
SSH protocol client (paramiko).

One session is kept open for the whole recipe; artifacts are pulled over SFTP.
"""

import io
import os
import time
import logging
from pathlib import Path
from typing import List, Optional

import paramiko
from paramiko import AutoAddPolicy

from yback.exceptions import DeviceConnectionError
from .base import SSHConfig, StepResult, ProbeResult, ping

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 32768
POLL_INTERVAL = 0.05

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def load_private_key(pem: str):
    """
    Parse a PEM private key of any supported type.

    Raises:
        DeviceConnectionError: If no key type accepts the content
    """
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(pem))
        except (paramiko.SSHException, ValueError):
            continue
    raise DeviceConnectionError("Unsupported or invalid SSH private key")


class SSHClient:
    """
    Handler for running backup recipes over SSH.

    Usage:
        with SSHClient() as client:
            client.connect(config)
            client.run_commands([...])
            client.transfer_file('backup.rsc', '/data/x.rsc')
    """

    def __init__(self):
        self.ssh_client = None
        self.sftp_client = None
        self.config = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()
        return False

    @property
    def is_connected(self) -> bool:
        if self.ssh_client is None:
            return False
        transport = self.ssh_client.get_transport()
        return transport is not None and transport.is_active()

    def probe(self, config: SSHConfig, ping_count: int = 3, ping_timeout: int = 5) -> ProbeResult:
        """
        Check ICMP reachability, then attempt an SSH handshake.

        The handshake is never attempted for a host that does not answer ping.
        """
        alive, latency, error = ping(config.host, count=ping_count, timeout=ping_timeout)
        result = ProbeResult(reachable=alive, latency_ms=latency, error=error)

        if not alive:
            logger.info(f"Skipping SSH handshake, {config.host} is unreachable")
            return result

        try:
            self.connect(config)
            result.protocol_reachable = True
        except DeviceConnectionError as e:
            result.error = str(e)
        finally:
            self.disconnect()

        return result

    def connect(self, config: SSHConfig):
        """
        Establish SSH connection.

        Raises:
            DeviceConnectionError: If connection fails
        """
        self.config = config

        connect_kwargs = {
            'hostname': config.host,
            'port': config.port,
            'username': config.username,
            'timeout': config.timeout,
            'banner_timeout': config.timeout,
            'auth_timeout': config.timeout,
            'look_for_keys': False,
            'allow_agent': False
        }

        # Private key takes precedence over password
        if config.private_key:
            connect_kwargs['pkey'] = load_private_key(config.private_key)
        elif config.password:
            connect_kwargs['password'] = config.password
        else:
            raise DeviceConnectionError("Either password or private key must be provided")

        try:
            self.ssh_client = paramiko.SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
            logger.info(f"SSH connected to {config.host}:{config.port} as {config.username}")

        except paramiko.AuthenticationException as e:
            self.disconnect()
            raise DeviceConnectionError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            self.disconnect()
            raise DeviceConnectionError(f"SSH connection failed: {e}")
        except Exception as e:
            self.disconnect()
            raise DeviceConnectionError(f"Failed to connect to {config.host}: {e}")

    def run_command(self, command: str) -> StepResult:
        """
        Execute a command; success means exit status 0.

        Output is drained while waiting for the exit status so a large dump
        never stalls on the channel window. The command fails when it stays
        silent for ``timeout`` seconds or runs past ``command_timeout``.

        Returns:
            StepResult with stdout (or stderr when stdout is empty) as output
        """
        if not self.is_connected:
            return StepResult(success=False, command=command, error="SSH connection not established")

        idle_timeout = self.config.timeout if self.config else SSHConfig.timeout
        total_timeout = self.config.command_timeout if self.config else SSHConfig.command_timeout

        try:
            _, stdout, stderr = self.ssh_client.exec_command(command, timeout=idle_timeout)
            channel = stdout.channel
            out, err = bytearray(), bytearray()

            started = last_activity = time.monotonic()
            while True:
                received = False
                if channel.recv_ready():
                    out += channel.recv(READ_CHUNK_SIZE)
                    received = True
                if channel.recv_stderr_ready():
                    err += channel.recv_stderr(READ_CHUNK_SIZE)
                    received = True

                if received:
                    last_activity = time.monotonic()
                elif channel.exit_status_ready():
                    break

                now = time.monotonic()
                if now - last_activity > idle_timeout or now - started > total_timeout:
                    channel.close()
                    logger.warning(f"SSH command timed out: {command}")
                    return StepResult(
                        success=False,
                        command=command,
                        output=out.decode('utf-8', errors='replace') or None,
                        error="Command timed out"
                    )

                if not received:
                    time.sleep(POLL_INTERVAL)

            exit_status = channel.recv_exit_status()
            out = out.decode('utf-8', errors='replace')
            err = err.decode('utf-8', errors='replace')

            return StepResult(
                success=exit_status == 0,
                command=command,
                output=out or err,
                error=None if exit_status == 0 else (err or f"Exit status {exit_status}")
            )
        except Exception as e:
            return StepResult(success=False, command=command, error=str(e))

    def run_commands(self, commands: List[str]) -> List[StepResult]:
        """Execute commands in order, stopping at the first failure."""
        results = []

        for command in commands:
            result = self.run_command(command)
            results.append(result)

            if not result.success:
                logger.warning(f"SSH command failed, aborting sequence: {command}")
                break

        return results

    def transfer_file(self, remote_path: str, local_path: str) -> StepResult:
        """
        Download a single file via SFTP.

        Args:
            remote_path: Remote file path
            local_path: Local destination path
        """
        command = f"sftp get {remote_path}"

        if not self.is_connected:
            return StepResult(success=False, command=command, error="SSH connection not established")

        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)

            if self.sftp_client is None:
                self.sftp_client = self.ssh_client.open_sftp()

            self.sftp_client.get(remote_path, local_path)

            return StepResult(
                success=True,
                command=command,
                output=f"Downloaded {remote_path} -> {local_path}"
            )
        except FileNotFoundError:
            self._discard_partial(local_path)
            return StepResult(success=False, command=command, error=f"Remote file not found: {remote_path}")
        except PermissionError:
            self._discard_partial(local_path)
            return StepResult(success=False, command=command, error=f"Permission denied accessing remote file: {remote_path}")
        except Exception as e:
            self._discard_partial(local_path)
            return StepResult(success=False, command=command, error=f"Failed to download {remote_path}: {e}")

    @staticmethod
    def _discard_partial(local_path: str):
        if os.path.exists(local_path):
            os.remove(local_path)

    def disconnect(self):
        """Close SFTP/SSH connections. Safe to call repeatedly."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except Exception as e:
                logger.debug(f"Ignoring SFTP close error: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                logger.debug(f"Ignoring SSH close error: {e}")
            self.ssh_client = None
