"""
Telnet protocol client (netmiko telnet drivers).

OLT command-line sessions are short lived and flaky, so every command opens
its own connection. A failing command does not stop the sequence.
"""

import time
import logging
from typing import List

from netmiko import ConnectHandler
from netmiko.exceptions import NetmikoAuthenticationException, NetmikoTimeoutException

from yback.exceptions import DeviceConnectionError
from .base import TelnetConfig, StepResult, ProbeResult, ping

logger = logging.getLogger(__name__)


class TelnetClient:
    """Handler for Telnet-only devices; reconnects for every command."""

    def __init__(self, command_pause: float = 0.5):
        self.config = None
        self.command_pause = command_pause

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()
        return False

    def _connection_params(self, config: TelnetConfig) -> dict:
        return {
            'device_type': config.device_type,
            'host': config.host,
            'port': config.port,
            'username': config.username,
            'password': config.password,
            'conn_timeout': config.timeout,
            'auth_timeout': config.timeout,
            'banner_timeout': config.timeout,
            'timeout': config.timeout,
        }

    def probe(self, config: TelnetConfig, ping_count: int = 3, ping_timeout: int = 5) -> ProbeResult:
        """Check ICMP reachability, then log in and out once."""
        alive, latency, error = ping(config.host, count=ping_count, timeout=ping_timeout)
        result = ProbeResult(reachable=alive, latency_ms=latency, error=error)

        if not alive:
            logger.info(f"Skipping Telnet login, {config.host} is unreachable")
            return result

        try:
            with ConnectHandler(**self._connection_params(config)):
                pass
            result.protocol_reachable = True
        except (NetmikoTimeoutException, NetmikoAuthenticationException) as e:
            result.error = f"Telnet connection failed: {e}"
        except Exception as e:
            result.error = f"Telnet connection failed: {e}"

        return result

    def connect(self, config: TelnetConfig):
        """
        Store the connection parameters; sessions are opened per command.

        Raises:
            DeviceConnectionError: If the config lacks a host or credentials
        """
        if not config.host or not config.username:
            raise DeviceConnectionError("Telnet host and username are required")
        self.config = config

    def run_command(self, command: str) -> StepResult:
        """Open a session, run one command, close; success means nothing raised."""
        if self.config is None:
            return StepResult(success=False, command=command, error="Not connected - call connect() first")

        try:
            with ConnectHandler(**self._connection_params(self.config)) as conn:
                output = conn.send_command_timing(command, read_timeout=self.config.timeout)
            return StepResult(success=True, command=command, output=output)
        except NetmikoAuthenticationException as e:
            return StepResult(success=False, command=command, error=f"Telnet authentication failed: {e}")
        except NetmikoTimeoutException as e:
            return StepResult(success=False, command=command, error=f"Telnet timeout: {e}")
        except Exception as e:
            return StepResult(success=False, command=command, error=str(e))

    def run_commands(self, commands: List[str]) -> List[StepResult]:
        """Run every command, collecting all results, pausing between them."""
        results = []

        for index, command in enumerate(commands):
            result = self.run_command(command)
            results.append(result)

            if not result.success:
                logger.warning(f"Telnet command failed, continuing: {command}")

            if self.command_pause and index < len(commands) - 1:
                time.sleep(self.command_pause)

        return results

    def transfer_file(self, remote_path: str, local_path: str) -> StepResult:
        """Telnet has no file transfer; callers persist captured output instead."""
        return StepResult(
            success=False,
            command=f"get {remote_path}",
            error="File transfer is not supported over Telnet"
        )

    def disconnect(self):
        self.config = None
