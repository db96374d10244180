"""
Shared types for protocol clients.

Every client exposes the same contract:
- probe(config) -> ProbeResult
- connect(config), raising DeviceConnectionError
- run_command(command) / run_commands(commands) -> StepResult(s)
- transfer_file(remote, local) -> StepResult
- disconnect(), idempotent
"""

import re
import logging
import sys
import subprocess
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StepResult:
    """Outcome of a single command, request or transfer."""
    success: bool
    command: str = ''
    output: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    timestamp: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProbeResult:
    """Reachability of a device: network first, then the protocol handshake."""
    reachable: bool = False
    protocol_reachable: bool = False
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SSHConfig:
    host: str
    username: str
    port: int = 22
    password: Optional[str] = None
    private_key: Optional[str] = None  # PEM content
    timeout: int = 10  # connect and idle-read timeout
    command_timeout: int = 300


@dataclass
class HTTPConfig:
    host: str
    username: str = ''
    password: str = ''
    port: Optional[int] = None
    scheme: str = 'http'
    ignore_cert_errors: bool = False
    timeout: int = 15

    @property
    def base_url(self) -> str:
        port = self.port or (443 if self.scheme == 'https' else 80)
        return f"{self.scheme}://{self.host}:{port}"


@dataclass
class TelnetConfig:
    host: str
    username: str
    password: str
    port: int = 23
    timeout: int = 15
    device_type: str = 'generic_telnet'  # netmiko driver


_RTT_SUMMARY = re.compile(r'(?:rtt|round-trip)[^=]*=\s*[\d.]+/([\d.]+)/')
_RTT_SINGLE = re.compile(r'time[=<]\s*([\d.]+)\s*ms')


def ping_command(host: str, count: int, timeout: int) -> List[str]:
    """
    Build the ping invocation for this platform.

    iputils (Linux) takes the reply wait ``-W`` in seconds; macOS and FreeBSD
    take it in milliseconds.
    """
    wait = timeout * 1000 if sys.platform.startswith(('darwin', 'freebsd')) else timeout
    return ['ping', '-c', str(count), '-W', str(wait), host]


def ping(host: str, count: int = 3, timeout: int = 5) -> Tuple[bool, Optional[float], Optional[str]]:
    """
    ICMP reachability check using the system ping binary.

    Returns:
        (alive, average latency in ms or None, error message or None)
    """
    cmd = ping_command(host, count, timeout)

    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=count * timeout + 5
        )
    except subprocess.TimeoutExpired:
        return False, None, f"Ping to {host} timed out"
    except OSError as e:
        return False, None, f"Ping unavailable: {e}"

    if proc.returncode != 0:
        return False, None, f"Host {host} does not answer ping"

    latency = None
    match = _RTT_SUMMARY.search(proc.stdout) or _RTT_SINGLE.search(proc.stdout)
    if match:
        latency = float(match.group(1))

    return True, latency, None
