"""
Remote-access protocol clients used by backup recipes.

- SSHClient: paramiko session + SFTP
- HTTPClient: requests session with login/artifact route discovery
- TelnetClient: netmiko telnet drivers, one connection per command
"""

from .base import StepResult, ProbeResult, SSHConfig, HTTPConfig, TelnetConfig, ping
from .ssh import SSHClient
from .http import HTTPClient
from .telnet import TelnetClient

__all__ = [
    'StepResult',
    'ProbeResult',
    'SSHConfig',
    'HTTPConfig',
    'TelnetConfig',
    'ping',
    'SSHClient',
    'HTTPClient',
    'TelnetClient'
]
