"""
Backup recipe registry.

A recipe is the fixed sequence of remote operations that produces a
configuration artifact for one device family. Recipes are a tagged variant
(SSHRecipe | HTTPRecipe | TelnetRecipe) keyed by `kind`; the executor dispatches
on that tag. The registry is built once at import time and never mutated.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import List, Optional, Tuple, Union


@dataclass(frozen=True)
class SSHArtifact:
    """A file the recipe leaves on the device."""
    remote_name: str
    extension: str


@dataclass(frozen=True)
class SSHRecipe:
    """
    Recipe run over SSH.

    Attributes:
        artifacts: Files to pull, in order of preference. Every artifact is
            downloaded; the first one that succeeded becomes the result.
        transfer: 'sftp' to download artifacts, 'cat' for devices without a
            file-transfer subsystem (content is read with dump_command).
        cleanup_command: Removes temporary files after a successful transfer.
        connect_timeout: Overrides the default SSH connect timeout.
    """
    key: str
    name: str
    commands: Tuple[str, ...]
    file_pattern: str
    description: str
    artifacts: Tuple[SSHArtifact, ...]
    transfer: str = 'sftp'
    dump_command: Optional[str] = None
    cleanup_command: Optional[str] = None
    connect_timeout: Optional[int] = None
    kind: str = field(default='ssh', init=False)


HTTP_ACTIONS = ('login', 'backup', 'logout')


@dataclass(frozen=True)
class HTTPRecipe:
    """
    Recipe run against a device web interface.

    ``commands`` is the ordered list of actions the executor performs, each one
    of HTTP_ACTIONS.
    """
    key: str
    name: str
    commands: Tuple[str, ...]
    file_pattern: str
    description: str
    extension: str = '.conf'
    kind: str = field(default='http', init=False)

    def __post_init__(self):
        unknown = [a for a in self.commands if a not in HTTP_ACTIONS]
        if unknown:
            raise ValueError(f"Unknown HTTP actions in recipe {self.key}: {', '.join(unknown)}")


@dataclass(frozen=True)
class TelnetRecipe:
    """
    Recipe run over Telnet. These devices never produce a downloadable file:
    the artifact is the captured transcript.
    """
    key: str
    name: str
    commands: Tuple[str, ...]
    file_pattern: str
    description: str
    netmiko_device_type: str = 'generic_telnet'
    extension: str = '.txt'
    kind: str = field(default='telnet', init=False)


Recipe = Union[SSHRecipe, HTTPRecipe, TelnetRecipe]


MIKROTIK = SSHRecipe(
    key='mikrotik',
    name='Mikrotik RouterOS',
    commands=(
        '/system backup save name=yback-auto-backup',
        ':delay 3',
        '/export file=yback-auto-export',
        ':delay 2',
        '/file print where name~"yback-auto"',
    ),
    file_pattern='yback-auto-*',
    description='Mikrotik automatic backup (binary + export)',
    # The text export restores across RouterOS versions, the binary does not
    artifacts=(
        SSHArtifact('yback-auto-export.rsc', '.rsc'),
        SSHArtifact('yback-auto-backup.backup', '.backup'),
    ),
    cleanup_command='/file remove [find name~"yback-auto"]',
)

UBIQUITI = SSHRecipe(
    key='ubiquiti',
    name='Ubiquiti',
    commands=(
        'cp /tmp/system.cfg /tmp/yback-auto-system.cfg 2>/dev/null '
        '|| echo "# ERROR: system.cfg not found" > /tmp/yback-auto-system.cfg',
        'ls -la /tmp/system.cfg && echo "system.cfg found" || echo "system.cfg missing"',
        'ls -la /tmp/yback-auto-system.cfg && echo "system.cfg backup created"',
    ),
    file_pattern='yback-auto-system.cfg',
    description='Ubiquiti AirMAX automatic backup (system.cfg)',
    artifacts=(SSHArtifact('/tmp/yback-auto-system.cfg', '.cfg'),),
    # AirOS ships without an SFTP subsystem
    transfer='cat',
    dump_command='cat /tmp/yback-auto-system.cfg',
    cleanup_command='rm -f /tmp/yback-auto-system.cfg 2>/dev/null || true',
)

HUAWEI = SSHRecipe(
    key='huawei',
    name='Huawei',
    commands=(
        'save',
        'backup startup-configuration to yback-auto-backup.cfg',
        'dir | include yback-auto',
    ),
    file_pattern='yback-auto-backup.cfg',
    description='Huawei automatic backup (startup configuration)',
    artifacts=(SSHArtifact('yback-auto-backup.cfg', '.cfg'),),
    connect_timeout=20,
)

MIMOSA = HTTPRecipe(
    key='mimosa',
    name='Mimosa',
    commands=('login', 'backup', 'logout'),
    file_pattern='mimosa.conf',
    description='Mimosa automatic backup (configuration over HTTP)',
)

ZTE = TelnetRecipe(
    key='zte',
    name='ZTE OLT',
    commands=(
        'terminal length 0',
        'show running-config',
        'show version-running',
    ),
    file_pattern='zte-running-config.txt',
    description='ZTE OLT automatic backup (running configuration transcript)',
    netmiko_device_type='zte_zxros_telnet',
)

FIBERHOME = TelnetRecipe(
    key='fiberhome',
    name='FiberHome OLT',
    commands=(
        'cd service',
        'terminal length 0',
        'cd ..',
        'show running-config',
    ),
    file_pattern='fiberhome-running-config.txt',
    description='FiberHome OLT automatic backup (running configuration transcript)',
)

DATACOM = TelnetRecipe(
    key='datacom',
    name='Datacom OLT',
    commands=(
        'paginate false',
        'show running-config',
    ),
    file_pattern='datacom-running-config.txt',
    description='Datacom OLT automatic backup (running configuration transcript)',
)


REGISTRY = MappingProxyType({
    recipe.key: recipe
    for recipe in (MIKROTIK, UBIQUITI, HUAWEI, MIMOSA, ZTE, FIBERHOME, DATACOM)
})


def resolve(device_type: Optional[str]) -> Optional[Recipe]:
    """
    Find the recipe for a device type tag.

    Exact case-insensitive key match first, then a substring match in either
    direction between the tag and each key. When several keys match a
    substring, which one is returned is not specified.

    Returns:
        Recipe, or None if the type is not supported
    """
    if not device_type or not device_type.strip():
        return None

    normalized = device_type.strip().lower()

    if normalized in REGISTRY:
        return REGISTRY[normalized]

    for key, recipe in REGISTRY.items():
        if key in normalized or normalized in key:
            return recipe

    return None


def list_supported_types() -> List[str]:
    return list(REGISTRY.keys())


def list_recipes() -> List[Recipe]:
    return list(REGISTRY.values())
