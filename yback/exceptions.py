"""
Exception hierarchy for yback.

Protocol and provider code translate library errors (paramiko, requests,
netmiko, botocore) into these types at their own boundary.
"""


class YBackError(Exception):
    """Base class for all yback errors."""
    pass


class UnsupportedDeviceType(YBackError):
    """Raised when no backup recipe matches a device type."""

    def __init__(self, device_type: str):
        self.device_type = device_type
        super().__init__(f"Device type not supported for automatic backup: {device_type}")


class DeviceConnectionError(YBackError):
    """Raised when a protocol session cannot be established."""
    pass


class CommandFailure(YBackError):
    """Raised when one or more recipe steps fail."""
    pass


class AllCommandsFailed(CommandFailure):
    """Raised when every step of a best-effort (Telnet) recipe failed."""
    pass


class ArtifactNotFound(YBackError):
    """Raised when the recipe ran but no artifact could be retrieved."""
    pass


class UploadFailure(YBackError):
    """Raised when a storage provider rejects or times out an upload."""
    pass
