"""Custom exceptions for utm-runner."""

from __future__ import annotations

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors.

    ``vm_uuid`` and ``step`` are filled in by the provisioning pipeline so the
    caller knows which VM was reached and where it stopped.
    """

    def __init__(self, message: str = "", vm_uuid: Optional[str] = None, step: Optional[str] = None) -> None:
        super().__init__(message)
        self.vm_uuid = vm_uuid
        self.step = step


class BridgeError(ManagerError):
    """The AppleScript bridge failed or rejected its input."""


class PermissionDenied(BridgeError):
    """Automation permission for controlling UTM has not been granted."""


class UnsupportedConfiguration(ManagerError):
    """A configuration value has no enum code."""


class ManifestError(ManagerError):
    """The gallery manifest is malformed."""


class IntegrityError(ManagerError):
    """Downloaded media does not match the manifest checksum."""


class NotResponding(ManagerError):
    """The VM is not running or its guest agent is unreachable."""


class TransferError(ManagerError):
    """A file push or pull failed."""


class UnsupportedNetworkMode(ManagerError):
    """Port forwarding was requested on an interface that cannot forward."""


class UnsupportedVersion(ManagerError):
    """The installed UTM is too old for the requested operation."""
