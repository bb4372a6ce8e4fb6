"""Data models for utm-runner."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple

from utm_runner.exceptions import ManagerError


class PortForward(NamedTuple):
    protocol: str
    guest_port: int
    host_port: int
    guest_address: str = ""  # empty = any guest address
    host_address: str = "127.0.0.1"


@dataclass(frozen=True)
class HardwareProfile:
    ram_mb: int
    disk_mb: int
    cpus: int


@dataclass(frozen=True)
class MediaSource:
    url: str
    checksum: str
    filename: str
    size: int = 0


@dataclass(frozen=True)
class GalleryEntry:
    key: str
    name: str
    os: str
    arch: str
    hardware: HardwareProfile
    media: MediaSource
    description: str = ""
    tags: Tuple[str, ...] = ()
    backend: str = "qemu"
    uefi: bool = True


@dataclass(frozen=True)
class UTMAppRelease:
    version: str
    url: str
    checksum: str = ""
    min_macos: str = ""


@dataclass(frozen=True)
class GalleryMeta:
    schema_version: str
    utm_app: Optional[UTMAppRelease] = None


class RunState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"


@dataclass
class Drive:
    index: int
    interface: str
    removable: bool = False
    size_mb: int = 0
    source: str = ""


@dataclass
class NetworkInterface:
    index: int
    mode: str
    port_forwards: List[PortForward] = field(default_factory=list)


@dataclass
class VMInstance:
    uuid: str
    name: str
    state: RunState = RunState.UNKNOWN
    drives: List[Drive] = field(default_factory=list)
    interfaces: List[NetworkInterface] = field(default_factory=list)


@dataclass(frozen=True)
class Paths:
    root: Path
    app: Path
    vms: Path
    iso: Path
    share: Path

    @property
    def utmctl(self) -> Path:
        return self.app / "Contents" / "MacOS" / "utmctl"


class ProvisionState(str, Enum):
    NONE = "none"
    CREATED = "created"
    HARDWARE_CONFIGURED = "hardware-configured"
    DISK_ATTACHED = "disk-attached"
    MEDIA_ATTACHED = "media-attached"
    NETWORK_ATTACHED = "network-attached"
    READY = "ready"


PROVISION_ORDER = list(ProvisionState)


@dataclass
class ProvisionResult:
    vm_name: str
    vm_uuid: Optional[str] = None
    state: ProvisionState = ProvisionState.NONE
    manual: bool = False
    steps_run: List[str] = field(default_factory=list)
    steps_skipped: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class UTMVersion:
    major: int
    minor: int
    patch: int
    raw: str

    @classmethod
    def parse(cls, raw: str) -> "UTMVersion":
        parts = raw.strip().split(".")
        if len(parts) < 2:
            raise ManagerError(f"Invalid UTM version format: {raw}")
        try:
            major = int(parts[0])
            minor = int(parts[1])
        except ValueError:
            raise ManagerError(f"Invalid UTM version format: {raw}")
        patch = 0
        if len(parts) >= 3:
            try:
                patch = int(parts[2])
            except ValueError:
                patch = 0
        return cls(major=major, minor=minor, patch=patch, raw=raw.strip())

    def at_least(self, major: int, minor: int) -> bool:
        return (self.major, self.minor) >= (major, minor)


@dataclass
class MigrationResult:
    source: Path
    destination: Path
    migrated: bool = False
    skipped: bool = False
    error: Optional[str] = None
