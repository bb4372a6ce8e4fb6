"""Global constants and enum tables for utm-runner."""

from __future__ import annotations

import os
import re
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_GALLERY_PATH = PACKAGE_DIR / "gallery.yaml"
SCRIPTS_DIR = PACKAGE_DIR / "scripts"

# Global (shared across projects) storage root.
DEFAULT_DATA_DIR = Path.home() / "utm-runner-sdks" / "utm"

# Per-project locations used before assets moved to the global root.
LEGACY_APP = Path(".bin") / "UTM.app"
LEGACY_DATA = Path(".data") / "utm"

UTMCTL_RELATIVE = Path("Contents") / "MacOS" / "utmctl"
UTMCTL_FALLBACKS = (
    Path("/opt/homebrew/bin/utmctl"),
    Path("/usr/local/bin/utmctl"),
    Path("/Applications/UTM.app/Contents/MacOS/utmctl"),
)

GUEST_TOOLS_ISO = (
    Path.home()
    / "Library"
    / "Containers"
    / "com.utmapp.UTM"
    / "Data"
    / "Library"
    / "Application Support"
    / "GuestSupportTools"
    / "utm-guest-tools-latest.iso"
)

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

UUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
VERSION_RE = re.compile(r"^(\d+\.\d+\.\d+)$")
CHECKSUM_RE = re.compile(r"^(sha256:)?[0-9a-f]{64}$")
URL_RE = re.compile(r"^https?://")

# Apple Events authorization failure reported by osascript.
PERMISSION_DENIED_MARKERS = ("-1743", "not authorized to send apple events", "not allowed to send apple events")

# Scripting bridge enum codes, keyed by configuration vocabulary.
BACKEND_CODES = {
    "qemu": "QeMu",
    "apple": "ApLe",
}

CONTROLLER_CODES = {
    "none": "QdIn",
    "ide": "QdIi",
    "scsi": "QdIs",
    "sd": "QdId",
    "mtd": "QdIm",
    "floppy": "QdIf",
    "pflash": "QdIp",
    "virtio": "QdIv",
    "nvme": "QdIN",
    "usb": "QdIu",
}

NETWORK_MODE_CODES = {
    "shared": "ShRd",  # NAT with host access, no port forwarding
    "emulated": "EmUd",  # emulated VLAN, supports port forwarding
    "bridged": "BrDg",
    "host": "HsOn",
}

PROTOCOL_CODES = {
    "tcp": "TcPp",
    "udp": "UdPp",
}

ENUM_TABLES = {
    "backend": BACKEND_CODES,
    "controller": CONTROLLER_CODES,
    "network": NETWORK_MODE_CODES,
    "protocol": PROTOCOL_CODES,
}

ARCH_ALIASES = {
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "amd64": "x86_64",
    "x86_64": "x86_64",
}

SUPPORTED_OS = {"linux", "windows", "macos"}

MIN_DISK_MB = 20480
DISK_CONTROLLER = "virtio"
MEDIA_CONTROLLER = "usb"
DEFAULT_NETWORK_MODE = "shared"
DEFAULT_HOST_ADDRESS = "127.0.0.1"

# UTM 4.6 introduced export/import and guest tools over AppleScript.
MIN_PORTABILITY_VERSION = (4, 6)

# utmctl list/status vocabulary -> run state
UTMCTL_STATES = {
    "started": "running",
    "stopped": "stopped",
    "suspended": "suspended",
    "paused": "suspended",
}

GUEST_AGENT_MARKERS = ("guest agent", "qemu-ga", "not running", "operation not supported")

DOWNLOAD_CHUNK = 1024 * 256

# Shells that interpret a command string inside the guest, keyed by guest OS.
GUEST_SHELLS = {
    "linux": ("sh", "-c"),
    "macos": ("sh", "-c"),
    "windows": ("cmd.exe", "/c"),
}
# Drive-letter or UNC paths, or a Windows shell, mark a command as Windows-bound.
WINDOWS_COMMAND_RE = re.compile(r"^\s*\"?(?:[A-Za-z]:[\\/]|\\\\|(?:cmd|powershell|pwsh)(?:\.exe)?\b)", re.IGNORECASE)
POSIX_REMOTE_DIR = "/tmp"
WINDOWS_REMOTE_DIR = "C:\\Users\\User"
