"""Host environment detection for utm-runner."""

from __future__ import annotations

import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from utm_runner.config import find_utmctl
from utm_runner.constants import ARCH_ALIASES
from utm_runner.models import Paths
from utm_runner.osascript import is_utm_running
from utm_runner.utils import log


@dataclass
class HostInfo:
    platform: str  # "darwin", "linux", ...
    arch: str  # normalized: "aarch64" or "x86_64"
    is_macos: bool
    utmctl_path: str
    utm_installed: bool
    utm_running: bool


def host_arch() -> str:
    machine = platform.machine().lower()
    return ARCH_ALIASES.get(machine, machine)


def _utmctl_exists(path: str) -> bool:
    return Path(path).exists()


def detect_host(paths: Optional[Paths] = None) -> HostInfo:
    """Detect platform, architecture and UTM availability."""
    system = platform.system().lower()
    is_macos = system == "darwin"
    utmctl_path = find_utmctl(paths)
    installed = _utmctl_exists(utmctl_path)
    running = is_macos and is_utm_running()

    if not is_macos:
        log("WARN", f"Host platform is {system}; UTM automation requires macOS")
    if not installed:
        log("DEBUG", f"utmctl not found at {utmctl_path}")

    return HostInfo(
        platform=system,
        arch=host_arch(),
        is_macos=is_macos,
        utmctl_path=utmctl_path,
        utm_installed=installed,
        utm_running=running,
    )
