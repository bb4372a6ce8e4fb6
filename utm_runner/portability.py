"""VM export/import and the UTM features gated on the installed version."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from utm_runner.constants import GUEST_TOOLS_ISO, MIN_PORTABILITY_VERSION
from utm_runner.exceptions import ManagerError, UnsupportedVersion
from utm_runner.models import UTMVersion
from utm_runner.osascript import applescript_quote
from utm_runner.utils import ensure_directory, extract_uuid, log

_REQUIRED = "{}.{}".format(*MIN_PORTABILITY_VERSION)


@dataclass(frozen=True)
class Driver:
    """Capabilities of one installed UTM version."""

    version: UTMVersion
    supports_export: bool
    supports_import: bool
    supports_guest_tools: bool

    @classmethod
    def for_version(cls, version: UTMVersion) -> "Driver":
        modern = version.at_least(*MIN_PORTABILITY_VERSION)
        return cls(version=version, supports_export=modern, supports_import=modern, supports_guest_tools=modern)

    def require(self, feature: str, supported: bool) -> None:
        if not supported:
            raise UnsupportedVersion(
                f"{feature} requires UTM {_REQUIRED} or newer (installed: {self.version.raw}). "
                f"Run 'utm-runner install --force' to upgrade."
            )


def export_vm(bridge, ctl, name: str, output: Path) -> Path:
    """Write VM ``name`` to a portable .utm bundle at ``output``."""
    driver = Driver.for_version(bridge.version())
    driver.require("Export", driver.supports_export)
    uuid = ctl.uuid_for(name)
    target = Path(output).expanduser().resolve()
    ensure_directory(target.parent)
    bridge.inline(
        f'tell application "UTM" to export virtual machine id {applescript_quote(uuid)} '
        f"to POSIX file {applescript_quote(str(target))}"
    )
    log("SUCCESS", f"Exported '{name}' to {target}")
    return target


def import_vm(bridge, path: Path) -> str:
    """Register the .utm bundle at ``path`` with UTM and return the new VM's UUID."""
    driver = Driver.for_version(bridge.version())
    driver.require("Import", driver.supports_import)
    source = Path(path).expanduser().resolve()
    if not source.exists():
        raise ManagerError(f"UTM file not found: {source}")
    output = bridge.inline(
        f'tell application "UTM" to import new virtual machine from POSIX file {applescript_quote(str(source))}'
    )
    uuid = extract_uuid(output)
    log("SUCCESS", f"Imported {source.name} as {uuid}")
    return uuid


def guest_tools_iso_path(bridge=None) -> Path:
    """Return UTM's cached guest tools ISO, checking the version when a bridge is given."""
    if bridge is not None:
        driver = Driver.for_version(bridge.version())
        driver.require("Guest tools", driver.supports_guest_tools)
    if not GUEST_TOOLS_ISO.exists():
        raise ManagerError(
            f"Guest tools ISO not found at {GUEST_TOOLS_ISO}. "
            f"Open a VM in UTM and choose 'Install Windows Guest Tools' to download it."
        )
    return GUEST_TOOLS_ISO


def installed_driver(bridge) -> Optional[Driver]:
    try:
        return Driver.for_version(bridge.version())
    except ManagerError as exc:
        log("DEBUG", f"Could not determine UTM version: {exc}")
        return None
