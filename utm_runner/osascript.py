"""AppleScript bridge used to drive the UTM application.

Every call spawns ``osascript`` with the embedded script body on stdin and the
arguments on the command line. Script output is returned as text; anything
structured is parsed by the caller.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from utm_runner.constants import PERMISSION_DENIED_MARKERS, SCRIPTS_DIR, VERSION_RE
from utm_runner.exceptions import BridgeError, PermissionDenied
from utm_runner.models import Paths, UTMVersion
from utm_runner.utils import log, run

PERMISSION_HINT = (
    "Automation permission for UTM is not granted. Open System Settings > Privacy & Security > "
    "Automation and allow your terminal to control UTM, then retry. "
    "To create the VM without automation, re-run with --manual."
)


def load_script(name: str) -> str:
    path = SCRIPTS_DIR / name
    try:
        return path.read_text()
    except OSError as exc:
        raise BridgeError(f"Failed to read script {path}: {exc}") from exc


def _failure(diagnostic: str, returncode: int) -> BridgeError:
    lowered = diagnostic.lower()
    if any(marker in lowered for marker in PERMISSION_DENIED_MARKERS):
        return PermissionDenied(f"{PERMISSION_HINT}\nosascript: {diagnostic}")
    if diagnostic:
        return BridgeError(f"osascript error (exit {returncode}): {diagnostic}")
    return BridgeError(f"osascript error (exit {returncode})")


def _osascript(cmd: list, stdin: Optional[str] = None) -> str:
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, input=stdin, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise BridgeError("osascript not found; UTM automation is only available on macOS") from exc
    stdout = (result.stdout or "").strip()
    stderr = (result.stderr or "").strip()
    if result.returncode != 0:
        raise _failure(stderr or stdout, result.returncode)
    return stdout


def run_script(name: str, *args) -> str:
    """Pipe the embedded script ``name`` to osascript and return its output."""
    body = load_script(name)
    return _osascript(["osascript", "-", *[str(arg) for arg in args]], stdin=body)


def run_inline(source: str) -> str:
    return _osascript(["osascript", "-e", source])


def applescript_quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def get_utm_version() -> str:
    """Return the installed UTM version string (e.g. ``4.6.4``)."""
    try:
        output = run_inline('tell application "System Events" to return version of application "UTM"')
    except PermissionDenied:
        raise
    except BridgeError as exc:
        raise BridgeError(f"Failed to get UTM version (is UTM installed?): {exc}") from exc
    if "get application" in output:
        raise BridgeError("UTM is not installed")
    match = VERSION_RE.match(output)
    if not match:
        raise BridgeError(f"Unexpected UTM version format: {output}")
    return match.group(1)


def is_utm_running() -> bool:
    try:
        result = subprocess.run(["pgrep", "-x", "UTM"], capture_output=True)
    except FileNotFoundError:
        return False
    return result.returncode == 0


def launch_utm(paths: Optional[Paths] = None) -> None:
    """Start UTM if it is not already running."""
    if is_utm_running():
        return
    target = "UTM"
    if paths is not None and Path(paths.app).exists():
        target = str(paths.app)
    try:
        run(["open", "-a", target], capture_output=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        raise BridgeError(f"Failed to launch UTM: {exc}") from exc
    log("INFO", "UTM launched")


class OsaScriptBridge:
    """Bridge executor handed to the lifecycle, network and export layers."""

    def run(self, script: str, *args) -> str:
        return run_script(script, *args)

    def inline(self, source: str) -> str:
        return run_inline(source)

    def version(self) -> UTMVersion:
        return UTMVersion.parse(get_utm_version())
