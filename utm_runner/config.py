"""Paths configuration and environment variable parsing for utm-runner."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

from utm_runner.constants import (
    DEFAULT_DATA_DIR,
    DEFAULT_GALLERY_PATH,
    LEGACY_APP,
    LEGACY_DATA,
    UTMCTL_FALLBACKS,
    UTMCTL_RELATIVE,
)
from utm_runner.models import Paths
from utm_runner.utils import ensure_directory, get_env, get_env_path, log, parse_int_env

_PATHS: Optional[Paths] = None


def default_paths() -> Paths:
    """Global locations, shared across projects, with per-directory overrides."""
    root = get_env_path("UTM_DATA_DIR", DEFAULT_DATA_DIR)
    return Paths(
        root=root,
        app=get_env_path("UTM_APP_PATH", root / "UTM.app"),
        vms=get_env_path("UTM_VMS_DIR", root / "vms"),
        iso=get_env_path("UTM_ISO_DIR", root / "iso"),
        share=get_env_path("UTM_SHARE_DIR", root / "share"),
    )


def legacy_paths(project_dir: Optional[Path] = None) -> Paths:
    """Per-project locations used by older installs."""
    if project_dir is None:
        project_dir = get_env_path("UTM_LEGACY_DIR", Path.cwd())
    data = project_dir / LEGACY_DATA
    return Paths(
        root=data,
        app=project_dir / LEGACY_APP,
        vms=data / "vms",
        iso=data / "iso",
        share=data / "share",
    )


def _has_isos(directory: Path) -> bool:
    if not directory.is_dir():
        return False
    return any(p.suffix.lower() == ".iso" for p in directory.iterdir() if p.is_file())


def resolve_paths(project_dir: Optional[Path] = None) -> Paths:
    """Resolve the paths configuration.

    Assets that only exist at the legacy per-project location are used from
    there until ``migrate`` moves them to the global root.
    """
    paths = default_paths()
    legacy = legacy_paths(project_dir)

    app = paths.app
    if get_env("UTM_APP_PATH") is None and not (paths.app / UTMCTL_RELATIVE).exists():
        if (legacy.app / UTMCTL_RELATIVE).exists():
            log("WARN", f"Using legacy UTM.app at {legacy.app} (run 'utm-runner migrate' to move it)")
            app = legacy.app

    iso = paths.iso
    if get_env("UTM_ISO_DIR") is None and not _has_isos(paths.iso) and _has_isos(legacy.iso):
        log("WARN", f"Using legacy ISO directory {legacy.iso} (run 'utm-runner migrate' to move it)")
        iso = legacy.iso

    return Paths(root=paths.root, app=app, vms=paths.vms, iso=iso, share=paths.share)


def get_paths() -> Paths:
    global _PATHS
    if _PATHS is None:
        _PATHS = resolve_paths()
    return _PATHS


def set_paths(paths: Paths) -> None:
    """Repoint the process-wide paths configuration (used after migration)."""
    global _PATHS
    _PATHS = paths
    log("DEBUG", f"Paths configuration updated: app={paths.app} iso={paths.iso}")


def reset_paths() -> None:
    global _PATHS
    _PATHS = None


def ensure_directories(paths: Paths) -> None:
    for directory in (paths.root, paths.iso, paths.vms, paths.share):
        ensure_directory(directory)


def find_utmctl(paths: Optional[Paths] = None) -> str:
    """Locate the utmctl binary, preferring the managed install."""
    override = (get_env("UTMCTL_PATH") or "").strip()
    if override:
        return override
    if paths is None:
        paths = get_paths()
    candidates = [paths.app / UTMCTL_RELATIVE, legacy_paths().app / UTMCTL_RELATIVE]
    candidates.extend(UTMCTL_FALLBACKS)
    for candidate in candidates:
        if candidate.exists():
            return str(candidate)
    return shutil.which("utmctl") or "utmctl"


def gallery_path() -> Path:
    return get_env_path("UTM_GALLERY", DEFAULT_GALLERY_PATH)


def download_retries() -> int:
    return parse_int_env("DOWNLOAD_RETRIES", "3", min_val=1, max_val=20)
