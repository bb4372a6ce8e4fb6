"""Installation media retrieval and UTM application install."""

from __future__ import annotations

import plistlib
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from utm_runner.config import download_retries
from utm_runner.exceptions import IntegrityError, ManagerError
from utm_runner.models import GalleryEntry, GalleryMeta, Paths
from utm_runner.utils import (
    download_file_with_retry,
    ensure_directory,
    format_size,
    log,
    run,
    sha256_file,
)


def _expected_digest(checksum: str) -> str:
    value = checksum.strip().lower()
    if value.startswith("sha256:"):
        value = value[len("sha256:"):]
    return value


def media_path(entry: GalleryEntry, paths: Paths) -> Path:
    return paths.iso / entry.media.filename


def verify_checksum(path: Path, expected: str) -> bool:
    """Return True when the sha256 of ``path`` matches ``expected``."""
    actual = sha256_file(path)
    matches = actual == _expected_digest(expected)
    if not matches:
        log("DEBUG", f"Checksum mismatch for {path}: expected {_expected_digest(expected)}, got {actual}")
    return matches


def ensure_media(entry: GalleryEntry, paths: Paths, force: bool = False) -> Path:
    """Return a cached, verified copy of the entry's installation media.

    A cached file is reused only when its checksum verifies. A fresh
    download that fails verification is deleted before IntegrityError is
    raised, so the next attempt starts clean.
    """
    target = media_path(entry, paths)
    if target.exists() and not force:
        if verify_checksum(target, entry.media.checksum):
            log("INFO", f"Using cached media {target}")
            return target
        log("WARN", f"Cached media {target} failed verification; downloading again")
        target.unlink()
    elif target.exists():
        target.unlink()

    ensure_directory(paths.iso)
    size_hint = f" ({format_size(entry.media.size)})" if entry.media.size else ""
    download_file_with_retry(
        entry.media.url,
        target,
        label=f"Downloading {entry.name}{size_hint}",
        retries=download_retries(),
    )

    if not verify_checksum(target, entry.media.checksum):
        target.unlink(missing_ok=True)
        raise IntegrityError(
            f"Checksum mismatch for {entry.media.filename} downloaded from {entry.media.url}.\n"
            f"  The corrupted file was removed. Retry with: utm-runner install {entry.key} --force"
        )
    log("SUCCESS", f"Verified {target.name}")
    return target


def is_utm_installed(paths: Paths) -> bool:
    return paths.utmctl.exists()


def _mount_dmg(dmg: Path, mount_point: Path) -> None:
    try:
        run(["hdiutil", "attach", str(dmg), "-mountpoint", str(mount_point), "-nobrowse", "-quiet"])
    except (OSError, subprocess.CalledProcessError) as exc:
        raise ManagerError(f"Failed to mount {dmg}: {exc}") from exc


def _unmount_dmg(mount_point: Path) -> None:
    try:
        run(["hdiutil", "detach", str(mount_point), "-quiet"])
    except (OSError, subprocess.CalledProcessError) as exc:
        log("WARN", f"Failed to detach {mount_point}: {exc}")


def install_utm(meta: GalleryMeta, paths: Paths, force: bool = False) -> bool:
    """Download the pinned UTM release and copy UTM.app into ``paths.app``.

    Returns False when UTM was already installed and ``force`` is not set.
    """
    release = meta.utm_app
    if release is None:
        raise ManagerError("Gallery manifest does not pin a UTM release (meta.utm_app)")
    if is_utm_installed(paths) and not force:
        log("INFO", f"UTM is already installed at {paths.app} (use --force to reinstall)")
        return False

    log("INFO", f"Installing UTM v{release.version}...")
    ensure_directory(paths.app.parent)
    dmg = paths.app.parent / "UTM.dmg"
    download_file_with_retry(release.url, dmg, label=f"Downloading UTM {release.version}", retries=download_retries())
    try:
        if release.checksum and not verify_checksum(dmg, release.checksum):
            raise IntegrityError(
                f"Checksum mismatch for UTM {release.version} from {release.url}.\n"
                f"  Retry with: utm-runner install --force"
            )
        mount_point = Path(tempfile.mkdtemp(prefix="utm-mount-"))
        _mount_dmg(dmg, mount_point)
        try:
            if paths.app.exists():
                shutil.rmtree(paths.app)
            log("INFO", f"Copying UTM.app to {paths.app}...")
            shutil.copytree(mount_point / "UTM.app", paths.app, symlinks=True)
        finally:
            _unmount_dmg(mount_point)
            shutil.rmtree(mount_point, ignore_errors=True)
    finally:
        dmg.unlink(missing_ok=True)

    log("SUCCESS", f"UTM v{release.version} installed at {paths.app}")
    return True


def uninstall_utm(paths: Paths) -> bool:
    if not paths.app.exists():
        log("INFO", "UTM is not installed")
        return False
    log("INFO", f"Removing {paths.app}...")
    shutil.rmtree(paths.app)
    log("SUCCESS", "UTM uninstalled")
    return True


def installed_version(paths: Paths) -> Optional[str]:
    """Read CFBundleShortVersionString from the managed UTM.app."""
    plist = paths.app / "Contents" / "Info.plist"
    if not plist.exists():
        return None
    with open(plist, "rb") as handle:
        data = plistlib.load(handle)
    return data.get("CFBundleShortVersionString")
