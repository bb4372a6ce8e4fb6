"""Move legacy per-project UTM assets to the global storage root."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Optional

from utm_runner import config
from utm_runner.constants import UTMCTL_RELATIVE
from utm_runner.exceptions import ManagerError
from utm_runner.models import MigrationResult, Paths
from utm_runner.utils import ensure_directory, log, move_path


def migrate_app(legacy: Paths, target: Paths) -> MigrationResult:
    result = MigrationResult(source=legacy.app, destination=target.app)
    if not (legacy.app / UTMCTL_RELATIVE).exists():
        result.skipped = True
        return result
    if (target.app / UTMCTL_RELATIVE).exists():
        log("INFO", f"UTM.app already present at {target.app}; removing legacy copy")
        shutil.rmtree(legacy.app)
        result.skipped = True
        return result

    log("INFO", f"Migrating UTM.app from {legacy.app} to {target.app}...")
    try:
        move_path(legacy.app, target.app)
    except OSError as exc:
        result.error = str(exc)
        raise ManagerError(f"Failed to migrate UTM.app to {target.app}: {exc}") from exc
    result.migrated = True
    return result


def migrate_isos(legacy: Paths, target: Paths) -> List[MigrationResult]:
    results: List[MigrationResult] = []
    if not legacy.iso.is_dir():
        return results
    ensure_directory(target.iso)

    for source in sorted(legacy.iso.iterdir()):
        if not source.is_file() or source.suffix.lower() != ".iso":
            continue
        destination = target.iso / source.name
        result = MigrationResult(source=source, destination=destination)
        if destination.exists():
            log("INFO", f"{source.name} already present at {target.iso}; removing legacy copy")
            source.unlink()
            result.skipped = True
        else:
            log("INFO", f"Migrating {source.name}...")
            try:
                move_path(source, destination)
                result.migrated = True
            except OSError as exc:
                log("ERROR", f"Failed to migrate {source.name}: {exc}")
                result.error = str(exc)
        results.append(result)

    if not any(legacy.iso.iterdir()):
        legacy.iso.rmdir()
    return results


def migrate_all(legacy: Optional[Paths] = None, target: Optional[Paths] = None) -> List[MigrationResult]:
    """Move UTM.app and cached ISOs, then repoint the paths configuration.

    Destinations that already hold the asset are left alone, so re-running
    after a completed migration changes nothing.
    """
    if legacy is None:
        legacy = config.legacy_paths()
    if target is None:
        target = config.default_paths()

    log("INFO", f"Legacy paths: {legacy.app}, {legacy.iso}")
    log("INFO", f"Global paths: {target.app}, {target.iso}")

    results = [migrate_app(legacy, target)]
    results.extend(migrate_isos(legacy, target))

    failed = [r for r in results if r.error]
    if failed:
        names = ", ".join(Path(r.source).name for r in failed)
        raise ManagerError(f"Migration incomplete; failed to move: {names}")

    config.set_paths(target)
    moved = sum(1 for r in results if r.migrated)
    if moved:
        log("SUCCESS", f"Migrated {moved} item(s) to {target.root}")
    else:
        log("INFO", "Nothing to migrate")
    return results
