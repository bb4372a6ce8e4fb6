"""Tests for utm_runner.migrate module."""

from __future__ import annotations

import errno
from unittest.mock import patch

import pytest

from utm_runner import config
from utm_runner.config import legacy_paths
from utm_runner.constants import UTMCTL_RELATIVE
from utm_runner.exceptions import ManagerError
from utm_runner.migrate import migrate_all


def _make_app(app):
    utmctl = app / UTMCTL_RELATIVE
    utmctl.parent.mkdir(parents=True)
    utmctl.write_text("#!/bin/sh\n")


@pytest.fixture
def legacy(tmp_path):
    paths = legacy_paths(tmp_path / "project")
    _make_app(paths.app)
    paths.iso.mkdir(parents=True)
    (paths.iso / "debian.iso").write_bytes(b"debian")
    (paths.iso / "notes.txt").write_text("keep me")
    return paths


class TestMigrateAll:
    def test_moves_app_and_isos(self, legacy, tmp_paths):
        results = migrate_all(legacy, tmp_paths)

        assert [r.migrated for r in results] == [True, True]
        assert (tmp_paths.app / UTMCTL_RELATIVE).exists()
        assert (tmp_paths.iso / "debian.iso").read_bytes() == b"debian"
        assert not legacy.app.exists()
        assert not (legacy.iso / "debian.iso").exists()
        assert (legacy.iso / "notes.txt").exists()

    def test_repoints_paths_after_success(self, legacy, tmp_paths):
        migrate_all(legacy, tmp_paths)
        assert config.get_paths() == tmp_paths

    def test_rerun_is_noop(self, legacy, tmp_paths):
        migrate_all(legacy, tmp_paths)
        results = migrate_all(legacy, tmp_paths)
        assert [r.migrated for r in results] == [False]
        assert results[0].skipped is True
        assert (tmp_paths.iso / "debian.iso").read_bytes() == b"debian"

    def test_existing_destination_wins(self, legacy, tmp_paths):
        tmp_paths.iso.mkdir(parents=True)
        (tmp_paths.iso / "debian.iso").write_bytes(b"already here")
        results = migrate_all(legacy, tmp_paths)
        iso_result = results[1]
        assert iso_result.skipped is True
        assert (tmp_paths.iso / "debian.iso").read_bytes() == b"already here"
        assert not (legacy.iso / "debian.iso").exists()

    def test_cross_device_copy(self, legacy, tmp_paths):
        with patch("utm_runner.utils.os.rename", side_effect=OSError(errno.EXDEV, "cross-device link")):
            migrate_all(legacy, tmp_paths)
        assert (tmp_paths.app / UTMCTL_RELATIVE).exists()
        assert (tmp_paths.iso / "debian.iso").read_bytes() == b"debian"
        assert not legacy.app.exists()

    def test_interrupted_copy_keeps_legacy_iso(self, legacy, tmp_paths):
        (legacy.iso / "debian.iso").write_bytes(b"FULL-DEBIAN-IMAGE")

        def short_copy(src, dst, *args, **kwargs):
            with open(dst, "wb") as handle:
                handle.write(b"FULL")
            raise OSError(errno.ENOSPC, "No space left on device")

        with patch("utm_runner.utils.os.rename", side_effect=OSError(errno.EXDEV, "cross-device link")), patch(
            "utm_runner.utils.shutil.copy2", side_effect=short_copy
        ):
            with pytest.raises(ManagerError, match="debian.iso"):
                migrate_all(legacy, tmp_paths)
        assert not (tmp_paths.iso / "debian.iso").exists()
        assert [p.name for p in tmp_paths.iso.iterdir()] == []
        assert (legacy.iso / "debian.iso").read_bytes() == b"FULL-DEBIAN-IMAGE"

        migrate_all(legacy, tmp_paths)
        assert (tmp_paths.iso / "debian.iso").read_bytes() == b"FULL-DEBIAN-IMAGE"
        assert not (legacy.iso / "debian.iso").exists()

    def test_failure_leaves_paths_untouched(self, legacy, tmp_paths):
        before = config.get_paths()
        with patch("utm_runner.migrate.move_path", side_effect=[None, OSError("disk full")]):
            with pytest.raises(ManagerError, match="debian.iso"):
                migrate_all(legacy, tmp_paths)
        assert config.get_paths() == before

    def test_nothing_to_migrate(self, tmp_path, tmp_paths):
        results = migrate_all(legacy_paths(tmp_path / "empty"), tmp_paths)
        assert results[0].skipped is True
        assert len(results) == 1
