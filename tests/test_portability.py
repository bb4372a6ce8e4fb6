"""Tests for utm_runner.portability module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from utm_runner.exceptions import ManagerError, UnsupportedVersion
from utm_runner.models import UTMVersion
from utm_runner.portability import Driver, export_vm, guest_tools_iso_path, import_vm, installed_driver


class TestDriver:
    @pytest.mark.parametrize("raw,expected", [("4.6.0", True), ("4.7.1", True), ("5.0.0", True), ("4.5.9", False)])
    def test_capabilities(self, raw, expected):
        driver = Driver.for_version(UTMVersion.parse(raw))
        assert driver.supports_export is expected
        assert driver.supports_import is expected
        assert driver.supports_guest_tools is expected

    def test_installed_driver_handles_bad_version(self, fake_utm):
        fake_utm.version = "garbage"
        assert installed_driver(fake_utm.bridge) is None


class TestExport:
    def test_export(self, fake_utm, tmp_path):
        vm_id = fake_utm.add_vm("dev")
        output = tmp_path / "out" / "dev.utm"
        assert export_vm(fake_utm.bridge, fake_utm.ctl, "dev", output) == output.resolve()
        assert output.parent.is_dir()
        source = fake_utm.inline_calls[0]
        assert f'export virtual machine id "{vm_id}"' in source
        assert f'to POSIX file "{output.resolve()}"' in source

    def test_old_version_rejected(self, fake_utm, tmp_path):
        fake_utm.add_vm("dev")
        fake_utm.version = "4.5.2"
        with pytest.raises(UnsupportedVersion, match=r"4\.6 or newer \(installed: 4\.5\.2\)"):
            export_vm(fake_utm.bridge, fake_utm.ctl, "dev", tmp_path / "dev.utm")
        assert fake_utm.inline_calls == []


class TestImport:
    def test_import_returns_new_uuid(self, fake_utm, tmp_path):
        bundle = tmp_path / "dev.utm"
        bundle.mkdir()
        new_id = import_vm(fake_utm.bridge, bundle)
        assert new_id in fake_utm.vms

    def test_missing_file(self, fake_utm, tmp_path):
        with pytest.raises(ManagerError, match="UTM file not found"):
            import_vm(fake_utm.bridge, tmp_path / "missing.utm")

    def test_old_version_rejected(self, fake_utm, tmp_path):
        fake_utm.version = "4.4.0"
        with pytest.raises(UnsupportedVersion):
            import_vm(fake_utm.bridge, tmp_path / "dev.utm")


class TestGuestTools:
    def test_found(self, tmp_path):
        iso = tmp_path / "utm-guest-tools-latest.iso"
        iso.write_bytes(b"iso")
        with patch("utm_runner.portability.GUEST_TOOLS_ISO", iso):
            assert guest_tools_iso_path() == iso

    def test_missing(self, tmp_path):
        with patch("utm_runner.portability.GUEST_TOOLS_ISO", tmp_path / "none.iso"):
            with pytest.raises(ManagerError, match="Guest tools ISO not found"):
                guest_tools_iso_path()

    def test_version_gate(self, fake_utm):
        fake_utm.version = "4.5.0"
        with pytest.raises(UnsupportedVersion, match="Guest tools"):
            guest_tools_iso_path(fake_utm.bridge)
