"""Tests for utm_runner.host module."""

from __future__ import annotations

from unittest.mock import patch

from utm_runner.host import detect_host, host_arch


class TestHostArch:
    def test_arm64_normalized(self):
        with patch("utm_runner.host.platform.machine", return_value="arm64"):
            assert host_arch() == "aarch64"

    def test_x86_64(self):
        with patch("utm_runner.host.platform.machine", return_value="x86_64"):
            assert host_arch() == "x86_64"


class TestDetectHost:
    def test_macos_with_utm(self, tmp_paths, monkeypatch, tmp_path):
        binary = tmp_path / "utmctl"
        binary.write_text("")
        monkeypatch.setenv("UTMCTL_PATH", str(binary))
        with patch("utm_runner.host.platform.system", return_value="Darwin"), patch(
            "utm_runner.host.platform.machine", return_value="arm64"
        ), patch("utm_runner.host.is_utm_running", return_value=True):
            info = detect_host(tmp_paths)
        assert info.is_macos is True
        assert info.arch == "aarch64"
        assert info.utmctl_path == str(binary)
        assert info.utm_installed is True
        assert info.utm_running is True

    def test_linux_host(self, tmp_paths, monkeypatch, capsys):
        monkeypatch.setenv("UTMCTL_PATH", "/nonexistent/utmctl")
        with patch("utm_runner.host.platform.system", return_value="Linux"), patch(
            "utm_runner.host.is_utm_running"
        ) as running:
            info = detect_host(tmp_paths)
        assert info.is_macos is False
        assert info.utm_installed is False
        assert info.utm_running is False
        running.assert_not_called()
        assert "requires macOS" in capsys.readouterr().out
