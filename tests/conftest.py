"""Shared test fixtures: temporary paths, a sample gallery and an in-memory UTM."""

from __future__ import annotations

import uuid as uuidlib
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from utm_runner import config, gallery
from utm_runner.enums import reverse
from utm_runner.exceptions import ManagerError, NotResponding
from utm_runner.models import (
    Drive,
    GalleryEntry,
    HardwareProfile,
    MediaSource,
    NetworkInterface,
    Paths,
    PortForward,
    RunState,
    UTMVersion,
    VMInstance,
)

SAMPLE_GALLERY = """\
meta:
  schema_version: "1"
  utm_app:
    version: "4.6.4"
    url: https://example.com/UTM.dmg
    checksum: sha256:{checksum}
vms:
  debian-13-arm:
    name: Debian 13 Trixie
    description: Debian for tests
    os: linux
    arch: arm64
    tags: [linux, debian]
    template:
      ram: 4096
      disk: 32768
      cpu: 4
    iso:
      url: https://example.com/debian-arm64.iso
      filename: debian-arm64.iso
      size: 1024
      checksum: sha256:{checksum}
  win-11-arm:
    name: Windows 11
    os: windows
    arch: aarch64
    tags: [windows, desktop]
    template:
      ram: 8192
      disk: 65536
      cpu: 4
    iso:
      url: https://example.com/win11.iso
      filename: win11.iso
      checksum: {checksum}
  ubuntu-amd64:
    name: Ubuntu x86
    os: linux
    arch: amd64
    tags: [linux, ubuntu, emulated]
    template:
      ram: 2048
      disk: 10240
      cpu: 2
    iso:
      url: http://example.com/ubuntu-amd64.iso
      filename: ubuntu-amd64.iso
      checksum: sha256:{checksum}
"""

FAKE_CHECKSUM = "a" * 64


@pytest.fixture(autouse=True)
def _reset_process_state(monkeypatch):
    """Keep process-wide paths and the gallery cache from leaking between tests."""
    for name in (
        "UTM_DATA_DIR",
        "UTM_APP_PATH",
        "UTM_VMS_DIR",
        "UTM_ISO_DIR",
        "UTM_SHARE_DIR",
        "UTM_LEGACY_DIR",
        "UTM_GALLERY",
        "UTMCTL_PATH",
        "DOWNLOAD_RETRIES",
    ):
        monkeypatch.delenv(name, raising=False)
    config.reset_paths()
    gallery._GALLERY = None
    yield
    config.reset_paths()
    gallery._GALLERY = None


@pytest.fixture
def gallery_file(tmp_path) -> Path:
    path = tmp_path / "gallery.yaml"
    path.write_text(SAMPLE_GALLERY.format(checksum=FAKE_CHECKSUM))
    return path


@pytest.fixture
def tmp_paths(tmp_path) -> Paths:
    root = tmp_path / "utm"
    return Paths(root=root, app=root / "UTM.app", vms=root / "vms", iso=root / "iso", share=root / "share")


@pytest.fixture
def debian_entry() -> GalleryEntry:
    return GalleryEntry(
        key="debian-13-arm",
        name="Debian 13 Trixie",
        os="linux",
        arch="arm64",
        hardware=HardwareProfile(ram_mb=4096, disk_mb=32768, cpus=4),
        media=MediaSource(
            url="https://example.com/debian-arm64.iso",
            checksum=f"sha256:{FAKE_CHECKSUM}",
            filename="debian-arm64.iso",
            size=1024,
        ),
        tags=("linux", "debian"),
    )


class FakeUTM:
    """In-memory stand-in for the UTM application.

    ``bridge`` answers the embedded AppleScripts and ``ctl`` answers the
    utmctl calls, both against the same VM table.
    """

    def __init__(self) -> None:
        self.vms: Dict[str, dict] = {}
        self.calls: List[tuple] = []
        self.inline_calls: List[str] = []
        self.version = "4.6.4"
        self.failures: Dict[str, Exception] = {}
        self.bridge = FakeBridge(self)
        self.ctl = FakeCtl(self)

    def add_vm(self, name: str, state: RunState = RunState.STOPPED) -> str:
        vm_id = str(uuidlib.uuid4()).upper()
        self.vms[vm_id] = {"name": name, "state": state, "drives": [], "interfaces": [], "config": {}}
        return vm_id

    def drives(self, vm_id: str) -> List[Drive]:
        return self.vms[vm_id]["drives"]

    def interfaces(self, vm_id: str) -> List[NetworkInterface]:
        return self.vms[vm_id]["interfaces"]

    def script_calls(self, script: str) -> List[tuple]:
        return [args for name, args in self.calls if name == script]


def _option(args, flag: str) -> Optional[str]:
    args = list(args)
    if flag in args:
        return args[args.index(flag) + 1]
    return None


class FakeBridge:
    def __init__(self, utm: FakeUTM) -> None:
        self.utm = utm

    def run(self, script: str, *args) -> str:
        self.utm.calls.append((script, args))
        if script in self.utm.failures:
            raise self.utm.failures[script]
        handler = getattr(self, "_" + script.replace(".applescript", ""))
        return handler(*args)

    def inline(self, source: str) -> str:
        self.utm.inline_calls.append(source)
        if "import new virtual machine" in source:
            vm_id = self.utm.add_vm("Imported")
            return f"virtual machine id {vm_id}"
        return ""

    def version(self) -> UTMVersion:
        return UTMVersion.parse(self.utm.version)

    def _create_vm(self, *args) -> str:
        vm_id = self.utm.add_vm(_option(args, "--name"))
        self.utm.vms[vm_id]["config"]["backend"] = reverse("backend", _option(args, "--backend"))
        self.utm.vms[vm_id]["config"]["arch"] = _option(args, "--arch")
        return vm_id

    def _customize_vm(self, vm_id, *args) -> str:
        cfg = self.utm.vms[vm_id]["config"]
        cfg.update(
            cpus=int(_option(args, "--cpus")),
            memory=int(_option(args, "--memory")),
            uefi=_option(args, "--uefi-boot") == "true",
            hypervisor=_option(args, "--use-hypervisor") == "true",
        )
        self.utm.vms[vm_id]["name"] = _option(args, "--name")
        return ""

    def _add_drive(self, vm_id, *args) -> str:
        drives = self.utm.drives(vm_id)
        interface = reverse("controller", _option(args, "--interface"))
        drives.append(Drive(index=len(drives), interface=interface, size_mb=int(_option(args, "--size"))))
        return ""

    def _attach_iso(self, vm_id, *args) -> str:
        drives = self.utm.drives(vm_id)
        interface = reverse("controller", _option(args, "--interface"))
        drives.append(Drive(index=len(drives), interface=interface, removable=True, source=_option(args, "--source")))
        return ""

    def _list_drives(self, vm_id) -> str:
        return "".join(
            f"{d.index}|{d.interface}|{str(d.removable).lower()}|{d.size_mb}|{d.source}\n"
            for d in self.utm.drives(vm_id)
        )

    def _add_network_interface(self, vm_id, mode_code) -> str:
        interfaces = self.utm.interfaces(vm_id)
        interfaces.append(NetworkInterface(index=len(interfaces), mode=reverse("network", mode_code)))
        return ""

    def _list_network_interfaces(self, vm_id) -> str:
        return "".join(f"{i.index}|{i.mode}\n" for i in self.utm.interfaces(vm_id))

    def _interface(self, vm_id, args) -> NetworkInterface:
        index = int(_option(args, "--index"))
        for iface in self.utm.interfaces(vm_id):
            if iface.index == index:
                return iface
        raise ManagerError(f"no interface {index}")

    def _list_port_forwards(self, vm_id, *args) -> str:
        return "".join(
            f"{pf.protocol},{pf.guest_address},{pf.guest_port},{pf.host_address},{pf.host_port}\n"
            for pf in self._interface(vm_id, args).port_forwards
        )

    def _add_port_forwards(self, vm_id, *args) -> str:
        iface = self._interface(vm_id, args)
        for rule in args[2:]:
            code, guest_address, guest_port, host_address, host_port = rule.split(",")
            iface.port_forwards.append(
                PortForward(reverse("protocol", code), int(guest_port), int(host_port), guest_address, host_address)
            )
        return ""

    def _clear_port_forwards(self, vm_id, *args) -> str:
        self._interface(vm_id, args).port_forwards = []
        return ""


class FakeCtl:
    def __init__(self, utm: FakeUTM) -> None:
        self.utm = utm
        self.addresses = ["fe80::5054:ff:fe12:3456", "192.168.64.5"]

    def list_vms(self) -> List[VMInstance]:
        return [VMInstance(uuid=k, name=v["name"], state=v["state"]) for k, v in self.utm.vms.items()]

    def find(self, name_or_uuid: str) -> Optional[VMInstance]:
        for vm in self.list_vms():
            if name_or_uuid in (vm.uuid, vm.name):
                return vm
        return None

    def uuid_for(self, name: str) -> str:
        vm = self.find(name)
        if vm is None:
            raise ManagerError(f"VM '{name}' not found in UTM")
        return vm.uuid

    def status(self, name: str) -> RunState:
        return self.utm.vms[self.uuid_for(name)]["state"]

    def require_running(self, name: str) -> None:
        state = self.status(name)
        if state != RunState.RUNNING:
            raise NotResponding(f"VM '{name}' is {state.value}; start it with 'utm-runner start {name}'")

    def start(self, name: str) -> None:
        self.utm.vms[self.uuid_for(name)]["state"] = RunState.RUNNING

    def stop(self, name: str) -> None:
        self.utm.vms[self.uuid_for(name)]["state"] = RunState.STOPPED

    def delete(self, name: str) -> None:
        del self.utm.vms[self.uuid_for(name)]

    def ip_addresses(self, name: str) -> List[str]:
        self.uuid_for(name)
        return list(self.addresses)


@pytest.fixture
def fake_utm() -> FakeUTM:
    return FakeUTM()
