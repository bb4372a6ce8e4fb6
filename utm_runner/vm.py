"""VM provisioning pipeline and run-state control."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional

from utm_runner.constants import DEFAULT_NETWORK_MODE, DISK_CONTROLLER, MEDIA_CONTROLLER, MIN_DISK_MB
from utm_runner.enums import (
    backend_code,
    controller_code,
    network_mode_code,
    normalize_arch,
    parse_reported,
)
from utm_runner.exceptions import ManagerError
from utm_runner.host import host_arch
from utm_runner.media import ensure_media, media_path
from utm_runner.models import (
    Drive,
    GalleryEntry,
    Paths,
    ProvisionResult,
    ProvisionState,
    RunState,
)
from utm_runner.network import parse_interfaces
from utm_runner.osascript import launch_utm
from utm_runner.utils import ensure_directory, extract_uuid, log

MediaFetcher = Callable[[GalleryEntry, Paths], Path]


def parse_drives(output: str) -> List[Drive]:
    """Parse ``index|interface|removable|size|source`` lines from list_drives."""
    drives: List[Drive] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        parts = line.split("|", 4)
        if len(parts) != 5:
            raise ManagerError(f"Unexpected drive listing line: {line!r}")
        index, interface, removable, size, source = parts
        try:
            drives.append(
                Drive(
                    index=int(index),
                    interface=parse_reported("controller", interface),
                    removable=removable.strip().lower() == "true",
                    size_mb=int(size or 0),
                    source=source.strip(),
                )
            )
        except ValueError as exc:
            raise ManagerError(f"Unexpected drive listing line: {line!r}") from exc
    return drives


def disk_size_mb(entry: GalleryEntry) -> int:
    return max(entry.hardware.disk_mb, MIN_DISK_MB)


def share_dir(entry: GalleryEntry, paths: Paths) -> Path:
    return paths.share / entry.key


def manual_instructions(entry: GalleryEntry, iso_path: Path, share: Path) -> List[str]:
    disk_gb = disk_size_mb(entry) // 1024
    mode = "Virtualize" if normalize_arch(entry.arch) == host_arch() else "Emulate"
    return [
        f"VM setup for '{entry.key}'",
        "=" * 58,
        "",
        "Specs from gallery:",
        f"  Name: {entry.name}",
        f"  RAM:  {entry.hardware.ram_mb} MB",
        f"  CPU:  {entry.hardware.cpus} cores",
        f"  Disk: {disk_gb} GB",
        "",
        "Files:",
        f"  ISO:   {iso_path}  (download with: utm-runner install {entry.key})",
        f"  Share: {share}",
        "",
        "Create the VM in UTM:",
        "=" * 58,
        "1. Click + (Create a New Virtual Machine)",
        f"2. Select: {mode} -> {entry.os.capitalize()}",
        "3. Boot ISO image: browse to",
        f"   {iso_path}",
        f"4. Hardware: RAM={entry.hardware.ram_mb} MB, CPU={entry.hardware.cpus} cores",
        f"5. Storage: {disk_gb} GB",
        "6. Shared Directory: enable and set to",
        f"   {share}",
        f"7. Name: {entry.name}",
        "8. Save and start",
        "",
        "After installing the OS, shared files are available at:",
        f"  Host:  {share}",
        "  Guest: /mnt/share (mount with: sudo mount -t virtiofs share /mnt/share)",
    ]


class VMProvisioner:
    """Turns a gallery entry into a UTM VM, one resumable step at a time.

    Every step after creation checks the VM's current configuration first, so
    re-running the pipeline against a finished VM adds nothing.
    """

    def __init__(
        self,
        entry: GalleryEntry,
        paths: Paths,
        bridge,
        ctl,
        fetch_media: MediaFetcher = ensure_media,
        network_mode: str = DEFAULT_NETWORK_MODE,
        use_hypervisor: Optional[bool] = None,
        launcher: Optional[Callable[[Paths], None]] = launch_utm,
    ) -> None:
        self.entry = entry
        self.paths = paths
        self.bridge = bridge
        self.ctl = ctl
        self.fetch_media = fetch_media
        self.network_mode = network_mode
        if use_hypervisor is None:
            use_hypervisor = normalize_arch(entry.arch) == host_arch()
        self.use_hypervisor = use_hypervisor
        self.launcher = launcher

    def create(self, force: bool = False, manual: bool = False, resume_uuid: Optional[str] = None) -> ProvisionResult:
        result = ProvisionResult(vm_name=self.entry.name)
        share = share_dir(self.entry, self.paths)
        ensure_directory(share)

        if manual:
            for line in manual_instructions(self.entry, media_path(self.entry, self.paths), share):
                print(line)
            result.manual = True
            return result

        # Unknown enum values fail before UTM is touched.
        network_mode_code(self.network_mode)
        backend_code(self.entry.backend)
        normalize_arch(self.entry.arch)

        if self.launcher is not None:
            self.launcher(self.paths)

        try:
            uuid = self._allocate(result, force, resume_uuid)
        except ManagerError as exc:
            exc.step = ProvisionState.CREATED.value
            raise
        result.vm_uuid = uuid
        result.state = ProvisionState.CREATED

        steps = [
            (ProvisionState.HARDWARE_CONFIGURED, self._configure_hardware),
            (ProvisionState.DISK_ATTACHED, self._attach_disk),
            (ProvisionState.MEDIA_ATTACHED, self._attach_media),
            (ProvisionState.NETWORK_ATTACHED, self._attach_network),
        ]
        for state, step in steps:
            log("INFO", f"[{state.value}] {self.entry.name}")
            try:
                ran = step(uuid)
            except ManagerError as exc:
                exc.vm_uuid = uuid
                exc.step = state.value
                raise
            (result.steps_run if ran else result.steps_skipped).append(state.value)
            result.state = state

        result.state = ProvisionState.READY
        log("SUCCESS", f"VM '{self.entry.name}' is ready ({uuid})")
        log("INFO", f"Shared folder: {share}")
        log("INFO", "  Mount in guest: sudo mount -t virtiofs share /mnt/share")
        return result

    def _allocate(self, result: ProvisionResult, force: bool, resume_uuid: Optional[str]) -> str:
        if resume_uuid:
            log("INFO", f"Resuming provisioning of {resume_uuid}")
            result.steps_skipped.append(ProvisionState.CREATED.value)
            return resume_uuid

        existing = self.ctl.find(self.entry.name)
        if existing is not None and not force:
            log("INFO", f"VM '{self.entry.name}' already exists ({existing.uuid}); resuming")
            result.steps_skipped.append(ProvisionState.CREATED.value)
            return existing.uuid
        if existing is not None:
            log("WARN", f"Deleting existing VM '{self.entry.name}' ({existing.uuid}) because --force was given")
            self.ctl.delete(existing.uuid)

        output = self.bridge.run(
            "create_vm.applescript",
            "--name",
            self.entry.name,
            "--backend",
            backend_code(self.entry.backend),
            "--arch",
            normalize_arch(self.entry.arch),
        )
        uuid = extract_uuid(output)
        result.steps_run.append(ProvisionState.CREATED.value)
        log("INFO", f"Created VM '{self.entry.name}' ({uuid})")
        return uuid

    def drives(self, uuid: str) -> List[Drive]:
        return parse_drives(self.bridge.run("list_drives.applescript", uuid))

    def _configure_hardware(self, uuid: str) -> bool:
        self.bridge.run(
            "customize_vm.applescript",
            uuid,
            "--cpus",
            str(self.entry.hardware.cpus),
            "--memory",
            str(self.entry.hardware.ram_mb),
            "--name",
            self.entry.name,
            "--uefi-boot",
            str(self.entry.uefi).lower(),
            "--use-hypervisor",
            str(self.use_hypervisor).lower(),
        )
        return True

    def _attach_disk(self, uuid: str) -> bool:
        if any(not drive.removable for drive in self.drives(uuid)):
            log("INFO", "Disk already attached; skipping")
            return False
        self.bridge.run(
            "add_drive.applescript",
            uuid,
            "--interface",
            controller_code(DISK_CONTROLLER),
            "--size",
            str(disk_size_mb(self.entry)),
        )
        return True

    def _attach_media(self, uuid: str) -> bool:
        iso = Path(self.fetch_media(self.entry, self.paths))
        source = str(iso.resolve())
        if any(drive.removable and drive.source == source for drive in self.drives(uuid)):
            log("INFO", "Installation media already attached; skipping")
            return False
        self.bridge.run(
            "attach_iso.applescript",
            uuid,
            "--interface",
            controller_code(MEDIA_CONTROLLER),
            "--source",
            source,
        )
        return True

    def _attach_network(self, uuid: str) -> bool:
        if parse_interfaces(self.bridge.run("list_network_interfaces.applescript", uuid)):
            log("INFO", "Network interface already present; skipping")
            return False
        self.bridge.run("add_network_interface.applescript", uuid, network_mode_code(self.network_mode))
        return True


def start_vm(ctl, name: str) -> RunState:
    ctl.start(name)
    state = ctl.status(name)
    log("SUCCESS" if state == RunState.RUNNING else "WARN", f"VM '{name}' is {state.value}")
    return state


def stop_vm(ctl, name: str) -> RunState:
    ctl.stop(name)
    state = ctl.status(name)
    log("INFO", f"VM '{name}' is {state.value}")
    return state
