"""CLI entry points for utm-runner."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Dict, List, Optional

from utm_runner.config import ensure_directories, find_utmctl, get_paths
from utm_runner.constants import GUEST_SHELLS
from utm_runner.exceptions import ManagerError
from utm_runner.gallery import get_gallery
from utm_runner.host import detect_host
from utm_runner.media import ensure_media, install_utm, installed_version, uninstall_utm
from utm_runner.migrate import migrate_all
from utm_runner.models import GalleryEntry, PortForward
from utm_runner.network import NetworkConfigurator
from utm_runner.osascript import OsaScriptBridge
from utm_runner.portability import export_vm, import_vm, installed_driver
from utm_runner.utils import log
from utm_runner.utmctl import UTMCtl, run_binary, run_task
from utm_runner.vm import VMProvisioner, start_vm, stop_vm


GUEST_OS_CHOICES = sorted(GUEST_SHELLS)


def _bridge() -> OsaScriptBridge:
    return OsaScriptBridge()


def _ctl() -> UTMCtl:
    return UTMCtl(find_utmctl(get_paths()))


def print_gallery(entries: Dict[str, GalleryEntry]) -> None:
    if not entries:
        log("WARN", "No templates match the given filters")
        return
    max_key = max(len(k) for k in entries)
    for key in sorted(entries):
        entry = entries[key]
        hw = entry.hardware
        print(
            f"  {key:<{max_key}}  {entry.name}  "
            f"(os={entry.os}, arch={entry.arch}, ram={hw.ram_mb}MB, cpu={hw.cpus}, disk={hw.disk_mb // 1024}GB)"
        )


def cmd_gallery(args: argparse.Namespace) -> int:
    gallery = get_gallery()
    entries = gallery.entries()
    if args.os:
        entries = {k: v for k, v in gallery.filter_by_os(args.os).items() if k in entries}
    if args.arch:
        entries = {k: v for k, v in gallery.filter_by_arch(args.arch).items() if k in entries}
    if args.tag:
        entries = {k: v for k, v in gallery.filter_by_tag(args.tag).items() if k in entries}
    print_gallery(entries)
    return 0


def cmd_paths(args: argparse.Namespace) -> int:
    paths = get_paths()
    print(f"  Root:   {paths.root}")
    print(f"  App:    {paths.app}")
    print(f"  VMs:    {paths.vms}")
    print(f"  ISO:    {paths.iso}")
    print(f"  Share:  {paths.share}")
    print(f"  utmctl: {find_utmctl(paths)}")
    return 0


def _check_dir(label: str, path: Path) -> None:
    if path.is_dir():
        log("SUCCESS", f"{label}: {path}")
    else:
        log("WARN", f"{label}: {path} (missing)")


def cmd_doctor(args: argparse.Namespace) -> int:
    paths = get_paths()
    host = detect_host(paths)
    log("INFO", f"Host: {host.platform} ({host.arch})")
    if host.utm_installed:
        version = installed_version(paths)
        log("SUCCESS", f"utmctl: {host.utmctl_path}" + (f" (UTM {version})" if version else ""))
    else:
        log("WARN", "utmctl: not found (run 'utm-runner install')")
    log("INFO", f"UTM running: {'yes' if host.utm_running else 'no'}")

    release = get_gallery().meta.utm_app
    if release is not None:
        log("INFO", f"Gallery pins UTM {release.version}")

    if host.is_macos and host.utm_installed:
        driver = installed_driver(_bridge())
        if driver is not None:
            mark = {True: "SUCCESS", False: "WARN"}
            log(mark[driver.supports_export], f"Export/Import (UTM 4.6+): {driver.supports_export}")
            log(mark[driver.supports_guest_tools], f"Guest tools (UTM 4.6+): {driver.supports_guest_tools}")

    _check_dir("VMs", paths.vms)
    _check_dir("ISO", paths.iso)
    _check_dir("Share", paths.share)
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    paths = get_paths()
    ensure_directories(paths)
    gallery = get_gallery()
    if args.key:
        ensure_media(gallery.get(args.key), paths, force=args.force)
    else:
        install_utm(gallery.meta, paths, force=args.force)
    return 0


def cmd_uninstall(args: argparse.Namespace) -> int:
    uninstall_utm(get_paths())
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    vms = _ctl().list_vms()
    if not vms:
        log("INFO", "No virtual machines registered with UTM")
        return 0
    for vm in vms:
        print(f"  {vm.uuid}  {vm.state.value:<9}  {vm.name}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    print(_ctl().status(args.vm).value)
    return 0


def cmd_start(args: argparse.Namespace) -> int:
    start_vm(_ctl(), args.vm)
    return 0


def cmd_stop(args: argparse.Namespace) -> int:
    stop_vm(_ctl(), args.vm)
    return 0


def cmd_ip(args: argparse.Namespace) -> int:
    for address in _ctl().ip_addresses(args.vm):
        print(address)
    return 0


def cmd_create(args: argparse.Namespace) -> int:
    paths = get_paths()
    ensure_directories(paths)
    entry = get_gallery().get(args.key)
    if args.manual:
        provisioner = VMProvisioner(entry, paths, bridge=None, ctl=None, launcher=None, network_mode=args.network_mode)
    else:
        provisioner = VMProvisioner(entry, paths, _bridge(), _ctl(), network_mode=args.network_mode)
    result = provisioner.create(force=args.force, manual=args.manual, resume_uuid=args.resume)
    if not result.manual:
        print(result.vm_uuid)
    return 0


def _command_args(raw: List[str]) -> List[str]:
    if raw and raw[0] == "--":
        return raw[1:]
    return raw


def cmd_exec(args: argparse.Namespace) -> int:
    command = _command_args(args.command)
    if not command:
        raise ManagerError("No command given (usage: utm-runner exec <vm> -- <command> [args...])")
    # A single argument is a shell command line; several are an argv.
    if len(command) == 1:
        return _ctl().exec(args.vm, command[0], timeout=args.timeout, guest_os=args.guest_os)
    return _ctl().exec(args.vm, command, timeout=args.timeout)


def cmd_task(args: argparse.Namespace) -> int:
    return run_task(args.vm, args.task, workdir=args.workdir, timeout=args.timeout, ctl=_ctl())


def cmd_push(args: argparse.Namespace) -> int:
    _ctl().push(args.vm, Path(args.local), args.remote, timeout=args.timeout)
    return 0


def cmd_pull(args: argparse.Namespace) -> int:
    _ctl().pull(args.vm, args.remote, Path(args.local), timeout=args.timeout)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    return run_binary(
        args.vm,
        Path(args.binary),
        remote=args.remote,
        guest_os=args.guest_os,
        timeout=args.timeout,
        ctl=_ctl(),
    )


def cmd_port_forward(args: argparse.Namespace) -> int:
    configurator = NetworkConfigurator(_bridge(), _ctl())
    index = args.network_index
    if args.setup_network:
        log("INFO", f"Setting up emulated network for '{args.vm}'...")
        index = configurator.setup_emulated_network(args.vm)
    if args.clear:
        configurator.clear_port_forwards(args.vm, index)
    rule = PortForward(protocol=args.protocol, guest_port=args.guest_port, host_port=args.host_port)
    rule = configurator.add_port_forward(args.vm, index, rule, resolve_guest_address=args.resolve_guest)
    print(f"  Access via: {rule.protocol}://localhost:{rule.host_port}")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    export_vm(_bridge(), _ctl(), args.vm, Path(args.output))
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    print(import_vm(_bridge(), Path(args.path)))
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    migrate_all()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="utm-runner", description="UTM virtual machine automation for macOS")
    sub = parser.add_subparsers(dest="command_name", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("gallery", help="List templates from the gallery")
    p.add_argument("--os", help="Filter by OS (linux, windows, macos)")
    p.add_argument("--arch", help="Filter by architecture (arm64, amd64, aarch64, x86_64)")
    p.add_argument("--tag", help="Filter by tag")
    p.set_defaults(func=cmd_gallery)

    sub.add_parser("paths", help="Show resolved storage paths").set_defaults(func=cmd_paths)
    sub.add_parser("doctor", help="Check the UTM installation").set_defaults(func=cmd_doctor)

    p = sub.add_parser("install", help="Install UTM, or download the media for a template")
    p.add_argument("key", nargs="?", help="Gallery key whose installation media should be downloaded")
    p.add_argument("--force", action="store_true", help="Reinstall / redownload even if present")
    p.set_defaults(func=cmd_install)

    sub.add_parser("uninstall", help="Remove the managed UTM.app").set_defaults(func=cmd_uninstall)
    sub.add_parser("list", help="List VMs registered with UTM").set_defaults(func=cmd_list)

    for name, func, help_text in (
        ("status", cmd_status, "Show the run state of a VM"),
        ("start", cmd_start, "Start a VM"),
        ("stop", cmd_stop, "Stop a VM"),
        ("ip", cmd_ip, "Show the IP addresses reported by a VM"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("vm", help="VM name or UUID")
        p.set_defaults(func=func)

    p = sub.add_parser("create", help="Create a VM from a gallery template")
    p.add_argument("key", help="Gallery key")
    p.add_argument("--force", action="store_true", help="Delete an existing VM with the same name first")
    p.add_argument("--manual", action="store_true", help="Print manual setup instructions instead of automating")
    p.add_argument("--resume", metavar="UUID", help="Resume provisioning of a partially created VM")
    p.add_argument("--network-mode", default="shared", help="Mode of the initial network interface")
    p.set_defaults(func=cmd_create)

    p = sub.add_parser("exec", help="Run a command in the guest")
    p.add_argument("vm", help="VM name or UUID")
    p.add_argument("--timeout", type=float, default=None, help="Kill the command after this many seconds")
    p.add_argument("--guest-os", choices=GUEST_OS_CHOICES, help="Shell for a single command string (default: guessed)")
    p.add_argument("command", nargs=argparse.REMAINDER, help="Command to run (after --)")
    p.set_defaults(func=cmd_exec)

    p = sub.add_parser("task", help="Run a Taskfile task in the guest")
    p.add_argument("vm", help="VM name or UUID")
    p.add_argument("task", help="Task name")
    p.add_argument("--workdir", help="Guest directory containing the Taskfile")
    p.add_argument("--timeout", type=float, default=None, help="Kill the task after this many seconds")
    p.set_defaults(func=cmd_task)

    p = sub.add_parser("push", help="Copy a local file into the guest")
    p.add_argument("vm", help="VM name or UUID")
    p.add_argument("local", help="Local file")
    p.add_argument("remote", help="Guest path")
    p.add_argument("--timeout", type=float, default=None, help="Abort the transfer after this many seconds")
    p.set_defaults(func=cmd_push)

    p = sub.add_parser("pull", help="Copy a guest file to the host")
    p.add_argument("vm", help="VM name or UUID")
    p.add_argument("remote", help="Guest path")
    p.add_argument("local", help="Local file")
    p.add_argument("--timeout", type=float, default=None, help="Abort the transfer after this many seconds")
    p.set_defaults(func=cmd_pull)

    p = sub.add_parser("run", help="Push an already-built binary into the guest and run it")
    p.add_argument("vm", help="VM name or UUID")
    p.add_argument("binary", help="Local guest-target binary")
    p.add_argument("--remote", help="Guest path (default: C:\\Users\\User\\<name> for .exe, /tmp/<name> otherwise)")
    p.add_argument("--guest-os", choices=GUEST_OS_CHOICES, help="Guest OS (default: windows for .exe, else linux)")
    p.add_argument("--timeout", type=float, default=None, help="Abort each step after this many seconds")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("port-forward", help="Forward a host port to a guest port")
    p.add_argument("vm", help="VM name or UUID")
    p.add_argument("guest_port", type=int, help="Guest port")
    p.add_argument("host_port", type=int, help="Host port")
    p.add_argument("--protocol", default="tcp", help="tcp or udp")
    p.add_argument("--network-index", type=int, default=1, help="Interface index (1 = emulated VLAN)")
    p.add_argument("--setup-network", action="store_true", help="Add an emulated VLAN interface if missing")
    p.add_argument("--resolve-guest", action="store_true", help="Target the guest's reported IPv4 address")
    p.add_argument("--clear", action="store_true", help="Remove existing rules on the interface first")
    p.set_defaults(func=cmd_port_forward)

    p = sub.add_parser("export", help="Export a VM to a .utm bundle (UTM 4.6+)")
    p.add_argument("vm", help="VM name or UUID")
    p.add_argument("output", help="Output .utm path")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", help="Import a .utm bundle (UTM 4.6+)")
    p.add_argument("path", help=".utm bundle to import")
    p.set_defaults(func=cmd_import)

    sub.add_parser("migrate", help="Move legacy per-project assets to the global location").set_defaults(
        func=cmd_migrate
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except ManagerError as exc:
        log("ERROR", str(exc))
        if exc.vm_uuid:
            log("ERROR", f"VM {exc.vm_uuid} stopped at step '{exc.step}'")
            key = getattr(args, "key", None) or "<key>"
            log("INFO", f"Re-run 'utm-runner create {key} --resume {exc.vm_uuid}' to continue, or pass --force to start over")
        elif exc.step:
            log("ERROR", f"Failed at step '{exc.step}'")
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1


def run() -> None:
    """Console-script wrapper that exits with the command's status."""
    raise SystemExit(main())
