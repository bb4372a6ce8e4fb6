"""VM control and guest access through UTM's ``utmctl`` utility.

Each call runs one ``utmctl`` process. Guest command output is streamed to the
caller's streams as it arrives; file transfers stream the file body through
the child's stdin (push) or stdout (pull) so large files never sit in memory.
"""

from __future__ import annotations

import shlex
import subprocess
import sys
import threading
from pathlib import Path
from typing import IO, List, Optional, Sequence, Union

from utm_runner.config import find_utmctl
from utm_runner.constants import (
    GUEST_AGENT_MARKERS,
    GUEST_SHELLS,
    POSIX_REMOTE_DIR,
    UTMCTL_STATES,
    UUID_RE,
    WINDOWS_COMMAND_RE,
    WINDOWS_REMOTE_DIR,
)
from utm_runner.exceptions import ManagerError, NotResponding, TransferError, UnsupportedConfiguration
from utm_runner.models import RunState, VMInstance
from utm_runner.utils import log

Command = Union[str, Sequence[str]]


def _parse_state(token: str) -> RunState:
    value = UTMCTL_STATES.get(token.strip().lower())
    if value is None:
        return RunState.UNKNOWN
    return RunState(value)


def parse_list_output(output: str) -> List[VMInstance]:
    """Parse ``utmctl list`` (``UUID Status Name`` with a header row)."""
    vms: List[VMInstance] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        parts = line.split()
        if not UUID_RE.fullmatch(parts[0]) or len(parts) < 2:
            continue
        rest = parts[1:]
        if rest[0].lower() in UTMCTL_STATES:
            state, name_parts = _parse_state(rest[0]), rest[1:]
        elif rest[-1].lower() in UTMCTL_STATES:
            state, name_parts = _parse_state(rest[-1]), rest[:-1]
        else:
            state, name_parts = RunState.UNKNOWN, rest
        vms.append(VMInstance(uuid=parts[0], name=" ".join(name_parts), state=state))
    return vms


def _is_guest_agent_failure(diagnostic: str) -> bool:
    lowered = diagnostic.lower()
    return any(marker in lowered for marker in GUEST_AGENT_MARKERS)


def guest_os_for(command: str) -> str:
    return "windows" if WINDOWS_COMMAND_RE.match(command) else "linux"


def guest_shell(command: str, guest_os: Optional[str] = None) -> List[str]:
    """Wrap ``command`` so the guest's shell interprets it.

    Without ``guest_os`` the shell is picked from the command itself: drive
    letters, UNC paths and cmd/powershell invocations go to ``cmd.exe /c``,
    everything else to ``sh -c``.
    """
    os_name = (guest_os or guest_os_for(command)).strip().lower()
    shell = GUEST_SHELLS.get(os_name)
    if shell is None:
        valid = ", ".join(sorted(GUEST_SHELLS))
        raise UnsupportedConfiguration(f"Unsupported guest OS '{guest_os}'. Valid values: {valid}")
    return [*shell, command]


def _pump(source: IO[str], sink: IO[str], captured: List[str]) -> None:
    for line in iter(source.readline, ""):
        sink.write(line)
        sink.flush()
        captured.append(line)
    source.close()


class UTMCtl:
    """Thin, typed wrapper around the utmctl binary."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or find_utmctl()

    def _command(self, *args: str) -> List[str]:
        return [self.path, *[str(arg) for arg in args]]

    def _not_found(self, exc: OSError) -> ManagerError:
        return ManagerError(f"utmctl not found at {self.path}. Is UTM installed? ({exc})")

    def run(self, *args: str, timeout: Optional[float] = None) -> str:
        """Run a utmctl subcommand and return its trimmed stdout."""
        cmd = self._command(*args)
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError as exc:
            raise self._not_found(exc) from exc
        except subprocess.TimeoutExpired as exc:
            raise NotResponding(
                f"utmctl timed out after {timeout}s running: {' '.join(cmd)}. "
                f"Is UTM.app running in the current user session?"
            ) from exc
        stdout = (result.stdout or "").strip()
        stderr = (result.stderr or "").strip()
        if result.returncode != 0:
            detail = stderr or stdout or "unknown error"
            raise ManagerError(f"utmctl {args[0] if args else ''} failed (exit {result.returncode}): {detail}")
        return stdout

    def list_vms(self) -> List[VMInstance]:
        return parse_list_output(self.run("list"))

    def find(self, name_or_uuid: str) -> Optional[VMInstance]:
        for vm in self.list_vms():
            if vm.uuid.lower() == name_or_uuid.lower() or vm.name == name_or_uuid:
                return vm
        return None

    def uuid_for(self, name: str) -> str:
        vm = self.find(name)
        if vm is None:
            raise ManagerError(f"VM '{name}' not found in UTM (run 'utm-runner list')")
        return vm.uuid

    def status(self, name: str) -> RunState:
        return _parse_state(self.run("status", name))

    def start(self, name: str) -> None:
        self.run("start", name)

    def stop(self, name: str) -> None:
        self.run("stop", name)

    def delete(self, name: str) -> None:
        self.run("delete", name)

    def clone(self, name: str, new_name: str) -> None:
        self.run("clone", name, "--name", new_name)

    def ip_addresses(self, name: str) -> List[str]:
        output = self.run("ip-address", name)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def require_running(self, name: str) -> None:
        state = self.status(name)
        if state != RunState.RUNNING:
            raise NotResponding(f"VM '{name}' is {state.value}; start it with 'utm-runner start {name}'")

    def _kill(self, proc: subprocess.Popen, timeout: Optional[float], what: str) -> NotResponding:
        proc.kill()
        proc.wait()
        return NotResponding(f"{what} did not finish within {timeout}s; the utmctl process was killed")

    def exec(
        self,
        name: str,
        command: Command,
        stdout: Optional[IO[str]] = None,
        stderr: Optional[IO[str]] = None,
        timeout: Optional[float] = None,
        guest_os: Optional[str] = None,
    ) -> int:
        """Run ``command`` in the guest and return its exit status.

        A string is handed whole to the guest shell (see ``guest_shell``); a
        sequence is passed to the guest agent as argv, untouched. Output is
        forwarded line by line to ``stdout``/``stderr`` (the process streams
        by default).
        """
        if isinstance(command, str):
            if not command.strip():
                raise ManagerError("No command given for guest execution")
            argv = guest_shell(command, guest_os)
        else:
            argv = [str(arg) for arg in command]
            if not argv:
                raise ManagerError("No command given for guest execution")
        self.require_running(name)
        out = stdout or sys.stdout
        err = stderr or sys.stderr
        cmd = self._command("exec", name, "--cmd", *argv)
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except FileNotFoundError as exc:
            raise self._not_found(exc) from exc

        err_lines: List[str] = []
        pumps = [
            threading.Thread(target=_pump, args=(proc.stdout, out, []), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, err, err_lines), daemon=True),
        ]
        for pump in pumps:
            pump.start()
        try:
            returncode = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            raise self._kill(proc, timeout, f"Command in VM '{name}'")
        finally:
            for pump in pumps:
                pump.join()

        diagnostic = "".join(err_lines).strip()
        if returncode != 0 and _is_guest_agent_failure(diagnostic):
            raise NotResponding(
                f"Guest agent in VM '{name}' is not responding: {diagnostic}\n"
                f"  Make sure the VM is running and the QEMU guest agent is installed."
            )
        return returncode

    def push(self, name: str, local: Path, remote: str, timeout: Optional[float] = None) -> None:
        """Copy ``local`` into the guest at ``remote``."""
        local = Path(local)
        self.require_running(name)
        try:
            handle = open(local, "rb")
        except OSError as exc:
            raise TransferError(f"Cannot read {local}: {exc}") from exc
        cmd = self._command("file", "push", name, remote)
        log("DEBUG", f"Running: {' '.join(cmd)} < {local}")
        with handle:
            try:
                proc = subprocess.Popen(cmd, stdin=handle, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
            except FileNotFoundError as exc:
                raise self._not_found(exc) from exc
            try:
                _, stderr = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                raise self._kill(proc, timeout, f"Push of {local} to VM '{name}'")
        if proc.returncode != 0:
            detail = (stderr or b"").decode("utf-8", errors="replace").strip() or "unknown error"
            raise TransferError(f"Failed to push {local} to {name}:{remote}: {detail}")
        log("SUCCESS", f"Pushed {local} -> {name}:{remote}")

    def pull(self, name: str, remote: str, local: Path, timeout: Optional[float] = None) -> None:
        """Copy ``remote`` from the guest into ``local``.

        A failed transfer never leaves a partial file behind.
        """
        local = Path(local)
        self.require_running(name)
        cmd = self._command("file", "pull", name, remote)
        log("DEBUG", f"Running: {' '.join(cmd)} > {local}")
        try:
            handle = open(local, "wb")
        except OSError as exc:
            raise TransferError(f"Cannot write {local}: {exc}") from exc
        failure: Optional[ManagerError] = None
        with handle:
            try:
                proc = subprocess.Popen(cmd, stdout=handle, stderr=subprocess.PIPE)
            except FileNotFoundError as exc:
                failure = self._not_found(exc)
            else:
                try:
                    _, stderr = proc.communicate(timeout=timeout)
                except subprocess.TimeoutExpired:
                    failure = self._kill(proc, timeout, f"Pull of {remote} from VM '{name}'")
                else:
                    if proc.returncode != 0:
                        detail = (stderr or b"").decode("utf-8", errors="replace").strip() or "unknown error"
                        failure = TransferError(f"Failed to pull {name}:{remote} to {local}: {detail}")
        if failure is not None:
            local.unlink(missing_ok=True)
            raise failure
        log("SUCCESS", f"Pulled {name}:{remote} -> {local}")


def exec_in_vm(
    name: str,
    command: Command,
    timeout: Optional[float] = None,
    ctl: Optional[UTMCtl] = None,
    guest_os: Optional[str] = None,
) -> int:
    return (ctl or UTMCtl()).exec(name, command, timeout=timeout, guest_os=guest_os)


def push_file(name: str, local: Path, remote: str, ctl: Optional[UTMCtl] = None, timeout: Optional[float] = None) -> None:
    (ctl or UTMCtl()).push(name, local, remote, timeout=timeout)


def pull_file(name: str, remote: str, local: Path, ctl: Optional[UTMCtl] = None, timeout: Optional[float] = None) -> None:
    (ctl or UTMCtl()).pull(name, remote, local, timeout=timeout)


def default_remote_path(local: Path, guest_os: str) -> str:
    if guest_os == "windows":
        return f"{WINDOWS_REMOTE_DIR}\\{local.name}"
    return f"{POSIX_REMOTE_DIR}/{local.name}"


def run_binary(
    name: str,
    local: Path,
    remote: Optional[str] = None,
    guest_os: Optional[str] = None,
    timeout: Optional[float] = None,
    ctl: Optional[UTMCtl] = None,
) -> int:
    """Push an already-built guest binary into the VM and run it there.

    ``guest_os`` defaults to ``windows`` for ``.exe`` files and ``linux``
    otherwise; ``remote`` defaults to the user's home (Windows) or ``/tmp``.
    Returns the program's exit status.
    """
    local = Path(local)
    if not local.is_file():
        raise TransferError(f"Binary not found at {local}")
    if guest_os is None:
        guest_os = "windows" if local.suffix.lower() == ".exe" else "linux"
    if remote is None:
        remote = default_remote_path(local, guest_os)
    ctl = ctl or UTMCtl()

    log("INFO", f"Pushing {local} to VM '{name}'...")
    ctl.push(name, local, remote, timeout=timeout)
    if guest_os == "windows":
        command = f'"{remote}"'
    else:
        command = f"chmod +x {shlex.quote(remote)} && {shlex.quote(remote)}"
    log("INFO", f"Launching {remote} in VM '{name}'...")
    return ctl.exec(name, command, timeout=timeout, guest_os=guest_os)


def run_task(
    name: str,
    task: str,
    workdir: Optional[str] = None,
    timeout: Optional[float] = None,
    ctl: Optional[UTMCtl] = None,
) -> int:
    """Run a Taskfile task inside the guest."""
    script = f"task {shlex.quote(task)}"
    if workdir:
        script = f"cd {shlex.quote(workdir)} && {script}"
    return (ctl or UTMCtl()).exec(name, script, timeout=timeout, guest_os="linux")
