"""Network interface and port-forward configuration for UTM VMs."""

from __future__ import annotations

import ipaddress
from typing import List, Optional

from utm_runner.constants import DEFAULT_HOST_ADDRESS, UUID_RE
from utm_runner.enums import network_mode_code, parse_reported, protocol_code
from utm_runner.exceptions import ManagerError, UnsupportedNetworkMode
from utm_runner.models import NetworkInterface, PortForward
from utm_runner.utils import log

EMULATED = "emulated"
SSH_GUEST_PORT = 22
DEFAULT_SSH_HOST_PORT = 2222


def parse_interfaces(output: str) -> List[NetworkInterface]:
    """Parse ``index|mode`` lines printed by list_network_interfaces."""
    interfaces: List[NetworkInterface] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        index, _, mode = line.partition("|")
        try:
            interfaces.append(NetworkInterface(index=int(index), mode=parse_reported("network", mode)))
        except ValueError as exc:
            raise ManagerError(f"Unexpected network interface listing line: {line!r}") from exc
    return interfaces


def parse_port_forwards(output: str) -> List[PortForward]:
    """Parse ``protocol,guest-address,guest-port,host-address,host-port`` lines."""
    rules: List[PortForward] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        parts = line.split(",")
        if len(parts) != 5:
            raise ManagerError(f"Unexpected port forward listing line: {line!r}")
        protocol, guest_address, guest_port, host_address, host_port = parts
        try:
            rules.append(
                PortForward(
                    protocol=parse_reported("protocol", protocol),
                    guest_port=int(guest_port),
                    host_port=int(host_port),
                    guest_address=guest_address,
                    host_address=host_address or DEFAULT_HOST_ADDRESS,
                )
            )
        except ValueError as exc:
            raise ManagerError(f"Unexpected port forward listing line: {line!r}") from exc
    return rules


def format_rule(rule: PortForward) -> str:
    """Render a rule as the comma-separated argument add_port_forwards expects."""
    return ",".join(
        [
            protocol_code(rule.protocol),
            rule.guest_address,
            str(rule.guest_port),
            rule.host_address,
            str(rule.host_port),
        ]
    )


def validate_rule(rule: PortForward) -> PortForward:
    protocol_code(rule.protocol)
    for label, port in (("guest", rule.guest_port), ("host", rule.host_port)):
        if not isinstance(port, int) or not 1 <= port <= 65535:
            raise ManagerError(f"Invalid {label} port {port!r}: must be between 1 and 65535")
    return rule._replace(protocol=rule.protocol.strip().lower())


def _first_ipv4(addresses: List[str]) -> Optional[str]:
    for address in addresses:
        try:
            if ipaddress.ip_address(address).version == 4:
                return address
        except ValueError:
            continue
    return None


class NetworkConfigurator:
    """Reads and edits the network interfaces of one VM at a time.

    Port forwarding only works on emulated VLAN interfaces; shared (NAT)
    interfaces are never switched implicitly.
    """

    def __init__(self, bridge, ctl=None) -> None:
        self.bridge = bridge
        self.ctl = ctl

    def resolve(self, vm: str) -> str:
        if UUID_RE.fullmatch(vm):
            return vm
        if self.ctl is None:
            raise ManagerError(f"Cannot resolve VM '{vm}' without utmctl")
        return self.ctl.uuid_for(vm)

    def interfaces(self, vm: str) -> List[NetworkInterface]:
        uuid = self.resolve(vm)
        interfaces = parse_interfaces(self.bridge.run("list_network_interfaces.applescript", uuid))
        for iface in interfaces:
            if iface.mode == EMULATED:
                output = self.bridge.run("list_port_forwards.applescript", uuid, "--index", str(iface.index))
                iface.port_forwards = parse_port_forwards(output)
        return interfaces

    def emulated_interface(self, vm: str) -> Optional[NetworkInterface]:
        for iface in self.interfaces(vm):
            if iface.mode == EMULATED:
                return iface
        return None

    def setup_emulated_network(self, vm: str) -> int:
        """Make sure the VM has an emulated VLAN interface and return its index."""
        existing = self.emulated_interface(vm)
        if existing is not None:
            log("INFO", f"VM '{vm}' already has an emulated network interface (index {existing.index})")
            return existing.index

        uuid = self.resolve(vm)
        self.bridge.run("add_network_interface.applescript", uuid, network_mode_code(EMULATED))
        created = self.emulated_interface(vm)
        if created is None:
            raise ManagerError(f"Emulated network interface was not added to VM '{vm}'")
        log("SUCCESS", f"Added emulated network interface (index {created.index}) to VM '{vm}'")
        return created.index

    def add_port_forward(
        self,
        vm: str,
        index: int,
        rule: PortForward,
        resolve_guest_address: bool = False,
    ) -> PortForward:
        rule = validate_rule(rule)
        interfaces = {iface.index: iface for iface in self.interfaces(vm)}
        iface = interfaces.get(index)
        if iface is None:
            available = ", ".join(str(i) for i in sorted(interfaces)) or "none"
            raise ManagerError(f"VM '{vm}' has no network interface at index {index} (available: {available})")
        if iface.mode != EMULATED:
            raise UnsupportedNetworkMode(
                f"Network interface {index} of VM '{vm}' is in '{iface.mode}' mode, which cannot forward ports.\n"
                f"  Re-run with --setup-network to add an emulated VLAN interface first."
            )
        for existing in iface.port_forwards:
            if (existing.protocol, existing.guest_port) == (rule.protocol, rule.guest_port):
                raise ManagerError(
                    f"Interface {index} of VM '{vm}' already forwards {rule.protocol} guest port "
                    f"{rule.guest_port} (host port {existing.host_port})"
                )

        if resolve_guest_address and not rule.guest_address:
            if self.ctl is None:
                raise ManagerError("Resolving the guest address requires utmctl")
            address = _first_ipv4(self.ctl.ip_addresses(vm))
            if address is None:
                raise ManagerError(f"VM '{vm}' did not report an IPv4 address")
            rule = rule._replace(guest_address=address)

        uuid = self.resolve(vm)
        self.bridge.run("add_port_forwards.applescript", uuid, "--index", str(index), format_rule(rule))
        log(
            "SUCCESS",
            f"Forwarding {rule.host_address}:{rule.host_port} -> guest {rule.guest_address or '*'}:"
            f"{rule.guest_port}/{rule.protocol}",
        )
        return rule

    def clear_port_forwards(self, vm: str, index: int) -> None:
        uuid = self.resolve(vm)
        self.bridge.run("clear_port_forwards.applescript", uuid, "--index", str(index))
        log("INFO", f"Cleared port forwards on interface {index} of VM '{vm}'")

    def setup_ssh_port_forward(self, vm: str, host_port: int = DEFAULT_SSH_HOST_PORT) -> PortForward:
        iface = self.emulated_interface(vm)
        if iface is None:
            raise UnsupportedNetworkMode(
                f"VM '{vm}' has no emulated network interface for SSH forwarding.\n"
                f"  Re-run with --setup-network to add one."
            )
        return self.add_port_forward(vm, iface.index, PortForward("tcp", SSH_GUEST_PORT, host_port))
