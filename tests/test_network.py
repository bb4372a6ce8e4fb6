"""Tests for utm_runner.network module."""

from __future__ import annotations

import pytest

from utm_runner.exceptions import ManagerError, UnsupportedConfiguration, UnsupportedNetworkMode
from utm_runner.models import NetworkInterface, PortForward
from utm_runner.network import (
    NetworkConfigurator,
    format_rule,
    parse_interfaces,
    parse_port_forwards,
    validate_rule,
)


@pytest.fixture
def shared_vm(fake_utm):
    """A freshly created VM with only a shared-mode interface."""
    vm_id = fake_utm.add_vm("dev")
    fake_utm.interfaces(vm_id).append(NetworkInterface(index=0, mode="shared"))
    return vm_id


@pytest.fixture
def configurator(fake_utm):
    return NetworkConfigurator(fake_utm.bridge, fake_utm.ctl)


class TestParsing:
    def test_interfaces(self):
        interfaces = parse_interfaces("0|shared\n1|«constant ****EmUd»\n")
        assert [(i.index, i.mode) for i in interfaces] == [(0, "shared"), (1, "emulated")]

    def test_interfaces_bad_line(self):
        with pytest.raises(ManagerError, match="Unexpected network interface"):
            parse_interfaces("x|shared\n")

    def test_port_forwards(self):
        rules = parse_port_forwards("TcPp,,22,127.0.0.1,2222\nudp,10.0.2.15,53,,5353\n")
        assert rules[0] == PortForward("tcp", 22, 2222, "", "127.0.0.1")
        assert rules[1] == PortForward("udp", 53, 5353, "10.0.2.15", "127.0.0.1")

    def test_format_rule(self):
        assert format_rule(PortForward("tcp", 22, 2222)) == "TcPp,,22,127.0.0.1,2222"


class TestValidateRule:
    @pytest.mark.parametrize("guest,host", [(0, 2222), (22, 70000), (-1, 80)])
    def test_port_range(self, guest, host):
        with pytest.raises(ManagerError, match="between 1 and 65535"):
            validate_rule(PortForward("tcp", guest, host))

    def test_protocol(self):
        with pytest.raises(UnsupportedConfiguration):
            validate_rule(PortForward("sctp", 22, 2222))

    def test_normalizes_protocol(self):
        assert validate_rule(PortForward("TCP", 22, 2222)).protocol == "tcp"


class TestSetupEmulatedNetwork:
    def test_adds_emulated_and_keeps_shared(self, configurator, fake_utm, shared_vm):
        index = configurator.setup_emulated_network("dev")
        assert index == 1
        assert [i.mode for i in fake_utm.interfaces(shared_vm)] == ["shared", "emulated"]

    def test_twice_yields_one_emulated_interface(self, configurator, fake_utm, shared_vm):
        configurator.setup_emulated_network("dev")
        configurator.setup_emulated_network("dev")
        modes = [i.mode for i in fake_utm.interfaces(shared_vm)]
        assert modes.count("emulated") == 1
        assert len(fake_utm.script_calls("add_network_interface.applescript")) == 1

    def test_accepts_uuid(self, configurator, fake_utm, shared_vm):
        assert configurator.setup_emulated_network(shared_vm) == 1


class TestAddPortForward:
    def test_shared_interface_rejected_then_succeeds_after_setup(self, configurator, fake_utm, shared_vm):
        rule = PortForward("tcp", 22, 2222)
        with pytest.raises(UnsupportedNetworkMode, match="--setup-network"):
            configurator.add_port_forward("dev", 0, rule)
        assert fake_utm.script_calls("add_port_forwards.applescript") == []

        index = configurator.setup_emulated_network("dev")
        configurator.add_port_forward("dev", index, rule)

        emulated = fake_utm.interfaces(shared_vm)[index]
        assert emulated.port_forwards == [PortForward("tcp", 22, 2222, "", "127.0.0.1")]
        assert fake_utm.interfaces(shared_vm)[0].port_forwards == []

    def test_missing_interface(self, configurator, shared_vm):
        with pytest.raises(ManagerError, match="no network interface at index 3"):
            configurator.add_port_forward("dev", 3, PortForward("tcp", 22, 2222))

    def test_duplicate_guest_port_rejected(self, configurator, shared_vm):
        index = configurator.setup_emulated_network("dev")
        configurator.add_port_forward("dev", index, PortForward("tcp", 22, 2222))
        with pytest.raises(ManagerError, match="already forwards tcp guest port 22"):
            configurator.add_port_forward("dev", index, PortForward("tcp", 22, 2223))
        configurator.add_port_forward("dev", index, PortForward("udp", 22, 2224))

    def test_resolve_guest_address_prefers_ipv4(self, configurator, fake_utm, shared_vm):
        index = configurator.setup_emulated_network("dev")
        rule = configurator.add_port_forward("dev", index, PortForward("tcp", 80, 8080), resolve_guest_address=True)
        assert rule.guest_address == "192.168.64.5"
        assert fake_utm.interfaces(shared_vm)[index].port_forwards[0].guest_address == "192.168.64.5"

    def test_resolve_guest_address_without_ipv4(self, configurator, fake_utm, shared_vm):
        fake_utm.ctl.addresses = ["fe80::1"]
        index = configurator.setup_emulated_network("dev")
        with pytest.raises(ManagerError, match="IPv4"):
            configurator.add_port_forward("dev", index, PortForward("tcp", 80, 8080), resolve_guest_address=True)

    def test_interfaces_report_rules(self, configurator, shared_vm):
        index = configurator.setup_emulated_network("dev")
        configurator.add_port_forward("dev", index, PortForward("udp", 53, 5353))
        interfaces = configurator.interfaces("dev")
        assert interfaces[index].port_forwards == [PortForward("udp", 53, 5353, "", "127.0.0.1")]


class TestClearAndSSH:
    def test_clear(self, configurator, fake_utm, shared_vm):
        index = configurator.setup_emulated_network("dev")
        configurator.add_port_forward("dev", index, PortForward("tcp", 22, 2222))
        configurator.clear_port_forwards("dev", index)
        assert fake_utm.interfaces(shared_vm)[index].port_forwards == []

    def test_ssh_requires_emulated(self, configurator, shared_vm):
        with pytest.raises(UnsupportedNetworkMode, match="--setup-network"):
            configurator.setup_ssh_port_forward("dev")

    def test_ssh_forward(self, configurator, fake_utm, shared_vm):
        configurator.setup_emulated_network("dev")
        rule = configurator.setup_ssh_port_forward("dev", host_port=2022)
        assert (rule.guest_port, rule.host_port) == (22, 2022)
