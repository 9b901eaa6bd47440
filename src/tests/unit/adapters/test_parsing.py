"""Tests for Proxmox output parsing helpers."""

import json

import pytest

from agentlab.adapters.hypervisor.parsing import (
    is_missing_vm_error,
    parse_agent_ips,
    parse_status,
    select_ip,
)
from agentlab.core.interfaces import VMStatus

AGENT_REPLY = {
    "result": [
        {
            "name": "lo",
            "ip-addresses": [{"ip-address-type": "ipv4", "ip-address": "127.0.0.1"}],
        },
        {
            "name": "eth0",
            "ip-addresses": [
                {"ip-address-type": "ipv6", "ip-address": "fe80::1"},
                {"ip-address-type": "ipv4", "ip-address": "169.254.0.9"},
                {"ip-address-type": "ipv4", "ip-address": "10.77.0.23"},
            ],
        },
        {
            "name": "eth1",
            "ip-addresses": [{"ip-address-type": "ipv4", "ip-address": "192.168.5.4"}],
        },
    ]
}


class TestIsMissingVmError:
    @pytest.mark.parametrize(
        "message",
        [
            "Configuration file 'nodes/pve/qemu-server/1000.conf' does not exist",
            "no such VM ('1000')",
            "VM 1000 not found",
        ],
    )
    def test_matches(self, message: str) -> None:
        assert is_missing_vm_error(message)

    @pytest.mark.parametrize("message", ["", "permission denied", "storage not found"])
    def test_other_errors(self, message: str) -> None:
        assert not is_missing_vm_error(message)


class TestParseStatus:
    @pytest.mark.parametrize(
        "output,expected",
        [
            ("status: running\n", VMStatus.RUNNING),
            ("status: stopped", VMStatus.STOPPED),
            ("stopped", VMStatus.STOPPED),
            ("status: paused", VMStatus.UNKNOWN),
        ],
    )
    def test_values(self, output: str, expected: VMStatus) -> None:
        assert parse_status(output) == expected

    def test_empty(self) -> None:
        with pytest.raises(ValueError):
            parse_status("  ")


class TestParseAgentIps:
    def test_filters_unusable_addresses(self) -> None:
        assert parse_agent_ips(AGENT_REPLY) == ["10.77.0.23", "192.168.5.4"]

    def test_accepts_json_text(self) -> None:
        assert parse_agent_ips(json.dumps(AGENT_REPLY)) == ["10.77.0.23", "192.168.5.4"]

    def test_pvesh_data_wrapper(self) -> None:
        assert parse_agent_ips({"data": AGENT_REPLY}) == ["10.77.0.23", "192.168.5.4"]

    def test_bare_list(self) -> None:
        assert parse_agent_ips(AGENT_REPLY["result"]) == ["10.77.0.23", "192.168.5.4"]

    def test_empty_text(self) -> None:
        with pytest.raises(ValueError):
            parse_agent_ips("")


class TestSelectIp:
    def test_prefers_agent_cidr(self) -> None:
        assert select_ip(["192.168.5.4", "10.77.0.23"], "10.77.0.0/16") == "10.77.0.23"

    def test_falls_back_to_private(self) -> None:
        assert select_ip(["8.8.8.8", "192.168.5.4"], "10.77.0.0/16") == "192.168.5.4"

    def test_falls_back_to_first(self) -> None:
        assert select_ip(["8.8.8.8", "1.1.1.1"]) == "8.8.8.8"

    def test_empty(self) -> None:
        assert select_ip([]) is None
