"""Tests for vmdeploy.network module."""

from __future__ import annotations

from vmdeploy.models import InterfaceSpec
from vmdeploy.network import interface_tuning_commands, render_nameservers


def _iface(**kwargs):
    return InterfaceSpec(key="netif1", number=1, device="ens192", **kwargs)


class TestRenderNameservers:
    def test_list(self):
        assert render_nameservers(_iface(nameservers=("1.1.1.1", "8.8.8.8"))) == "[1.1.1.1, 8.8.8.8]"

    def test_empty(self):
        assert render_nameservers(_iface()) == "[]"


class TestTuningCommands:
    def test_no_flags(self):
        assert interface_tuning_commands(_iface()) == []

    def test_dns_only(self):
        commands = interface_tuning_commands(_iface(ignore_auto_dns=True))
        assert commands == [
            'nmcli connection modify "$(nmcli -g GENERAL.CONNECTION device show ens192)" '
            "ipv4.ignore-auto-dns yes ipv6.ignore-auto-dns yes",
            "nmcli device reapply ens192",
        ]

    def test_flag_order(self):
        commands = interface_tuning_commands(_iface(ignore_auto_routes=True, ignore_auto_dns=True, disable_ipv6=True))
        assert "ignore-auto-routes" in commands[0]
        assert "ignore-auto-dns" in commands[1]
        assert commands[2].endswith("ipv6.method disabled")
        assert commands[3] == "nmcli device reapply ens192"

    def test_device_is_quoted(self):
        iface = InterfaceSpec(key="netif1", number=1, device="eth 0", disable_ipv6=True)
        assert interface_tuning_commands(iface)[-1] == "nmcli device reapply 'eth 0'"
