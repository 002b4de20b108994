"""Per-interface network fragments for the seed documents."""

from __future__ import annotations

import shlex
from typing import List

from vmdeploy.models import InterfaceSpec


def render_nameservers(iface: InterfaceSpec) -> str:
    """Inline YAML sequence for the interface's nameservers, ``[]`` when unset."""
    return "[" + ", ".join(iface.nameservers) + "]"


def _connection_of(device: str) -> str:
    # cloud-init names profiles differently per renderer; ask NetworkManager
    return f'"$(nmcli -g GENERAL.CONNECTION device show {shlex.quote(device)})"'


def interface_tuning_commands(iface: InterfaceSpec) -> List[str]:
    """NetworkManager tweaks for one interface, followed by a reapply when any apply."""
    connection = _connection_of(iface.device)
    commands: List[str] = []
    if iface.ignore_auto_routes:
        commands.append(f"nmcli connection modify {connection} ipv4.ignore-auto-routes yes ipv6.ignore-auto-routes yes")
    if iface.ignore_auto_dns:
        commands.append(f"nmcli connection modify {connection} ipv4.ignore-auto-dns yes ipv6.ignore-auto-dns yes")
    if iface.disable_ipv6:
        commands.append(f"nmcli connection modify {connection} ipv6.method disabled")
    if commands:
        commands.append(f"nmcli device reapply {shlex.quote(iface.device)}")
    return commands
