"""Placeholder rendering for seed documents and guest scripts.

Templates use ``{{dotted.path}}`` placeholders resolved against a nested
configuration tree. List-valued settings are never substituted by the generic
pass; dedicated generators expand them first:

1. ``{{users}}`` -> one cloud-config user item per declared user, or ``- default``
2. ``{{network}}`` -> one netplan ``ethernets`` entry per declared interface
3. ``{{users.<userN>.ssh_keys}}`` -> indented YAML sequence of quoted keys, or ``[]``
4. ``{{network.<netifN>.nameservers}}`` -> inline ``[a, b]``, or ``[]``
5. ``{{runcmd}}`` -> YAML sequence of commands, or ``[]``

The first two emit entries whose fields are placeholders for the later
passes, so one template covers any number of users and interfaces.

Placeholders that do not resolve to a scalar are left untouched.
"""

from __future__ import annotations

import copy
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from vmdeploy.constants import (
    DEFAULT_TEMPLATES_DIR,
    GUEST_SCRIPTS_DIR,
    GUEST_SWAP_DIR,
    GUEST_SWAP_SCRIPT,
    PLACEHOLDER_RE,
    SEED_DOCUMENTS,
    SWAP_SCRIPT_TEMPLATE,
)
from vmdeploy.exceptions import TemplateMissingError
from vmdeploy.models import (
    DeploymentParameters,
    InterfaceSpec,
    PrimaryUser,
    ResizeTarget,
    SeedBundle,
    UserSpec,
)
from vmdeploy.network import interface_tuning_commands, render_nameservers
from vmdeploy.utils import log

_MISSING = object()
_SWAP_HEREDOC_TAG = "VMDEPLOY_SWAP_EOF"


def lookup(tree: Any, dotted: str) -> Any:
    node = tree
    for part in dotted.split("."):
        if isinstance(node, Mapping) and part in node:
            node = node[part]
        elif isinstance(node, (list, tuple)) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            return _MISSING
    return node


def format_leaf(value: Any) -> Optional[str]:
    """String form of a scalar leaf, or None for composites."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return None


def substitute_leaves(text: str, tree: Any) -> str:
    def _replace(match: re.Match) -> str:
        value = lookup(tree, match.group(1))
        if value is _MISSING:
            return match.group(0)
        formatted = format_leaf(value)
        return match.group(0) if formatted is None else formatted

    return PLACEHOLDER_RE.sub(_replace, text)


def find_placeholders(text: str) -> List[str]:
    return sorted({match.group(1) for match in PLACEHOLDER_RE.finditer(text)})


def _block_pattern(dotted: str) -> re.Pattern:
    return re.compile(
        r"^(?P<indent>[ \t]*)(?P<prefix>[^\n]*?)\{\{\s*" + re.escape(dotted) + r"\s*\}\}",
        re.MULTILINE,
    )


def _replace_block(text: str, dotted: str, items: Sequence[str], empty: str = "[]") -> str:
    """Expand a placeholder into block lines indented under its own line."""

    def _replace(match: re.Match) -> str:
        head = match.group("indent") + match.group("prefix")
        if not items:
            return head + empty
        pad = match.group("indent") + "  "
        body = "\n".join((pad + line) if line else "" for line in items)
        return head.rstrip() + "\n" + body

    return _block_pattern(dotted).sub(_replace, text)


def sequence_lines(entries: Sequence[str]) -> List[str]:
    """YAML sequence lines: single-line entries quoted, multi-line as literal blocks."""
    lines: List[str] = []
    for entry in entries:
        if "\n" in entry:
            lines.append("- |")
            lines.extend(("  " + line) if line else "" for line in entry.rstrip("\n").split("\n"))
        else:
            lines.append("- " + json.dumps(entry))
    return lines


def _placeholder(dotted: str) -> str:
    return "{{" + dotted + "}}"


def user_entry_lines(user: UserSpec) -> List[str]:
    """Cloud-config ``users`` item for one user, its values left as placeholders."""
    ref = f"users.{user.key}"
    lines = [f"- name: {_placeholder(ref + '.name')}"]
    if user.groups:
        lines.append(f"  groups: {_placeholder(ref + '.groups_csv')}")
    if user.passwd:
        lines.append("  lock_passwd: false")
        lines.append(f"  passwd: {_placeholder(ref + '.passwd')}")
    lines.append('  sudo: "ALL=(ALL) ALL"')
    lines.append("  shell: /bin/bash")
    lines.append(f"  ssh_authorized_keys: {_placeholder(ref + '.ssh_keys')}")
    return lines


def ethernet_entry_lines(iface: InterfaceSpec) -> List[str]:
    """Netplan ``ethernets`` entry for one interface; DHCP when it has no address."""
    ref = f"network.{iface.key}"
    lines = [_placeholder(ref + ".device") + ":"]
    if iface.address:
        address = _placeholder(ref + ".address")
        if iface.prefix is not None:
            address += "/" + _placeholder(ref + ".prefix")
        lines.extend(["  dhcp4: false", "  addresses:", f"    - {address}"])
    else:
        lines.append("  dhcp4: true")
    if iface.gateway:
        lines.extend(["  routes:", "    - to: default", f"      via: {_placeholder(ref + '.gateway')}"])
    if iface.nameservers:
        lines.extend(["  nameservers:", f"    addresses: {_placeholder(ref + '.nameservers')}"])
    return lines


def render_users_block(text: str, users: Sequence[UserSpec]) -> str:
    items: List[str] = []
    for user in sorted(users, key=lambda u: u.number):
        items.extend(user_entry_lines(user))
    return _replace_block(text, "users", items or ["- default"])


def render_network_block(text: str, interfaces: Sequence[InterfaceSpec]) -> str:
    items: List[str] = []
    for iface in sorted(interfaces, key=lambda i: i.number):
        items.extend(ethernet_entry_lines(iface))
    return _replace_block(text, "network", items, empty="{}")


def render_ssh_blocks(text: str, users: Sequence[UserSpec]) -> str:
    for user in sorted(users, key=lambda u: u.number):
        text = _replace_block(text, f"users.{user.key}.ssh_keys", sequence_lines(user.ssh_keys))
    return text


def render_dns_blocks(text: str, interfaces: Sequence[InterfaceSpec]) -> str:
    for iface in interfaces:
        pattern = re.compile(r"\{\{\s*" + re.escape(f"network.{iface.key}.nameservers") + r"\s*\}\}")
        inline = render_nameservers(iface)
        text = pattern.sub(lambda _m: inline, text)
    return text


def render_runcmd_block(text: str, commands: Sequence[str]) -> str:
    return _replace_block(text, "runcmd", sequence_lines(commands))


def render_template(
    text: str,
    context: Any,
    users: Sequence[UserSpec] = (),
    interfaces: Sequence[InterfaceSpec] = (),
    runcmd: Optional[Sequence[str]] = None,
) -> str:
    text = render_users_block(text, users)
    text = render_network_block(text, interfaces)
    text = render_ssh_blocks(text, users)
    text = render_dns_blocks(text, interfaces)
    if runcmd is not None:
        text = render_runcmd_block(text, runcmd)
    return substitute_leaves(text, context)


def _partition_device(device: str, partition: int) -> str:
    if device[-1:].isdigit():
        return f"{device}p{partition}"
    return f"{device}{partition}"


def resize_command(target: ResizeTarget) -> str:
    grow = f"growpart {target.device} {target.partition} || true"
    if target.filesystem == "xfs":
        return f"{grow}; xfs_growfs {target.mount}"
    if target.filesystem.startswith("ext"):
        return f"{grow}; resize2fs {_partition_device(target.device, target.partition)}"
    if target.filesystem == "btrfs":
        return f"{grow}; btrfs filesystem resize max {target.mount}"
    return f"{grow}; pvresize {_partition_device(target.device, target.partition)}"


def render_swap_script(devices: Sequence[str]) -> str:
    path = GUEST_SCRIPTS_DIR / SWAP_SCRIPT_TEMPLATE
    return substitute_leaves(path.read_text(encoding="utf-8"), {"swap_devices": " ".join(devices)})


def build_runcmd(params: DeploymentParameters) -> List[str]:
    commands: List[str] = [resize_command(target) for target in params.resize]

    if params.swap_devices:
        script = render_swap_script(params.swap_devices)
        commands.append(f"mkdir -p {GUEST_SWAP_DIR}")
        commands.append(f"chown root:root {GUEST_SWAP_DIR} && chmod 700 {GUEST_SWAP_DIR}")
        commands.append(
            f"cat > {GUEST_SWAP_SCRIPT} <<'{_SWAP_HEREDOC_TAG}'\n{script.rstrip()}\n{_SWAP_HEREDOC_TAG}\n"
        )
        commands.append(f"sh {GUEST_SWAP_SCRIPT}")

    for iface in params.interfaces:
        commands.extend(interface_tuning_commands(iface))
    return commands


def build_context(params: DeploymentParameters, primary: PrimaryUser, instance_id: str) -> Dict[str, Any]:
    """Fresh render context: the parameter tree plus derived legacy fields."""
    context: Dict[str, Any] = copy.deepcopy(dict(params.tree))
    context["user"] = primary.as_context()
    seed = dict(context.get("seed") or {})
    seed["instance_id"] = instance_id
    context["seed"] = seed
    users = context.get("users") or {}
    for user in params.users:
        entry = users.get(user.key)
        if isinstance(entry, dict):
            entry["groups_csv"] = ",".join(user.groups)
    return context


def render_seed_bundle(params: DeploymentParameters, primary: PrimaryUser, instance_id: str) -> SeedBundle:
    templates_dir: Path = params.templates_dir or DEFAULT_TEMPLATES_DIR
    context = build_context(params, primary, instance_id)
    runcmd = build_runcmd(params)
    documents: Dict[str, str] = {}
    for template_name, output_name, required in SEED_DOCUMENTS:
        if output_name == "network-config" and not params.interfaces:
            log("INFO", "No interfaces declared; network-config will not be included")
            continue
        path = templates_dir / template_name
        if not path.is_file():
            if required:
                raise TemplateMissingError(f"Required template missing: {path}")
            log("INFO", f"No {template_name} in {templates_dir}; {output_name} will not be included")
            continue
        rendered = render_template(
            path.read_text(encoding="utf-8"),
            context,
            users=params.users,
            interfaces=params.interfaces,
            runcmd=runcmd,
        )
        leftovers = find_placeholders(rendered)
        if leftovers:
            log("WARN", f"{output_name}: unresolved placeholders left as-is: {', '.join(leftovers)}")
        documents[output_name] = rendered
    return SeedBundle(documents=documents, instance_id=instance_id)
