"""Parameter file loading and runtime settings for vmdeploy."""

from __future__ import annotations

import copy
import re
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmdeploy.constants import (
    DEFAULT_TIMEOUTS,
    NETIF_KEY_RE,
    SWAP_KEY_RE,
    USER_KEY_RE,
    WEAK_EVIDENCE_MAX,
)
from vmdeploy.exceptions import ConfigError
from vmdeploy.models import (
    DeploymentParameters,
    DeployOptions,
    DiskSpec,
    InterfaceSpec,
    ResizeTarget,
    Timeouts,
    UserSpec,
)
from vmdeploy.seed import parse_datastore_path
from vmdeploy.utils import get_env_bool, hash_password, log, numeric_key, parse_bool, parse_int


def load_parameters(path: Path) -> DeploymentParameters:
    if not path.exists():
        raise ConfigError(f"Parameter file missing: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Parameter file {path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise ConfigError(f"Parameter file {path} must contain a YAML mapping")
    return parse_parameters(data, base_dir=path.parent)


def discover_groups(tree: Dict[str, Any]) -> Dict[str, List[str]]:
    """Find the numbered optional groups in one pass over the configuration keys.

    Returns the user, interface and swap keys, each sorted numerically so that
    ``user10`` follows ``user2``.
    """
    patterns = (
        ("users", USER_KEY_RE),
        ("network", NETIF_KEY_RE),
        ("swaps", SWAP_KEY_RE),
    )
    groups: Dict[str, List[str]] = {}
    for section, pattern in patterns:
        mapping = tree.get(section) or {}
        if not isinstance(mapping, dict):
            raise ConfigError(f"'{section}' must be a mapping")
        keys = []
        for key in mapping:
            if pattern.match(str(key)):
                keys.append(str(key))
            else:
                log("WARN", f"Ignoring unrecognised key '{key}' under '{section}'")
        groups[section] = sorted(keys, key=numeric_key)
    return groups


def _string_list(name: str, raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return tuple(item.strip() for item in raw.split(",") if item.strip())
    if isinstance(raw, list):
        return tuple(str(item) for item in raw if item is not None and str(item).strip())
    raise ConfigError(f"{name} must be a list (got {type(raw).__name__})")


def _build_user(key: str, raw: Any) -> UserSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"users.{key} must be a mapping")
    name = str(raw.get("name") or "").strip()
    if not name:
        raise ConfigError(f"users.{key}.name is required")
    password = raw.get("password")
    passwd = raw.get("passwd")
    if password is not None:
        password = str(password)
    if passwd is None and password:
        passwd = hash_password(password)
        # Rendered documents read the hash from the tree
        raw["passwd"] = passwd
    return UserSpec(
        key=key,
        number=numeric_key(key),
        name=name,
        password=password,
        passwd=str(passwd) if passwd is not None else None,
        groups=_string_list(f"users.{key}.groups", raw.get("groups")),
        ssh_keys=_string_list(f"users.{key}.ssh_keys", raw.get("ssh_keys")),
        primary=parse_bool(raw.get("primary")),
    )


def _build_interface(key: str, raw: Any) -> InterfaceSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"network.{key} must be a mapping")
    device = str(raw.get("device") or "").strip()
    if not device:
        raise ConfigError(f"network.{key}.device is required")
    prefix = raw.get("prefix")
    return InterfaceSpec(
        key=key,
        number=numeric_key(key),
        device=device,
        address=raw.get("address"),
        prefix=parse_int(f"network.{key}.prefix", prefix, min_val=0, max_val=128) if prefix is not None else None,
        gateway=raw.get("gateway"),
        nameservers=_string_list(f"network.{key}.nameservers", raw.get("nameservers")),
        ignore_auto_routes=parse_bool(raw.get("ignore_auto_routes")),
        ignore_auto_dns=parse_bool(raw.get("ignore_auto_dns")),
        disable_ipv6=parse_bool(raw.get("disable_ipv6")),
    )


def _build_resize(raw: Any) -> Tuple[ResizeTarget, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError("'resize' must be a list")
    targets = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict) or not entry.get("device"):
            raise ConfigError(f"resize[{idx}] needs at least a 'device'")
        targets.append(
            ResizeTarget(
                device=str(entry["device"]),
                partition=parse_int(f"resize[{idx}].partition", entry.get("partition", 1)),
                filesystem=str(entry.get("filesystem", "xfs")).lower(),
                mount=str(entry.get("mount", "/")),
            )
        )
    return tuple(targets)


def _build_disks(raw: Any) -> Tuple[DiskSpec, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError("'disks' must be a list")
    disks = []
    for idx, entry in enumerate(raw):
        size = entry.get("size_gb") if isinstance(entry, dict) else entry
        disks.append(DiskSpec(index=idx, size_gb=parse_int(f"disks[{idx}].size_gb", size)))
    return tuple(disks)


def _build_timeouts(raw: Any) -> Timeouts:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("'timeouts' must be a mapping")
    unknown = set(raw) - set(DEFAULT_TIMEOUTS)
    if unknown:
        raise ConfigError(f"Unknown timeouts: {', '.join(sorted(unknown))}")
    values = {name: parse_int(f"timeouts.{name}", raw.get(name, default)) for name, default in DEFAULT_TIMEOUTS.items()}
    if values["cloudinit_wait"] < WEAK_EVIDENCE_MAX:
        raise ConfigError(f"timeouts.cloudinit_wait must be >= {WEAK_EVIDENCE_MAX} (got {values['cloudinit_wait']})")
    return Timeouts(**values)


def parse_parameters(data: Dict[str, Any], base_dir: Optional[Path] = None) -> DeploymentParameters:
    tree = copy.deepcopy(data)
    vm = tree.get("vm") or {}
    if not isinstance(vm, dict):
        raise ConfigError("'vm' must be a mapping")
    vm_name = str(vm.get("name") or "").strip()
    if not vm_name:
        raise ConfigError("vm.name is required")
    if not re.match(r"^[A-Za-z0-9][A-Za-z0-9._-]*$", vm_name):
        raise ConfigError(f"Invalid vm.name '{vm_name}'")
    vm["hostname"] = str(vm.get("hostname") or vm_name)
    tree["vm"] = vm
    for section in ("users", "network", "swaps"):
        # YAML reads `1: /dev/sdb1` with an integer key
        if isinstance(tree.get(section), dict):
            tree[section] = {str(key): value for key, value in tree[section].items()}

    groups = discover_groups(tree)
    users = tuple(_build_user(key, tree["users"][key]) for key in groups["users"])
    primaries = [user.key for user in users if user.primary]
    if len(primaries) > 1:
        log("WARN", f"More than one user is marked primary ({', '.join(primaries)}); using {primaries[0]}")
    interfaces = tuple(_build_interface(key, tree["network"][key]) for key in groups["network"])

    swaps = []
    for key in groups["swaps"]:
        device = tree["swaps"][key]
        if not device or not str(device).startswith("/dev/"):
            raise ConfigError(f"swaps.{key} must be a device path (got '{device}')")
        swaps.append((key, str(device)))

    seed = tree.get("seed") or {}
    if not isinstance(seed, dict):
        raise ConfigError("'seed' must be a mapping")
    templates_dir: Optional[Path] = None
    if seed.get("templates_dir"):
        templates_dir = Path(str(seed["templates_dir"])).expanduser()
        if not templates_dir.is_absolute() and base_dir is not None:
            templates_dir = base_dir / templates_dir
    datastore_path = str(seed["datastore_path"]).strip() if seed.get("datastore_path") else None
    if datastore_path:
        parse_datastore_path(datastore_path)

    cpus = vm.get("cpus")
    memory_mb = vm.get("memory_mb")
    return DeploymentParameters(
        vm_name=vm_name,
        template=(str(vm["template"]).strip() if vm.get("template") else None),
        hostname=vm["hostname"],
        cpus=parse_int("vm.cpus", cpus) if cpus is not None else None,
        memory_mb=parse_int("vm.memory_mb", memory_mb, min_val=128) if memory_mb is not None else None,
        pool=(str(vm["pool"]) if vm.get("pool") else None),
        disks=_build_disks(tree.get("disks")),
        users=users,
        interfaces=interfaces,
        swaps=tuple(swaps),
        resize=_build_resize(tree.get("resize")),
        timeouts=_build_timeouts(tree.get("timeouts")),
        datastore_path=datastore_path,
        templates_dir=templates_dir,
        tree=MappingProxyType(tree),
    )


def runtime_options(no_power_change: bool = False, skip_reset: bool = False, disk_only: bool = False) -> DeployOptions:
    """Combine CLI flags with their environment variable equivalents."""
    return DeployOptions(
        no_power_change=no_power_change or get_env_bool("NO_POWER_CHANGE", False),
        skip_reset=skip_reset or get_env_bool("SKIP_CLOUDINIT_RESET", False),
        disk_only=disk_only or get_env_bool("DISK_ONLY", False),
    )
