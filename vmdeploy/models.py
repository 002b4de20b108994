"""Data models for vmdeploy."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, NamedTuple, Optional, Tuple


class Phase(IntEnum):
    CLONE = 1
    GUEST_INIT = 2
    SEED_AND_PERSONALIZE = 3
    FINALIZE = 4

    @property
    def title(self) -> str:
        return _PHASE_TITLES[self]


_PHASE_TITLES = {
    Phase.CLONE: "Clone",
    Phase.GUEST_INIT: "GuestInit",
    Phase.SEED_AND_PERSONALIZE: "SeedAndPersonalize",
    Phase.FINALIZE: "Finalize",
}


class PowerOutcome(Enum):
    ALREADY_STARTED = "already-started"
    SUCCESS = "success"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    START_FAILED = "start-failed"
    STOP_FAILED = "stop-failed"
    STAT_UNKNOWN = "stat-unknown"
    ALREADY_STOPPED = "already-stopped"


class EvidenceLabel(Enum):
    """Quick-check evidence, strongest first."""

    DISABLED = "disabled"
    INSTANCE_ID = "instance-id"
    INSTANCE_DIR = "instance-dir"
    MODULE_SEMAPHORE = "module-semaphore"
    LOG = "log"
    BOOT_FINISHED = "boot-finished"
    NETWORK_CONFIG = "network-config"
    NOTRAN = "notran"
    UNKNOWN = "unknown"

    @property
    def confirmed(self) -> bool:
        return self not in (EvidenceLabel.DISABLED, EvidenceLabel.NOTRAN)

    @property
    def weak(self) -> bool:
        return self in (EvidenceLabel.NETWORK_CONFIG, EvidenceLabel.UNKNOWN)


class CompletionLabel(Enum):
    DISABLED = "disabled"
    STATUS = "status"
    FINAL_UNIT = "final-unit"
    BOOT_FINISHED = "boot-finished"
    PENDING = "pending"


class DetectionOutcome(Enum):
    SUCCESS = "success"
    DISABLED = "disabled"
    TIMEOUT = "timeout"
    POWER_BLOCKED = "power-blocked"


class PhaseStatus(Enum):
    COMPLETED = "completed"
    UNCONFIRMED = "unconfirmed"
    BLOCKED = "blocked"


class LookupStatus(Enum):
    FOUND = "found"
    ABSENT = "absent"
    FAILED = "failed"


class VMLookup(NamedTuple):
    status: LookupStatus
    domain: Any = None


@dataclass(frozen=True)
class DiskSpec:
    index: int
    size_gb: int


@dataclass(frozen=True)
class UserSpec:
    key: str
    number: int
    name: str
    password: Optional[str] = None
    passwd: Optional[str] = None
    groups: Tuple[str, ...] = ()
    ssh_keys: Tuple[str, ...] = ()
    primary: bool = False


@dataclass(frozen=True)
class InterfaceSpec:
    key: str
    number: int
    device: str
    address: Optional[str] = None
    prefix: Optional[int] = None
    gateway: Optional[str] = None
    nameservers: Tuple[str, ...] = ()
    ignore_auto_routes: bool = False
    ignore_auto_dns: bool = False
    disable_ipv6: bool = False


@dataclass(frozen=True)
class ResizeTarget:
    device: str
    partition: int
    filesystem: str
    mount: str


@dataclass(frozen=True)
class Timeouts:
    cloudinit_wait: int
    cloudinit_poll_interval: int
    weak_evidence_wait: int
    quick_check_wait: int
    channel_probe_wait: int
    power_on_wait: int
    power_off_wait: int
    channel_ready_wait: int


@dataclass(frozen=True)
class DeploymentParameters:
    vm_name: str
    template: Optional[str]
    hostname: str
    cpus: Optional[int]
    memory_mb: Optional[int]
    pool: Optional[str]
    disks: Tuple[DiskSpec, ...]
    users: Tuple[UserSpec, ...]
    interfaces: Tuple[InterfaceSpec, ...]
    swaps: Tuple[Tuple[str, str], ...]
    resize: Tuple[ResizeTarget, ...]
    timeouts: Timeouts
    datastore_path: Optional[str]
    templates_dir: Optional[Path]
    tree: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def swap_devices(self) -> Tuple[str, ...]:
        return tuple(device for _, device in self.swaps)


@dataclass(frozen=True)
class PrimaryUser:
    """Legacy single-user projection of the declared users."""

    key: str
    name: str
    password: Optional[str]
    passwd: Optional[str]

    def as_context(self) -> Dict[str, Any]:
        return {"key": self.key, "name": self.name, "password": self.password, "passwd": self.passwd}


@dataclass(frozen=True)
class SeedBundle:
    documents: Mapping[str, str]
    instance_id: str


@dataclass(frozen=True)
class Evidence:
    label: EvidenceLabel
    path: Optional[str] = None
    instance_id: Optional[str] = None


@dataclass
class PollState:
    ceiling: float
    interval: float
    elapsed: float = 0.0

    @property
    def expired(self) -> bool:
        return self.elapsed >= self.ceiling

    @property
    def remaining(self) -> float:
        return max(0.0, self.ceiling - self.elapsed)


@dataclass(frozen=True)
class PhaseResult:
    phase: Phase
    status: PhaseStatus
    detail: str = ""
    detection: Optional[DetectionOutcome] = None


@dataclass(frozen=True)
class DeployOptions:
    no_power_change: bool = False
    skip_reset: bool = False
    disk_only: bool = False
