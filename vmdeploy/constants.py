"""Global constants and path configuration for vmdeploy."""

from __future__ import annotations

import os
import re
from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
GUEST_SCRIPTS_DIR = PACKAGE_DIR / "scripts"
DEFAULT_TEMPLATES_DIR = PACKAGE_DIR / "templates"

STATE_DIR = Path(os.environ.get("VMDEPLOY_STATE_DIR", "/var/lib/vmdeploy"))
LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

_SENSITIVE_FIELDS = {"password", "passwd"}

# Numbered optional groups in the parameter file
USER_KEY_RE = re.compile(r"^user(\d+)$")
NETIF_KEY_RE = re.compile(r"^netif(\d+)$")
SWAP_KEY_RE = re.compile(r"^\d+$")

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_][A-Za-z0-9_.\-]*)\s*\}\}")
DATASTORE_PATH_RE = re.compile(r"^\[(?P<store>[^\]]+)\]\s*(?P<path>\S.*)$")

# Seed documents: (template file, rendered name, required)
SEED_DOCUMENTS = (
    ("user-data.tmpl", "user-data", True),
    ("meta-data.tmpl", "meta-data", True),
    ("network-config.tmpl", "network-config", False),
)
SEED_VOLUME_ID = "cidata"

# Guest-side paths
GUEST_WORK_DIR = "/var/tmp"
GUEST_SWAP_DIR = "/var/lib/vmdeploy"
GUEST_SWAP_SCRIPT = f"{GUEST_SWAP_DIR}/swap-reinit.sh"
CLOUD_INIT_DISABLED = "/etc/cloud/cloud-init.disabled"
CLOUD_INIT_INSTANCE_ID = "/var/lib/cloud/data/instance-id"
CLOUD_INIT_INSTANCE_DIR = "/var/lib/cloud/instance"
CLOUD_INIT_SEM_DIR = "/var/lib/cloud/instance/sem/"
CLOUD_INIT_LOG = "/var/log/cloud-init.log"
CLOUD_INIT_BOOT_FINISHED = "/var/lib/cloud/instance/boot-finished"
CLOUD_INIT_NETWORK_ARTIFACTS = (
    "/etc/netplan/50-cloud-init.yaml",
    "/etc/sysconfig/network-scripts/ifcfg-*",
    "/etc/NetworkManager/system-connections/cloud-init-*",
)

# Guest scripts shipped in GUEST_SCRIPTS_DIR
GUEST_INIT_SCRIPT = "init-cloudinit.sh"
GUEST_INIT_DISKONLY_SCRIPT = "init-cloudinit-diskonly.sh"
PREVENT_SCRIPT = "prevent-cloudinit.sh"
QUICK_CHECK_SCRIPT = "quick-check.sh"
COMPLETION_CHECK_SCRIPT = "completion-check.sh"
SWAP_SCRIPT_TEMPLATE = "swap-reinit.sh"

# Timing defaults (seconds)
DEFAULT_TIMEOUTS = {
    "cloudinit_wait": 900,
    "cloudinit_poll_interval": 10,
    "weak_evidence_wait": 45,
    "quick_check_wait": 300,
    "channel_probe_wait": 30,
    "power_on_wait": 300,
    "power_off_wait": 300,
    "channel_ready_wait": 300,
}
WEAK_EVIDENCE_MIN = 30
WEAK_EVIDENCE_MAX = 60
POWER_POLL_INTERVAL = 5
CHANNEL_POLL_INTERVAL = 5
REACHABLE_PROBE_WAIT = 15
MAX_TRANSIENT_FAILURES = 3
LOOKUP_ATTEMPTS = 3
LOOKUP_RETRY_DELAY = 2
GUEST_EXEC_ATTEMPTS = 3
GUEST_EXEC_TIMEOUT = 600
# Missed guest-exec-status replies tolerated before a started command is given up on
GUEST_STATUS_MISSES = 5

EXIT_ATTENTION = 20

DISK_BUS_PREFIX = {
    "virtio": "vd",
    "scsi": "sd",
    "sata": "sd",
    "usb": "sd",
    "ide": "hd",
}
MEDIA_BUS = "sata"
