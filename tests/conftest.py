"""Shared test fixtures and libvirt stub injection for CI environments."""

from __future__ import annotations

import copy
import sys
import types
from types import SimpleNamespace
from unittest.mock import MagicMock


def _install_libvirt_stub():
    """Inject a minimal libvirt stub into sys.modules if the real library is not available."""
    if "libvirt" in sys.modules:
        return

    try:
        import libvirt  # noqa: F401

        return  # real library available
    except (ImportError, SystemExit):
        pass

    stub = types.ModuleType("libvirt")

    class libvirtError(Exception):
        def get_error_code(self):
            return None

        def get_error_message(self):
            return str(self)

    stub.libvirtError = libvirtError
    stub.open = MagicMock(return_value=MagicMock())

    # Values match libvirt's virErrorNumber and virDomainModificationImpact
    stub.VIR_ERR_INTERNAL_ERROR = 1
    stub.VIR_ERR_OPERATION_FAILED = 9
    stub.VIR_ERR_NO_DOMAIN = 42
    stub.VIR_ERR_NO_STORAGE_POOL = 49
    stub.VIR_DOMAIN_AFFECT_CURRENT = 0
    stub.VIR_DOMAIN_AFFECT_LIVE = 1
    stub.VIR_DOMAIN_AFFECT_CONFIG = 2
    stub.VIR_DOMAIN_VCPU_MAXIMUM = 4
    stub.VIR_DOMAIN_MEM_MAXIMUM = 4

    # virConnect / virDomain stubs
    stub.virConnect = MagicMock
    stub.virDomain = MagicMock

    sys.modules["libvirt"] = stub


_install_libvirt_stub()

import pytest  # noqa: E402
import yaml  # noqa: E402

from vmdeploy.config import parse_parameters  # noqa: E402
from vmdeploy.constants import DEFAULT_TIMEOUTS  # noqa: E402
from vmdeploy.models import PrimaryUser, Timeouts  # noqa: E402

# Pre-hashed so tests never pay for bcrypt
PASSWD_HASH = "$2b$12$abcdefghijklmnopqrstuu5Jv7nQ4yBG1uJxA9aV9c2S3dCkQz8eW"

BASE_PARAMS = {
    "vm": {
        "name": "web01",
        "template": "rhel9-template",
        "hostname": "web01.example.com",
        "cpus": 2,
        "memory_mb": 4096,
    },
    "disks": [{"size_gb": 40}],
    "users": {
        "user1": {
            "name": "admin",
            "password": "s3cret",
            "passwd": PASSWD_HASH,
            "primary": True,
            "groups": ["wheel", "adm"],
            "ssh_keys": ["ssh-ed25519 AAAAC3Nza admin@laptop", "ssh-rsa AAAAB3Nza admin@desktop"],
        },
        "user2": {"name": "deploy", "password": "d3ploy", "passwd": PASSWD_HASH},
    },
    "network": {
        "netif1": {
            "device": "eth0",
            "address": "192.0.2.10",
            "prefix": 24,
            "gateway": "192.0.2.1",
            "nameservers": ["192.0.2.53", "192.0.2.54"],
            "ignore_auto_dns": True,
        },
    },
    "swaps": {"1": "/dev/sdb1", "2": "/dev/sdc1"},
    "seed": {"datastore_path": "[default] seeds/web01.iso"},
}


class FakeClock:
    """Stands in for a module's ``time``: sleeping only advances the clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def params_data():
    return copy.deepcopy(BASE_PARAMS)


@pytest.fixture
def params(params_data):
    return parse_parameters(params_data)


@pytest.fixture
def params_file(tmp_path):
    path = tmp_path / "web01.yaml"
    path.write_text(yaml.safe_dump(copy.deepcopy(BASE_PARAMS)))
    return path


@pytest.fixture
def timeouts() -> Timeouts:
    return Timeouts(**DEFAULT_TIMEOUTS)


@pytest.fixture
def primary() -> PrimaryUser:
    return PrimaryUser(key="user1", name="admin", password="s3cret", passwd=PASSWD_HASH)


@pytest.fixture
def fake_clock(monkeypatch):
    """Patch the clock of every module that polls."""
    clock = FakeClock()
    for module in ("vmdeploy.power", "vmdeploy.detect", "vmdeploy.guest", "vmdeploy.phases"):
        monkeypatch.setattr(f"{module}.time", clock)
    return clock


@pytest.fixture
def report():
    rep = MagicMock()
    rep.warnings = []
    rep.warn.side_effect = rep.warnings.append
    return rep


@pytest.fixture
def control():
    """A control plane whose VM is found and powered off."""
    ctl = MagicMock()
    ctl.lookup.return_value = SimpleNamespace(name="web01")
    ctl.is_active.return_value = False
    ctl.datastore_exists.return_value = False
    return ctl


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set
