"""Tests for vmdeploy.config module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from vmdeploy.config import discover_groups, load_parameters, parse_parameters, runtime_options
from vmdeploy.exceptions import ConfigError


class TestDiscoverGroups:
    def test_numeric_ordering(self):
        tree = {
            "users": {"user10": {}, "user2": {}, "user1": {}},
            "network": {"netif2": {}, "netif1": {}},
            "swaps": {"10": "/dev/x", "2": "/dev/y", "1": "/dev/z"},
        }
        groups = discover_groups(tree)
        assert groups["users"] == ["user1", "user2", "user10"]
        assert groups["network"] == ["netif1", "netif2"]
        assert groups["swaps"] == ["1", "2", "10"]

    def test_unrecognised_keys_are_warned_and_skipped(self):
        with patch("vmdeploy.config.log") as mock_log:
            groups = discover_groups({"users": {"admin": {}, "user1": {}}})
        assert groups["users"] == ["user1"]
        mock_log.assert_called_once()
        assert mock_log.call_args[0][0] == "WARN"

    def test_section_must_be_mapping(self):
        with pytest.raises(ConfigError):
            discover_groups({"network": ["eth0"]})


class TestParseParameters:
    def test_basic(self, params):
        assert params.vm_name == "web01"
        assert params.template == "rhel9-template"
        assert params.cpus == 2
        assert params.memory_mb == 4096
        assert [u.key for u in params.users] == ["user1", "user2"]
        assert params.users[0].groups == ("wheel", "adm")
        assert params.users[1].ssh_keys == ()
        assert params.interfaces[0].ignore_auto_dns is True
        assert params.interfaces[0].prefix == 24
        assert params.disks[0].size_gb == 40
        assert params.datastore_path == "[default] seeds/web01.iso"

    def test_malformed_datastore_path(self, params_data):
        params_data["seed"]["datastore_path"] = "seeds/web01.iso"
        with pytest.raises(ConfigError, match="datastore path"):
            parse_parameters(params_data)

    def test_hostname_defaults_to_name(self, params_data):
        del params_data["vm"]["hostname"]
        params = parse_parameters(params_data)
        assert params.hostname == "web01"
        assert params.tree["vm"]["hostname"] == "web01"

    def test_input_not_mutated(self, params_data):
        del params_data["vm"]["hostname"]
        parse_parameters(params_data)
        assert "hostname" not in params_data["vm"]

    def test_tree_is_read_only(self, params):
        with pytest.raises(TypeError):
            params.tree["vm"] = {}

    def test_name_required(self, params_data):
        params_data["vm"]["name"] = ""
        with pytest.raises(ConfigError, match="vm.name"):
            parse_parameters(params_data)

    def test_invalid_name(self, params_data):
        params_data["vm"]["name"] = "bad name"
        with pytest.raises(ConfigError):
            parse_parameters(params_data)

    def test_password_hashed_when_passwd_missing(self, params_data):
        del params_data["users"]["user2"]["passwd"]
        with patch("vmdeploy.config.hash_password", return_value="$2b$hashed") as mock_hash:
            params = parse_parameters(params_data)
        mock_hash.assert_called_once_with("d3ploy")
        assert params.users[1].passwd == "$2b$hashed"
        assert params.tree["users"]["user2"]["passwd"] == "$2b$hashed"

    def test_ssh_keys_from_comma_string(self, params_data):
        params_data["users"]["user2"]["ssh_keys"] = "key-a, key-b"
        params = parse_parameters(params_data)
        assert params.users[1].ssh_keys == ("key-a", "key-b")

    def test_multiple_primaries_warns(self, params_data):
        params_data["users"]["user2"]["primary"] = True
        with patch("vmdeploy.config.log") as mock_log:
            parse_parameters(params_data)
        assert any(call[0][0] == "WARN" and "primary" in call[0][1] for call in mock_log.call_args_list)

    def test_swap_must_be_device(self, params_data):
        params_data["swaps"]["3"] = "swapfile"
        with pytest.raises(ConfigError, match="swaps.3"):
            parse_parameters(params_data)

    def test_interface_device_required(self, params_data):
        del params_data["network"]["netif1"]["device"]
        with pytest.raises(ConfigError, match="network.netif1.device"):
            parse_parameters(params_data)

    def test_relative_templates_dir(self, params_data, tmp_path):
        params_data["seed"]["templates_dir"] = "tmpl"
        params = parse_parameters(params_data, base_dir=tmp_path)
        assert params.templates_dir == tmp_path / "tmpl"

    def test_disks_accept_plain_sizes(self, params_data):
        params_data["disks"] = [40, {"size_gb": 100}]
        params = parse_parameters(params_data)
        assert [(d.index, d.size_gb) for d in params.disks] == [(0, 40), (1, 100)]


class TestTimeouts:
    def test_defaults(self, params):
        assert params.timeouts.cloudinit_wait == 900
        assert params.timeouts.weak_evidence_wait == 45

    def test_override(self, params_data):
        params_data["timeouts"] = {"cloudinit_wait": 120, "cloudinit_poll_interval": 5}
        params = parse_parameters(params_data)
        assert params.timeouts.cloudinit_wait == 120
        assert params.timeouts.cloudinit_poll_interval == 5

    def test_unknown_key(self, params_data):
        params_data["timeouts"] = {"cloudinit_wiat": 120}
        with pytest.raises(ConfigError, match="Unknown timeouts"):
            parse_parameters(params_data)

    def test_cloudinit_wait_floor(self, params_data):
        params_data["timeouts"] = {"cloudinit_wait": 30}
        with pytest.raises(ConfigError, match="cloudinit_wait"):
            parse_parameters(params_data)

    def test_rejects_bool(self, params_data):
        params_data["timeouts"] = {"power_on_wait": True}
        with pytest.raises(ConfigError):
            parse_parameters(params_data)


class TestLoadParameters:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="missing"):
            load_parameters(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text("vm: [unclosed\n")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_parameters(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_parameters(path)

    def test_loads_file(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text("vm:\n  name: db01\nseed:\n  templates_dir: templates\n")
        params = load_parameters(path)
        assert params.vm_name == "db01"
        assert params.templates_dir == tmp_path / "templates"
        assert params.users == ()

    def test_unquoted_swap_keys(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text("vm:\n  name: db01\nswaps: {1: /dev/sdb1, 2: /dev/sdc1, 10: /dev/sdd1}\n")
        params = load_parameters(path)
        assert params.swaps == (("1", "/dev/sdb1"), ("2", "/dev/sdc1"), ("10", "/dev/sdd1"))
        assert params.tree["swaps"]["10"] == "/dev/sdd1"

    def test_null_hostname_falls_back_to_name(self, tmp_path):
        path = tmp_path / "params.yaml"
        path.write_text("vm:\n  name: db01\n  hostname:\n")
        params = load_parameters(path)
        assert params.hostname == "db01"
        assert params.tree["vm"]["hostname"] == "db01"


class TestRuntimeOptions:
    def test_flags(self, mock_env):
        mock_env(NO_POWER_CHANGE=None, SKIP_CLOUDINIT_RESET=None, DISK_ONLY=None)
        options = runtime_options(no_power_change=True)
        assert options.no_power_change is True
        assert options.skip_reset is False
        assert options.disk_only is False

    def test_env(self, mock_env):
        mock_env(NO_POWER_CHANGE="yes", SKIP_CLOUDINIT_RESET="1", DISK_ONLY="off")
        options = runtime_options()
        assert options.no_power_change is True
        assert options.skip_reset is True
        assert options.disk_only is False
