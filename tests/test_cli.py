"""Tests for vmdeploy.cli module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml

from vmdeploy import cli
from vmdeploy.constants import EXIT_ATTENTION
from vmdeploy.exceptions import PhaseOrderError, PowerError
from vmdeploy.models import DetectionOutcome, Phase, PhaseResult, PhaseStatus


class TestParsePhases:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("1-4", [1, 2, 3, 4]),
            ("2,3", [2, 3]),
            ("4", [4]),
            ("1-2, 4", [1, 2, 4]),
            ("3,2", [3, 2]),
        ],
    )
    def test_valid(self, raw, expected):
        assert cli.parse_phases(raw) == expected

    @pytest.mark.parametrize("raw", ["one", "1-x", "2-"])
    def test_invalid(self, raw):
        with pytest.raises(PhaseOrderError):
            cli.parse_phases(raw)


class TestMaskSensitive:
    def test_nested(self):
        tree = {"users": {"user1": {"name": "admin", "password": "pw", "passwd": "$2b$x"}}, "list": [{"password": "a"}]}
        masked = cli.mask_sensitive(tree)
        assert masked["users"]["user1"] == {"name": "admin", "password": "********", "passwd": "********"}
        assert masked["list"] == [{"password": "********"}]
        assert tree["users"]["user1"]["password"] == "pw"


class TestMainWithoutControlPlane:
    def test_missing_params_file(self, tmp_path):
        assert cli.main([str(tmp_path / "missing.yaml")]) == 2

    def test_show_config_masks_credentials(self, params_file, capsys):
        assert cli.main([str(params_file), "--show-config"]) == 0
        out = capsys.readouterr().out
        assert "s3cret" not in out
        assert "********" in out
        assert "swap devices: /dev/sdb1, /dev/sdc1" in out

    def test_render(self, params_file, tmp_path):
        out_dir = tmp_path / "rendered"
        assert cli.main([str(params_file), "--render", str(out_dir)]) == 0
        assert sorted(p.name for p in out_dir.iterdir()) == ["meta-data", "network-config", "user-data"]
        user_data = yaml.safe_load((out_dir / "user-data").read_text())
        assert user_data["hostname"] == "web01.example.com"

    def test_non_contiguous_phases(self, params_file):
        assert cli.main([str(params_file), "--phases", "1,3"]) == PhaseOrderError.exit_code

    def test_missing_credentials(self, tmp_path):
        path = tmp_path / "p.yaml"
        path.write_text("vm:\n  name: web01\n")
        assert cli.main([str(path), "--phases", "2"]) == 4


class TestMainRun:
    def _deployer_cls(self, behaviour):
        def _make(params, options, control, channel_factory, report, cancel):
            deployer = MagicMock()
            deployer.run.side_effect = lambda phases: behaviour(report, list(phases))
            return deployer

        return MagicMock(side_effect=_make)

    def _run(self, argv, behaviour, tmp_path):
        deployer_cls = self._deployer_cls(behaviour)
        with patch("vmdeploy.control.LibvirtControlPlane") as control_cls, patch(
            "vmdeploy.cli.Deployer", deployer_cls
        ), patch("vmdeploy.cli.STATE_DIR", tmp_path / "state"):
            code = cli.main(argv)
        return code, control_cls.return_value, deployer_cls

    def test_success(self, params_file, tmp_path):
        seen = {}

        def behaviour(report, phases):
            seen["phases"] = phases
            report.record(PhaseResult(Phase.FINALIZE, PhaseStatus.COMPLETED))

        code, control, deployer_cls = self._run([str(params_file), "--phases", "3-4"], behaviour, tmp_path)
        assert code == 0
        assert seen["phases"] == [3, 4]
        control.connect.assert_called_once()
        control.close.assert_called_once()
        options = deployer_cls.call_args.args[1]
        assert options.no_power_change is False
        assert (tmp_path / "state" / "web01-report.yaml").exists()

    def test_needs_attention(self, params_file, tmp_path):
        def behaviour(report, phases):
            report.record(
                PhaseResult(Phase.SEED_AND_PERSONALIZE, PhaseStatus.UNCONFIRMED, "timeout", DetectionOutcome.TIMEOUT)
            )

        code, _, _ = self._run([str(params_file), "--phases", "3"], behaviour, tmp_path)
        assert code == EXIT_ATTENTION

    def test_deploy_error_maps_to_exit_code(self, params_file, tmp_path):
        def behaviour(report, phases):
            raise PowerError("could not power on")

        code, control, _ = self._run([str(params_file), "--no-power-change"], behaviour, tmp_path)
        assert code == PowerError.exit_code
        control.close.assert_called_once()
        data = yaml.safe_load((tmp_path / "state" / "web01-report.yaml").read_text())
        assert data["error"] == "could not power on"
