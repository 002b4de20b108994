"""Tests for vmdeploy.seed module."""

from __future__ import annotations

import subprocess
from dataclasses import fields
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from vmdeploy.exceptions import ArtifactExistsError, ConfigError, DeployError
from vmdeploy.models import SeedBundle
from vmdeploy.seed import build_seed_iso, parse_datastore_path, publish_seed


class TestParseDatastorePath:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("[default] seeds/web01.iso", ("default", "seeds/web01.iso")),
            ("[ds1]   /iso/web01.iso", ("ds1", "iso/web01.iso")),
            ("  [images]seed.iso ", ("images", "seed.iso")),
        ],
    )
    def test_valid(self, raw, expected):
        assert parse_datastore_path(raw) == expected

    @pytest.mark.parametrize("raw", ["seeds/web01.iso", "[default]", "[] x.iso", "[ds] ../etc/passwd"])
    def test_invalid(self, raw):
        with pytest.raises(ConfigError):
            parse_datastore_path(raw)


class TestBuildSeedIso:
    def test_bundle_holds_only_rendered_documents(self):
        assert [field.name for field in fields(SeedBundle)] == ["documents", "instance_id"]

    def _bundle(self):
        return SeedBundle(
            documents={"user-data": "#cloud-config\n", "meta-data": "instance-id: iid-1\n"},
            instance_id="iid-1",
        )

    def test_invokes_genisoimage(self, tmp_path):
        workdir = tmp_path / "seed"
        output = tmp_path / "seed.iso"
        with patch("vmdeploy.seed.run") as mock_run:
            assert build_seed_iso(self._bundle(), workdir, output) == output
        cmd = mock_run.call_args.args[0]
        assert cmd[0] == "genisoimage"
        assert cmd[cmd.index("-output") + 1] == str(output)
        assert cmd[cmd.index("-volid") + 1] == "cidata"
        assert cmd[-2:] == [str(workdir / "user-data"), str(workdir / "meta-data")]
        assert (workdir / "meta-data").read_text() == "instance-id: iid-1\n"

    def test_failure_is_deploy_error(self, tmp_path):
        error = subprocess.CalledProcessError(1, ["genisoimage"], stderr="boom")
        with patch("vmdeploy.seed.run", side_effect=error):
            with pytest.raises(DeployError, match="seed ISO"):
                build_seed_iso(self._bundle(), tmp_path / "seed", tmp_path / "seed.iso")

    def test_missing_tool(self, tmp_path):
        with patch("vmdeploy.seed.run", side_effect=FileNotFoundError("genisoimage")):
            with pytest.raises(DeployError):
                build_seed_iso(self._bundle(), tmp_path / "seed", tmp_path / "seed.iso")


class TestPublishSeed:
    def test_upload(self):
        control = MagicMock()
        control.datastore_exists.return_value = False
        control.datastore_upload.return_value = Path("/var/lib/libvirt/images/seeds/web01.iso")
        remote = publish_seed(control, Path("/tmp/seed.iso"), "[default] seeds/web01.iso")
        assert remote == Path("/var/lib/libvirt/images/seeds/web01.iso")
        control.datastore_upload.assert_called_once_with(Path("/tmp/seed.iso"), "[default] seeds/web01.iso")

    def test_existing_artifact_aborts(self):
        control = MagicMock()
        control.datastore_exists.return_value = True
        with pytest.raises(ArtifactExistsError):
            publish_seed(control, Path("/tmp/seed.iso"), "[default] seeds/web01.iso")
        control.datastore_upload.assert_not_called()
