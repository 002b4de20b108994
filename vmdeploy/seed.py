"""Seed ISO packaging and datastore path helpers."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Tuple

from vmdeploy.constants import DATASTORE_PATH_RE, SEED_VOLUME_ID
from vmdeploy.exceptions import ArtifactExistsError, ConfigError, DeployError
from vmdeploy.models import SeedBundle
from vmdeploy.utils import log, run


def parse_datastore_path(raw: str) -> Tuple[str, str]:
    """Split ``[store-name] folder/file.iso`` into store and relative path."""
    match = DATASTORE_PATH_RE.match(raw.strip())
    if not match:
        raise ConfigError(f"Invalid datastore path '{raw}'. Expected '[store-name] folder/file.iso'")
    relative = match.group("path").strip().lstrip("/")
    if ".." in Path(relative).parts:
        raise ConfigError(f"Datastore path '{raw}' must not leave the store")
    return match.group("store").strip(), relative


def write_documents(bundle: SeedBundle, directory: Path) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    for name, content in bundle.documents.items():
        (directory / name).write_text(content, encoding="utf-8")


def build_seed_iso(bundle: SeedBundle, workdir: Path, output: Path) -> Path:
    write_documents(bundle, workdir)
    cmd = [
        "genisoimage",
        "-output",
        str(output),
        "-volid",
        SEED_VOLUME_ID,
        "-joliet",
        "-rock",
    ]
    cmd.extend(str(workdir / name) for name in bundle.documents)
    try:
        run(cmd, capture_output=True)
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        raise DeployError(f"Failed to build seed ISO: {exc}") from exc
    log("SUCCESS", f"Seed ISO built ({', '.join(bundle.documents)})")
    return output


def publish_seed(control, local_iso: Path, datastore_path: str) -> Path:
    """Upload the ISO unless an artifact of the same name already exists."""
    if control.datastore_exists(datastore_path):
        raise ArtifactExistsError(
            f"{datastore_path} already exists; remove it (or run phase 4) before seeding again"
        )
    remote = control.datastore_upload(local_iso, datastore_path)
    log("SUCCESS", f"Seed ISO uploaded to {datastore_path}")
    return remote
