"""libvirt control-plane adapter for vmdeploy."""

from __future__ import annotations

import json
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Tuple
from xml.etree.ElementTree import Element, SubElement, fromstring, tostring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from vmdeploy.constants import DISK_BUS_PREFIX, LIBVIRT_URI, MEDIA_BUS
from vmdeploy.exceptions import ControlPlaneError, DeployError
from vmdeploy.models import DiskSpec
from vmdeploy.seed import parse_datastore_path
from vmdeploy.utils import ensure_directory, log, run


def _error_message(exc: Exception) -> str:
    return exc.get_error_message() if hasattr(exc, "get_error_message") else str(exc)


class LibvirtControlPlane:
    def __init__(self, uri: str = LIBVIRT_URI) -> None:
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None

    def connect(self) -> None:
        try:
            self.conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise DeployError(f"Failed to open libvirt connection to {self.uri}: {_error_message(exc)}") from exc
        if self.conn is None:
            raise DeployError(f"Failed to open libvirt connection to {self.uri}")

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _connection(self) -> "libvirt.virConnect":
        if self.conn is None:
            raise DeployError("libvirt connection not established")
        return self.conn

    # -- VM objects -----------------------------------------------------

    def lookup(self, name: str):
        """Domain for ``name``, or None when it does not exist."""
        try:
            return self._connection().lookupByName(name)
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise ControlPlaneError(_error_message(exc)) from exc

    def is_active(self, domain) -> bool:
        try:
            return bool(domain.isActive())
        except libvirt.libvirtError as exc:
            raise ControlPlaneError(_error_message(exc)) from exc

    def start(self, domain) -> None:
        try:
            domain.create()
        except libvirt.libvirtError as exc:
            raise ControlPlaneError(_error_message(exc)) from exc

    def shutdown(self, domain) -> None:
        try:
            domain.shutdown()
        except libvirt.libvirtError as exc:
            raise ControlPlaneError(_error_message(exc)) from exc

    def clone(self, template: str, name: str, pool: Optional[str] = None) -> None:
        """Create ``name`` from the powered-off ``template`` domain."""
        cmd = ["virt-clone", "--connect", self.uri, "--original", template, "--name", name]
        if pool:
            source = self.lookup(template)
            if source is None:
                raise DeployError(f"Template VM {template} not found")
            pool_dir = self.pool_dir(pool)
            for idx, disk in enumerate(self.disks(source)):
                suffix = "" if idx == 0 else f"-{idx}"
                cmd.extend(["--file", str(pool_dir / f"{name}{suffix}.qcow2")])
        else:
            cmd.append("--auto-clone")
        try:
            run(cmd, capture_output=True)
        except subprocess.CalledProcessError as exc:
            raise DeployError(f"virt-clone failed: {(exc.stderr or '').strip() or exc}") from exc
        except FileNotFoundError as exc:
            raise DeployError("virt-clone not found. Install virtinst.") from exc

    def set_cpu_memory(self, domain, cpus: Optional[int], memory_mb: Optional[int]) -> None:
        flags = libvirt.VIR_DOMAIN_AFFECT_CONFIG
        try:
            if cpus:
                domain.setVcpusFlags(cpus, flags | libvirt.VIR_DOMAIN_VCPU_MAXIMUM)
                domain.setVcpusFlags(cpus, flags)
            if memory_mb:
                kib = memory_mb * 1024
                domain.setMemoryFlags(kib, flags | libvirt.VIR_DOMAIN_MEM_MAXIMUM)
                domain.setMemoryFlags(kib, flags)
        except libvirt.libvirtError as exc:
            raise DeployError(f"Failed to set CPU/memory: {_error_message(exc)}") from exc

    # -- Disks ----------------------------------------------------------

    @staticmethod
    def _devices(domain) -> Element:
        root = fromstring(domain.XMLDesc(0))
        devices = root.find("devices")
        return devices if devices is not None else Element("devices")

    def disks(self, domain, device: str = "disk") -> List[Tuple[str, Optional[str], str]]:
        found = []
        for disk in self._devices(domain).findall("disk"):
            if disk.get("device", "disk") != device:
                continue
            target = disk.find("target")
            source = disk.find("source")
            if target is None:
                continue
            path = source.get("file") if source is not None else None
            found.append((target.get("dev", ""), path, target.get("bus", "virtio")))
        return found

    @staticmethod
    def _next_dev(used: Sequence[str], prefix: str) -> str:
        for offset in range(26):
            candidate = f"{prefix}{chr(ord('a') + offset)}"
            if candidate not in used:
                return candidate
        raise DeployError(f"No free {prefix}* device names left")

    @staticmethod
    def _virtual_size(path: str) -> int:
        info = subprocess.run(
            ["qemu-img", "info", "--output=json", "--force-share", path],
            capture_output=True,
            text=True,
        )
        if info.returncode != 0:
            raise DeployError(f"qemu-img info failed for {path}: {info.stderr.strip()}")
        return int(json.loads(info.stdout).get("virtual-size", 0))

    def apply_disks(self, domain, vm_name: str, disks: Sequence[DiskSpec]) -> None:
        """Grow existing disks and add missing ones; never shrinks."""
        existing = self.disks(domain)
        used = [dev for dev, _, _ in existing] + [dev for dev, _, _ in self.disks(domain, "cdrom")]
        for spec in disks:
            size = f"{spec.size_gb}G"
            wanted = spec.size_gb * 1024**3
            if spec.index < len(existing):
                dev, path, _ = existing[spec.index]
                if not path:
                    log("WARN", f"Disk {dev} has no file source; resize skipped")
                    continue
                current = self._virtual_size(path)
                if wanted > current:
                    log("INFO", f"Growing {dev} from {current // 1024**3}G to {size}")
                    run(["qemu-img", "resize", path, size])
                elif wanted < current:
                    log("INFO", f"Disk {dev} already {current // 1024**3}G (> {size}); not shrinking")
                continue
            if not existing or not existing[0][1]:
                raise DeployError("Cannot place additional disks: boot disk has no file source")
            bus = existing[0][2]
            prefix = DISK_BUS_PREFIX.get(bus, "vd")
            dev = self._next_dev(used, prefix)
            used.append(dev)
            path = str(Path(existing[0][1]).parent / f"{vm_name}-disk{spec.index}.qcow2")
            log("INFO", f"Creating disk {dev} ({size}) at {path}")
            run(["qemu-img", "create", "-f", "qcow2", path, size])
            disk = Element("disk", type="file", device="disk")
            SubElement(disk, "driver", name="qemu", type="qcow2")
            SubElement(disk, "source", file=path)
            SubElement(disk, "target", dev=dev, bus=bus)
            try:
                domain.attachDeviceFlags(tostring(disk, encoding="unicode"), libvirt.VIR_DOMAIN_AFFECT_CONFIG)
            except libvirt.libvirtError as exc:
                raise DeployError(f"Failed to attach disk {dev}: {_error_message(exc)}") from exc

    # -- Removable media ------------------------------------------------

    def _media_flags(self, domain) -> int:
        flags = libvirt.VIR_DOMAIN_AFFECT_CONFIG
        if self.is_active(domain):
            flags |= libvirt.VIR_DOMAIN_AFFECT_LIVE
        return flags

    @staticmethod
    def _cdrom_xml(dev: str, bus: str, path: Optional[str]) -> str:
        disk = Element("disk", type="file", device="cdrom")
        SubElement(disk, "driver", name="qemu", type="raw")
        if path:
            SubElement(disk, "source", file=path)
        SubElement(disk, "target", dev=dev, bus=bus)
        SubElement(disk, "readonly")
        return tostring(disk, encoding="unicode")

    def attach_media(self, domain, iso_path: Path) -> str:
        cdroms = self.disks(domain, "cdrom")
        try:
            if cdroms:
                dev, _, bus = cdroms[0]
                domain.updateDeviceFlags(self._cdrom_xml(dev, bus, str(iso_path)), self._media_flags(domain))
            else:
                used = [d for d, _, _ in self.disks(domain)]
                dev = self._next_dev(used, DISK_BUS_PREFIX[MEDIA_BUS])
                domain.attachDeviceFlags(
                    self._cdrom_xml(dev, MEDIA_BUS, str(iso_path)), libvirt.VIR_DOMAIN_AFFECT_CONFIG
                )
        except libvirt.libvirtError as exc:
            raise DeployError(f"Failed to attach seed ISO: {_error_message(exc)}") from exc
        return dev

    def detach_media(self, domain, iso_path: Path) -> bool:
        """Eject ``iso_path`` from whichever CD-ROM holds it. False if none did."""
        for dev, source, bus in self.disks(domain, "cdrom"):
            if source and Path(source) == Path(iso_path):
                try:
                    domain.updateDeviceFlags(self._cdrom_xml(dev, bus, None), self._media_flags(domain))
                except libvirt.libvirtError as exc:
                    raise DeployError(f"Failed to eject seed ISO from {dev}: {_error_message(exc)}") from exc
                return True
        return False

    # -- Datastore (storage pools) --------------------------------------

    def pool_dir(self, store: str) -> Path:
        try:
            pool = self._connection().storagePoolLookupByName(store)
            target = fromstring(pool.XMLDesc(0)).findtext("target/path")
        except libvirt.libvirtError as exc:
            raise DeployError(f"Storage pool '{store}' not available: {_error_message(exc)}") from exc
        if not target:
            raise DeployError(f"Storage pool '{store}' has no target path")
        return Path(target)

    def _refresh_pool(self, store: str) -> None:
        try:
            self._connection().storagePoolLookupByName(store).refresh(0)
        except libvirt.libvirtError as exc:
            log("DEBUG", f"Pool refresh for {store} failed: {_error_message(exc)}")

    def datastore_file(self, datastore_path: str) -> Path:
        store, relative = parse_datastore_path(datastore_path)
        return self.pool_dir(store) / relative

    def datastore_exists(self, datastore_path: str) -> bool:
        return self.datastore_file(datastore_path).exists()

    def datastore_upload(self, local: Path, datastore_path: str) -> Path:
        store, _ = parse_datastore_path(datastore_path)
        destination = self.datastore_file(datastore_path)
        ensure_directory(destination.parent)
        shutil.copy2(local, destination)
        self._refresh_pool(store)
        return destination

    def datastore_delete(self, datastore_path: str) -> bool:
        store, _ = parse_datastore_path(datastore_path)
        target = self.datastore_file(datastore_path)
        if not target.exists():
            return False
        target.unlink()
        self._refresh_pool(store)
        return True
