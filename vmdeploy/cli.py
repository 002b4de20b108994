"""CLI entry point for vmdeploy."""

from __future__ import annotations

import argparse
import signal
import threading
import time
import traceback
from pathlib import Path
from typing import Any, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmdeploy.config import load_parameters, runtime_options
from vmdeploy.constants import _SENSITIVE_FIELDS, EXIT_ATTENTION, LIBVIRT_URI, STATE_DIR
from vmdeploy.exceptions import DeployError, PhaseOrderError
from vmdeploy.guest import GuestChannel
from vmdeploy.models import DeploymentParameters, PrimaryUser
from vmdeploy.phases import Deployer, validate_phase_run
from vmdeploy.seed import write_documents
from vmdeploy.status import DeployReport
from vmdeploy.template import render_seed_bundle
from vmdeploy.users import require_credentials, resolve_primary_user
from vmdeploy.utils import get_env, log


def parse_phases(raw: str) -> List[int]:
    """Expand ``1-4``, ``2,3`` or ``3`` into phase numbers."""
    numbers: List[int] = []
    for token in raw.split(","):
        token = token.strip()
        if not token:
            continue
        start, sep, end = token.partition("-")
        try:
            if sep:
                numbers.extend(range(int(start), int(end) + 1))
            else:
                numbers.append(int(token))
        except ValueError:
            raise PhaseOrderError(f"Invalid phase selection '{raw}'")
    return numbers


def mask_sensitive(node: Any) -> Any:
    if isinstance(node, dict):
        return {
            key: ("********" if key in _SENSITIVE_FIELDS and value else mask_sensitive(value))
            for key, value in node.items()
        }
    if isinstance(node, list):
        return [mask_sensitive(item) for item in node]
    return node


def show_config(params: DeploymentParameters) -> None:
    """Print the parsed parameters with credentials masked."""
    print(yaml.safe_dump(mask_sensitive(dict(params.tree)), sort_keys=False).rstrip())
    print("  resolved:")
    print(f"    users: {', '.join(user.key for user in params.users) or '-'}")
    print(f"    interfaces: {', '.join(iface.key for iface in params.interfaces) or '-'}")
    print(f"    swap devices: {', '.join(params.swap_devices) or '-'}")
    for name, value in vars(params.timeouts).items():
        print(f"    timeouts.{name}: {value}")


def render_locally(params: DeploymentParameters, out_dir: Path) -> int:
    """Render the seed documents into ``out_dir`` without touching any VM."""
    primary = (
        resolve_primary_user(params.users)
        if params.users
        else PrimaryUser(key="", name="", password=None, passwd=None)
    )
    bundle = render_seed_bundle(params, primary, f"iid-{params.vm_name}-{int(time.time())}")
    write_documents(bundle, out_dir)
    for name in bundle.documents:
        log("INFO", f"Rendered {out_dir / name}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vmdeploy",
        description="Clone a template VM and personalize it with a cloud-init seed ISO.",
    )
    parser.add_argument("params", help="Deployment parameter file (YAML)")
    parser.add_argument(
        "--phases",
        default="1-4",
        help="Phases to run as a contiguous run, e.g. 1-4, 2,3 or 4 "
        "(1 Clone, 2 GuestInit, 3 SeedAndPersonalize, 4 Finalize)",
    )
    parser.add_argument(
        "--no-power-change",
        action="store_true",
        help="Never power the VM on or off automatically (env NO_POWER_CHANGE)",
    )
    parser.add_argument(
        "--skip-cloudinit-reset",
        action="store_true",
        help="Do not disable cloud-init during Finalize (env SKIP_CLOUDINIT_RESET)",
    )
    parser.add_argument(
        "--disk-only",
        action="store_true",
        help="GuestInit only prepares cloud-init for disk setup (env DISK_ONLY)",
    )
    parser.add_argument("--show-config", action="store_true", help="Print parsed parameters and exit")
    parser.add_argument("--render", metavar="DIR", help="Render seed documents into DIR and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        params = load_parameters(Path(args.params))
    except DeployError as exc:
        log("ERROR", str(exc))
        return exc.exit_code

    if args.show_config:
        show_config(params)
        return 0
    if args.render:
        try:
            return render_locally(params, Path(args.render))
        except DeployError as exc:
            log("ERROR", str(exc))
            return exc.exit_code

    options = runtime_options(args.no_power_change, args.skip_cloudinit_reset, args.disk_only)
    try:
        phases = validate_phase_run(parse_phases(args.phases))
        require_credentials(phases, params.users, options.skip_reset)
    except DeployError as exc:
        log("ERROR", str(exc))
        return exc.exit_code

    log("INFO", f"Deploying {params.vm_name}: phases {', '.join(f'{int(p)} {p.title}' for p in phases)}")
    if options.no_power_change:
        log("INFO", "Automatic power changes disabled")

    cancel = threading.Event()

    def _request_cancel(signum, frame):
        log("WARN", f"Received signal {signum}; stopping at the next checkpoint")
        cancel.set()

    prev_sigint = signal.signal(signal.SIGINT, _request_cancel)
    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)

    uri = get_env("LIBVIRT_URI", LIBVIRT_URI) or LIBVIRT_URI
    report = DeployReport(params.vm_name)
    control = None
    try:
        from vmdeploy.control import LibvirtControlPlane

        control = LibvirtControlPlane(uri)
        control.connect()
        deployer = Deployer(params, options, control, lambda name: GuestChannel(name, uri), report, cancel)
        deployer.run(int(phase) for phase in phases)
        retcode = EXIT_ATTENTION if report.needs_attention else 0
    except DeployError as exc:
        log("ERROR", str(exc))
        report.fail(str(exc))
        retcode = exc.exit_code
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        traceback.print_exc()
        report.fail(f"unexpected: {exc}")
        retcode = 1
    finally:
        if control is not None:
            control.close()
        signal.signal(signal.SIGINT, prev_sigint)
        signal.signal(signal.SIGTERM, prev_sigterm)

    report.summary()
    report.write(STATE_DIR)
    if retcode == EXIT_ATTENTION:
        log("WARN", f"{params.vm_name} deployed but needs attention (see warnings above)")
    elif retcode == 0:
        log("SUCCESS", f"{params.vm_name} deployed ({len(phases)} phase(s))")
    return retcode

