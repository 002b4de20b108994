"""Deployment phases: Clone, GuestInit, SeedAndPersonalize, Finalize.

Phases run in ascending order and only as a contiguous run (``1-3`` or ``2,3``,
never ``1,3``). Each phase looks the VM up again on entry and checks its own
preconditions against live state, so a phase may be re-run on its own in a
later invocation.
"""

from __future__ import annotations

import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from vmdeploy.constants import (
    CLOUD_INIT_DISABLED,
    GUEST_INIT_DISKONLY_SCRIPT,
    GUEST_INIT_SCRIPT,
    GUEST_SCRIPTS_DIR,
    PREVENT_SCRIPT,
    REACHABLE_PROBE_WAIT,
)
from vmdeploy.detect import ActivationDetector, completion_ceiling, evidence_summary
from vmdeploy.exceptions import (
    CloudInitDisabledError,
    CloudInitNotRanError,
    ConfigError,
    DeployError,
    GuestChannelError,
    LookupExhaustedError,
    PhaseOrderError,
    PowerError,
    VMExistsError,
    VMNotFoundError,
)
from vmdeploy.guest import run_guest_script
from vmdeploy.models import (
    DeploymentParameters,
    DeployOptions,
    DetectionOutcome,
    EvidenceLabel,
    LookupStatus,
    Phase,
    PhaseResult,
    PhaseStatus,
    PowerOutcome,
    PrimaryUser,
    VMLookup,
)
from vmdeploy.power import PowerController, check_cancelled, resolve_vm
from vmdeploy.seed import build_seed_iso, publish_seed
from vmdeploy.status import DeployReport
from vmdeploy.template import render_seed_bundle
from vmdeploy.users import require_credentials
from vmdeploy.utils import log

_DETECTION_STATUS = {
    DetectionOutcome.SUCCESS: PhaseStatus.COMPLETED,
    DetectionOutcome.DISABLED: PhaseStatus.UNCONFIRMED,
    DetectionOutcome.TIMEOUT: PhaseStatus.UNCONFIRMED,
    DetectionOutcome.POWER_BLOCKED: PhaseStatus.BLOCKED,
}

_POWER_OK = {PowerOutcome.SUCCESS, PowerOutcome.ALREADY_STARTED, PowerOutcome.ALREADY_STOPPED}


def validate_phase_run(phases: Iterable[int]) -> List[Phase]:
    """Sorted phases, provided they form one run of consecutive numbers."""
    requested = sorted({int(phase) for phase in phases})
    if not requested:
        raise PhaseOrderError("No phases requested")
    valid = {int(phase) for phase in Phase}
    unknown = [number for number in requested if number not in valid]
    if unknown:
        raise PhaseOrderError(f"Unknown phase(s): {', '.join(map(str, unknown))} (valid: 1-4)")
    if requested != list(range(requested[0], requested[-1] + 1)):
        raise PhaseOrderError(
            f"Phases {','.join(map(str, requested))} are not contiguous; request a run such as 1-4 or 2,3"
        )
    return [Phase(number) for number in requested]


def read_guest_script(name: str) -> str:
    return (GUEST_SCRIPTS_DIR / name).read_text(encoding="utf-8")


class Deployer:
    """Runs the requested phases for one VM against a control plane."""

    def __init__(
        self,
        params: DeploymentParameters,
        options: DeployOptions,
        control,
        channel_factory: Callable,
        report: DeployReport,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.params = params
        self.options = options
        self.control = control
        self.channel_factory = channel_factory
        self.report = report
        self.cancel = cancel
        self.power = PowerController(
            control, channel_factory, params.timeouts, no_power_change=options.no_power_change, cancel=cancel
        )
        self.primary = PrimaryUser(key="", name="", password=None, passwd=None)
        # Outcome of detection in this invocation; None when phase 3 did not run.
        self.detection: Optional[DetectionOutcome] = None
        self.finalize_refused = False

    @property
    def vm_name(self) -> str:
        return self.params.vm_name

    def run(self, phases: Iterable[int]) -> DeployReport:
        ordered = validate_phase_run(phases)
        self.primary = require_credentials(ordered, self.params.users, self.options.skip_reset)
        handlers: Dict[Phase, Callable[[], PhaseResult]] = {
            Phase.CLONE: self.clone,
            Phase.GUEST_INIT: self.guest_init,
            Phase.SEED_AND_PERSONALIZE: self.seed_and_personalize,
            Phase.FINALIZE: self.finalize,
        }
        for phase in ordered:
            check_cancelled(self.cancel)
            if phase == Phase.FINALIZE and self.finalize_refused:
                self.report.warn("Finalize refused: the seed boot never happened in this run")
                self.report.record(PhaseResult(phase, PhaseStatus.BLOCKED, "refused after blocked seed boot"))
                continue
            log("INFO", f"=== Phase {int(phase)}: {phase.title} ({self.vm_name}) ===")
            self.report.record(handlers[phase]())
        return self.report

    # -- helpers --------------------------------------------------------

    def _resolve(self, retry_absent: bool = False) -> VMLookup:
        lookup = resolve_vm(self.control, self.vm_name, retry_absent=retry_absent)
        if lookup.status == LookupStatus.FAILED:
            raise LookupExhaustedError(f"Could not look up VM {self.vm_name}; control plane kept failing")
        return lookup

    def _require_vm(self, retry_absent: bool = False):
        lookup = self._resolve(retry_absent=retry_absent)
        if lookup.status == LookupStatus.ABSENT:
            raise VMNotFoundError(f"VM {self.vm_name} does not exist")
        return lookup.domain

    def _ensure_reachable(self) -> None:
        """Power the VM on if needed and wait for its guest agent."""
        outcome = self.power.ensure_started(self.vm_name)
        if outcome == PowerOutcome.SKIPPED:
            raise PowerError(f"{self.vm_name} is off and automatic power changes are disabled; start it first")
        if outcome in (PowerOutcome.START_FAILED, PowerOutcome.STAT_UNKNOWN):
            raise PowerError(f"Could not power on {self.vm_name} ({outcome.value})")
        if outcome == PowerOutcome.SUCCESS:
            return
        if not self.power.wait_channel_ready(self.vm_name, self.params.timeouts.channel_ready_wait):
            raise GuestChannelError(f"Guest agent of {self.vm_name} is not answering")

    def _run_script(self, name: str, content: str) -> None:
        channel = self.channel_factory(self.vm_name)
        result = run_guest_script(channel, self.primary, name, content, report=self.report)
        if result.exit_code != 0:
            raise DeployError(f"{name} exited {result.exit_code} in {self.vm_name}: {result.stderr.strip()}")

    # -- phase 1 --------------------------------------------------------

    def clone(self) -> PhaseResult:
        params = self.params
        if not params.template:
            raise ConfigError("vm.template is required for the Clone phase")
        if self._resolve().status == LookupStatus.FOUND:
            raise VMExistsError(f"A VM named {self.vm_name} already exists")
        template = resolve_vm(self.control, params.template)
        if template.status == LookupStatus.FAILED:
            raise LookupExhaustedError(f"Could not look up template {params.template}")
        if template.status == LookupStatus.ABSENT:
            raise VMNotFoundError(f"Template VM {params.template} does not exist")

        log("INFO", f"Cloning {params.template} -> {self.vm_name}" + (f" (pool {params.pool})" if params.pool else ""))
        self.control.clone(params.template, self.vm_name, params.pool)
        domain = self._require_vm(retry_absent=True)
        if params.cpus or params.memory_mb:
            self.control.set_cpu_memory(domain, params.cpus, params.memory_mb)
            log("INFO", f"Set {params.cpus or '-'} vCPU / {params.memory_mb or '-'} MiB")
        if params.disks:
            self.control.apply_disks(domain, self.vm_name, params.disks)
        return PhaseResult(Phase.CLONE, PhaseStatus.COMPLETED, f"cloned from {params.template}")

    # -- phase 2 --------------------------------------------------------

    def guest_init(self) -> PhaseResult:
        self._require_vm()
        self._ensure_reachable()
        script = GUEST_INIT_DISKONLY_SCRIPT if self.options.disk_only else GUEST_INIT_SCRIPT
        log("INFO", f"Running {script} in {self.vm_name} as {self.primary.name}")
        self._run_script(script, read_guest_script(script))
        return PhaseResult(Phase.GUEST_INIT, PhaseStatus.COMPLETED, script)

    # -- phase 3 --------------------------------------------------------

    def _check_not_disabled(self) -> None:
        """Refuse to seed a guest that has cloud-init permanently disabled."""
        if not self.power.power_state(self.vm_name):
            log("DEBUG", f"{self.vm_name} is not running; disabled marker not checked")
            return
        if not self.power.wait_channel_ready(self.vm_name, REACHABLE_PROBE_WAIT):
            log("WARN", f"{self.vm_name} is running but unreachable; disabled marker not checked")
            return
        try:
            disabled = self.channel_factory(self.vm_name).path_exists(CLOUD_INIT_DISABLED)
        except GuestChannelError as exc:
            self.report.warn(f"Could not check {CLOUD_INIT_DISABLED} in {self.vm_name}: {exc}")
            return
        if disabled:
            raise CloudInitDisabledError(
                f"{CLOUD_INIT_DISABLED} exists in {self.vm_name}; cloud-init would ignore the seed. Run phase 2 first"
            )

    def _power_blocked(self, detail: str) -> PhaseResult:
        self.report.warn(detail)
        self.detection = DetectionOutcome.POWER_BLOCKED
        self.finalize_refused = True
        return PhaseResult(
            Phase.SEED_AND_PERSONALIZE,
            _DETECTION_STATUS[DetectionOutcome.POWER_BLOCKED],
            detail,
            DetectionOutcome.POWER_BLOCKED,
        )

    def seed_and_personalize(self) -> PhaseResult:
        params = self.params
        if not params.datastore_path:
            raise ConfigError("seed.datastore_path is required for the SeedAndPersonalize phase")
        self._require_vm()
        self._check_not_disabled()

        stopped = self.power.ensure_stopped(self.vm_name)
        if stopped == PowerOutcome.SKIPPED:
            return self._power_blocked(f"{self.vm_name} must be off to attach the seed; it was left running")
        if stopped not in _POWER_OK:
            raise PowerError(f"Could not power off {self.vm_name} ({stopped.value})")

        instance_id = f"iid-{self.vm_name}-{int(time.time())}"
        bundle = render_seed_bundle(params, self.primary, instance_id)
        with tempfile.TemporaryDirectory(prefix="vmdeploy-") as tmp:
            local_iso = build_seed_iso(bundle, Path(tmp) / "seed", Path(tmp) / "seed.iso")
            remote_iso = publish_seed(self.control, local_iso, params.datastore_path)

        device = self.control.attach_media(self._require_vm(), remote_iso)
        log("INFO", f"Seed ISO attached to {self.vm_name} as {device}")
        t0 = int(time.time())

        started = self.power.ensure_started(self.vm_name)
        if started == PowerOutcome.SKIPPED:
            return self._power_blocked(
                f"Seed attached but {self.vm_name} was not booted; power it on manually, then run phase 4"
            )
        if started in (PowerOutcome.START_FAILED, PowerOutcome.STAT_UNKNOWN):
            raise PowerError(f"Could not power on {self.vm_name} ({started.value})")
        if started == PowerOutcome.TIMEOUT:
            self.report.warn(f"{self.vm_name} was slow to come up; continuing with detection")

        detector = ActivationDetector(
            self.channel_factory(self.vm_name),
            self.power,
            self.primary,
            self.vm_name,
            t0,
            params.timeouts,
            self.report,
            cancel=self.cancel,
            expected_iid=instance_id,
        )
        evidence = detector.quick_check()
        if evidence.label == EvidenceLabel.NOTRAN:
            raise CloudInitNotRanError(
                f"No sign that cloud-init ran on {self.vm_name} after the seed was attached"
            )
        if evidence.label == EvidenceLabel.DISABLED:
            self.detection = DetectionOutcome.DISABLED
            self.report.warn(f"cloud-init is disabled in {self.vm_name}; personalization did not run")
            return PhaseResult(
                Phase.SEED_AND_PERSONALIZE,
                _DETECTION_STATUS[DetectionOutcome.DISABLED],
                "cloud-init disabled",
                DetectionOutcome.DISABLED,
            )

        outcome, label = detector.wait_for_completion(completion_ceiling(evidence, params.timeouts))
        self.detection = outcome
        if outcome == DetectionOutcome.DISABLED:
            self.report.warn(f"cloud-init became disabled in {self.vm_name} while waiting for it")
        elif outcome == DetectionOutcome.TIMEOUT:
            self.report.warn(
                f"cloud-init did not report completion on {self.vm_name}; "
                "check the guest, then run phase 4 on its own to finalize"
            )
        detail = f"{' '.join(evidence_summary(evidence))}; completion {label.value}"
        return PhaseResult(Phase.SEED_AND_PERSONALIZE, _DETECTION_STATUS[outcome], detail, outcome)

    # -- phase 4 --------------------------------------------------------

    def _remove_seed(self, domain) -> None:
        datastore_path = self.params.datastore_path
        if not datastore_path:
            log("INFO", "No seed.datastore_path configured; nothing to detach")
            return
        remote_iso = self.control.datastore_file(datastore_path)
        if self.control.detach_media(domain, remote_iso):
            log("SUCCESS", f"Seed ISO ejected from {self.vm_name}")
        else:
            log("INFO", f"Seed ISO not attached to {self.vm_name}")
        if self.control.datastore_delete(datastore_path):
            log("SUCCESS", f"Removed {datastore_path}")
        else:
            log("INFO", f"{datastore_path} already absent")

    def finalize(self) -> PhaseResult:
        domain = self._require_vm()
        self._remove_seed(domain)

        if self.options.skip_reset:
            log("INFO", "Leaving cloud-init enabled (--skip-cloudinit-reset)")
            return PhaseResult(Phase.FINALIZE, PhaseStatus.COMPLETED, "seed removed; cloud-init left enabled")
        if self.detection is not None and self.detection != DetectionOutcome.SUCCESS:
            self.report.warn(
                f"Not disabling cloud-init on {self.vm_name}: completion was {self.detection.value}. "
                "Confirm the guest, then run phase 4 on its own"
            )
            return PhaseResult(Phase.FINALIZE, PhaseStatus.UNCONFIRMED, "seed removed; cloud-init left enabled")

        self._ensure_reachable()
        self._run_script(PREVENT_SCRIPT, read_guest_script(PREVENT_SCRIPT))
        log("SUCCESS", f"cloud-init disabled in {self.vm_name}")
        return PhaseResult(Phase.FINALIZE, PhaseStatus.COMPLETED, "seed removed; cloud-init disabled")
