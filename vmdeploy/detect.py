"""cloud-init activation detection after the seed ISO is attached.

Every timestamp reported by the guest is compared strictly against T0, the
host time recorded right after the seed was attached and before power-on.
Anything not newer than T0 belongs to an earlier boot and is ignored.

Stage A (``quick_check``) runs one probe and names the strongest evidence that
cloud-init started on this boot. Stage B (``wait_for_completion``) polls until
cloud-init reports it has finished, bounded by a ceiling that weak evidence
shortens.
"""

from __future__ import annotations

import fnmatch
import threading
import time
from typing import Dict, List, Optional, Tuple

from vmdeploy.constants import (
    CLOUD_INIT_BOOT_FINISHED,
    CLOUD_INIT_INSTANCE_DIR,
    CLOUD_INIT_INSTANCE_ID,
    CLOUD_INIT_LOG,
    CLOUD_INIT_NETWORK_ARTIFACTS,
    CLOUD_INIT_SEM_DIR,
    COMPLETION_CHECK_SCRIPT,
    GUEST_SCRIPTS_DIR,
    QUICK_CHECK_SCRIPT,
    WEAK_EVIDENCE_MAX,
    WEAK_EVIDENCE_MIN,
)
from vmdeploy.exceptions import GuestChannelError
from vmdeploy.guest import run_guest_script
from vmdeploy.models import (
    CompletionLabel,
    DetectionOutcome,
    Evidence,
    EvidenceLabel,
    PollState,
    PrimaryUser,
    Timeouts,
)
from vmdeploy.power import check_cancelled
from vmdeploy.template import substitute_leaves
from vmdeploy.utils import log

_EVIDENCE_ORDER = (
    EvidenceLabel.DISABLED,
    EvidenceLabel.INSTANCE_ID,
    EvidenceLabel.INSTANCE_DIR,
    EvidenceLabel.MODULE_SEMAPHORE,
    EvidenceLabel.LOG,
    EvidenceLabel.BOOT_FINISHED,
    EvidenceLabel.NETWORK_CONFIG,
    EvidenceLabel.UNKNOWN,
)

_FINISHED_STATUSES = {"done", "error", "degraded"}


def render_probe(name: str, t0: int) -> str:
    text = (GUEST_SCRIPTS_DIR / name).read_text(encoding="utf-8")
    return substitute_leaves(text, {"t0": t0})


def _label_for_path(path: str) -> EvidenceLabel:
    if path == CLOUD_INIT_INSTANCE_ID:
        return EvidenceLabel.INSTANCE_ID
    if path.rstrip("/") == CLOUD_INIT_INSTANCE_DIR:
        return EvidenceLabel.INSTANCE_DIR
    if path.startswith(CLOUD_INIT_SEM_DIR):
        return EvidenceLabel.MODULE_SEMAPHORE
    if path == CLOUD_INIT_LOG:
        return EvidenceLabel.LOG
    if path == CLOUD_INIT_BOOT_FINISHED:
        return EvidenceLabel.BOOT_FINISHED
    if any(fnmatch.fnmatch(path, pattern) for pattern in CLOUD_INIT_NETWORK_ARTIFACTS):
        return EvidenceLabel.NETWORK_CONFIG
    return EvidenceLabel.UNKNOWN


def _parse_stat(rest: str) -> Optional[Tuple[int, str]]:
    mtime, _, path = rest.partition(" ")
    if not path:
        return None
    try:
        return int(mtime), path.strip()
    except ValueError:
        return None


def classify_quick_check(output: str, t0: int) -> Evidence:
    """Strongest evidence in a quick-check probe's output.

    Only artifacts modified strictly after ``t0`` count. Unparseable lines are
    skipped. Nothing qualifying yields ``NOTRAN``.
    """
    found: Dict[EvidenceLabel, str] = {}
    instance_id: Optional[str] = None
    for line in output.splitlines():
        tag, _, rest = line.strip().partition(" ")
        if tag == "DISABLED":
            found.setdefault(EvidenceLabel.DISABLED, rest.strip())
        elif tag == "IID":
            instance_id = rest.strip() or None
        elif tag == "STAT":
            parsed = _parse_stat(rest)
            if parsed is None:
                continue
            mtime, path = parsed
            if mtime > t0:
                found.setdefault(_label_for_path(path), path)
    for label in _EVIDENCE_ORDER:
        if label in found:
            return Evidence(label, found[label], instance_id)
    return Evidence(EvidenceLabel.NOTRAN, None, instance_id)


def classify_completion(output: str, t0: int) -> CompletionLabel:
    status_done = False
    final_done = False
    boot_finished = False
    for line in output.splitlines():
        tag, _, rest = line.strip().partition(" ")
        if tag == "DISABLED":
            return CompletionLabel.DISABLED
        if tag == "STATUS":
            words = rest.split()
            status_done = status_done or bool(words and words[0] in _FINISHED_STATUSES)
        elif tag == "FINAL":
            words = rest.split()
            final_done = final_done or bool(words and words[0] == "exited")
        elif tag == "STAT":
            parsed = _parse_stat(rest)
            if parsed and parsed[1] == CLOUD_INIT_BOOT_FINISHED and parsed[0] > t0:
                boot_finished = True
    if status_done:
        return CompletionLabel.STATUS
    if final_done:
        return CompletionLabel.FINAL_UNIT
    if boot_finished:
        return CompletionLabel.BOOT_FINISHED
    return CompletionLabel.PENDING


def completion_ceiling(evidence: Evidence, timeouts: Timeouts) -> int:
    full = timeouts.cloudinit_wait
    if not evidence.label.weak:
        return full
    short = max(WEAK_EVIDENCE_MIN, min(WEAK_EVIDENCE_MAX, timeouts.weak_evidence_wait))
    return min(full, short)


class ActivationDetector:
    def __init__(
        self,
        channel,
        power,
        user: PrimaryUser,
        vm_name: str,
        t0: int,
        timeouts: Timeouts,
        report,
        cancel: Optional[threading.Event] = None,
        expected_iid: Optional[str] = None,
    ) -> None:
        self.channel = channel
        self.power = power
        self.user = user
        self.vm_name = vm_name
        self.t0 = t0
        self.timeouts = timeouts
        self.report = report
        self.cancel = cancel
        self.expected_iid = expected_iid

    def quick_check(self) -> Evidence:
        if not self.power.wait_channel_ready(self.vm_name, self.timeouts.quick_check_wait):
            raise GuestChannelError(
                f"Guest agent of {self.vm_name} did not answer within {self.timeouts.quick_check_wait}s"
            )
        result = run_guest_script(
            self.channel, self.user, QUICK_CHECK_SCRIPT, render_probe(QUICK_CHECK_SCRIPT, self.t0), self.report
        )
        if result.exit_code != 0:
            self.report.warn(f"Quick check exited {result.exit_code}: {result.stderr.strip()}")
        evidence = classify_quick_check(result.stdout, self.t0)
        log("INFO", f"Quick check: {evidence.label.value}" + (f" ({evidence.path})" if evidence.path else ""))

        if evidence.label.weak:
            self.report.warn(
                f"Only weak evidence ({evidence.label.value}) that cloud-init ran on {self.vm_name}; "
                "completion wait shortened"
            )
        if (
            evidence.label.confirmed
            and self.expected_iid
            and evidence.instance_id
            and evidence.instance_id != self.expected_iid
        ):
            self.report.warn(
                f"Guest instance id is {evidence.instance_id}, expected {self.expected_iid}; "
                "cloud-init may have used another datasource"
            )
        return evidence

    def _probe_completion(self, script: str) -> CompletionLabel:
        try:
            result = run_guest_script(self.channel, self.user, COMPLETION_CHECK_SCRIPT, script, self.report, attempts=1)
        except GuestChannelError as exc:
            log("DEBUG", f"Completion probe failed: {exc}")
            return CompletionLabel.PENDING
        return classify_completion(result.stdout, self.t0)

    def wait_for_completion(self, ceiling: float) -> Tuple[DetectionOutcome, CompletionLabel]:
        """Poll until cloud-init finishes, is found disabled, or ``ceiling`` passes."""
        state = PollState(ceiling=ceiling, interval=self.timeouts.cloudinit_poll_interval)
        script = render_probe(COMPLETION_CHECK_SCRIPT, self.t0)
        started = time.time()
        log("INFO", f"Waiting up to {int(ceiling)}s for cloud-init to finish on {self.vm_name}...")
        while True:
            check_cancelled(self.cancel)
            state.elapsed = time.time() - started
            if state.expired:
                break
            probe_wait = min(self.timeouts.channel_probe_wait, state.remaining)
            if self.power.wait_channel_ready(self.vm_name, probe_wait):
                label = self._probe_completion(script)
                if label == CompletionLabel.DISABLED:
                    return DetectionOutcome.DISABLED, label
                if label != CompletionLabel.PENDING:
                    log("SUCCESS", f"cloud-init finished on {self.vm_name} ({label.value})")
                    return DetectionOutcome.SUCCESS, label
            else:
                log("DEBUG", f"Guest agent of {self.vm_name} unavailable this tick")
            state.elapsed = time.time() - started
            if state.expired:
                break
            time.sleep(min(state.interval, state.remaining))
        return DetectionOutcome.TIMEOUT, CompletionLabel.PENDING


def evidence_summary(evidence: Evidence) -> List[str]:
    parts = [evidence.label.value]
    if evidence.path:
        parts.append(evidence.path)
    if evidence.instance_id:
        parts.append(f"iid={evidence.instance_id}")
    return parts
