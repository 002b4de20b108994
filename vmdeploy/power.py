"""VM lookup and power lifecycle for vmdeploy."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from vmdeploy.constants import (
    CHANNEL_POLL_INTERVAL,
    LOOKUP_ATTEMPTS,
    LOOKUP_RETRY_DELAY,
    MAX_TRANSIENT_FAILURES,
    POWER_POLL_INTERVAL,
)
from vmdeploy.exceptions import ControlPlaneError, DeployCancelled, GuestChannelError
from vmdeploy.models import LookupStatus, PowerOutcome, Timeouts, VMLookup
from vmdeploy.utils import log


def check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise DeployCancelled("Deployment cancelled")


def resolve_vm(
    control,
    name: str,
    attempts: int = LOOKUP_ATTEMPTS,
    delay: float = LOOKUP_RETRY_DELAY,
    retry_absent: bool = False,
) -> VMLookup:
    """Look ``name`` up, retrying control-plane faults a fixed number of times.

    Never raises for control-plane trouble: exhausting the attempts yields
    ``LookupStatus.FAILED``. With ``retry_absent`` an absent VM is retried too,
    for callers that expect it to appear shortly.
    """
    status = LookupStatus.FAILED
    for attempt in range(1, attempts + 1):
        try:
            domain = control.lookup(name)
        except ControlPlaneError as exc:
            log("DEBUG", f"Lookup of {name} failed ({attempt}/{attempts}): {exc}")
            status = LookupStatus.FAILED
        else:
            if domain is not None:
                return VMLookup(LookupStatus.FOUND, domain)
            status = LookupStatus.ABSENT
            if not retry_absent:
                return VMLookup(status)
        if attempt < attempts:
            time.sleep(delay)
    return VMLookup(status)


class PowerController:
    """Start/stop a VM and wait for it, answering with a ``PowerOutcome``."""

    def __init__(
        self,
        control,
        channel_factory: Callable,
        timeouts: Timeouts,
        no_power_change: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.control = control
        self.channel_factory = channel_factory
        self.timeouts = timeouts
        self.no_power_change = no_power_change
        self.cancel = cancel

    def power_state(self, name: str) -> Optional[bool]:
        """True/False for on/off; None when the state could not be read."""
        lookup = resolve_vm(self.control, name)
        if lookup.status != LookupStatus.FOUND:
            return None
        try:
            return self.control.is_active(lookup.domain)
        except ControlPlaneError as exc:
            log("DEBUG", f"Power state of {name} unreadable: {exc}")
            return None

    def _poll_power(self, name: str, want_on: bool, timeout: float) -> Optional[bool]:
        """Wait until the VM reaches the wanted state.

        Returns True when reached, False on timeout, None once consecutive
        unreadable states exceed MAX_TRANSIENT_FAILURES.
        """
        failures = 0
        deadline = time.time() + timeout
        while True:
            check_cancelled(self.cancel)
            state = self.power_state(name)
            if state is None:
                failures += 1
                if failures > MAX_TRANSIENT_FAILURES:
                    return None
            else:
                failures = 0
                if state == want_on:
                    return True
            if time.time() >= deadline:
                return False
            time.sleep(POWER_POLL_INTERVAL)

    def ensure_started(self, name: str, force: bool = False) -> PowerOutcome:
        state = self.power_state(name)
        if state is None:
            return PowerOutcome.STAT_UNKNOWN
        if self.no_power_change and not force:
            if state:
                return PowerOutcome.ALREADY_STARTED
            log("WARN", f"{name} is powered off and automatic power changes are disabled")
            return PowerOutcome.SKIPPED
        if state:
            return PowerOutcome.ALREADY_STARTED

        lookup = resolve_vm(self.control, name)
        if lookup.status != LookupStatus.FOUND:
            return PowerOutcome.STAT_UNKNOWN
        log("INFO", f"Powering on {name}...")
        try:
            self.control.start(lookup.domain)
        except ControlPlaneError as exc:
            log("ERROR", f"Start request for {name} failed: {exc}")
            return PowerOutcome.START_FAILED

        reached = self._poll_power(name, True, self.timeouts.power_on_wait)
        if reached is None:
            log("ERROR", f"Lost track of {name} while waiting for power-on")
            return PowerOutcome.START_FAILED
        if not reached:
            log("WARN", f"{name} did not power on within {self.timeouts.power_on_wait}s")
            return PowerOutcome.TIMEOUT

        if not self.wait_channel_ready(name, self.timeouts.channel_ready_wait):
            log("WARN", f"{name} is on but its guest agent did not answer")
            return PowerOutcome.TIMEOUT
        log("SUCCESS", f"{name} powered on and guest agent ready")
        return PowerOutcome.SUCCESS

    def ensure_stopped(self, name: str) -> PowerOutcome:
        state = self.power_state(name)
        if state is None:
            return PowerOutcome.STAT_UNKNOWN
        if not state:
            return PowerOutcome.ALREADY_STOPPED
        if self.no_power_change:
            log("WARN", f"{name} is running and automatic power changes are disabled")
            return PowerOutcome.SKIPPED

        lookup = resolve_vm(self.control, name)
        if lookup.status != LookupStatus.FOUND:
            return PowerOutcome.STAT_UNKNOWN
        log("INFO", f"Requesting guest shutdown of {name}...")
        try:
            self.control.shutdown(lookup.domain)
        except ControlPlaneError as exc:
            log("ERROR", f"Shutdown request for {name} failed: {exc}")
            return PowerOutcome.STOP_FAILED

        reached = self._poll_power(name, False, self.timeouts.power_off_wait)
        if reached is None:
            log("ERROR", f"Lost track of {name} while waiting for power-off")
            return PowerOutcome.STOP_FAILED
        if not reached:
            log("WARN", f"{name} did not power off within {self.timeouts.power_off_wait}s")
            return PowerOutcome.TIMEOUT
        log("SUCCESS", f"{name} powered off")
        return PowerOutcome.SUCCESS

    def wait_channel_ready(self, name: str, timeout: float, interval: float = CHANNEL_POLL_INTERVAL) -> bool:
        """Poll the guest agent until it answers; read failures count as not-yet."""
        channel = self.channel_factory(name)
        deadline = time.time() + timeout
        while True:
            check_cancelled(self.cancel)
            try:
                if channel.ping():
                    return True
            except (GuestChannelError, OSError) as exc:
                log("DEBUG", f"Guest agent probe for {name} failed: {exc}")
            remaining = deadline - time.time()
            if remaining <= 0:
                return False
            time.sleep(min(interval, remaining))
