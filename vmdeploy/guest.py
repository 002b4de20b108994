"""Guest command channel over the QEMU guest agent."""

from __future__ import annotations

import base64
import json
import subprocess
import time
from typing import List, NamedTuple, Optional

from vmdeploy.constants import (
    GUEST_EXEC_ATTEMPTS,
    GUEST_EXEC_TIMEOUT,
    GUEST_STATUS_MISSES,
    GUEST_WORK_DIR,
    LIBVIRT_URI,
)
from vmdeploy.exceptions import GuestChannelError
from vmdeploy.models import PrimaryUser
from vmdeploy.utils import log


class ExecResult(NamedTuple):
    exit_code: int
    stdout: str
    stderr: str


class GuestChannel:
    """Run commands and transfer files inside a guest via ``virsh qemu-agent-command``."""

    def __init__(self, vm_name: str, uri: str = LIBVIRT_URI) -> None:
        self.vm_name = vm_name
        self.uri = uri

    def _agent(self, payload: dict, timeout: float = 10) -> Optional[dict]:
        """Send one agent command; None when the channel did not answer."""
        try:
            result = subprocess.run(
                ["virsh", "-c", self.uri, "qemu-agent-command", self.vm_name, json.dumps(payload)],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except (subprocess.TimeoutExpired, OSError):
            return None
        if result.returncode != 0:
            log("DEBUG", f"Agent command {payload.get('execute')} failed: {result.stderr.strip()}")
            return None
        try:
            return json.loads(result.stdout).get("return")
        except json.JSONDecodeError:
            return None

    def ping(self) -> bool:
        return self._agent({"execute": "guest-ping"}, timeout=5) is not None

    def exec(
        self,
        command: str,
        args: List[str],
        input_data: Optional[str] = None,
        timeout: float = GUEST_EXEC_TIMEOUT,
    ) -> Optional[ExecResult]:
        """Execute a command in the guest.

        Returns None when the command could not be started. Once it has a pid
        the command is never reported as not started: losing track of it or
        running past ``timeout`` raises GuestChannelError instead.
        """
        arguments = {"path": command, "arg": args, "capture-output": True}
        if input_data is not None:
            arguments["input-data"] = base64.b64encode(input_data.encode("utf-8")).decode("ascii")
        ret = self._agent({"execute": "guest-exec", "arguments": arguments})
        if not ret or ret.get("pid") is None:
            return None
        pid = ret["pid"]

        status_payload = {"execute": "guest-exec-status", "arguments": {"pid": pid}}
        deadline = time.time() + timeout
        misses = 0
        while time.time() < deadline:
            status = self._agent(status_payload)
            if status is None:
                misses += 1
                if misses > GUEST_STATUS_MISSES:
                    raise GuestChannelError(
                        f"Lost track of {command} (pid {pid}) in guest {self.vm_name}; it may still be running"
                    )
                log("DEBUG", f"No status for pid {pid} ({misses}/{GUEST_STATUS_MISSES}); asking again")
                time.sleep(1)
                continue
            misses = 0
            if status.get("exited"):
                stdout = base64.b64decode(status.get("out-data", "")).decode("utf-8", errors="replace")
                stderr = base64.b64decode(status.get("err-data", "")).decode("utf-8", errors="replace")
                return ExecResult(status.get("exitcode", -1), stdout, stderr)
            time.sleep(0.5)
        raise GuestChannelError(f"Guest command {command} (pid {pid}) still running after {int(timeout)}s")

    def write_file(self, guest_path: str, content: str) -> None:
        handle = self._agent({"execute": "guest-file-open", "arguments": {"path": guest_path, "mode": "w"}})
        if handle is None:
            raise GuestChannelError(f"Could not open {guest_path} in guest {self.vm_name}")
        try:
            encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
            written = self._agent(
                {"execute": "guest-file-write", "arguments": {"handle": handle, "buf-b64": encoded}}
            )
            if written is None:
                raise GuestChannelError(f"Could not write {guest_path} in guest {self.vm_name}")
        finally:
            self._agent({"execute": "guest-file-close", "arguments": {"handle": handle}})

    def remove_file(self, guest_path: str) -> None:
        result = self.exec("/bin/rm", ["-f", guest_path], timeout=30)
        if result is None or result.exit_code != 0:
            raise GuestChannelError(f"Could not remove {guest_path} from guest {self.vm_name}")

    def path_exists(self, guest_path: str) -> bool:
        result = self.exec("/usr/bin/test", ["-e", guest_path], timeout=30)
        if result is None:
            raise GuestChannelError(f"Could not query {guest_path} in guest {self.vm_name}")
        return result.exit_code == 0

    def run_elevated(self, script_path: str, user: PrimaryUser, timeout: float = GUEST_EXEC_TIMEOUT) -> Optional[ExecResult]:
        """Run a shell script as the primary user, elevated through sudo."""
        if user.name == "root":
            return self.exec("/bin/sh", [script_path], timeout=timeout)
        return self.exec(
            "/usr/sbin/runuser",
            ["-u", user.name, "--", "sudo", "-S", "-p", "", "/bin/sh", script_path],
            input_data=f"{user.password or ''}\n",
            timeout=timeout,
        )


def run_guest_script(
    channel: GuestChannel,
    user: PrimaryUser,
    name: str,
    content: str,
    report=None,
    attempts: int = GUEST_EXEC_ATTEMPTS,
    retry_delay: float = 5,
) -> ExecResult:
    """Copy a script into the guest, run it elevated, then remove it.

    Copying and starting are retried. A script that did start is never run a
    second time: if its status is lost the GuestChannelError propagates.
    Removal is best-effort and only produces a warning.
    """
    guest_path = f"{GUEST_WORK_DIR}/{name}"
    result: Optional[ExecResult] = None
    try:
        for attempt in range(1, attempts + 1):
            try:
                channel.write_file(guest_path, content)
            except GuestChannelError as exc:
                log("DEBUG", f"{name}: copy attempt {attempt}/{attempts} failed: {exc}")
            else:
                result = channel.run_elevated(guest_path, user)
                if result is not None:
                    break
                log("DEBUG", f"{name}: start attempt {attempt}/{attempts} failed")
            if attempt < attempts:
                time.sleep(retry_delay)
    finally:
        try:
            channel.remove_file(guest_path)
        except GuestChannelError as exc:
            message = f"Leftover guest script {guest_path}: {exc}"
            if report is not None:
                report.warn(message)
            else:
                log("WARN", message)
    if result is None:
        raise GuestChannelError(f"Guest script {name} could not be run after {attempts} attempts")
    return result
