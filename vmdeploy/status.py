"""Run report for vmdeploy: phase results plus non-fatal warnings."""

from __future__ import annotations

import time
from pathlib import Path
from typing import List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmdeploy.models import PhaseResult, PhaseStatus
from vmdeploy.utils import ensure_directory, log


class DeployReport:
    """Collects what happened during one invocation.

    Warnings are the degraded channel: they never stop a phase, but every one
    is echoed immediately and repeated in the final summary.
    """

    def __init__(self, vm_name: str) -> None:
        self.vm_name = vm_name
        self.started = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        self.results: List[PhaseResult] = []
        self.warnings: List[str] = []
        self.error: Optional[str] = None

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        log("WARN", message)

    def record(self, result: PhaseResult) -> None:
        self.results.append(result)
        level = "SUCCESS" if result.status == PhaseStatus.COMPLETED else "WARN"
        detail = f": {result.detail}" if result.detail else ""
        log(level, f"Phase {int(result.phase)} ({result.phase.title}) {result.status.value}{detail}")

    def fail(self, message: str) -> None:
        self.error = message

    @property
    def needs_attention(self) -> bool:
        return any(result.status != PhaseStatus.COMPLETED for result in self.results)

    def as_dict(self) -> dict:
        return {
            "vm": self.vm_name,
            "started": self.started,
            "phases": [
                {
                    "phase": int(result.phase),
                    "name": result.phase.title,
                    "status": result.status.value,
                    "detail": result.detail,
                    "detection": result.detection.value if result.detection else None,
                }
                for result in self.results
            ],
            "warnings": list(self.warnings),
            "error": self.error,
        }

    def summary(self) -> None:
        for result in self.results:
            log("INFO", f"  {int(result.phase)} {result.phase.title:<20} {result.status.value}")
        if self.warnings:
            log("WARN", f"{len(self.warnings)} warning(s) need review:")
            for message in self.warnings:
                log("WARN", f"  - {message}")

    def write(self, state_dir: Path) -> Optional[Path]:
        try:
            ensure_directory(state_dir)
            path = state_dir / f"{self.vm_name}-report.yaml"
            path.write_text(yaml.safe_dump(self.as_dict(), sort_keys=False), encoding="utf-8")
        except OSError as exc:
            log("WARN", f"Could not write run report to {state_dir}: {exc}")
            return None
        log("DEBUG", f"Run report written to {path}")
        return path
