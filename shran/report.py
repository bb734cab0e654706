# shran/report.py
"""
report.py - stage results and the build report

Features:
- StageResult: Pending -> Running -> terminal (Succeeded / Failed / Skipped); frozen once terminal
- BuildReport: mutex-guarded append-only sequence of StageResult, per-target outcome,
  finalize() makes it read-only
- JSON export for the CLI (--report)
"""

from __future__ import annotations

import json
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from shran.specloader import Stage


class StageStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


class FailureReason(str, Enum):
    STAGE_FAILURE = "StageFailure"
    SPAWN_FAILED = "SpawnFailed"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    FETCH_FAILED = "FetchFailed"


class ResultFrozenError(RuntimeError):
    """Raised when a terminal StageResult or a finalized report is mutated."""


class StageResult:
    """Outcome of one stage of one target."""

    __slots__ = ("target", "stage", "status", "exit_code", "duration", "output_ref",
                 "reason", "cancelled", "attempts", "detail", "started_at")

    def __init__(self, target: str, stage: Stage):
        self.target = target
        self.stage = stage
        self.status = StageStatus.PENDING
        self.exit_code: Optional[int] = None
        self.duration: float = 0.0
        self.output_ref: Optional[str] = None
        self.reason: Optional[FailureReason] = None
        self.cancelled = False
        self.attempts = 0
        self.detail: Optional[str] = None
        self.started_at: Optional[float] = None

    def __setattr__(self, name, value):
        # once terminal, a result can no longer change
        if hasattr(self, "status") and self.status.terminal:
            raise ResultFrozenError(f"{self.target}/{self.stage.value} is already {self.status.value}")
        object.__setattr__(self, name, value)

    # -----------------------
    # Transitions
    # -----------------------
    def start(self, attempt: Optional[int] = None) -> "StageResult":
        self.attempts = attempt if attempt is not None else self.attempts + 1
        self.started_at = time.monotonic()
        self.status = StageStatus.RUNNING
        return self

    def _elapsed(self) -> float:
        return time.monotonic() - self.started_at if self.started_at is not None else 0.0

    def succeed(self, exit_code: int = 0, output_ref: Optional[str] = None,
                duration: Optional[float] = None) -> "StageResult":
        self.exit_code = exit_code
        self.output_ref = output_ref
        self.duration = self._elapsed() if duration is None else duration
        self.status = StageStatus.SUCCEEDED
        return self

    def fail(self, reason: FailureReason, exit_code: Optional[int] = None, output_ref: Optional[str] = None,
             detail: Optional[str] = None, duration: Optional[float] = None) -> "StageResult":
        self.exit_code = exit_code
        self.output_ref = output_ref
        self.reason = reason
        self.cancelled = reason == FailureReason.CANCELLED
        self.detail = detail
        self.duration = self._elapsed() if duration is None else duration
        self.status = StageStatus.FAILED
        return self

    def skip(self, detail: Optional[str] = None) -> "StageResult":
        self.detail = detail
        self.status = StageStatus.SKIPPED
        return self

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == StageStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "stage": self.stage.value,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "output_ref": self.output_ref,
            "reason": self.reason.value if self.reason else None,
            "cancelled": self.cancelled,
            "attempts": self.attempts,
            "detail": self.detail,
        }

    def __repr__(self) -> str:
        return f"StageResult({self.target!r}, {self.stage.value!r}, {self.status.value})"


class BuildReport:
    """Run-wide report. Owned by the pipeline controller; readable while the run is in flight."""

    def __init__(self, targets: Optional[List[str]] = None):
        self._lock = threading.Lock()
        self._results: List[StageResult] = []
        self._targets: Dict[str, Dict[str, Any]] = {}
        self._finalized = False
        self.started_at = time.time()
        self.finished_at: Optional[float] = None
        for name in targets or []:
            self.register_target(name)

    def _check_open(self) -> None:
        if self._finalized:
            raise ResultFrozenError("build report is finalized")

    def register_target(self, name: str) -> None:
        with self._lock:
            self._check_open()
            self._targets.setdefault(name, {"state": "Queued", "blocked_by": None})

    def set_target_state(self, name: str, state: str, blocked_by: Optional[str] = None) -> None:
        with self._lock:
            self._check_open()
            entry = self._targets.setdefault(name, {"state": "Queued", "blocked_by": None})
            entry["state"] = state
            if blocked_by is not None:
                entry["blocked_by"] = blocked_by

    def append(self, result: StageResult) -> None:
        with self._lock:
            self._check_open()
            self._results.append(result)

    def finalize(self) -> "BuildReport":
        with self._lock:
            self._finalized = True
            self.finished_at = time.time()
        return self

    # -----------------------
    # Read access
    # -----------------------
    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def results(self) -> List[StageResult]:
        with self._lock:
            return list(self._results)

    def results_for(self, target: str) -> List[StageResult]:
        return [r for r in self.results if r.target == target]

    def result(self, target: str, stage: Stage) -> Optional[StageResult]:
        for r in self.results_for(target):
            if r.stage == stage:
                return r
        return None

    def target_state(self, name: str) -> Optional[str]:
        with self._lock:
            entry = self._targets.get(name)
            return entry["state"] if entry else None

    def blocked_by(self, name: str) -> Optional[str]:
        with self._lock:
            entry = self._targets.get(name)
            return entry["blocked_by"] if entry else None

    @property
    def targets(self) -> List[str]:
        with self._lock:
            return list(self._targets)

    @property
    def failed_targets(self) -> List[str]:
        with self._lock:
            return [n for n, e in self._targets.items() if e["state"] == "Failed"]

    @property
    def cancelled(self) -> bool:
        return any(r.cancelled for r in self.results)

    @property
    def succeeded(self) -> bool:
        with self._lock:
            return bool(self._targets) and all(e["state"] == "Succeeded" for e in self._targets.values())

    @property
    def outcome(self) -> str:
        return "Succeeded" if self.succeeded else "Failed"

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            targets = {n: dict(e) for n, e in self._targets.items()}
            results = [r.to_dict() for r in self._results]
        return {
            "outcome": self.outcome,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "targets": targets,
            "results": results,
        }

    def write_json(self, path: str) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
        return p
