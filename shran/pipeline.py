# shran/pipeline.py
"""
pipeline.py - per-target stage state machine and run-wide scheduling

Features:
- Explicit TargetState enum with an exhaustive stage -> state table
- Stages run strictly in order per target; disabled stages are recorded as Skipped
- Failure policy: halting stages stop new targets from starting (in-flight ones finish),
  test failures are recorded without blocking package/deploy unless test_blocking
- Controller-side retries (the executor never retries)
- Independent targets run concurrently (ThreadPoolExecutor); a dependent target starts only
  after every dependency Succeeded, otherwise it is Failed as blocked
- Run-wide cancellation: in-flight stages are killed, queued targets get a cancelled result
- The BuildReport is created up front and observable while the run is in flight
"""

from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence

from shran.config import get_build_config, get_pipeline_config
from shran.executor import StageExecutor
from shran.logging import get_logger
from shran.providers import EnvironmentProvider
from shran.report import BuildReport, FailureReason, StageResult
from shran.resolver import Target
from shran.specloader import STAGE_ORDER, BuildSpec, Stage

logger = get_logger("pipeline")


class TargetState(str, Enum):
    QUEUED = "Queued"
    CONFIGURING = "Configuring"
    COMPILING = "Compiling"
    LINKING = "Linking"
    TESTING = "Testing"
    PACKAGING = "Packaging"
    DEPLOYING = "Deploying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (TargetState.SUCCEEDED, TargetState.FAILED)


STAGE_STATE: Dict[Stage, TargetState] = {
    Stage.CONFIGURE: TargetState.CONFIGURING,
    Stage.COMPILE: TargetState.COMPILING,
    Stage.LINK: TargetState.LINKING,
    Stage.TEST: TargetState.TESTING,
    Stage.PACKAGE: TargetState.PACKAGING,
    Stage.DEPLOY: TargetState.DEPLOYING,
}
assert set(STAGE_STATE) == set(Stage), "every stage needs a target state"


@dataclass(frozen=True)
class FailurePolicy:
    halt_on: FrozenSet[Stage] = frozenset({Stage.COMPILE, Stage.LINK, Stage.DEPLOY})
    test_blocking: bool = False
    retries: int = 0

    @classmethod
    def from_spec(cls, spec: BuildSpec) -> "FailurePolicy":
        cfg = get_pipeline_config()
        halt_on = spec.policy.halt_on
        if halt_on is None:
            known = {s.value for s in Stage}
            halt_on = tuple(Stage(s) for s in cfg.get("halt_on", []) if s in known)
        test_blocking = spec.policy.test_blocking
        if test_blocking is None:
            test_blocking = bool(cfg.get("test_blocking", False))
        retries = spec.policy.retries
        if retries is None:
            retries = int(cfg.get("retries", 0))
        return cls(halt_on=frozenset(halt_on), test_blocking=test_blocking, retries=retries)

    def blocks(self, stage: Stage) -> bool:
        """Does a failure of this stage end the target's pipeline?"""
        return stage != Stage.TEST or self.test_blocking

    def halts_run(self, stage: Stage) -> bool:
        return stage in self.halt_on


@dataclass(frozen=True)
class TargetOutcome:
    state: TargetState
    failed_stage: Optional[Stage] = None
    cancelled: bool = False


class PipelineController:
    def __init__(self, spec: BuildSpec, executor: StageExecutor, policy: Optional[FailurePolicy] = None,
                 max_parallel: Optional[int] = None, cancel_event: Optional[threading.Event] = None):
        self.spec = spec
        self.executor = executor
        self.policy = policy or FailurePolicy.from_spec(spec)
        self.max_parallel = max(1, int(max_parallel or get_build_config().get("max_parallel_targets") or 1))
        self.cancel_event = cancel_event or threading.Event()
        self.report: Optional[BuildReport] = None

    def cancel(self) -> None:
        logger.warning("cancellation requested")
        self.cancel_event.set()

    # ----------------------------
    # Per-target state machine
    # ----------------------------
    def _retries_for(self, stage: Stage) -> int:
        override = self.spec.stage(stage).retries
        return self.policy.retries if override is None else override

    def _run_stage(self, stage: Stage, target: Target, environment: EnvironmentProvider,
                   report: BuildReport) -> StageResult:
        retries = self._retries_for(stage)
        attempt = 1
        while True:
            result = StageResult(target.name, stage)
            report.append(result)
            try:
                self.executor.run(stage, target, environment, result=result,
                                  cancel_event=self.cancel_event, attempt=attempt)
            except Exception as e:
                logger.exception("%s/%s: stage crashed", target.name, stage.value)
                if not result.status.terminal:
                    result.fail(FailureReason.SPAWN_FAILED, detail=f"{type(e).__name__}: {e}")
            if not result.failed or result.cancelled or attempt > retries:
                return result
            logger.warning("%s/%s failed (attempt %d/%d), retrying", target.name, stage.value, attempt, retries + 1)
            attempt += 1

    def run_target(self, target: Target, environment: EnvironmentProvider, report: BuildReport) -> TargetOutcome:
        state = TargetState.QUEUED
        failed_stage: Optional[Stage] = None
        for stage in STAGE_ORDER:
            if not self.spec.stage(stage).enabled:
                report.append(StageResult(target.name, stage).skip("disabled"))
                continue
            state = STAGE_STATE[stage]
            report.set_target_state(target.name, state.value)
            result = self._run_stage(stage, target, environment, report)
            if not result.failed:
                continue
            if failed_stage is None:
                failed_stage = stage
            if result.cancelled:
                return self._finish(target, report, TargetOutcome(TargetState.FAILED, failed_stage, cancelled=True))
            if self.policy.blocks(stage):
                break
            logger.warning("%s: %s failed, continuing per policy", target.name, stage.value)
        final = TargetState.FAILED if failed_stage is not None else TargetState.SUCCEEDED
        return self._finish(target, report, TargetOutcome(final, failed_stage))

    def _finish(self, target: Target, report: BuildReport, outcome: TargetOutcome) -> TargetOutcome:
        report.set_target_state(target.name, outcome.state.value)
        if outcome.state == TargetState.SUCCEEDED:
            logger.info("%s: Succeeded", target.name)
        else:
            logger.error("%s: Failed at %s", target.name, outcome.failed_stage.value if outcome.failed_stage else "-")
        return outcome

    def _first_enabled_stage(self) -> Stage:
        for stage in STAGE_ORDER:
            if self.spec.stage(stage).enabled:
                return stage
        return STAGE_ORDER[0]

    # ----------------------------
    # Scheduling
    # ----------------------------
    def run_pipeline(self, ordered_targets: Sequence[Target], environment_provider: EnvironmentProvider) -> BuildReport:
        report = BuildReport([t.name for t in ordered_targets])
        self.report = report
        states: Dict[str, TargetState] = {t.name: TargetState.QUEUED for t in ordered_targets}
        pending: List[Target] = list(ordered_targets)
        running: Dict[Future, Target] = {}
        halted_by: Optional[str] = None

        def mark_blocked(t: Target, dep: str) -> None:
            states[t.name] = TargetState.FAILED
            report.set_target_state(t.name, TargetState.FAILED.value, blocked_by=dep)
            logger.error("%s: not started, dependency %s did not succeed", t.name, dep)

        try:
            with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="shran-target") as pool:
                while True:
                    if halted_by is None and not self.cancel_event.is_set():
                        for t in list(pending):
                            if len(running) >= self.max_parallel:
                                break
                            failed_dep = next((d for d in t.dependencies if states.get(d) == TargetState.FAILED), None)
                            if failed_dep is not None:
                                pending.remove(t)
                                mark_blocked(t, failed_dep)
                                continue
                            if all(states.get(d) == TargetState.SUCCEEDED for d in t.dependencies):
                                pending.remove(t)
                                states[t.name] = TargetState.CONFIGURING
                                running[pool.submit(self.run_target, t, environment_provider, report)] = t
                    if not running:
                        break
                    done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                    for fut in done:
                        t = running.pop(fut)
                        try:
                            outcome = fut.result()
                        except Exception:
                            logger.exception("%s: pipeline crashed", t.name)
                            outcome = self._crashed(t, report)
                        states[t.name] = outcome.state
                        if (outcome.state == TargetState.FAILED and not outcome.cancelled
                                and outcome.failed_stage is not None and self.policy.halts_run(outcome.failed_stage)
                                and halted_by is None):
                            halted_by = f"{t.name}/{outcome.failed_stage.value}"
                            logger.error("halting run: %s failed", halted_by)

            # whatever is still queued never started
            for t in pending:
                states[t.name] = TargetState.FAILED
                if self.cancel_event.is_set():
                    report.append(StageResult(t.name, self._first_enabled_stage()).fail(
                        FailureReason.CANCELLED, detail="cancelled before start", duration=0.0))
                    report.set_target_state(t.name, TargetState.FAILED.value, blocked_by="cancelled")
                else:
                    report.set_target_state(t.name, TargetState.FAILED.value, blocked_by=f"run halted by {halted_by}")
        finally:
            report.finalize()
        logger.info("run finished: %s", report.outcome)
        return report

    def _crashed(self, target: Target, report: BuildReport) -> TargetOutcome:
        failed_stage: Optional[Stage] = None
        for r in report.results_for(target.name):
            if not r.status.terminal:
                r.fail(FailureReason.SPAWN_FAILED, detail="pipeline crashed")
            if r.failed and failed_stage is None:
                failed_stage = r.stage
        report.set_target_state(target.name, TargetState.FAILED.value)
        return TargetOutcome(TargetState.FAILED, failed_stage)


def run_pipeline(spec: BuildSpec, executor: StageExecutor, ordered_targets: Sequence[Target],
                 environment_provider: EnvironmentProvider,
                 cancel_event: Optional[threading.Event] = None) -> BuildReport:
    return PipelineController(spec, executor, cancel_event=cancel_event).run_pipeline(ordered_targets, environment_provider)
