# shran/executor.py
"""
executor.py - runs one pipeline stage of one target as a supervised external process

Features:
- Default autotools commands per stage for the node target, per-stage command overrides
- Library override stages: artifact resolution before configure, staging into overrides/lib,
  compile/link/test skipped unless the override declares commands for them
- Command templates with {placeholders} rendered with environment-translated paths
- String commands run through /bin/sh -c, list commands are spawned directly
- Captured stdout/stderr go to the log sink keyed by target+stage
- Exit code interpretation is zero / non-zero only; no retries here
"""

from __future__ import annotations

import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from shran.config import get_build_config
from shran.errors import ExecutionError, FetchError
from shran.fetcher import Fetcher
from shran.logging import get_logger
from shran.providers import EnvironmentProvider
from shran.report import FailureReason, StageResult
from shran.resolver import Target
from shran.specloader import BuildSpec, Command, Stage
from shran.workspace import Workspace

logger = get_logger("executor")

SHELL = "/bin/sh"

# ----------------------------
# Default commands
# ----------------------------
NODE_COMMANDS: Dict[Stage, Command] = {
    Stage.CONFIGURE: "./autogen.sh && ./configure --prefix={prefix} {flags}",
    Stage.COMPILE: ("make", "-j{jobs}"),
    Stage.LINK: ("make", "-C", "src", "-j{jobs}", "{target}"),
    Stage.TEST: ("make", "check", "-j{jobs}"),
    Stage.PACKAGE: ("make", "install", "DESTDIR={dist}"),
    Stage.DEPLOY: "mkdir -p {deploy} && cp -a {dist}/. {deploy}/",
}

LIBRARY_COMMANDS: Dict[Stage, Command] = {
    Stage.CONFIGURE: ("test", "-r", "{artifact}"),
    Stage.PACKAGE: "mkdir -p {overrides_lib} && cp -a {artifact} {overrides_lib}/",
    Stage.DEPLOY: "mkdir -p {deploy}/lib && cp -a {artifact} {deploy}/lib/",
}

NOT_APPLICABLE = "not applicable to library overrides"


PLACEHOLDER = re.compile(r"\{(\w+)\}")


def render(template: str, values: Dict[str, str]) -> str:
    """Substitute known {names}; anything else (${VAR:-x}, find's {}) is left as written."""
    return PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def to_argv(command: Command, values: Dict[str, str]) -> List[str]:
    if isinstance(command, str):
        return [SHELL, "-c", render(command, values)]
    return [render(part, values) for part in command]


class StageExecutor:
    def __init__(self, spec: BuildSpec, workspace: Workspace, log_sink: Any,
                 fetcher: Optional[Fetcher] = None, jobs: Optional[int] = None,
                 prefix: Optional[str] = None):
        build_cfg = get_build_config()
        self.spec = spec
        self.workspace = workspace
        self.log_sink = log_sink
        self.fetcher = fetcher or Fetcher()
        self.jobs = int(jobs or build_cfg.get("jobs") or 1)
        self.prefix = prefix or build_cfg.get("prefix") or "/usr/local"
        self._artifacts: Dict[str, Path] = {}
        self._lock = threading.Lock()

    # ----------------------------
    # Command selection
    # ----------------------------
    def command_for(self, stage: Stage, target: Target) -> Optional[Command]:
        if target.is_library:
            return target.library.commands.get(stage) or LIBRARY_COMMANDS.get(stage)
        return self.spec.stage(stage).command or NODE_COMMANDS[stage]

    def workdir_for(self, target: Target) -> Path:
        if target.is_library:
            return self.workspace.overrides_dir / "build" / target.name
        return self.workspace.src_dir

    def artifact_for(self, name: str) -> Optional[Path]:
        with self._lock:
            return self._artifacts.get(name)

    def placeholders(self, stage: Stage, target: Target, environment: EnvironmentProvider) -> Dict[str, str]:
        ws = self.workspace
        t = environment.translate
        values = {
            "target": target.name,
            "node": self.spec.target,
            "stage": stage.value,
            "source_ref": self.spec.source_ref,
            "prefix": self.prefix,
            "jobs": str(self.jobs),
            "flags": " ".join(self.spec.options.configure_flags()),
            "src": t(ws.src_dir),
            "workspace": t(ws.root),
            "overrides": t(ws.overrides_dir),
            "overrides_lib": t(ws.overrides_lib),
            "dist": t(ws.dist_dir),
            "deploy": t(ws.deploy_dir),
            "workdir": t(self.workdir_for(target)),
        }
        artifact = self.artifact_for(target.name)
        if artifact is not None:
            values["artifact"] = t(artifact)
        return values

    def env_for(self, stage: Stage, target: Target, environment: EnvironmentProvider) -> Dict[str, str]:
        t = environment.translate
        env = {
            "SHRAN_TARGET": target.name,
            "SHRAN_STAGE": stage.value,
            "SHRAN_SOURCE_REF": self.spec.source_ref,
            "JOBS": str(self.jobs),
        }
        if target.is_library:
            artifact = self.artifact_for(target.name)
            if artifact is not None:
                env["SHRAN_ARTIFACT"] = t(artifact)
        elif self.spec.libraries:
            lib = t(self.workspace.overrides_lib)
            env.update({
                "LDFLAGS": f"-L{lib} -Wl,-rpath,{lib}",
                "CPPFLAGS": f"-I{t(self.workspace.overrides_dir / 'include')}",
                "LD_LIBRARY_PATH": lib,
                "PKG_CONFIG_PATH": f"{lib}/pkgconfig",
            })
        return env

    # ----------------------------
    # Run
    # ----------------------------
    def _resolve_artifact(self, target: Target) -> None:
        path = self.fetcher.resolve_artifact(target.library, self.workspace.artifacts_dir, self.spec.base_dir)
        with self._lock:
            self._artifacts[target.name] = path
        logger.debug("%s: artifact ready at %s", target.name, path)

    def _capture(self, target: Target, stage: Stage, stdout: bytes, stderr: bytes) -> Optional[str]:
        try:
            ref = self.log_sink.write(target.name, stage.value, "stdout", stdout)
            if stderr:
                self.log_sink.write(target.name, stage.value, "stderr", stderr)
        except OSError as e:
            logger.error("%s/%s: cannot write stage output: %s", target.name, stage.value, e)
            return None
        return ref

    def run(self, stage: Stage, target: Target, environment: EnvironmentProvider, *,
            result: Optional[StageResult] = None, cancel_event: Optional[threading.Event] = None,
            attempt: int = 1) -> StageResult:
        result = result or StageResult(target.name, stage)
        command = self.command_for(stage, target)
        if command is None:
            return result.skip(NOT_APPLICABLE)

        result.start(attempt)
        if cancel_event is not None and cancel_event.is_set():
            return result.fail(FailureReason.CANCELLED, detail="cancelled before start")

        if target.is_library and stage == Stage.CONFIGURE:
            try:
                self._resolve_artifact(target)
            except FetchError as e:
                logger.error("%s/%s: %s", target.name, stage.value, e)
                return result.fail(FailureReason.FETCH_FAILED, detail=str(e))

        workdir = self.workdir_for(target)
        try:
            workdir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("%s/%s: cannot create %s: %s", target.name, stage.value, workdir, e)
            return result.fail(FailureReason.SPAWN_FAILED, detail=str(e))
        argv = to_argv(command, self.placeholders(stage, target, environment))
        timeout = self.spec.stage(stage).timeout_seconds
        logger.debug("%s/%s: %s (timeout=%s)", target.name, stage.value, argv, timeout)
        try:
            outcome = environment.execute(argv, environment.translate(workdir),
                                          self.env_for(stage, target, environment),
                                          timeout=timeout, cancel_event=cancel_event)
        except ExecutionError as e:
            logger.error("%s/%s: %s", target.name, stage.value, e)
            ref = self._capture(target, stage, b"", str(e).encode())
            return result.fail(FailureReason.SPAWN_FAILED, output_ref=ref, detail=e.reason)

        ref = self._capture(target, stage, outcome.stdout, outcome.stderr)
        if outcome.cancelled:
            result.fail(FailureReason.CANCELLED, exit_code=outcome.exit_code, output_ref=ref,
                        detail="cancelled", duration=outcome.duration)
        elif outcome.timed_out:
            result.fail(FailureReason.TIMEOUT, exit_code=outcome.exit_code, output_ref=ref,
                        detail=f"timed out after {timeout}s", duration=outcome.duration)
        elif outcome.exit_code != 0:
            result.fail(FailureReason.STAGE_FAILURE, exit_code=outcome.exit_code, output_ref=ref,
                        detail=f"exit code {outcome.exit_code}", duration=outcome.duration)
        else:
            result.succeed(0, output_ref=ref, duration=outcome.duration)

        log = logger.info if result.succeeded else logger.warning
        log("%s/%s %s in %.1fs", target.name, stage.value, result.status.value, result.duration)
        return result

