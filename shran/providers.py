# shran/providers.py
"""
providers.py - environment providers for stage execution

Features:
- EnvironmentProvider interface: execute(command, workdir, env_vars) -> ProcessOutcome
- LocalProvider: host execution via subprocess, process-group kill on timeout/cancel
- ContainerProvider: execution through docker/podman (ContainerRuntime collaborator),
  workspace mounted read-write, library artifacts mounted read-only, host->container path translation
- select_provider(): picks the backend once per run from the execution mode
"""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from shran.config import get_container_config, get_pipeline_config
from shran.errors import ExecutionError
from shran.logging import get_logger
from shran.specloader import ExecutionMode

logger = get_logger("providers")

# ----------------------------
# Outcome
# ----------------------------
@dataclass(frozen=True)
class ProcessOutcome:
    exit_code: Optional[int]
    stdout: bytes = b""
    stderr: bytes = b""
    duration: float = 0.0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

# ----------------------------
# Helper: run subprocess with timeout/cancel and capture
# ----------------------------
def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def _run_process(argv: Sequence[str], cwd: Optional[str], env: Optional[Dict[str, str]],
                 timeout: Optional[float], cancel_event: Optional[threading.Event],
                 poll_interval: float = 0.2,
                 on_kill: Optional[Callable[[], None]] = None) -> ProcessOutcome:
    """Spawn argv, wait with timeout and cancellation, return captured output."""
    start = time.monotonic()
    try:
        proc = subprocess.Popen(list(argv), cwd=cwd, env=env, stdin=subprocess.DEVNULL,
                                stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                start_new_session=True)
    except OSError as e:
        raise ExecutionError(argv, str(e))

    deadline = start + timeout if timeout else None
    timed_out = cancelled = False
    while True:
        wait = poll_interval
        if deadline is not None:
            wait = max(0.0, min(wait, deadline - time.monotonic()))
        try:
            out, err = proc.communicate(timeout=wait)
            break
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
            elif deadline is not None and time.monotonic() >= deadline:
                timed_out = True
            else:
                continue
            logger.debug("killing %s (%s)", argv[0], "cancelled" if cancelled else "timeout")
            if on_kill is not None:
                on_kill()
            _kill_group(proc)
            out, err = proc.communicate()
            break
    return ProcessOutcome(
        exit_code=proc.returncode,
        stdout=out or b"",
        stderr=err or b"",
        duration=time.monotonic() - start,
        timed_out=timed_out,
        cancelled=cancelled,
    )

# ----------------------------
# Interface
# ----------------------------
class EnvironmentProvider(ABC):
    name = "abstract"

    def __init__(self, poll_interval: Optional[float] = None):
        if poll_interval is None:
            poll_interval = float(get_pipeline_config().get("poll_interval", 0.2))
        self.poll_interval = poll_interval

    @abstractmethod
    def execute(self, command: Sequence[str], workdir: str, env_vars: Dict[str, str],
                timeout: Optional[float] = None,
                cancel_event: Optional[threading.Event] = None) -> ProcessOutcome:
        """Run command in workdir. Raises ExecutionError when it cannot be spawned."""

    def translate(self, host_path: Union[str, Path]) -> str:
        """Map a host path to the path seen by the executed command."""
        return str(host_path)


class LocalProvider(EnvironmentProvider):
    name = "local"

    def execute(self, command, workdir, env_vars, timeout=None, cancel_event=None):
        env = dict(os.environ)
        env.update(env_vars or {})
        return _run_process(command, workdir, env, timeout, cancel_event, self.poll_interval)

# ----------------------------
# Container runtime collaborator
# ----------------------------
class ContainerRuntime:
    """Thin wrapper over the docker/podman CLI."""

    def __init__(self, runtime: str = "auto", extra_args: Optional[List[str]] = None):
        self.runtime = runtime
        self.extra_args = list(extra_args or [])
        self.binary = self._detect(runtime)

    @staticmethod
    def _detect(runtime: str) -> Optional[str]:
        candidates = ("docker", "podman") if runtime == "auto" else (runtime,)
        for c in candidates:
            path = shutil.which(c)
            if path:
                return path
        return None

    def _require(self) -> str:
        if not self.binary:
            raise ExecutionError([self.runtime], "container runtime not found (docker/podman)")
        return self.binary

    def run_argv(self, image: str, command: Sequence[str], mounts: Sequence[Tuple[str, str, str]],
                 workdir: str, env: Dict[str, str], name: Optional[str] = None) -> List[str]:
        argv = [self._require(), "run", "--rm"]
        if name:
            argv += ["--name", name]
        for host, ctr, mode in mounts:
            argv += ["-v", f"{host}:{ctr}:{mode}"]
        argv += ["-w", workdir]
        for k, v in sorted(env.items()):
            argv += ["-e", f"{k}={v}"]
        argv += self.extra_args
        argv.append(image)
        argv += list(command)
        return argv

    def kill(self, name: str) -> None:
        try:
            subprocess.run([self._require(), "kill", name], stdout=subprocess.DEVNULL,
                           stderr=subprocess.DEVNULL, timeout=30)
        except (OSError, subprocess.TimeoutExpired):
            logger.warning("failed to kill container %s", name)

    def pull(self, image: str, timeout: Optional[float] = None) -> bool:
        outcome = _run_process([self._require(), "pull", image], None, None, timeout, None)
        if not outcome.ok:
            logger.warning("image pull failed for %s: %s", image, outcome.stderr.decode(errors="replace").strip())
        return outcome.ok


class ContainerProvider(EnvironmentProvider):
    name = "container"

    def __init__(self, workspace_root: Union[str, Path], libs_root: Union[str, Path],
                 image: str, runtime: Optional[ContainerRuntime] = None,
                 workspace_mount: str = "/shran/workspace", libs_mount: str = "/shran/libs",
                 source_root: Union[str, Path, None] = None,
                 poll_interval: Optional[float] = None):
        super().__init__(poll_interval)
        self.workspace_root = Path(workspace_root).resolve()
        self.libs_root = Path(libs_root).resolve()
        self.source_root = Path(source_root).resolve() if source_root else None
        self.image = image
        self.runtime = runtime or ContainerRuntime()
        self.workspace_mount = workspace_mount
        self.libs_mount = libs_mount

    def _external_source(self) -> bool:
        if self.source_root is None:
            return False
        try:
            self.source_root.relative_to(self.workspace_root)
            return False
        except ValueError:
            return True

    def mounts(self) -> List[Tuple[str, str, str]]:
        mounts = [
            (str(self.workspace_root), self.workspace_mount, "rw"),
            (str(self.libs_root), self.libs_mount, "ro"),
        ]
        if self._external_source():
            mounts.append((str(self.source_root), f"{self.workspace_mount}/src", "rw"))
        return mounts

    def translate(self, host_path):
        p = Path(host_path)
        if not p.is_absolute():
            return str(host_path)
        p = p.resolve()
        # libs may be nested inside the workspace: check the more specific mount first
        roots = [(self.libs_root, self.libs_mount), (self.workspace_root, self.workspace_mount)]
        if self._external_source():
            roots.insert(0, (self.source_root, f"{self.workspace_mount}/src"))
        for root, mount in roots:
            try:
                rel = p.relative_to(root)
            except ValueError:
                continue
            return mount if str(rel) == "." else f"{mount}/{rel.as_posix()}"
        return str(host_path)

    def execute(self, command, workdir, env_vars, timeout=None, cancel_event=None):
        name = f"shran-{uuid.uuid4().hex[:12]}"
        argv = self.runtime.run_argv(self.image, command, self.mounts(), workdir, env_vars or {}, name=name)
        return _run_process(argv, None, None, timeout, cancel_event, self.poll_interval,
                            on_kill=lambda: self.runtime.kill(name))

# ----------------------------
# Selection (once per run)
# ----------------------------
def select_provider(mode: ExecutionMode, workspace_root: Union[str, Path, None] = None,
                    libs_root: Union[str, Path, None] = None,
                    source_root: Union[str, Path, None] = None,
                    image: Optional[str] = None) -> EnvironmentProvider:
    if mode == ExecutionMode.LOCAL:
        logger.info("execution mode: local")
        return LocalProvider()
    cfg = get_container_config()
    runtime = ContainerRuntime(cfg.get("runtime", "auto"), cfg.get("extra_args") or [])
    image = image or cfg.get("image")
    if runtime.binary is None:
        logger.warning("no container runtime found; stages will fail to spawn")
    elif cfg.get("pull"):
        runtime.pull(image)
    logger.info("execution mode: container (runtime=%s image=%s)", runtime.binary, image)
    return ContainerProvider(
        workspace_root=workspace_root or os.getcwd(),
        libs_root=libs_root or workspace_root or os.getcwd(),
        image=image,
        runtime=runtime,
        workspace_mount=cfg.get("workspace_mount", "/shran/workspace"),
        libs_mount=cfg.get("libs_mount", "/shran/libs"),
        source_root=source_root,
    )
