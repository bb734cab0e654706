"""Tests for environment providers."""

import threading
import time

import pytest

from shran.errors import ExecutionError
from shran.providers import ContainerProvider, ContainerRuntime, LocalProvider, select_provider
from shran.specloader import ExecutionMode


class FakeRuntime(ContainerRuntime):
    """Runtime whose binary is a fixed path; kill() is recorded instead of executed."""

    def __init__(self, binary="/usr/bin/docker"):
        self.runtime = "docker"
        self.extra_args = ["--network=none"]
        self.binary = binary
        self.killed = []

    def kill(self, name):
        self.killed.append(name)


class TestLocalProvider:
    """Test host execution."""

    def test_exit_code_and_output(self, tmp_path):
        outcome = LocalProvider(poll_interval=0.05).execute(
            ["/bin/sh", "-c", "echo out; echo err >&2; exit 4"], str(tmp_path), {})
        assert outcome.exit_code == 4
        assert outcome.stdout == b"out\n"
        assert outcome.stderr == b"err\n"
        assert not outcome.ok

    def test_workdir_and_env(self, tmp_path):
        outcome = LocalProvider(poll_interval=0.05).execute(
            ["/bin/sh", "-c", "pwd; echo $SHRAN_STAGE"], str(tmp_path), {"SHRAN_STAGE": "compile"})
        assert outcome.ok
        lines = outcome.stdout.decode().split()
        assert lines[0].endswith(tmp_path.name)
        assert lines[1] == "compile"

    def test_timeout_kills_process(self, tmp_path):
        started = time.monotonic()
        outcome = LocalProvider(poll_interval=0.05).execute(["sleep", "10"], str(tmp_path), {}, timeout=0.5)
        assert outcome.timed_out
        assert not outcome.cancelled
        assert time.monotonic() - started < 5

    def test_cancel_kills_process(self, tmp_path):
        cancel = threading.Event()
        threading.Timer(0.3, cancel.set).start()
        outcome = LocalProvider(poll_interval=0.05).execute(
            ["/bin/sh", "-c", "sleep 10"], str(tmp_path), {}, cancel_event=cancel)
        assert outcome.cancelled
        assert outcome.duration < 5

    def test_spawn_failure_raises(self, tmp_path):
        with pytest.raises(ExecutionError) as exc:
            LocalProvider(poll_interval=0.05).execute(["/nonexistent/tool"], str(tmp_path), {})
        assert exc.value.command == ["/nonexistent/tool"]

    def test_translate_is_identity(self, tmp_path):
        assert LocalProvider(poll_interval=0.05).translate(tmp_path) == str(tmp_path)


class TestContainerProvider:
    """Test container argv construction and path translation."""

    def _provider(self, tmp_path, source_root=None):
        ws = tmp_path / "ws"
        (ws / "artifacts").mkdir(parents=True)
        return ContainerProvider(ws, ws / "artifacts", "debian:bookworm", runtime=FakeRuntime(),
                                 source_root=source_root, poll_interval=0.05)

    def test_mounts(self, tmp_path):
        p = self._provider(tmp_path)
        ws = str((tmp_path / "ws").resolve())
        assert p.mounts() == [
            (ws, "/shran/workspace", "rw"),
            (ws + "/artifacts", "/shran/libs", "ro"),
        ]

    def test_translate(self, tmp_path):
        p = self._provider(tmp_path)
        ws = (tmp_path / "ws").resolve()
        assert p.translate(ws) == "/shran/workspace"
        assert p.translate(ws / "src") == "/shran/workspace/src"
        assert p.translate(ws / "artifacts" / "libssl.so") == "/shran/libs/libssl.so"
        assert p.translate("/elsewhere/x") == "/elsewhere/x"
        assert p.translate("relative/x") == "relative/x"

    def test_external_source_mounted(self, tmp_path):
        src = tmp_path / "bitcoin"
        src.mkdir()
        p = self._provider(tmp_path, source_root=src)
        assert (str(src.resolve()), "/shran/workspace/src", "rw") in p.mounts()
        assert p.translate(src / "configure") == "/shran/workspace/src/configure"

    def test_run_argv(self):
        argv = FakeRuntime().run_argv("debian:bookworm", ["make", "-j2"], [("/h", "/c", "rw")], "/c",
                                      {"B": "2", "A": "1"}, name="shran-x")
        assert argv == [
            "/usr/bin/docker", "run", "--rm", "--name", "shran-x", "-v", "/h:/c:rw", "-w", "/c",
            "-e", "A=1", "-e", "B=2", "--network=none", "debian:bookworm", "make", "-j2",
        ]

    def test_missing_runtime_fails_to_spawn(self, tmp_path):
        p = self._provider(tmp_path)
        p.runtime = FakeRuntime(binary=None)
        with pytest.raises(ExecutionError):
            p.execute(["true"], "/shran/workspace", {})


class TestSelectProvider:
    """Test provider selection."""

    def test_local(self):
        assert isinstance(select_provider(ExecutionMode.LOCAL), LocalProvider)

    def test_container(self, tmp_path, monkeypatch):
        monkeypatch.setattr(ContainerRuntime, "_detect", staticmethod(lambda runtime: "/usr/bin/podman"))
        p = select_provider(ExecutionMode.CONTAINER, workspace_root=tmp_path, libs_root=tmp_path / "a",
                            image="alpine:3")
        assert isinstance(p, ContainerProvider)
        assert p.image == "alpine:3"
        assert p.runtime.binary == "/usr/bin/podman"
