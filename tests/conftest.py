"""Shared fixtures: isolated configuration, a scripted provider and in-memory output capture."""

import threading
import time

import pytest
import yaml

from shran import config
from shran import logging as shran_logging
from shran.errors import ExecutionError
from shran.logsink import MemoryLogSink
from shran.providers import EnvironmentProvider, ProcessOutcome
from shran.specloader import load
from shran.workspace import Workspace


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Every test gets its own config dir, cache and work root."""
    cfg_home = tmp_path / "xdg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(cfg_home))
    monkeypatch.delenv("SHRAN_CONFIG", raising=False)
    cfg_file = tmp_path / "shran-test.yaml"
    cfg_file.write_text(yaml.safe_dump({
        "logging": {"level": "WARNING", "color": False},
        "build": {
            "jobs": 2,
            "work_root": str(tmp_path / "work"),
            "cache_dir": str(tmp_path / "cache"),
            "max_parallel_targets": 4,
        },
        "pipeline": {"poll_interval": 0.05},
        "fetcher": {"retries": 1, "http_timeout": 5},
        "github": {"token_file": str(cfg_home / "shran" / "gh.yaml")},
        "manifest": {"path": str(cfg_home / "shran" / "manifest.yaml")},
    }))
    cfg = config.load(str(cfg_file))
    shran_logging.reload_config()
    yield cfg


class ScriptedProvider(EnvironmentProvider):
    """
    Does not spawn anything. Exit codes are scripted per (target, stage);
    unscripted stages succeed. `delays` holds seconds to block per (target, stage),
    honoring the cancel event like a real process would.
    """

    name = "scripted"

    def __init__(self, exit_codes=None, delays=None, spawn_errors=None):
        super().__init__(poll_interval=0.01)
        self.exit_codes = dict(exit_codes or {})
        self.delays = dict(delays or {})
        self.spawn_errors = set(spawn_errors or ())
        self.calls = []
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def execute(self, command, workdir, env_vars, timeout=None, cancel_event=None):
        key = (env_vars["SHRAN_TARGET"], env_vars["SHRAN_STAGE"])
        with self._lock:
            self.calls.append(key)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if key in self.spawn_errors:
                raise ExecutionError(command, "No such file or directory")
            delay = self.delays.get(key, 0.0)
            deadline = time.monotonic() + delay
            while time.monotonic() < deadline:
                if cancel_event is not None and cancel_event.is_set():
                    return ProcessOutcome(exit_code=-9, stderr=b"killed", cancelled=True)
                if timeout is not None and delay > timeout:
                    time.sleep(timeout)
                    return ProcessOutcome(exit_code=-9, timed_out=True, duration=float(timeout))
                time.sleep(0.01)
            code = self.exit_codes.get(key, 0)
            if isinstance(code, list):
                code = code.pop(0) if code else 0
            return ProcessOutcome(exit_code=code, stdout=f"{key[0]} {key[1]}\n".encode(),
                                  stderr=b"boom\n" if code else b"", duration=delay)
        finally:
            with self._lock:
                self.active -= 1

    def stages_run(self, target):
        return [s for (t, s) in self.calls if t == target]


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def memory_sink():
    return MemoryLogSink()


@pytest.fixture
def artifact(tmp_path):
    """A local library override artifact with a version in its name."""
    libdir = tmp_path / "libs"
    libdir.mkdir()
    path = libdir / "libssl.so.3.0.2"
    path.write_bytes(b"\x7fELF fake shared object")
    return path


@pytest.fixture
def make_spec(tmp_path):
    def _make(**overrides):
        raw = {
            "target": "bitcoind",
            "source_ref": "v25.0",
            "execution_mode": "local",
            "libraries": [],
        }
        raw.update(overrides)
        return load(raw, base_dir=str(tmp_path))
    return _make


@pytest.fixture
def workspace(tmp_path):
    src = tmp_path / "node-src"
    src.mkdir()
    return Workspace(tmp_path / "ws", source_dir=src).create()
