# shran/config.py
# -*- coding: utf-8 -*-
"""
shran central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize/coerce types (human sizes to bytes)
- Validate structure and types, warn or error (fatal optional)
- Typed access via Config dataclass (get_config(), dot-path get, section helpers)
- Thread-safe load/reload with watcher callbacks (logging re-applies itself on reload)
- Save writes only the overrides (diff against DEFAULTS)
"""

from __future__ import annotations
import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, List, Tuple, Callable, Union

import yaml

logger = logging.getLogger("shran.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "color": True,
        "max_size": "10M",  # human readable
        "backups": 5,
        "module_levels": {},
        "jsonl": {"enabled": False, "path": "~/.cache/shran/transparency.jsonl"},
    },
    "build": {
        "jobs": os.cpu_count() or 1,
        "work_root": "~/.cache/shran/work",
        "cache_dir": "~/.cache/shran",
        "prefix": "/usr/local",
        "max_parallel_targets": 4,
    },
    "pipeline": {
        "halt_on": ["compile", "link", "deploy"],
        "test_blocking": False,
        "retries": 0,
        "poll_interval": 0.2,
    },
    "container": {
        "runtime": "auto",  # auto | docker | podman
        "image": "debian:bookworm",
        "pull": False,
        "workspace_mount": "/shran/workspace",
        "libs_mount": "/shran/libs",
        "extra_args": [],
    },
    "github": {
        "api_url": "https://api.github.com",
        "owner": "bitcoin",
        "repo": "bitcoin",
        "archive_url": "https://github.com/bitcoin/bitcoin/archive/refs/tags",
        "token_file": None,  # defaults to <config dir>/gh.yaml
        "timeout": 30,
    },
    "fetcher": {
        "http_timeout": 60,
        "retries": 3,
    },
    "manifest": {
        "path": None,  # defaults to <config dir>/manifest.yaml
    },
}

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def section(self, name: str) -> Dict[str, Any]:
        val = self.merged.get(name)
        return deepcopy(val) if isinstance(val, dict) else {}

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()
_WATCH_CALLBACKS: List[Callable[[Config], None]] = []

# ----------------------------
# Utilities
# ----------------------------
def _human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "MB": 1024**2, "GB": 1024**3, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
    try:
        for suffix, mul in units.items():
            if s.endswith(suffix):
                num = float(s[: -len(suffix)].strip())
                return int(num * mul)
        return int(float(s))
    except ValueError:
        logger.warning("config: cannot parse human size '%s'", val)
        return None

def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(val))))

def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res

def config_dir() -> Path:
    """User configuration directory (XDG_CONFIG_HOME/shran or ~/.config/shran)."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "shran"

def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("SHRAN_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "shran.yaml",
        Path.cwd() / "shran.yml",
        Path.cwd() / "shran.json",
        config_dir() / "config.yaml",
        Path("/etc") / "shran" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("config: failed reading %s: %s", path, e, exc_info=True)
        return None

    if path.suffix.lower() in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(txt)
            return data or {}
        except yaml.YAMLError as e:
            logger.debug("config: yaml parse fail %s: %s", path, e, exc_info=True)

    try:
        return json.loads(txt)
    except ValueError as e:
        logger.debug("config: json parse fail %s: %s", path, e, exc_info=True)
    return None

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields, convert human sizes and coerce basic types."""
    out = deepcopy(cfg)
    path_keys = [
        ("build", "work_root"),
        ("build", "cache_dir"),
        ("logging", "file"),
        ("manifest", "path"),
        ("github", "token_file"),
    ]
    for section, key in path_keys:
        ref = out.get(section)
        if isinstance(ref, dict) and isinstance(ref.get(key), str) and ref[key]:
            ref[key] = _expand_path(ref[key])

    jsonl = out.get("logging", {}).get("jsonl")
    if isinstance(jsonl, dict) and isinstance(jsonl.get("path"), str):
        jsonl["path"] = _expand_path(jsonl["path"])

    if isinstance(out.get("logging"), dict) and "max_size" in out["logging"]:
        ms = _human_size_to_bytes(out["logging"]["max_size"])
        if ms is not None:
            out["logging"]["max_size_bytes"] = ms

    # Coerce numbers
    int_keys = [
        ("build", "jobs"),
        ("build", "max_parallel_targets"),
        ("pipeline", "retries"),
        ("github", "timeout"),
        ("fetcher", "http_timeout"),
        ("fetcher", "retries"),
    ]
    for section, key in int_keys:
        ref = out.get(section)
        if isinstance(ref, dict) and key in ref:
            try:
                ref[key] = int(ref[key])
            except (TypeError, ValueError):
                logger.debug("config: failed to coerce %s.%s", section, key, exc_info=True)
    pipe = out.get("pipeline")
    if isinstance(pipe, dict) and "poll_interval" in pipe:
        try:
            pipe["poll_interval"] = float(pipe["poll_interval"])
        except (TypeError, ValueError):
            logger.debug("config: failed to coerce pipeline.poll_interval", exc_info=True)
    return out

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless called with fatal=True in load."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            warnings.append(f"Unknown top-level config key: {k}")
    build = cfg.get("build", {})
    for key in ("jobs", "max_parallel_targets"):
        val = build.get(key)
        if not isinstance(val, int) or val < 1:
            warnings.append(f"build.{key} must be integer >= 1")
    pipe = cfg.get("pipeline", {})
    if not isinstance(pipe.get("halt_on"), list):
        warnings.append("pipeline.halt_on should be a list of stage names")
    if not isinstance(pipe.get("retries"), int) or pipe.get("retries") < 0:
        warnings.append("pipeline.retries must be integer >= 0")
    runtime = cfg.get("container", {}).get("runtime")
    if runtime not in ("auto", "docker", "podman"):
        warnings.append("container.runtime must be one of auto, docker, podman")
    return (len(warnings) == 0, warnings)

# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    for p in _find_candidates(explicit):
        if p and p.exists():
            return p
    return None

def load(explicit_path: Optional[str] = None, fatal: bool = False) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    Returns Config object.
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = {}
        if cfg_path:
            data = _load_file(cfg_path)
            if data is None:
                logger.warning("config: file found but could not be parsed: %s", str(cfg_path))
            else:
                raw = data
        merged = _deep_merge(DEFAULTS, raw)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = f"config: validation issues: {issues}"
            if fatal:
                logger.error(msg)
                raise ValueError(msg)
            logger.warning(msg)
        cfg_obj = Config(raw=raw, merged=normalized, path=cfg_path)
        _CONFIG = cfg_obj
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return cfg_obj

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG

def reload(explicit_path: Optional[str] = None) -> Config:
    cfg = load(explicit_path)
    _notify_watchers(cfg)
    return cfg

# ----------------------------
# Save: write only override (diff) to avoid clobbering defaults
# ----------------------------
def _compute_override(merged: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
    def diff(a: Any, b: Any) -> Any:
        if type(a) != type(b):
            return deepcopy(a)
        if isinstance(a, dict):
            out = {}
            for k, v in a.items():
                if k not in b:
                    out[k] = deepcopy(v)
                else:
                    d = diff(v, b[k])
                    if d is not None:
                        out[k] = d
            return out or None
        if a != b:
            return deepcopy(a)
        return None
    return diff(merged, defaults) or {}

def save(path: Optional[str] = None, override_only: bool = True) -> Path:
    with _CONFIG_LOCK:
        cfg = get_config()
        out_path = Path(path) if path else (cfg.path or (config_dir() / "config.yaml"))
        out_path.parent.mkdir(parents=True, exist_ok=True)
        to_write = cfg.as_dict()
        if override_only:
            # diff against the raw merge so expanded paths are not written back
            to_write = _compute_override(_deep_merge(DEFAULTS, cfg.raw), DEFAULTS)
        with open(out_path, "w", encoding="utf-8") as fh:
            yaml.safe_dump(to_write, fh, default_flow_style=False, sort_keys=False)
        logger.info("config: saved config to %s (override_only=%s)", out_path, override_only)
        return out_path

# ----------------------------
# Watcher API
# ----------------------------
def register_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb not in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.append(cb)

def unregister_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.remove(cb)

def _notify_watchers(cfg: Config) -> None:
    with _CONFIG_LOCK:
        cbs = list(_WATCH_CALLBACKS)
    for cb in cbs:
        try:
            cb(cfg)
        except Exception:
            logger.exception("config: watcher callback error")

# ----------------------------
# Convenience helpers for modules
# ----------------------------
def get_build_config() -> Dict[str, Any]:
    return get_config().section("build")

def get_pipeline_config() -> Dict[str, Any]:
    return get_config().section("pipeline")

def get_container_config() -> Dict[str, Any]:
    return get_config().section("container")

def get_github_config() -> Dict[str, Any]:
    return get_config().section("github")

def get_fetcher_config() -> Dict[str, Any]:
    return get_config().section("fetcher")
