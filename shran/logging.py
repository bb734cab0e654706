# shran/logging.py
# -*- coding: utf-8 -*-
"""
shran logging

Features:
 - Integration with shran.config (re-applied on config reload)
 - Console color formatter
 - Rotating file handler
 - JSONL transparency log
 - Module-level configurable log levels (module_levels)
 - Thread-safe reconfiguration and per-level metrics
"""

from __future__ import annotations
import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Dict, Any, Optional, List

from shran.config import get_config, register_watch_callback, _human_size_to_bytes

# Logger for this module
_logger = logging.getLogger("shran.logging")

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m", # white on red
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str = None, datefmt: str = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg

# ----------------------
# JSONL formatter for transparency log
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "shran_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)

# ----------------------
# Module-level filter for per-module levels
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "shran_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

class _ModuleDefaultFilter(logging.Filter):
    """Records logged without an adapter still need shran_module for the format string."""

    def filter(self, record):
        if not hasattr(record, "shran_module"):
            record.shran_module = record.name
        return True

# ----------------------
# ShranLogger (singleton)
# ----------------------
class ShranLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()

        self._root = logging.getLogger("shran")
        self._root.setLevel(logging.DEBUG)  # capture everything; handlers will filter
        self._root.propagate = False

        self._handlers: List[logging.Handler] = []
        self._module_filter = ModuleLevelFilter({})
        self._metrics: Dict[str, int] = {lvl: 0 for lvl in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}
        self._jsonl_path: Optional[Path] = None

        self._apply_config(get_config().merged.get("logging", {}))
        register_watch_callback(lambda new_cfg: self.reload_config())
        self._root.addFilter(self._count_levels_filter)
        self._inited = True

    # ----------------------
    # Internal helpers
    # ----------------------
    def _count_levels_filter(self, record):
        name = record.levelname
        if name in self._metrics:
            self._metrics[name] += 1
        return True

    # ----------------------
    # Configuration (apply/hot-reload)
    # ----------------------
    def _apply_config(self, cfg: Dict[str, Any]):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()

            self._root.removeFilter(self._module_filter)
            self._module_filter = ModuleLevelFilter(cfg.get("module_levels", {}) or {})
            self._root.addFilter(self._module_filter)

            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(shran_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")
            level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)

            # console handler
            console_cfg = cfg.get("console", {"enabled": True})
            if console_cfg.get("enabled", True):
                ch = logging.StreamHandler(sys.stderr)
                ch.setLevel(level)
                ch.addFilter(_ModuleDefaultFilter())
                ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True))))
                self._root.addHandler(ch)
                self._handlers.append(ch)

            # rotating file handler
            if cfg.get("file"):
                try:
                    file_path = Path(cfg["file"]).expanduser()
                    file_path.parent.mkdir(parents=True, exist_ok=True)
                    max_bytes = _human_size_to_bytes(cfg.get("max_size", "10M"))
                    backups = int(cfg.get("backups", 5))
                    fh = logging.handlers.RotatingFileHandler(str(file_path), maxBytes=max_bytes or 10 * 1024 * 1024, backupCount=backups, encoding="utf-8")
                    fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                    fh.addFilter(_ModuleDefaultFilter())
                    fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(shran_module)s] %(message)s"))
                    self._root.addHandler(fh)
                    self._handlers.append(fh)
                except OSError:
                    _logger.exception("logging: failed to configure file handler")

            # jsonl transparency log
            jsonl_cfg = cfg.get("jsonl", {}) or {}
            self._jsonl_path = None
            if jsonl_cfg.get("enabled"):
                try:
                    path = Path(jsonl_cfg.get("path", "~/.cache/shran/transparency.jsonl")).expanduser()
                    path.parent.mkdir(parents=True, exist_ok=True)
                    jh = logging.FileHandler(str(path), encoding="utf-8")
                    jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                    jh.setFormatter(JSONLineFormatter())
                    self._root.addHandler(jh)
                    self._handlers.append(jh)
                    self._jsonl_path = path
                except OSError:
                    _logger.exception("logging: failed to configure jsonl handler")

            self._root.setLevel(min(level, logging.DEBUG) if cfg.get("file") else level)

    def reload_config(self):
        """Reload config from shran.config and re-apply logging config."""
        self._apply_config(get_config().merged.get("logging", {}))
        self._root.debug("logging: reloaded configuration from central config", extra={"shran_module": "logging"})

    def set_level(self, level: str):
        """Override the console level (e.g. from the CLI --verbose flag)."""
        numeric = getattr(logging, level.upper(), logging.INFO)
        with self._lock:
            for h in self._handlers:
                if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler):
                    h.setLevel(numeric)
            if numeric < self._root.level:
                self._root.setLevel(numeric)

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'shran_module' into records."""
        return logging.LoggerAdapter(self._root, {"shran_module": module_name})

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER: Optional[ShranLogger] = None
_GLOBAL_LOCK = threading.Lock()

def _global() -> ShranLogger:
    global _GLOBAL_LOGGER
    with _GLOBAL_LOCK:
        if _GLOBAL_LOGGER is None:
            _GLOBAL_LOGGER = ShranLogger()
        return _GLOBAL_LOGGER

def get_logger(module: str) -> logging.LoggerAdapter:
    return _global().get_logger(module)

def reload_config():
    return _global().reload_config()

def set_level(level: str):
    return _global().set_level(level)

def get_metrics() -> Dict[str, int]:
    return _global().get_metrics()
