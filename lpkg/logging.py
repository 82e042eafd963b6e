# lpkg/logging.py
# -*- coding: utf-8 -*-
"""
lpkg logging

Features:
 - Integration with lpkg.config (re-applied on config reload)
 - Console color formatter
 - Rotating file handler
 - JSONL transparency log with atomic append
 - Module-level configurable log levels (logging.module_levels)
 - Per-node build logs: captured phase output appended to <log_dir>/<module>.log
 - Thread-safe reconfiguration and per-level counters
"""

from __future__ import annotations

import os
import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from lpkg.config import get_config, register_watch_callback

_logger = logging.getLogger("lpkg.logging")

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
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
            "module": getattr(record, "lpkg_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)

# ----------------------
# Filters
# ----------------------
class ModuleTagFilter(logging.Filter):
    """Records from plain stdlib loggers (lpkg.config) get their logger name as module tag."""

    def filter(self, record):
        if not hasattr(record, "lpkg_module"):
            name = record.name
            record.lpkg_module = name.split(".", 1)[1] if name.startswith("lpkg.") else name
        return True


class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "lpkg_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True


class LevelCounter(logging.Handler):
    """Counts every record reaching the lpkg root, whatever the other handlers keep."""

    def __init__(self, counts: Dict[str, int], lock: threading.RLock):
        super().__init__(logging.DEBUG)
        self.counts = counts
        self.counts_lock = lock

    def emit(self, record):
        with self.counts_lock:
            if record.levelname in self.counts:
                self.counts[record.levelname] += 1

# ----------------------
# LpkgLogger (singleton))
# ----------------------
class LpkgLogger:
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
        self._root = logging.getLogger("lpkg")
        self._root.setLevel(logging.DEBUG)  # handlers filter
        self._handlers: List[logging.Handler] = []
        self._metrics: Dict[str, int] = {lvl: 0 for lvl in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}
        self._jsonl_path: Optional[Path] = None
        self._log_dir: Path = Path(os.path.expanduser("~/.lpkg/logs"))
        self._build_logs: Dict[str, Any] = {}

        cfg = get_config().merged.get("logging", {})
        self._apply_config(cfg, get_config().get("paths.log_dir"))
        register_watch_callback(lambda new_cfg: self.reload_config())
        self._root.addHandler(LevelCounter(self._metrics, self._lock))
        self._inited = True

    # ----------------------
    # Internal helpers
    # ----------------------
    def _atomic_append_jsonl(self, path: Path, obj: Dict[str, Any]):
        line = json.dumps(obj, ensure_ascii=False) + "\n"
        fd = os.open(str(path), os.O_CREAT | os.O_WRONLY | os.O_APPEND, 0o644)
        try:
            os.write(fd, line.encode("utf-8"))
        finally:
            os.close(fd)

    # ----------------------
    # Configuration (apply/reload)
    # ----------------------
    def _apply_config(self, cfg: Dict[str, Any], log_dir: Optional[str] = None):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()

            module_filter = ModuleLevelFilter(cfg.get("module_levels", {}) or {})
            tag_filter = ModuleTagFilter()
            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(lpkg_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            console_cfg = cfg.get("console", {"enabled": True})
            if console_cfg.get("enabled", True):
                ch = logging.StreamHandler(sys.stderr)
                ch.setLevel(getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO))
                ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True)) and sys.stderr.isatty()))
                ch.addFilter(tag_filter)
                ch.addFilter(module_filter)
                self._root.addHandler(ch)
                self._handlers.append(ch)

            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                max_bytes = _parse_size(cfg.get("max_size", "10M")) or 10 * 1024 * 1024
                fh = logging.handlers.RotatingFileHandler(str(file_path), maxBytes=max_bytes, backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
                fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(lpkg_module)s] %(message)s", datefmt=datefmt))
                fh.addFilter(tag_filter)
                fh.addFilter(module_filter)
                self._root.addHandler(fh)
                self._handlers.append(fh)

            jsonl_cfg = cfg.get("jsonl", {}) or {}
            if jsonl_cfg.get("enabled"):
                path = Path(jsonl_cfg.get("path", "~/.lpkg/transparency.jsonl")).expanduser()
                path.parent.mkdir(parents=True, exist_ok=True)
                self._jsonl_path = path
                jh = logging.FileHandler(str(path), encoding="utf-8")
                jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                jh.setFormatter(JSONLineFormatter())
                jh.addFilter(tag_filter)
                self._root.addHandler(jh)
                self._handlers.append(jh)
            else:
                self._jsonl_path = None

            if log_dir:
                self._log_dir = Path(log_dir)

    def reload_config(self):
        """Re-apply logging settings from the current central config."""
        cfg = get_config()
        self._apply_config(cfg.merged.get("logging", {}), cfg.get("paths.log_dir"))
        _logger.info("logging: reloaded configuration from central config")

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'lpkg_module' into records."""
        return logging.LoggerAdapter(logging.getLogger(f"lpkg.{module_name}"), {"lpkg_module": module_name})

    def audit(self, module: str, event: str, **fields: Any):
        """Append a structured event to the transparency log (when enabled)."""
        if not self._jsonl_path:
            return
        record = {"timestamp": time.time(), "module": module, "event": event}
        record.update(fields)
        try:
            self._atomic_append_jsonl(self._jsonl_path, record)
        except OSError:
            _logger.warning("logging: transparency append failed for %s", self._jsonl_path, exc_info=True)

    # build log API
    def open_build_log(self, module: str, log_dir: Optional[Path] = None) -> Path:
        """Start (truncate) the build log for `module`; returns its path."""
        with self._lock:
            base = Path(log_dir) if log_dir else self._log_dir
            base.mkdir(parents=True, exist_ok=True)
            path = base / f"{module}.log"
            path.write_text("", encoding="utf-8")
            self._build_logs[module] = path
            return path

    def stream_build_output(self, module: str, line: str):
        """Append a captured line to the module build log and mirror it at DEBUG."""
        line = line.rstrip("\n")
        self.get_logger(module).debug(line)
        path = self._build_logs.get(module)
        if path is None:
            return
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    def close_build_log(self, module: str) -> Optional[Path]:
        with self._lock:
            return self._build_logs.pop(module, None)

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

# ----------------------
# Helper parse size
# ----------------------
def _parse_size(s: Any) -> Optional[int]:
    if s is None:
        return None
    if isinstance(s, int):
        return s
    ss = str(s).strip().upper()
    units = (("KB", 1024), ("K", 1024), ("MB", 1024**2), ("M", 1024**2), ("GB", 1024**3), ("G", 1024**3))
    try:
        for suffix, mul in units:
            if ss.endswith(suffix):
                return int(float(ss[: -len(suffix)]) * mul)
        return int(float(ss))
    except ValueError:
        _logger.debug("logging: parse size failed for %s", s)
        return None

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = LpkgLogger()


def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)


def audit(module: str, event: str, **fields: Any):
    return _GLOBAL_LOGGER.audit(module, event, **fields)


def open_build_log(module: str, log_dir: Optional[Path] = None) -> Path:
    return _GLOBAL_LOGGER.open_build_log(module, log_dir)


def stream_build_output(module: str, line: str):
    return _GLOBAL_LOGGER.stream_build_output(module, line)


def close_build_log(module: str) -> Optional[Path]:
    return _GLOBAL_LOGGER.close_build_log(module)


def reload_config():
    return _GLOBAL_LOGGER.reload_config()


def get_metrics() -> Dict[str, int]:
    return _GLOBAL_LOGGER.get_metrics()
