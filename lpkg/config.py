# lpkg/config.py
# -*- coding: utf-8 -*-
"""
lpkg central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, expand paths, derive metadata sub-directories
- Validate structure with pydantic (warn, or raise when fatal=True)
- Dot-path access via the Config dataclass (get_config().get("build.workers"))
- Optional watchdog-based reload with registered callbacks
- Save writes only the overrides (diff against DEFAULTS), keeping comments via ruamel.yaml
"""

from __future__ import annotations

import os
import json
import logging
import threading
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import ruamel.yaml as ruamel_yaml
import yaml as pyyaml
from pydantic import BaseModel, ConfigDict, ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from lpkg.errors import ConfigError

logger = logging.getLogger("lpkg.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "file_level": "DEBUG",
        "color": True,
        "max_size": "10M",
        "backups": 5,
        "datefmt": "%H:%M:%S",
        "module_levels": {},
        "jsonl": {"enabled": False, "path": "~/.lpkg/transparency.jsonl", "level": "INFO"},
    },
    "paths": {
        "metadata_dir": "./metadata",
        "cache_dir": None,       # defaults to <metadata_dir>/cache
        "packages_dir": None,    # defaults to <metadata_dir>/packages
        "index_file": None,      # defaults to <metadata_dir>/index.json
        "generated_dir": "./generated/by_name",
        "work_dir": "~/.lpkg/work",
        "log_dir": "~/.lpkg/logs",
        "state_db": "~/.lpkg/state.sqlite3",
    },
    "books": {
        "lfs": {
            "base_url": "https://www.linuxfromscratch.org/lfs/view/12.1",
            "release": "12.1",
            "wget_list": "https://www.linuxfromscratch.org/lfs/view/{release}/wget-list",
            "md5sums": "https://www.linuxfromscratch.org/lfs/view/{release}/md5sums",
        },
        "mlfs": {
            "base_url": "https://linuxfromscratch.org/~thomas/multilib-m32",
            "release": "multilib-m32",
            "wget_list": "https://www.linuxfromscratch.org/~thomas/{release}/wget-list-sysv",
            "md5sums": "https://www.linuxfromscratch.org/~thomas/{release}/md5sums",
        },
        "blfs": {
            "base_url": "https://www.linuxfromscratch.org/blfs/view/systemd",
            "release": "systemd",
            "wget_list": "https://anduin.linuxfromscratch.org/BLFS/view/{release}/wget-list",
            "md5sums": "https://anduin.linuxfromscratch.org/BLFS/view/{release}/md5sums",
        },
        "glfs": {
            "base_url": "https://www.linuxfromscratch.org/glfs/view/glfs",
            "release": "glfs",
            "wget_list": "https://www.linuxfromscratch.org/glfs/view/{release}/wget-list",
            "md5sums": "https://www.linuxfromscratch.org/glfs/view/{release}/md5sums",
        },
    },
    "manifest": {
        "max_age": 7 * 24 * 3600,  # seconds
        "allow_stale": False,
    },
    "fetcher": {
        "timeout": 30,
        "retries": 3,
        "backoff": 1.0,
        "user_agent": "lpkg-metadata-indexer/0.1",
        "mirror": None,  # replaces ftp.gnu.org in download URLs
    },
    "build": {
        "workers": None,  # None -> os.cpu_count()
        "timeout": 3600,
        "cancel_grace": 10,
        "shell": "/bin/bash",
        "opt_level": "3",
        "keep_logs": True,  # False removes the log of a node that succeeded
    },
    "generator": {
        "overwrite": False,
    },
    "watch": {
        "enabled": False,
        "use_watchdog": True,
    },
}

# ----------------------------
# Structural model (pydantic)
# ----------------------------
class _BookModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    base_url: str
    release: str
    wget_list: str
    md5sums: str


class _BuildModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    workers: Optional[int] = None
    timeout: int = 3600
    cancel_grace: float = 10
    shell: str = "/bin/bash"
    opt_level: str = "3"
    keep_logs: bool = True


class _ConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    logging: Dict[str, Any]
    paths: Dict[str, Any]
    books: Dict[str, _BookModel]
    manifest: Dict[str, Any]
    fetcher: Dict[str, Any]
    build: _BuildModel
    generator: Dict[str, Any]
    watch: Dict[str, Any]

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

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()
_WATCH_CALLBACKS: List[Callable[[Config], None]] = []
_OBSERVER: Optional[Observer] = None

# ----------------------------
# Utilities
# ----------------------------
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


def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("LPKG_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "lpkg.yaml",
        Path.cwd() / "lpkg.yml",
        Path.cwd() / "lpkg.json",
        Path.home() / ".config" / "lpkg" / "config.yaml",
        Path("/etc") / "lpkg" / "config.yaml",
    ])
    return candidates


def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None


def _load_file(path: Path) -> Optional[Dict[str, Any]]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("config: failed reading %s: %s", path, e)
        return None

    if path.suffix.lower() in (".yaml", ".yml"):
        try:
            data = ruamel_yaml.YAML(typ="safe").load(txt)
            return dict(data or {})
        except Exception as e:
            logger.debug("config: ruamel parse fail %s: %s", path, e)
        try:
            data = pyyaml.safe_load(txt)
            return dict(data or {})
        except pyyaml.YAMLError as e:
            logger.debug("config: pyyaml parse fail %s: %s", path, e)

    try:
        data = json.loads(txt)
    except ValueError as e:
        logger.debug("config: json parse fail %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Expand path fields, derive metadata sub-paths and coerce numbers."""
    out = deepcopy(cfg)
    paths = out.setdefault("paths", {})
    for key in ("metadata_dir", "cache_dir", "packages_dir", "index_file",
                "generated_dir", "work_dir", "log_dir", "state_db"):
        if paths.get(key):
            paths[key] = _expand_path(paths[key])
    meta = paths.get("metadata_dir") or _expand_path("./metadata")
    paths["metadata_dir"] = meta
    paths["cache_dir"] = paths.get("cache_dir") or os.path.join(meta, "cache")
    paths["packages_dir"] = paths.get("packages_dir") or os.path.join(meta, "packages")
    paths["index_file"] = paths.get("index_file") or os.path.join(meta, "index.json")

    lg = out.get("logging") or {}
    if lg.get("file"):
        lg["file"] = _expand_path(lg["file"])

    build = out.get("build") or {}
    try:
        if build.get("workers") is not None:
            build["workers"] = int(build["workers"])
        build["timeout"] = int(build.get("timeout", 3600))
        build["cancel_grace"] = float(build.get("cancel_grace", 10))
        build["opt_level"] = str(build.get("opt_level", "3"))
    except (TypeError, ValueError):
        logger.warning("config: failed to coerce build fields", exc_info=True)

    mf = out.get("manifest") or {}
    try:
        mf["max_age"] = int(mf.get("max_age", DEFAULTS["manifest"]["max_age"]))
    except (TypeError, ValueError):
        logger.warning("config: manifest.max_age is not a number")

    fe = out.get("fetcher") or {}
    try:
        fe["timeout"] = float(fe.get("timeout", 30))
        fe["retries"] = int(fe.get("retries", 3))
    except (TypeError, ValueError):
        logger.warning("config: failed to coerce fetcher fields", exc_info=True)
    return out


def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list)."""
    issues: List[str] = []
    try:
        _ConfigModel(**cfg)
    except ValidationError as e:
        for err in e.errors():
            loc = ".".join(str(p) for p in err.get("loc", ()))
            issues.append(f"{loc}: {err.get('msg')}")
    workers = (cfg.get("build") or {}).get("workers")
    if workers is not None and (not isinstance(workers, int) or workers < 1):
        issues.append("build.workers must be integer >= 1")
    for name, book in (cfg.get("books") or {}).items():
        if isinstance(book, dict) and "{release}" not in str(book.get("wget_list", "{release}")):
            logger.debug("config: book %s wget_list has no {release} placeholder", name)
    return (len(issues) == 0, issues)

# ----------------------------
# Loading / reloading
# ----------------------------
def load(explicit_path: Optional[str] = None, fatal: bool = False, overrides: Optional[Dict[str, Any]] = None) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise ConfigError.
    `overrides` is merged last (used by the CLI and tests).
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = {}
        if cfg_path:
            data = _load_file(cfg_path)
            if data is None:
                logger.warning("config: file found but could not be parsed: %s", cfg_path)
            else:
                raw = data
        merged = _deep_merge(DEFAULTS, raw)
        if overrides:
            merged = _deep_merge(merged, overrides)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = f"config: validation issues: {issues}"
            if fatal:
                logger.error(msg)
                raise ConfigError(msg)
            logger.warning(msg)
        _CONFIG = Config(raw=raw, merged=normalized, path=cfg_path)
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return _CONFIG


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
        return deepcopy(a) if a != b else None
    return diff(merged, defaults) or {}


def save(path: Optional[str] = None) -> Path:
    with _CONFIG_LOCK:
        cfg = get_config()
        out_path = Path(path) if path else (cfg.path or (Path.home() / ".config" / "lpkg" / "config.yaml"))
        out_path.parent.mkdir(parents=True, exist_ok=True)
        to_write = _compute_override(_deep_merge(DEFAULTS, cfg.raw), DEFAULTS)
        yaml_obj = ruamel_yaml.YAML()
        with open(out_path, "w", encoding="utf-8") as fh:
            yaml_obj.dump(to_write, fh)
        logger.info("config: saved overrides to %s", out_path)
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


class _FSHandler(FileSystemEventHandler):
    def __init__(self, watched: Path):
        super().__init__()
        self._watched = watched

    def on_modified(self, event):
        src = getattr(event, "src_path", None)
        if src and Path(src) == self._watched:
            logger.info("config: detected modification, reloading %s", self._watched)
            reload(str(self._watched))


def start_watcher() -> bool:
    """Start a watchdog observer on the loaded config file. Returns True when watching."""
    global _OBSERVER
    cfg = get_config()
    if not cfg.get("watch.enabled", False) or not cfg.get("watch.use_watchdog", True):
        logger.debug("config: watch disabled by config")
        return False
    if cfg.path is None:
        logger.debug("config: no config path to watch")
        return False
    with _CONFIG_LOCK:
        if _OBSERVER is None:
            _OBSERVER = Observer()
            _OBSERVER.schedule(_FSHandler(cfg.path), str(cfg.path.parent), recursive=False)
            _OBSERVER.daemon = True
            _OBSERVER.start()
            logger.info("config: started watchdog observer on %s", cfg.path)
    return True


def stop_watcher() -> None:
    global _OBSERVER
    with _CONFIG_LOCK:
        if _OBSERVER is not None:
            _OBSERVER.stop()
            _OBSERVER.join(timeout=5)
            _OBSERVER = None

# ----------------------------
# Convenience helpers for modules
# ----------------------------
def get_section(name: str) -> Dict[str, Any]:
    val = get_config().merged.get(name)
    return deepcopy(val) if isinstance(val, dict) else {}


def get_build_config() -> Dict[str, Any]:
    return get_section("build")


def get_book_config(book: str) -> Dict[str, Any]:
    """Per-book settings (base_url, release, manifest URL templates). Empty dict if unknown."""
    books = get_config().merged.get("books") or {}
    val = books.get(book.lower())
    return deepcopy(val) if isinstance(val, dict) else {}


def known_books() -> List[str]:
    return sorted((get_config().merged.get("books") or {}).keys())


def validate_config() -> Tuple[bool, List[str]]:
    ok, issues = _validate_structure(get_config().merged)
    extra: List[str] = []
    for key in ("metadata_dir", "work_dir", "log_dir"):
        p = get_config().get(f"paths.{key}")
        if not p:
            continue
        parent = Path(p)
        while not parent.exists() and parent != parent.parent:
            parent = parent.parent
        if not os.access(parent, os.W_OK):
            extra.append(f"paths.{key}: {p} is not writable")
    issues.extend(extra)
    return (len(issues) == 0, issues)
