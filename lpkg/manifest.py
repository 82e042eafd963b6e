# lpkg/manifest.py
"""
manifest.py - Manifest Cache for externally published source lists

Features:
- Per-book manifests: wget-list (one URL per line) + md5sums (<md5> <filename>)
- Entries joined on archive filename, keyed by name-version ("binutils-2.41")
- Snapshot per (book, release) as JSON in <cache_dir>/<book>-<release>.json,
  replaced atomically (temp file + os.replace)
- Staleness window (manifest.max_age) with force_refresh / force_cache /
  allow_stale overrides
- Exclusive per-(book, release) lock so concurrent readers never see a
  partial refresh
- refresh(books, force): batch refresh in a thread pool, per-book results
"""

from __future__ import annotations

import os
import re
import json
import time
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from lpkg.config import get_book_config, get_config, get_section, known_books
from lpkg.errors import ConfigError, FetchError, LpkgError, ParseError
from lpkg.fetcher import get_fetcher
from lpkg.logging import get_logger
from lpkg.record import archive_basename, strip_archive_suffix

logger = get_logger("manifest")

_URL_RE = re.compile(r"^(https?|ftp)://\S+$")
_MD5_RE = re.compile(r"^([0-9a-fA-F]{32})\s+(\S+)$")

MAX_PARALLEL = 4

# -------------------------
# Entries and parsing
# -------------------------
@dataclass(frozen=True)
class ManifestEntry:
    key: str
    url: Optional[str]
    filename: str
    checksum: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ManifestEntry":
        cs = d.get("checksum")
        return cls(key=d["key"], url=d.get("url"), filename=d["filename"], checksum=dict(cs) if cs else None)


def entry_key(filename: str) -> str:
    stripped = strip_archive_suffix(filename)
    if stripped is not None:
        return stripped
    return os.path.splitext(filename)[0]


def _lines(text: str) -> Iterable[Tuple[int, str]]:
    for n, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if line and not line.startswith("#"):
            yield n, line


def parse_wget_list(text: str, source: str = "wget-list") -> List[str]:
    urls: List[str] = []
    for n, line in _lines(text):
        if not _URL_RE.match(line):
            raise ParseError(f"not a URL: {line!r}", source=source, line=n)
        urls.append(line)
    return urls


def parse_md5sums(text: str, source: str = "md5sums") -> Dict[str, str]:
    sums: Dict[str, str] = {}
    for n, line in _lines(text):
        m = _MD5_RE.match(line)
        if not m:
            raise ParseError(f"expected '<md5> <filename>', got {line!r}", source=source, line=n)
        sums[m.group(2)] = m.group(1).lower()
    return sums


def build_entries(urls: List[str], sums: Dict[str, str]) -> List[ManifestEntry]:
    """One entry per URL (checksum attached by filename) plus checksum-only entries for unlisted files."""
    entries: List[ManifestEntry] = []
    seen_files = set()
    for url in urls:
        fname = archive_basename(url)
        seen_files.add(fname)
        md5 = sums.get(fname)
        entries.append(ManifestEntry(entry_key(fname), url, fname, {"alg": "md5", "value": md5} if md5 else None))
    for fname in sorted(set(sums) - seen_files):
        entries.append(ManifestEntry(entry_key(fname), None, fname, {"alg": "md5", "value": sums[fname]}))
    return entries

# -------------------------
# Cache
# -------------------------
class ManifestCache:
    def __init__(self, cache_dir: Optional[str | Path] = None, fetcher=None,
                 max_age: Optional[float] = None, allow_stale: Optional[bool] = None):
        cfg = get_section("manifest")
        self.cache_dir = Path(cache_dir or get_config().get("paths.cache_dir")).expanduser()
        self.fetcher = fetcher
        self.max_age = float(max_age if max_age is not None else cfg.get("max_age", 7 * 24 * 3600))
        self.allow_stale = bool(allow_stale if allow_stale is not None else cfg.get("allow_stale", False))
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _fetcher(self):
        return self.fetcher or get_fetcher()

    def _lock_for(self, book: str, release: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault((book, release), threading.Lock())

    # -------------------------
    # book settings
    # -------------------------
    def release_for(self, book: str, release: Optional[str] = None) -> str:
        if release:
            return release
        cfg = get_book_config(book)
        if not cfg:
            raise ConfigError(f"unknown book {book!r}; known: {', '.join(known_books())}")
        return str(cfg["release"])

    def manifest_urls(self, book: str, release: Optional[str] = None) -> Dict[str, str]:
        cfg = get_book_config(book)
        if not cfg:
            raise ConfigError(f"unknown book {book!r}; known: {', '.join(known_books())}")
        release = self.release_for(book, release)
        return {
            "wget_list": str(cfg["wget_list"]).format(release=release),
            "md5sums": str(cfg["md5sums"]).format(release=release),
        }

    def snapshot_path(self, book: str, release: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]+", "_", release)
        return self.cache_dir / f"{book}-{safe}.json"

    # -------------------------
    # snapshot I/O
    # -------------------------
    def load_snapshot(self, book: str, release: str) -> Optional[Dict[str, Any]]:
        path = self.snapshot_path(book, release)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("ignoring unreadable manifest snapshot %s", path)
            return None
        return data if isinstance(data, dict) else None

    def _write_snapshot(self, book: str, release: str, snap: Dict[str, Any]) -> Path:
        path = self.snapshot_path(book, release)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snap, f, indent=2, ensure_ascii=False)
                f.write("\n")
            os.replace(tmp, path)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)
        return path

    def _download(self, book: str, release: str) -> Dict[str, Any]:
        urls = self.manifest_urls(book, release)
        fetcher = self._fetcher()
        wget_text = fetcher.fetch_text(urls["wget_list"])
        md5_text = fetcher.fetch_text(urls["md5sums"])
        entries = build_entries(
            parse_wget_list(wget_text, source=urls["wget_list"]),
            parse_md5sums(md5_text, source=urls["md5sums"]),
        )
        return {
            "book": book,
            "release": release,
            "fetched_at": time.time(),
            "sources": urls,
            "entries": [e.to_dict() for e in entries],
        }

    # -------------------------
    # public API
    # -------------------------
    def get_with_state(self, book: str, release: Optional[str] = None, force_refresh: bool = False,
                       force_cache: bool = False, allow_stale: Optional[bool] = None,
                       max_age: Optional[float] = None) -> Tuple[List[ManifestEntry], str]:
        """Like get(); also returns how the entries were obtained: cached, refreshed or stale."""
        if force_refresh and force_cache:
            raise ValueError("force_refresh and force_cache are mutually exclusive")
        book = book.lower()
        release = self.release_for(book, release)
        allow_stale = self.allow_stale if allow_stale is None else allow_stale
        max_age = self.max_age if max_age is None else float(max_age)

        with self._lock_for(book, release):
            snap = self.load_snapshot(book, release)
            if force_cache:
                if snap is None:
                    raise FetchError(f"no cached manifest for {book} {release}")
                return self._entries(snap), "cached"
            if snap is not None and not force_refresh:
                age = time.time() - float(snap.get("fetched_at", 0))
                if age <= max_age:
                    logger.debug("manifest %s/%s cache hit (age %.0fs)", book, release, age)
                    return self._entries(snap), "cached"
            try:
                new_snap = self._download(book, release)
            except (FetchError, ParseError) as e:
                if allow_stale and snap is not None:
                    logger.warning("manifest %s/%s refresh failed (%s); using last good snapshot", book, release, e)
                    return self._entries(snap), "stale"
                raise
            try:
                path = self._write_snapshot(book, release, new_snap)
            except OSError as e:
                raise LpkgError(f"cannot write manifest snapshot for {book} {release}: {e}") from e
            logger.info("manifest %s/%s refreshed: %d entries -> %s", book, release, len(new_snap["entries"]), path)
            return self._entries(new_snap), "refreshed"

    def get(self, book: str, release: Optional[str] = None, force_refresh: bool = False,
            force_cache: bool = False, allow_stale: Optional[bool] = None,
            max_age: Optional[float] = None) -> List[ManifestEntry]:
        return self.get_with_state(book, release, force_refresh, force_cache, allow_stale, max_age)[0]

    @staticmethod
    def _entries(snap: Dict[str, Any]) -> List[ManifestEntry]:
        return [ManifestEntry.from_dict(d) for d in snap.get("entries") or []]

    def refresh(self, books: Optional[List[str]] = None, force: bool = False) -> Dict[str, Any]:
        """
        Refresh several books concurrently. One book's failure never aborts the others.
        Returns {"ok", "succeeded", "failed", "results": [per-book dict]} with results in request order.
        """
        books = [b.lower() for b in (books or known_books())]
        books = list(dict.fromkeys(books))
        results: Dict[str, Dict[str, Any]] = {}

        def one(book: str) -> Dict[str, Any]:
            entries, state = self.get_with_state(book, force_refresh=force)
            return {"book": book, "ok": True, "state": state, "entries": len(entries), "error": None}

        with ThreadPoolExecutor(max_workers=min(len(books) or 1, MAX_PARALLEL)) as exc:
            futures = {exc.submit(one, b): b for b in books}
            for fut in as_completed(futures):
                book = futures[fut]
                try:
                    results[book] = fut.result()
                except (LpkgError, OSError) as e:
                    logger.error("refresh %s failed: %s", book, e)
                    results[book] = {"book": book, "ok": False, "state": "failed", "entries": 0,
                                     "error": str(e), "error_type": type(e).__name__}
        ordered = [results[b] for b in books]
        failed = sum(1 for r in ordered if not r["ok"])
        return {"ok": failed == 0, "succeeded": len(ordered) - failed, "failed": failed, "results": ordered}

# -------------------------
# module-level manager & wrappers
# -------------------------
_MANAGER_LOCK = threading.RLock()
_MANAGER: Optional[ManifestCache] = None


def get_manifest_cache() -> ManifestCache:
    global _MANAGER
    with _MANAGER_LOCK:
        if _MANAGER is None:
            _MANAGER = ManifestCache()
        return _MANAGER


def set_manifest_cache(cache: Optional[ManifestCache]) -> None:
    global _MANAGER
    with _MANAGER_LOCK:
        _MANAGER = cache


def get(*a, **k): return get_manifest_cache().get(*a, **k)
def refresh(*a, **k): return get_manifest_cache().refresh(*a, **k)
