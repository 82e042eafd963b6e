# lpkg/store.py
"""
store.py - file-backed persistent store for package records

Features:
- One pretty-printed JSON file per record at <packages_dir>/<book>/<slug>.json
- put/get/list/exists/path_for/delete keyed by package id (last writer wins)
- Atomic writes (temp file + os.replace), serialised per id
- iter_records()/scan() walk every stored record for validation and indexing
"""

from __future__ import annotations

import os
import json
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from lpkg.config import get_config
from lpkg.errors import NotFound, ParseError, SchemaViolation
from lpkg.logging import get_logger
from lpkg import record as rec

logger = get_logger("store")


def _dump(record: Dict[str, Any]) -> str:
    return json.dumps(record, indent=2, ensure_ascii=False) + "\n"


class RecordStore:
    def __init__(self, packages_dir: Optional[str | Path] = None):
        self.packages_dir = Path(packages_dir or get_config().get("paths.packages_dir")).expanduser()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, record_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(record_id, threading.Lock())

    # -------------------------
    # addressing
    # -------------------------
    def path_for(self, record_id: str) -> Path:
        if not rec.ID_RE.match(record_id or ""):
            raise SchemaViolation(f"invalid package id {record_id!r}")
        book, slug = record_id.split("/", 1)
        return self.packages_dir / book / f"{slug}.json"

    def relative_path(self, path: Path) -> str:
        """Path relative to the metadata dir, e.g. packages/lfs/binutils.json."""
        try:
            return Path(path).relative_to(self.packages_dir.parent).as_posix()
        except ValueError:
            return Path(path).as_posix()

    def exists(self, record_id: str) -> bool:
        return self.path_for(record_id).is_file()

    # -------------------------
    # read / write
    # -------------------------
    def put(self, record_id: str, record: Dict[str, Any]) -> Path:
        if rec.record_id(record) != record_id:
            raise SchemaViolation(f"record id {rec.record_id(record)!r} does not match key {record_id!r}")
        path = self.path_for(record_id)
        with self._lock_for(record_id):
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=str(path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(_dump(record))
                os.replace(tmp, path)
            finally:
                if os.path.exists(tmp):
                    os.unlink(tmp)
        logger.debug("stored %s -> %s", record_id, path)
        return path

    def _read(self, path: Path) -> Dict[str, Any]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise ParseError(str(e), source=str(path)) from e
        if not isinstance(data, dict):
            raise ParseError("record is not a JSON object", source=str(path))
        return data

    def get(self, record_id: str) -> Dict[str, Any]:
        path = self.path_for(record_id)
        if not path.is_file():
            raise NotFound(f"no record for {record_id}")
        return self._read(path)

    def delete(self, record_id: str) -> bool:
        path = self.path_for(record_id)
        with self._lock_for(record_id):
            if not path.exists():
                return False
            path.unlink()
        logger.info("deleted %s", record_id)
        return True

    # -------------------------
    # enumeration
    # -------------------------
    def books(self) -> List[str]:
        if not self.packages_dir.is_dir():
            return []
        return sorted(p.name for p in self.packages_dir.iterdir() if p.is_dir())

    def list(self, book: Optional[str] = None) -> List[str]:
        """Sorted ids stored for `book` (all books when None)."""
        ids: List[str] = []
        for b in ([book] if book else self.books()):
            d = self.packages_dir / b
            if d.is_dir():
                ids.extend(f"{b}/{p.stem}" for p in d.glob("*.json"))
        return sorted(ids)

    def scan(self) -> Iterator[Tuple[Path, Optional[Dict[str, Any]], Optional[Exception]]]:
        """Yield (path, record, error) for every JSON file under packages_dir, sorted by path."""
        if not self.packages_dir.is_dir():
            return
        for path in sorted(self.packages_dir.rglob("*.json")):
            try:
                yield path, self._read(path), None
            except (OSError, ParseError) as e:
                logger.warning("unreadable record %s: %s", path, e)
                yield path, None, e

    def iter_records(self, book: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        for record_id in self.list(book):
            yield self.get(record_id)


# -------------------------
# module-level manager & wrappers
# -------------------------
_MANAGER_LOCK = threading.RLock()
_MANAGER: Optional[RecordStore] = None


def get_store() -> RecordStore:
    global _MANAGER
    with _MANAGER_LOCK:
        if _MANAGER is None:
            _MANAGER = RecordStore()
        return _MANAGER


def set_store(store: Optional[RecordStore]) -> None:
    global _MANAGER
    with _MANAGER_LOCK:
        _MANAGER = store
