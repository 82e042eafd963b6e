# lpkg/index.py
"""
index.py - flat package index (id -> path, status, last validation)

The index is derived data: every pass rebuilds it from the store, and a pass
refuses to write anything while a stored record fails validation. One pass
at a time; the file is replaced atomically.
"""

from __future__ import annotations

import os
import json
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from lpkg.config import get_config
from lpkg.errors import SchemaViolation
from lpkg.logging import get_logger
from lpkg.store import get_store
from lpkg.validator import validate_all
from lpkg import record as rec

logger = get_logger("index")

_INDEX_LOCK = threading.Lock()


def _entry(record: Dict[str, Any], rel_path: str, validated_at: str) -> Dict[str, Any]:
    pkg = rec.section(record, "package")
    return {
        "id": rec.record_id(record),
        "name": pkg.get("name"),
        "version": pkg.get("version"),
        "stage": pkg.get("stage"),
        "book": pkg.get("book"),
        "variant": pkg.get("variant"),
        "status": rec.record_state(record),
        "path": rel_path,
        "validated_at": validated_at,
    }


def rebuild_index(store=None, index_file: Optional[str | Path] = None, compact: bool = False) -> Dict[str, Any]:
    """
    Validate every stored record and rewrite the index file.
    Raises SchemaViolation (index left untouched) when any record is invalid.
    Returns {"ok", "path", "total", "by_status"}.
    """
    store = store or get_store()
    target = Path(index_file or get_config().get("paths.index_file")).expanduser()
    with _INDEX_LOCK:
        report = validate_all(store)
        if not report["ok"]:
            bad = [i["item"] for i in report["items"] if not i["ok"]]
            raise SchemaViolation(f"metadata validation failed; index not updated ({len(bad)} invalid)", bad)

        validated_at = rec.now_iso()
        entries: List[Dict[str, Any]] = []
        for path, record, _ in store.scan():
            entries.append(_entry(record, store.relative_path(path), validated_at))
        entries.sort(key=lambda e: e["id"])

        index = {
            "generated_at": validated_at,
            "schema_version": rec.SCHEMA_VERSION,
            "packages": entries,
        }
        text = json.dumps(index, ensure_ascii=False) if compact else json.dumps(index, indent=2, ensure_ascii=False)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".index.", suffix=".tmp", dir=str(target.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text + "\n")
            os.replace(tmp, target)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)

    by_status: Dict[str, int] = {}
    for e in entries:
        by_status[e["status"]] = by_status.get(e["status"], 0) + 1
    logger.info("index updated: %s (%d packages)", target, len(entries))
    return {"ok": True, "path": str(target), "total": len(entries), "by_status": by_status}


def load_index(index_file: Optional[str | Path] = None) -> Dict[str, Any]:
    target = Path(index_file or get_config().get("paths.index_file")).expanduser()
    if not target.is_file():
        return {"generated_at": None, "schema_version": rec.SCHEMA_VERSION, "packages": []}
    return json.loads(target.read_text(encoding="utf-8"))
