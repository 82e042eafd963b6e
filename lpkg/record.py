# lpkg/record.py
"""
Package record helpers.

A record is a plain JSON-compatible dict (schema_version v0.1.0):

    {
      "schema_version": "v0.1.0",
      "package": {id, name, upstream, version, book, chapter, section, stage, variant, anchors},
      "source": {urls: [{url, kind}], archive, checksums: [{alg, value, filename}]},
      "artifacts": {sbu, disk, install_prefix},
      "dependencies": {build: [ids], runtime: [ids]},
      "environment": {variables: [{name, value}], users: [names]},
      "build": [{phase, commands, cwd, requires_root, notes}],
      "optimizations": {enable_lto, enable_pgo, opt_level, cflags, ldflags, profdata},
      "provenance": {book_release, page_url, retrieved_at, content_hash},
      "status": {state, issues: [{kind, field, message}]}
    }

Dicts keep records trivially serialisable for the store, the schema validator
and the generator hash. This module holds the naming helpers shared by the
harvester, resolver and generator.
"""

from __future__ import annotations

import re
import json
import hashlib
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

SCHEMA_VERSION = "v0.1.0"
KNOWN_SCHEMA_VERSIONS = (SCHEMA_VERSION,)

STATE_DRAFT = "draft"
STATE_ISSUES_OPEN = "issues-open"
STATE_READY = "ready"
STATUSES = (STATE_DRAFT, STATE_ISSUES_OPEN, STATE_READY)

PHASE_KINDS = ("setup", "configure", "build", "test", "install")
CHECKSUM_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")
URL_KINDS = ("primary", "patch", "signature")

ARCHIVE_SUFFIXES = (".tar.gz", ".tar.bz2", ".tar.xz", ".tar.zst", ".tar.lz", ".tgz", ".tar", ".zip")

ID_RE = re.compile(r"^[a-z0-9][a-z0-9+._-]*/[a-z0-9][a-z0-9+._-]*$")
DEPENDENCY_RE = re.compile(r"^[a-z0-9][a-z0-9+._-]*/[a-z0-9][a-z0-9+._-]*(@[A-Za-z0-9][A-Za-z0-9 +._-]*)?$")


_CHAPTER_STAGES = {
    5: "cross-toolchain",
    6: "temporary-tools",
    7: "temporary-tools",
    8: "system",
    9: "system-configuration",
    10: "system-finalization",
}

# -------------------------
# Diagnostics
# -------------------------
@dataclass(frozen=True)
class Issue:
    kind: str
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "Issue":
        if isinstance(data, str):
            return cls(kind="note", field="", message=data)
        return cls(kind=str(data.get("kind", "note")), field=str(data.get("field", "")), message=str(data.get("message", "")))

# -------------------------
# Text helpers
# -------------------------
def normalize_whitespace(text: str) -> str:
    return " ".join(text.replace("\u00a0", " ").split())


def slugify(text: str) -> str:
    """Lowercase ASCII alphanumerics; every other run of characters becomes one '-'."""
    out: List[str] = []
    prev_dash = False
    for ch in text:
        if ch.isascii() and ch.isalnum():
            out.append(ch.lower())
            prev_dash = False
        elif not prev_dash:
            out.append("-")
            prev_dash = True
    return "".join(out).strip("-")


def split_name_variant(title: str) -> Tuple[str, str, Optional[str]]:
    """
    'Binutils-2.41 - Pass 1' -> ('Binutils', '2.41', 'Pass 1').
    The version starts at the last '-' followed by a digit; 'unknown' when there is none.
    """
    base = title.strip()
    variant: Optional[str] = None
    idx = base.rfind(" - ")
    if idx != -1:
        variant = base[idx + 3:].strip() or None
        base = base[:idx].strip()
    for i in range(len(base) - 1, -1, -1):
        if base[i] == "-" and i + 1 < len(base) and base[i + 1].isdigit():
            name, version = base[:i].strip(), base[i + 1:].strip()
            if name and version:
                return name, version, variant
    return base, "unknown", variant


def stage_for_chapter(chapter: int) -> Optional[str]:
    return _CHAPTER_STAGES.get(chapter)


def archive_basename(url: str) -> str:
    return url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]


def strip_archive_suffix(filename: str) -> Optional[str]:
    """'binutils-2.41.tar.xz' -> 'binutils-2.41'; None when the name is not an archive."""
    lower = filename.lower()
    for suffix in ARCHIVE_SUFFIXES:
        if lower.endswith(suffix):
            return filename[: -len(suffix)]
    return None


def is_archive_name(filename: str) -> bool:
    return strip_archive_suffix(filename) is not None

# -------------------------
# Hashing
# -------------------------
def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def digest_obj(obj: Any) -> str:
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


def record_hash(record: Dict[str, Any]) -> str:
    return digest_obj(record)


def now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()

# -------------------------
# Record construction / accessors
# -------------------------
def new_record(book: str, name: str, version: str, variant: Optional[str] = None, **package_fields: Any) -> Dict[str, Any]:
    """Empty draft record with id derived from book + slug(name) [+ slug(variant)]."""
    book = book.lower()
    slug = slugify(name)
    if variant:
        slug = f"{slug}-{slugify(variant)}"
    package = {
        "id": f"{book}/{slug}",
        "name": name,
        "upstream": None,
        "version": version,
        "book": book,
        "chapter": None,
        "section": None,
        "stage": None,
        "variant": variant,
        "anchors": {},
    }
    package.update(package_fields)
    return {
        "schema_version": SCHEMA_VERSION,
        "package": package,
        "source": {"urls": [], "archive": None, "checksums": []},
        "artifacts": {"sbu": None, "disk": None, "install_prefix": None},
        "dependencies": {"build": [], "runtime": []},
        "environment": {"variables": [], "users": []},
        "build": [],
        "optimizations": {
            "enable_lto": True,
            "enable_pgo": True,
            "opt_level": "3",
            "cflags": ["-O3", "-flto"],
            "ldflags": ["-flto"],
            "profdata": None,
        },
        "provenance": {"book_release": "", "page_url": "", "retrieved_at": now_iso(), "content_hash": ""},
        "status": {"state": STATE_DRAFT, "issues": []},
    }


def section(record: Any, key: str) -> Dict[str, Any]:
    """record[key] when it is an object, else {} (records are untrusted input)."""
    value = record.get(key) if isinstance(record, dict) else None
    return value if isinstance(value, dict) else {}


def record_id(record: Any) -> str:
    return str(section(record, "package").get("id", ""))


def record_state(record: Any) -> Optional[str]:
    state = section(record, "status").get("state")
    return state if isinstance(state, str) else None


def add_issue(record: Dict[str, Any], issue: Issue) -> None:
    """Append `issue` unless an identical one is already recorded."""
    issues = record.setdefault("status", {}).setdefault("issues", [])
    d = issue.to_dict()
    if d not in issues:
        issues.append(d)


def clear_issues(record: Dict[str, Any], kind: Optional[str] = None) -> None:
    status = record.setdefault("status", {})
    if kind is None:
        status["issues"] = []
    else:
        status["issues"] = [i for i in status.get("issues") or [] if Issue.from_dict(i).kind != kind]
