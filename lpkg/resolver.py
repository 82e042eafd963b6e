# lpkg/resolver.py
"""
resolver.py - Source Resolver

Reconciles a record's name/version against Manifest Cache entries:

- match key is slug(name)-version; a build-pass suffix ("pass-1", "Pass 2")
  is never part of the version used for matching
- inline primary links already on the record take precedence; manifest URLs
  are only used when the record has none
- every manifest URL whose key matches becomes a primary source (several
  mirrors -> several URLs); patches listed for the same name-version are
  attached as kind "patch"
- checksums are paired by archive filename, once per (alg, filename)
- no match -> one `unresolved-source` issue, source.urls left empty

Resolution is best effort: it returns (updated_copy, new_issues) and never
raises for missing data. Records already promoted to `ready` are returned
unchanged; re-checking them is an explicit validate/promote step.
"""

from __future__ import annotations

import re
from copy import deepcopy
from typing import Any, Dict, Iterable, List, Optional, Tuple

from lpkg.errors import UnresolvedSource
from lpkg.logging import get_logger
from lpkg.manifest import ManifestEntry
from lpkg import record as rec

logger = get_logger("resolver")

_PASS_SUFFIX_RE = re.compile(r"[-_. ]*\(?pass[-_ ]?\d+\)?$", re.IGNORECASE)


def strip_variant(version: str, variant: Optional[str] = None) -> str:
    """'2.41-pass-1' -> '2.41'. The variant's own slug is removed as well when it trails the version."""
    v = version.strip()
    if variant:
        vslug = rec.slugify(variant)
        if vslug and v.lower().endswith("-" + vslug):
            v = v[: -(len(vslug) + 1)]
    return _PASS_SUFFIX_RE.sub("", v) or v


def match_key(record: Dict[str, Any]) -> str:
    pkg = rec.section(record, "package")
    name = rec.slugify(str(pkg.get("name", ""))).replace("_", "-")
    version = strip_variant(str(pkg.get("version", "")), pkg.get("variant"))
    return f"{name}-{version}"


def find_matches(needle: str, entries: Iterable[ManifestEntry]) -> Tuple[List[ManifestEntry], List[ManifestEntry]]:
    """Return (archives, patches) whose manifest key matches `needle`."""
    needle = needle.lower()
    archives: List[ManifestEntry] = []
    patches: List[ManifestEntry] = []
    for e in entries:
        if not e.url:
            continue
        key = e.key.lower()
        if key == needle and rec.is_archive_name(e.filename):
            archives.append(e)
        elif key.startswith(needle + "-") and e.filename.lower().endswith(".patch"):
            patches.append(e)
    return archives, patches


def checksum_for(filename: str, entries: Iterable[ManifestEntry]) -> Optional[Dict[str, str]]:
    for e in entries:
        if e.filename == filename and e.checksum:
            return dict(e.checksum)
    return None


def _add_url(source: Dict[str, Any], url: str, kind: str) -> bool:
    urls = source.setdefault("urls", [])
    if any(u.get("url") == url for u in urls):
        return False
    urls.append({"url": url, "kind": kind})
    return True


def _add_checksum(source: Dict[str, Any], filename: str, checksum: Dict[str, str]) -> bool:
    sums = source.setdefault("checksums", [])
    alg = checksum["alg"]
    if any(c.get("alg") == alg and c.get("filename", filename) == filename for c in sums):
        return False
    sums.append({"alg": alg, "value": checksum["value"].lower(), "filename": filename})
    return True


def resolve(record: Dict[str, Any], entries: Iterable[ManifestEntry]) -> Tuple[Dict[str, Any], List[rec.Issue]]:
    out = deepcopy(record)
    rid = rec.record_id(record)
    if rec.record_state(record) == rec.STATE_READY:
        logger.debug("%s is ready; leaving sources untouched", rid)
        return out, []

    entries = list(entries)
    source = out.setdefault("source", {"urls": [], "archive": None, "checksums": []})
    inline = [u["url"] for u in source.get("urls") or [] if u.get("kind") == "primary"]
    issues: List[rec.Issue] = []
    needle = match_key(out)

    if inline:
        logger.debug("%s: %d inline source(s); manifest used for checksums only", rid, len(inline))
    else:
        archives, patches = find_matches(needle, entries)
        for e in archives:
            _add_url(source, e.url, "primary")
        for e in patches:
            _add_url(source, e.url, "patch")
        if archives:
            logger.info("%s: resolved %d URL(s) from manifest for %s", rid, len(archives), needle)

    primaries = [u["url"] for u in source.get("urls") or [] if u.get("kind") == "primary"]
    if not primaries:
        issue = rec.Issue(UnresolvedSource.kind, "source.urls", f"no manifest entry matches {needle}")
        rec.add_issue(out, issue)
        issues.append(issue)
        logger.warning("%s: %s", rid, issue.message)
        return out, issues

    rec.clear_issues(out, UnresolvedSource.kind)
    if not source.get("archive"):
        source["archive"] = rec.archive_basename(primaries[0])

    filenames = [source["archive"]] + [rec.archive_basename(u["url"]) for u in source.get("urls") or []]
    for fname in dict.fromkeys(filenames):
        cs = checksum_for(fname, entries)
        if cs:
            _add_checksum(source, fname, cs)
    return out, issues


def resolve_many(records: Iterable[Dict[str, Any]], entries: Iterable[ManifestEntry]) -> List[Dict[str, Any]]:
    """Per-record results: {"item", "ok", "state", "record", "issues"}; state is resolved or unresolved."""
    entries = list(entries)
    results: List[Dict[str, Any]] = []
    for r in records:
        updated, issues = resolve(r, entries)
        results.append({
            "item": rec.record_id(r),
            "ok": True,
            "state": "unresolved" if issues else "resolved",
            "record": updated,
            "issues": [i.to_dict() for i in issues],
        })
    return results
