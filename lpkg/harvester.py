# lpkg/harvester.py
"""
harvester.py - draft package records from book pages

Features:
- Resolve page names against a book's base URL (".html" appended, absolute URLs pass through)
- Parse the page with BeautifulSoup: section heading, name/version/variant,
  stage, anchors, inline source links, archive name, build phases, SBU/disk
- Fall back to the book's Manifest Cache (via the resolver) when the page has
  no inline archive links; checksums always come from the manifest by filename
- Diagnostics go to status.issues; the record is always a draft
- harvest_many(): pages in a thread pool, one result per page
"""

from __future__ import annotations

import re
import hashlib
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from lpkg.config import get_book_config
from lpkg.errors import ConfigError, LpkgError, ParseError
from lpkg.fetcher import get_fetcher
from lpkg.logging import get_logger
from lpkg.manifest import get_manifest_cache
from lpkg.resolver import resolve
from lpkg.store import get_store
from lpkg import record as rec

logger = get_logger("harvester")

_HEADING_RE = re.compile(r"^(\d+\.\d+)\.\s+(.+)$")
_NUMBER_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)")

MAX_PARALLEL = 4

# -------------------------
# Page helpers
# -------------------------
def resolve_page_url(book: str, page: str, base_url: Optional[str] = None) -> str:
    if page.startswith(("http://", "https://")):
        return page
    base = base_url or get_book_config(book).get("base_url")
    if not base:
        raise ConfigError(f"no base URL available for book {book!r}")
    path = page.lstrip("/") or "index.html"
    if not path.endswith(".html"):
        path += ".html"
    return f"{base.rstrip('/')}/{path}"


def classify_link(href: str) -> Optional[str]:
    lower = href.lower().split("?", 1)[0]
    if lower.endswith((".tar", ".tar.gz", ".tar.bz2", ".tar.xz", ".tgz", ".zip")):
        return "primary"
    if lower.endswith(".patch"):
        return "patch"
    if lower.endswith((".sig", ".asc")):
        return "signature"
    return None


def classify_phase(commands: List[str]) -> str:
    joined = "\n".join(commands).lower()
    if "make install" in joined:
        return "install"
    if "make -k check" in joined or "make check" in joined:
        return "test"
    if "configure" in joined:
        return "configure"
    if "tar -xf" in joined or "mkdir " in joined:
        return "setup"
    return "build"


def _parse_number(text: str) -> Optional[float]:
    m = _NUMBER_RE.search(text)
    return float(m.group(1)) if m else None

# -------------------------
# Extraction
# -------------------------
def _find_anchor(soup: BeautifulSoup, heading, slug_base: str, html: str) -> Optional[str]:
    if heading.get("id"):
        return heading["id"]
    for child in heading.children:
        if getattr(child, "name", None) and (child.get("id") or child.get("name")):
            return child.get("id") or child.get("name")
    for a in soup.select("a[id]"):
        if slug_base in a["id"]:
            return a["id"]
    m = re.search(r'id="([^"]*' + re.escape(slug_base) + r'[^"]*)"', html)
    return m.group(1) if m else None


def _collect_links(soup: BeautifulSoup, page_url: str) -> List[Dict[str, str]]:
    seen = set()
    out: List[Dict[str, str]] = []
    for a in soup.find_all("a", href=True):
        kind = classify_link(a["href"])
        if not kind:
            continue
        url = urljoin(page_url, a["href"].strip())
        if url in seen:
            continue
        seen.add(url)
        out.append({"url": url, "kind": kind})
    return out


def _infer_archive(soup: BeautifulSoup) -> Optional[str]:
    for pre in soup.select("pre.userinput"):
        for line in pre.get_text().splitlines():
            idx = line.find("tar -xf")
            if idx == -1:
                continue
            args = line[idx + len("tar -xf"):].split()
            if not args:
                continue
            cleaned = args[0].strip("\"',")
            if cleaned.endswith((".tar", ".tgz", ".zip")) or ".tar." in cleaned:
                return re.sub(r"^(\.\./)+", "", cleaned)
    return None


def _build_steps(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    steps: List[Dict[str, Any]] = []
    for pre in soup.select("pre.userinput"):
        commands = [line.strip() for line in pre.get_text().splitlines() if line.strip()]
        if not commands:
            continue
        steps.append({
            "phase": classify_phase(commands),
            "commands": commands,
            "cwd": None,
            "requires_root": False,
            "notes": None,
        })
    return steps


def _artifacts(soup: BeautifulSoup) -> Tuple[Optional[float], Optional[int]]:
    sbu: Optional[float] = None
    disk: Optional[int] = None
    for seg in soup.select("div.segmentedlist div.seg"):
        title = seg.select_one("strong.segtitle")
        body = seg.select_one("span.segbody")
        if title is None or body is None:
            continue
        t = rec.normalize_whitespace(title.get_text())
        value = _parse_number(rec.normalize_whitespace(body.get_text()))
        if value is None:
            continue
        if "Approximate build time" in t:
            sbu = value
        elif "Required disk space" in t:
            disk = int(value)
    return sbu, disk


def parse_page(book: str, page_url: str, html: str) -> Dict[str, Any]:
    """Build a draft record from page HTML. No I/O; sources are not resolved here."""
    soup = BeautifulSoup(html, "html.parser")
    heading = soup.select_one("h1.sect1")
    if heading is None:
        raise ParseError("no <h1 class=sect1> found", source=page_url)
    heading_text = rec.normalize_whitespace(heading.get_text(" "))
    m = _HEADING_RE.match(heading_text)
    if not m:
        raise ParseError(f"unable to parse heading {heading_text!r}", source=page_url)
    section, title = m.group(1), m.group(2).strip()
    name, version, variant = rec.split_name_variant(title)
    chapter = int(section.split(".", 1)[0])
    slug_base = rec.slugify(name)

    anchor = _find_anchor(soup, heading, slug_base, html)
    body = soup.find("body")
    record = rec.new_record(
        book, name, version, variant,
        chapter=chapter,
        section=section,
        stage=rec.stage_for_chapter(chapter),
        anchors={"section": f"{page_url}#{anchor}"} if anchor else {},
    )
    links = _collect_links(soup, page_url)
    record["source"]["urls"] = links
    record["source"]["archive"] = _infer_archive(soup) or next(
        (rec.archive_basename(u["url"]) for u in links if u["kind"] == "primary"), None)
    sbu, disk = _artifacts(soup)
    record["artifacts"].update({"sbu": sbu, "disk": disk})
    record["build"] = _build_steps(soup)
    record["provenance"] = {
        "book_release": (body.get("id") if body is not None else None) or "",
        "page_url": page_url,
        "retrieved_at": rec.now_iso(),
        "content_hash": hashlib.sha256(html.encode("utf-8")).hexdigest(),
    }

    if not anchor:
        rec.add_issue(record, rec.Issue("missing-anchor", "package.anchors", "could not locate anchor id for primary heading"))
    if not record["build"]:
        rec.add_issue(record, rec.Issue("missing-build", "build", 'no <pre class="userinput"> blocks found for build commands'))
    return record

# -------------------------
# Harvester
# -------------------------
class Harvester:
    def __init__(self, fetcher=None, store=None, manifest_cache=None):
        self.fetcher = fetcher
        self.store = store
        self.manifest_cache = manifest_cache

    def _manifest_entries(self, book: str):
        cache = self.manifest_cache or get_manifest_cache()
        try:
            return cache.get(book, allow_stale=True)
        except LpkgError as e:
            logger.warning("manifest for %s unavailable: %s", book, e)
            return []

    def harvest(self, book: str, page: str, base_url: Optional[str] = None, dry_run: bool = False) -> Dict[str, Any]:
        """Fetch, parse and resolve one page into a draft record; stored unless dry_run."""
        book = book.lower()
        page_url = resolve_page_url(book, page, base_url)
        raw = (self.fetcher or get_fetcher()).fetch(page_url)
        html = raw.decode("utf-8", errors="replace")
        record = parse_page(book, page_url, html)
        record, _ = resolve(record, self._manifest_entries(book))
        record["status"]["state"] = rec.STATE_DRAFT

        rid = rec.record_id(record)
        if dry_run:
            logger.info("[dry-run] harvested %s from %s (not written)", rid, page_url)
        else:
            try:
                path = (self.store or get_store()).put(rid, record)
            except OSError as e:
                raise LpkgError(f"cannot store {rid}: {e}") from e
            logger.info("harvested %s -> %s", rid, path)
        return record

    def harvest_many(self, book: str, pages: List[str], base_url: Optional[str] = None,
                     dry_run: bool = False, workers: int = MAX_PARALLEL) -> Dict[str, Any]:
        """Harvest several pages; a failing page never stops the others."""
        results: Dict[str, Dict[str, Any]] = {}
        with ThreadPoolExecutor(max_workers=max(1, min(len(pages) or 1, workers))) as exc:
            futures = {exc.submit(self.harvest, book, p, base_url, dry_run): p for p in pages}
            for fut in as_completed(futures):
                page = futures[fut]
                try:
                    record = fut.result()
                    issues = (record.get("status") or {}).get("issues") or []
                    results[page] = {
                        "item": page, "ok": True, "id": rec.record_id(record),
                        "state": "soft-issue" if issues else "succeeded",
                        "issues": issues, "record": record, "error": None,
                    }
                except (LpkgError, OSError) as e:
                    logger.error("harvest %s failed: %s", page, e)
                    results[page] = {"item": page, "ok": False, "id": None, "state": "failed",
                                     "issues": [], "record": None, "error": str(e)}
        ordered = [results[p] for p in pages]
        return _summary(ordered)


def _summary(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    failed = sum(1 for i in items if i["state"] == "failed")
    soft = sum(1 for i in items if i["state"] == "soft-issue")
    return {"ok": failed == 0, "succeeded": len(items) - failed - soft, "soft_issues": soft,
            "failed": failed, "items": items}

# -------------------------
# module-level manager & wrappers
# -------------------------
_MANAGER_LOCK = threading.RLock()
_MANAGER: Optional[Harvester] = None


def get_harvester() -> Harvester:
    global _MANAGER
    with _MANAGER_LOCK:
        if _MANAGER is None:
            _MANAGER = Harvester()
        return _MANAGER


def set_harvester(harvester: Optional[Harvester]) -> None:
    global _MANAGER
    with _MANAGER_LOCK:
        _MANAGER = harvester


def harvest(*a, **k): return get_harvester().harvest(*a, **k)
def harvest_many(*a, **k): return get_harvester().harvest_many(*a, **k)
