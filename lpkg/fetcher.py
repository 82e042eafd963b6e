# lpkg/fetcher.py
"""
fetcher.py - document and source retrieval for lpkg

Features:
- Fetcher: fetch(url) -> bytes over http(s)/ftp/file via urllib.request
- Retries with linear backoff, per-request timeout, fixed User-Agent
- Mirror substitution for ftp.gnu.org source URLs
- download(url, dest_dir, checksum) with md5/sha256/sha512 verification
- Counters exposed through get_metrics()
"""

from __future__ import annotations

import os
import time
import hashlib
import tempfile
import threading
import urllib.error
import urllib.request
from typing import Any, Dict, Optional

from lpkg.config import get_section
from lpkg.errors import FetchError
from lpkg.logging import get_logger

logger = get_logger("fetcher")

_GNU_FTP_HOST = "ftp.gnu.org"

# -----------------------------------------------------------------------
# Utility helpers
# -----------------------------------------------------------------------
def _hash_of_file(path: str, alg: str) -> str:
    h = hashlib.new(alg)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()

def _filename_from_url(url: str) -> str:
    return os.path.basename(url.split("?", 1)[0].rstrip("/")) or f"download_{int(time.time())}"

# -----------------------------------------------------------------------
# Fetcher
# -----------------------------------------------------------------------
class Fetcher:
    def __init__(self, timeout: Optional[float] = None, retries: Optional[int] = None,
                 backoff: Optional[float] = None, user_agent: Optional[str] = None,
                 mirror: Optional[str] = None):
        cfg = get_section("fetcher")
        self.timeout = float(timeout if timeout is not None else cfg.get("timeout", 30))
        self.retries = max(1, int(retries if retries is not None else cfg.get("retries", 3)))
        self.backoff = float(backoff if backoff is not None else cfg.get("backoff", 1.0))
        self.user_agent = user_agent or cfg.get("user_agent") or "lpkg-metadata-indexer/0.1"
        self.mirror = mirror if mirror is not None else cfg.get("mirror")
        self._lock = threading.Lock()
        self._metrics = {"fetch.total": 0, "fetch.failed": 0, "fetch.bytes": 0, "download.verified": 0}

    def _count(self, key: str, n: int = 1):
        with self._lock:
            self._metrics[key] = self._metrics.get(key, 0) + n

    # -------------------------
    # raw retrieval
    # -------------------------
    def _open(self, url: str):
        req = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        return urllib.request.urlopen(req, timeout=self.timeout)

    def fetch(self, url: str) -> bytes:
        """Return the body at `url`; raises FetchError after the last failed attempt."""
        self._count("fetch.total")
        last_err: Optional[Exception] = None
        status: Optional[int] = None
        for attempt in range(1, self.retries + 1):
            try:
                with self._open(url) as resp:
                    data = resp.read()
                self._count("fetch.bytes", len(data))
                logger.debug("fetched %s (%d bytes)", url, len(data))
                return data
            except urllib.error.HTTPError as e:
                last_err, status = e, e.code
                # 4xx will not improve by retrying
                if 400 <= e.code < 500:
                    break
            except (urllib.error.URLError, OSError, ValueError) as e:
                last_err = e
            logger.warning("fetch %s failed (attempt %d/%d): %s", url, attempt, self.retries, last_err)
            if attempt < self.retries and self.backoff > 0:
                time.sleep(self.backoff * attempt)
        self._count("fetch.failed")
        raise FetchError(f"failed to fetch {url}: {last_err}", url=url, status=status)

    def fetch_text(self, url: str, encoding: str = "utf-8") -> str:
        return self.fetch(url).decode(encoding, errors="replace")

    # -------------------------
    # source downloads
    # -------------------------
    def apply_mirror(self, url: str) -> str:
        if self.mirror and _GNU_FTP_HOST in url:
            return url.replace(_GNU_FTP_HOST, self.mirror.rstrip("/").split("://", 1)[-1])
        return url

    def download(self, url: str, dest_dir: str, checksum: Optional[Dict[str, str]] = None, force: bool = False) -> Dict[str, Any]:
        """
        Download a source archive into dest_dir.
        `checksum` is {"alg": "md5", "value": "..."}; a mismatch removes the file and raises FetchError.
        Returns {"ok", "url", "path", "size", "cached"}.
        """
        os.makedirs(dest_dir, exist_ok=True)
        real_url = self.apply_mirror(url)
        out_path = os.path.join(dest_dir, _filename_from_url(real_url))
        if os.path.exists(out_path) and not force and self.verify(out_path, checksum):
            logger.info("using cached %s", out_path)
            return {"ok": True, "url": real_url, "path": out_path, "size": os.path.getsize(out_path), "cached": True}

        data = self.fetch(real_url)
        fd, tmp = tempfile.mkstemp(prefix=".dl.", dir=dest_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            if not self.verify(tmp, checksum):
                raise FetchError(f"checksum mismatch for {real_url}", url=real_url)
            os.replace(tmp, out_path)
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)
        self._count("download.verified")
        logger.info("downloaded %s -> %s", real_url, out_path)
        return {"ok": True, "url": real_url, "path": out_path, "size": len(data), "cached": False}

    def verify(self, path: str, checksum: Optional[Dict[str, str]]) -> bool:
        if not checksum:
            return True
        alg = str(checksum.get("alg", "md5")).lower()
        expected = str(checksum.get("value", "")).lower()
        got = _hash_of_file(path, alg)
        if got != expected:
            logger.warning("checksum mismatch alg=%s expected=%s got=%s (%s)", alg, expected, got, path)
            return False
        return True

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

# -----------------------------------------------------------------------
# module-level manager & wrappers
# -----------------------------------------------------------------------
_MANAGER_LOCK = threading.RLock()
_MANAGER: Optional[Fetcher] = None

def get_fetcher() -> Fetcher:
    global _MANAGER
    with _MANAGER_LOCK:
        if _MANAGER is None:
            _MANAGER = Fetcher()
        return _MANAGER

def set_fetcher(fetcher: Optional[Fetcher]) -> None:
    global _MANAGER
    with _MANAGER_LOCK:
        _MANAGER = fetcher

def fetch(*a, **k): return get_fetcher().fetch(*a, **k)
def fetch_text(*a, **k): return get_fetcher().fetch_text(*a, **k)
def download(*a, **k): return get_fetcher().download(*a, **k)
