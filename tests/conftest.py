# tests/conftest.py
"""Shared fixtures: every test gets its own config, store, cache and state db under tmp_path."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest

from lpkg import config
from lpkg import record as rec
from lpkg.db import DB, set_default_db
from lpkg.errors import FetchError
from lpkg.fetcher import set_fetcher
from lpkg.generator import set_generator
from lpkg.harvester import set_harvester
from lpkg.manifest import set_manifest_cache
from lpkg.store import RecordStore, set_store


def _reset_singletons() -> None:
    set_store(None)
    set_manifest_cache(None)
    set_fetcher(None)
    set_generator(None)
    set_harvester(None)
    set_default_db(None)


@pytest.fixture(autouse=True)
def lpkg_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> config.Config:
    """Point every path at tmp_path and make sure no user config leaks in."""
    monkeypatch.delenv("LPKG_CONFIG", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    cfg = config.load(overrides={
        "logging": {"level": "WARNING", "color": False},
        "paths": {
            "metadata_dir": str(tmp_path / "metadata"),
            "generated_dir": str(tmp_path / "generated"),
            "work_dir": str(tmp_path / "work"),
            "log_dir": str(tmp_path / "logs"),
            "state_db": str(tmp_path / "state.sqlite3"),
        },
        "fetcher": {"retries": 1, "backoff": 0},
        "build": {"shell": "/bin/sh", "timeout": 30, "cancel_grace": 1},
    })
    _reset_singletons()
    yield cfg
    _reset_singletons()


@pytest.fixture
def store(tmp_path: Path) -> RecordStore:
    s = RecordStore(tmp_path / "metadata" / "packages")
    set_store(s)
    return s


@pytest.fixture
def state_db(tmp_path: Path):
    db = DB(tmp_path / "state.sqlite3")
    db.apply_migrations()
    set_default_db(db)
    yield db
    db.close()


class FakeFetcher:
    """In-memory stand-in for lpkg.fetcher.Fetcher; unknown URLs raise FetchError."""

    def __init__(self, pages: Optional[Dict[str, Union[str, bytes]]] = None):
        self.pages: Dict[str, Union[str, bytes]] = dict(pages or {})
        self.calls: List[str] = []

    def fetch(self, url: str) -> bytes:
        self.calls.append(url)
        if url not in self.pages:
            raise FetchError(f"failed to fetch {url}: HTTP Error 404", url=url, status=404)
        body = self.pages[url]
        return body.encode("utf-8") if isinstance(body, str) else body

    def fetch_text(self, url: str, encoding: str = "utf-8") -> str:
        return self.fetch(url).decode(encoding)


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    f = FakeFetcher()
    set_fetcher(f)
    return f


def make_record(name: str = "binutils", version: str = "2.41", variant: Optional[str] = None,
                book: str = "lfs", commands: Optional[List[List[str]]] = None,
                deps: Optional[List[str]] = None, state: str = rec.STATE_READY, stage: str = "cross-toolchain"):
    """A record that validates; `commands` is one command list per build phase."""
    r = rec.new_record(book, name, version, variant, stage=stage, chapter=5, section="5.2")
    archive = f"{name}-{version}.tar.xz"
    r["source"]["urls"] = [{"url": f"https://ftp.example.org/{name}/{archive}", "kind": "primary"}]
    r["source"]["archive"] = archive
    r["source"]["checksums"] = [{"alg": "md5", "value": "0" * 32, "filename": archive}]
    phases = [["true"]] if commands is None else commands
    r["build"] = [
        {"phase": "build", "commands": list(cmds), "cwd": None, "requires_root": False, "notes": None}
        for cmds in phases
    ]
    r["dependencies"]["build"] = list(deps or [])
    r["provenance"]["retrieved_at"] = "2024-03-01T00:00:00+00:00"
    r["status"]["state"] = state
    return r


@pytest.fixture
def record_factory():
    return make_record
