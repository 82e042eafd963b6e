# lpkg/generator.py
"""
generator.py - Translator/Generator: ready record -> build definition artifact

Features:
- build_definition(record): pure, deterministic translation of a ready record
- Artifact layout <output_dir>/<book>/<prefix>/<module>/definition.json where
  module is the sanitized slug (plus the variant when the id lacks it) and prefix
  its first two characters (lfs/binutils -> lfs/bi/binutils)
- Canonical JSON artifact with a provenance header (record_hash, content_hash,
  schema_version) so hand edits are detectable
- Diff-safe emission: render into a staging buffer, byte-compare with the target,
  write (temp file + os.replace) only when content differs
- Dry-run reports would-create/would-update with a unified diff and never
  touches the target
- Hand-edited targets are reported as `conflict` unless overwrite=True
"""

from __future__ import annotations

import os
import json
import difflib
import tempfile
import threading
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from lpkg.config import get_config
from lpkg.errors import LpkgError, NotFound, NotReadyError, ParseError
from lpkg.logging import audit, get_logger
from lpkg.validator import validate
from lpkg import record as rec

logger = get_logger("generator")

GENERATOR_NAME = "lpkg-generator"

# -------------------------
# Naming
# -------------------------
def module_name(record_id: str, variant: Optional[str] = None) -> str:
    """Sanitized slug; a variant the id does not already spell out is appended."""
    slug = record_id.split("/", 1)[1] if "/" in record_id else record_id
    suffix = rec.slugify(variant) if variant else ""
    if suffix and not slug.lower().endswith(suffix):
        slug = f"{slug}-{suffix}"
    for ch in "./- ":
        slug = slug.replace(ch, "_")
    slug = "".join(c if (c.isascii() and c.isalnum()) or c == "_" else "_" for c in slug.lower())
    if not slug:
        return "pkg"
    if slug[0].isdigit():
        slug = "p" + slug
    return slug


def module_book(record_id: str) -> str:
    """Book directory of an id ('mlfs/binutils' -> 'mlfs'); '_' when the id has no book."""
    book = record_id.split("/", 1)[0] if "/" in record_id else ""
    return "".join(c if (c.isascii() and c.isalnum()) or c in "+._-" else "_" for c in book.lower()).strip(".") or "_"


def module_prefix(module: str) -> str:
    first = module[0] if len(module) > 0 else "p"
    second = module[1] if len(module) > 1 else "k"
    return f"{first}{second}"


def _dedup(flags: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(f for f in flags if f))

# -------------------------
# Definition
# -------------------------
@dataclass
class BuildDefinition:
    id: str
    name: str
    version: str
    variant: Optional[str]
    stage: Optional[str]
    module: str
    prefix: str
    archive: Optional[str] = None
    sources: List[Dict[str, str]] = field(default_factory=list)
    checksums: List[Dict[str, Any]] = field(default_factory=list)
    phases: List[Dict[str, Any]] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    flags: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BuildDefinition":
        return cls(**{k: d[k] for k in cls.__dataclass_fields__ if k in d})

    @property
    def key(self) -> str:
        return f"{self.id}@{self.variant}" if self.variant else self.id

    def content_hash(self) -> str:
        return rec.digest_obj(self.to_dict())


def compute_flags(opt: Dict[str, Any]) -> Dict[str, Any]:
    lto = bool(opt.get("enable_lto"))
    pgo = bool(opt.get("enable_pgo"))
    profdata = opt.get("profdata")
    level = str(opt.get("opt_level") or get_config().get("build.opt_level", "3"))
    pgo_flag = ["-fprofile-use" if profdata else "-fprofile-generate"] if pgo else []

    cflags = list(opt.get("cflags") or [])
    if not cflags:
        cflags = [f"-O{level}"] + (["-flto"] if lto else []) + pgo_flag
    ldflags = list(opt.get("ldflags") or [])
    if not ldflags:
        ldflags = (["-flto"] if lto else []) + pgo_flag
    return {
        "cflags": _dedup(cflags),
        "ldflags": _dedup(ldflags),
        "enable_lto": lto,
        "enable_pgo": pgo,
        "profdata": profdata,
    }


def build_definition(record: Dict[str, Any]) -> BuildDefinition:
    """
    Pure translation. Raises NotReadyError unless the record is ready and
    SchemaViolation when a ready record does not validate, before reading any field.
    """
    rid = rec.record_id(record)
    state = rec.record_state(record)
    if state != rec.STATE_READY:
        raise NotReadyError(rid, state)
    validate(record).raise_for_violations(rid or "record")
    pkg = record.get("package") or {}
    source = record.get("source") or {}
    deps = record.get("dependencies") or {}
    module = module_name(rid, pkg.get("variant"))
    phases = [
        {
            "kind": step.get("phase"),
            "commands": list(step.get("commands") or []),
            "cwd": step.get("cwd"),
            "requires_root": bool(step.get("requires_root", False)),
        }
        for step in record.get("build") or []
    ]
    env = {v["name"]: v["value"] for v in (record.get("environment") or {}).get("variables") or []}
    return BuildDefinition(
        id=rid,
        name=pkg.get("name", ""),
        version=pkg.get("version", ""),
        variant=pkg.get("variant"),
        stage=pkg.get("stage"),
        module=module,
        prefix=module_prefix(module),
        archive=source.get("archive"),
        sources=[{"url": u["url"], "kind": u["kind"]} for u in source.get("urls") or []],
        checksums=[dict(c) for c in source.get("checksums") or []],
        phases=phases,
        dependencies=sorted(set(deps.get("build") or []) | set(deps.get("runtime") or [])),
        flags=compute_flags(record.get("optimizations") or {}),
        environment=env,
    )

# -------------------------
# Artifact rendering
# -------------------------
def render_artifact(definition: BuildDefinition, record: Dict[str, Any]) -> str:
    doc = {
        "header": {
            "generator": GENERATOR_NAME,
            "schema_version": record.get("schema_version", rec.SCHEMA_VERSION),
            "record_hash": rec.record_hash(record),
            "content_hash": definition.content_hash(),
        },
        "definition": definition.to_dict(),
    }
    return json.dumps(doc, sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def artifact_path(output_dir: str | Path, definition: BuildDefinition) -> Path:
    return Path(output_dir) / module_book(definition.id) / definition.prefix / definition.module / "definition.json"


def load_artifact(path: str | Path) -> Dict[str, Any]:
    """Parse an artifact; raises ParseError when it is not a generator document."""
    try:
        doc = json.loads(Path(path).read_text(encoding="utf-8"))
    except ValueError as e:
        raise ParseError(str(e), source=str(path)) from e
    if not isinstance(doc, dict) or "header" not in doc or "definition" not in doc:
        raise ParseError("missing header/definition", source=str(path))
    return doc


def is_hand_edited(path: str | Path) -> bool:
    """True when the artifact body no longer matches the content_hash in its header."""
    try:
        doc = load_artifact(path)
    except (OSError, ParseError):
        return True
    return doc["header"].get("content_hash") != rec.digest_obj(doc["definition"])


def _diff(old: str, new: str, path: Path) -> str:
    return "".join(difflib.unified_diff(
        old.splitlines(keepends=True), new.splitlines(keepends=True),
        fromfile=f"{path} (current)", tofile=f"{path} (generated)",
    ))


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".staging.", suffix=".json", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)

# -------------------------
# Generator
# -------------------------
class Generator:
    def __init__(self, output_dir: Optional[str | Path] = None, overwrite: Optional[bool] = None):
        self.output_dir = Path(output_dir or get_config().get("paths.generated_dir")).expanduser()
        self.overwrite = bool(overwrite if overwrite is not None else get_config().get("generator.overwrite", False))

    def generate(self, record: Dict[str, Any], output_dir: Optional[str | Path] = None,
                 overwrite: Optional[bool] = None, dry_run: bool = False) -> Dict[str, Any]:
        """
        Emit the artifact for one ready record. Raises NotReadyError (before any write)
        for non-ready records and SchemaViolation for invalid ones.
        Returns {"item", "ok", "action", "path", "diff", "record_hash"}.
        """
        definition = build_definition(record)
        out_dir = Path(output_dir) if output_dir else self.output_dir
        overwrite = self.overwrite if overwrite is None else overwrite
        staged = render_artifact(definition, record)
        target = artifact_path(out_dir, definition)

        report = {"item": definition.id, "ok": True, "action": None, "path": str(target),
                  "diff": "", "record_hash": rec.record_hash(record)}
        if not target.exists():
            report["diff"] = _diff("", staged, target)
            if dry_run:
                report["action"] = "would-create"
            else:
                _write_atomic(target, staged)
                report["action"] = "created"
                audit("generator", "created", path=str(target), record_hash=report["record_hash"])
            logger.info("%s %s", report["action"], target)
            return report

        current = target.read_bytes()
        if current == staged.encode("utf-8"):
            report["action"] = "unchanged"
            logger.debug("unchanged %s", target)
            return report

        try:
            report["diff"] = _diff(current.decode("utf-8"), staged, target)
        except UnicodeDecodeError:
            report["diff"] = f"Binary file {target} differs\n"
        if is_hand_edited(target) and not overwrite:
            report.update({"ok": False, "action": "conflict"})
            logger.warning("%s was edited by hand; refusing to replace without overwrite", target)
            return report
        if dry_run:
            report["action"] = "would-update"
        else:
            _write_atomic(target, staged)
            report["action"] = "updated"
            audit("generator", "updated", path=str(target), record_hash=report["record_hash"])
        logger.info("%s %s", report["action"], target)
        return report

    def generate_path(self, metadata_path: str | Path, output_dir: Optional[str | Path] = None,
                      overwrite: Optional[bool] = None, dry_run: bool = False) -> Dict[str, Any]:
        path = Path(metadata_path)
        if not path.is_file():
            raise NotFound(f"no metadata file {path}")
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise ParseError(str(e), source=str(path)) from e
        return self.generate(record, output_dir, overwrite, dry_run)

    def generate_many(self, records: Iterable[Any], output_dir: Optional[str | Path] = None,
                      overwrite: Optional[bool] = None, dry_run: bool = False) -> Dict[str, Any]:
        """Records or metadata paths; each item fails on its own."""
        items: List[Dict[str, Any]] = []
        for item in records:
            label = str(item) if isinstance(item, (str, Path)) else rec.record_id(item)
            try:
                if isinstance(item, (str, Path)):
                    res = self.generate_path(item, output_dir, overwrite, dry_run)
                else:
                    res = self.generate(item, output_dir, overwrite, dry_run)
                res["state"] = "failed" if not res["ok"] else "succeeded"
            except (LpkgError, OSError) as e:
                logger.error("generate %s failed: %s", label, e)
                res = {"item": label, "ok": False, "state": "failed", "action": "error",
                       "path": None, "diff": "", "error": str(e), "error_type": type(e).__name__}
            items.append(res)
        failed = sum(1 for i in items if not i["ok"])
        return {"ok": failed == 0, "succeeded": len(items) - failed, "soft_issues": 0, "failed": failed, "items": items}

# -------------------------
# module-level manager & wrappers
# -------------------------
_MANAGER_LOCK = threading.RLock()
_MANAGER: Optional[Generator] = None


def get_generator() -> Generator:
    global _MANAGER
    with _MANAGER_LOCK:
        if _MANAGER is None:
            _MANAGER = Generator()
        return _MANAGER


def set_generator(generator: Optional[Generator]) -> None:
    global _MANAGER
    with _MANAGER_LOCK:
        _MANAGER = generator


def generate(*a, **k): return get_generator().generate(*a, **k)
def generate_many(*a, **k): return get_generator().generate_many(*a, **k)
