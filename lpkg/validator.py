# lpkg/validator.py
"""
validator.py - structural validation of package records

Features:
- JSON-Schema (draft 7) check with jsonschema, schema shipped as lpkg/schema.yml
- Unknown schema_version is rejected up front (no compatibility guessing)
- Cross-field checks: id format and book prefix, phase kinds, checksum
  algorithms, dependency reference syntax, the `ready` invariant
- promote(): compute the lifecycle state a record has earned
- promote_all(): write earned states back through the store
- validate_all(): report over every record in the store

validate() is pure: it never mutates the record and always returns the
same violations (sorted) for the same input.
"""

from __future__ import annotations

import os
import threading
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import jsonschema
import yaml

from lpkg.errors import LpkgError, SchemaViolation
from lpkg.logging import get_logger
from lpkg.store import get_store
from lpkg import record as rec

logger = get_logger("validator")

_SCHEMA_LOCK = threading.Lock()
_SCHEMA_VALIDATOR: Optional[jsonschema.Draft7Validator] = None


@dataclass(frozen=True, order=True)
class Violation:
    path: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "message": self.message}

    def __str__(self) -> str:
        return f"{self.path or '<root>'}: {self.message}"


@dataclass
class ValidationResult:
    ok: bool
    violations: List[Violation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "violations": [v.to_dict() for v in self.violations]}

    def raise_for_violations(self, what: str = "record") -> None:
        if not self.ok:
            raise SchemaViolation(f"{what} failed validation: " + "; ".join(str(v) for v in self.violations), self.violations)


def _schema_validator() -> jsonschema.Draft7Validator:
    global _SCHEMA_VALIDATOR
    with _SCHEMA_LOCK:
        if _SCHEMA_VALIDATOR is None:
            schema_path = os.path.join(os.path.dirname(__file__), "schema.yml")
            with open(schema_path, "r", encoding="utf-8") as f:
                schema = yaml.safe_load(f)
            jsonschema.Draft7Validator.check_schema(schema)
            _SCHEMA_VALIDATOR = jsonschema.Draft7Validator(schema)
        return _SCHEMA_VALIDATOR


def _path(parts) -> str:
    return ".".join(str(p) for p in parts)


def _items(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _structural_violations(record: Dict[str, Any]) -> List[Violation]:
    out: List[Violation] = []
    for e in _schema_validator().iter_errors(record):
        out.append(Violation(_path(e.absolute_path), e.message))

    # mistyped sections are already reported by the schema pass
    package = rec.section(record, "package")
    rid = package.get("id")
    book = package.get("book")
    if isinstance(rid, str):
        if not rec.ID_RE.match(rid):
            out.append(Violation("package.id", f"{rid!r} is not of the form <book>/<slug>"))
        elif isinstance(book, str) and not rid.startswith(f"{book}/"):
            out.append(Violation("package.id", f"{rid!r} does not belong to book {book!r}"))

    for i, step in enumerate(_items(record.get("build"))):
        if isinstance(step, dict) and step.get("phase") not in rec.PHASE_KINDS:
            out.append(Violation(f"build.{i}.phase", f"unknown phase kind {step.get('phase')!r}"))

    for i, cs in enumerate(_items(rec.section(record, "source").get("checksums"))):
        if isinstance(cs, dict) and str(cs.get("alg", "")).lower() not in rec.CHECKSUM_ALGORITHMS:
            out.append(Violation(f"source.checksums.{i}.alg", f"checksum algorithm {cs.get('alg')!r} is not allowed"))

    deps = rec.section(record, "dependencies")
    for kind in ("build", "runtime"):
        for i, dep in enumerate(_items(deps.get(kind))):
            if isinstance(dep, str) and not rec.DEPENDENCY_RE.match(dep):
                out.append(Violation(f"dependencies.{kind}.{i}", f"malformed dependency reference {dep!r}"))
    return out


def _ready_blockers(record: Dict[str, Any]) -> List[Violation]:
    out: List[Violation] = []
    if rec.section(record, "status").get("issues"):
        out.append(Violation("status.issues", "ready records must not carry open issues"))
    if not rec.section(record, "source").get("urls"):
        out.append(Violation("source.urls", "ready records need at least one source URL"))
    return out


def validate(record: Any) -> ValidationResult:
    """Validate one record; never raises for record defects and never mutates `record`."""
    if not isinstance(record, dict):
        return ValidationResult(False, [Violation("", "record must be a JSON object")])
    version = record.get("schema_version")
    if version not in rec.KNOWN_SCHEMA_VERSIONS:
        return ValidationResult(False, [Violation("schema_version", f"unsupported schema_version {version!r}")])

    violations = _structural_violations(record)
    if rec.record_state(record) == rec.STATE_READY:
        violations.extend(_ready_blockers(record))
    violations = sorted(set(violations))
    return ValidationResult(not violations, violations)


def promote(record: Dict[str, Any]) -> Tuple[Dict[str, Any], ValidationResult]:
    """
    Return (copy, result). The copy is marked `ready` when the record is schema-valid,
    has no issues and at least one source URL. Otherwise it becomes `issues-open`, or
    stays `draft` when nothing has been resolved for it yet (no URLs, no build phases).
    `result` lists what blocks promotion.
    """
    check = deepcopy(record)
    check["status"] = dict(rec.section(record, "status"), state=rec.STATE_READY)
    result = validate(check)
    if result.ok:
        state = rec.STATE_READY
    elif not rec.section(record, "source").get("urls") and not record.get("build"):
        state = rec.STATE_DRAFT
    else:
        state = rec.STATE_ISSUES_OPEN

    out = deepcopy(record)
    out["status"] = dict(rec.section(out, "status"), state=state)
    out["status"].setdefault("issues", [])
    previous = rec.record_state(record)
    if state != previous:
        logger.info("%s: %s -> %s", rec.record_id(record), previous, state)
    return out, result


def validate_all(store=None) -> Dict[str, Any]:
    """Validate every stored record. Unreadable files are reported as failures."""
    store = store or get_store()
    items: List[Dict[str, Any]] = []
    for path, record, error in store.scan():
        item: Dict[str, Any] = {"item": str(path), "id": None, "ok": False, "state": None, "violations": []}
        if error is not None:
            item["error"] = str(error)
            items.append(item)
            continue
        result = validate(record)
        item.update({
            "id": rec.record_id(record) or None,
            "ok": result.ok,
            "state": rec.record_state(record),
            "issues": len(_items(rec.section(record, "status").get("issues"))),
            "violations": [str(v) for v in result.violations],
        })
        items.append(item)
    failed = [i for i in items if not i["ok"]]
    soft = [i for i in items if i["ok"] and i.get("issues")]
    report = {
        "ok": not failed,
        "total": len(items),
        "succeeded": len(items) - len(failed) - len(soft),
        "soft_issues": len(soft),
        "failed": len(failed),
        "items": items,
    }
    logger.info("validated %d records: %d failed, %d with open issues", len(items), len(failed), len(soft))
    return report


def promote_all(store=None) -> Dict[str, Any]:
    """
    Recompute the lifecycle state of every stored record and write back the ones
    whose state changed. Items: {"item", "id", "ok", "state", "from", "to", "violations", "error"}
    where state is unchanged, updated or failed.
    """
    store = store or get_store()
    items: List[Dict[str, Any]] = []
    for path, record, error in store.scan():
        item: Dict[str, Any] = {"item": str(path), "id": None, "ok": False, "state": "failed",
                                "from": None, "to": None, "violations": [], "error": None}
        items.append(item)
        if error is not None:
            item["error"] = str(error)
            continue
        out, result = promote(record)
        rid = rec.record_id(record)
        item.update({
            "id": rid or None,
            "ok": True,
            "from": rec.record_state(record),
            "to": rec.record_state(out),
            "violations": [str(v) for v in result.violations],
        })
        if item["from"] == item["to"]:
            item["state"] = "unchanged"
            continue
        try:
            store.put(rid, out)
        except (LpkgError, OSError) as e:
            logger.error("cannot write back %s: %s", rid, e)
            item.update({"ok": False, "state": "failed", "error": str(e)})
            continue
        item["state"] = "updated"

    failed = sum(1 for i in items if not i["ok"])
    soft = sum(1 for i in items if i["ok"] and i["to"] == rec.STATE_ISSUES_OPEN)
    logger.info("promotion pass over %d records: %d updated, %d failed",
                len(items), sum(1 for i in items if i["state"] == "updated"), failed)
    return {"ok": failed == 0, "succeeded": len(items) - failed - soft, "soft_issues": soft,
            "failed": failed, "items": items}
