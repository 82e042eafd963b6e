# lpkg/errors.py
"""
Exception taxonomy shared by every lpkg module.

Hard errors abort the single item they concern; batch callers catch
LpkgError per item and report it. Soft problems never raise: they are
recorded as Issue entries on the record (see lpkg.record).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class LpkgError(Exception):
    """Base class for every error raised by lpkg."""

    kind = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": type(self).__name__, "kind": self.kind, "message": str(self)}


class ConfigError(LpkgError):
    kind = "config"


class FetchError(LpkgError):
    """Network or transport failure while retrieving a document or manifest."""

    kind = "fetch"

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class ParseError(LpkgError):
    """Malformed external manifest or document."""

    kind = "parse"

    def __init__(self, message: str, source: Optional[str] = None, line: Optional[int] = None):
        if source and line is not None:
            message = f"{source}:{line}: {message}"
        elif source:
            message = f"{source}: {message}"
        super().__init__(message)
        self.source = source
        self.line = line


class SchemaViolation(LpkgError):
    kind = "schema"

    def __init__(self, message: str, violations: Optional[List[Any]] = None):
        super().__init__(message)
        self.violations = list(violations or [])


class UnresolvedSource(LpkgError):
    """Soft: a record's sources could not be matched. Normally stored as an issue, not raised."""

    kind = "unresolved-source"


class CycleError(LpkgError):
    kind = "cycle"

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__("dependency cycle: " + " -> ".join(self.cycle))


class UnknownDependencyError(LpkgError):
    kind = "unknown-dependency"

    def __init__(self, node: str, dependency: str):
        self.node = node
        self.dependency = dependency
        super().__init__(f"{node} depends on unknown package {dependency}")


class NotReadyError(LpkgError):
    kind = "not-ready"

    def __init__(self, record_id: str, status: Optional[str]):
        self.record_id = record_id
        self.status = status
        super().__init__(f"{record_id} is not ready (status={status})")


class PhaseExecutionError(LpkgError):
    kind = "phase"

    def __init__(self, node: str, phase_index: int, phase_kind: str, returncode: int, timed_out: bool = False):
        self.node = node
        self.phase_index = phase_index
        self.phase_kind = phase_kind
        self.returncode = returncode
        self.timed_out = timed_out
        why = "timed out" if timed_out else f"exited with {returncode}"
        super().__init__(f"{node}: phase {phase_index} ({phase_kind}) {why}")


class NotFound(LpkgError, KeyError):
    kind = "not-found"

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"
