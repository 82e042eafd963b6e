# lpkg/executor.py
"""
executor.py - Build Executor

Features:
- Runs a BuildGraph with up to N workers (default: build.workers or cpu count)
- A node is started only once every dependency has reached a terminal state;
  a node whose dependency Failed or was Skipped becomes Skipped
- Each phase is one shell script (`<shell> -e -c`) in <work_dir>/<slot>, where
  slot is the node label made filesystem safe (lfs/gcc@Pass 1 -> lfs__gcc@Pass_1),
  with CFLAGS/CXXFLAGS/LDFLAGS and the record's variables exported
- Output streamed line by line to <log_dir>/<slot>.log (and DEBUG log)
- Per-phase timeout; a failing phase fails the node and stops its remaining phases
- Resume: last succeeded phase per node kept in the sqlite state db, keyed by
  node and definition hash; a changed definition starts from phase 0
- cancel(): no new nodes start, running phases get `cancel_grace` seconds
  before SIGTERM (then SIGKILL); nodes never started become Skipped
- fetch_sources=True downloads each node's archive and patches into
  <work_dir>/<slot>/sources (checksums verified by filename) before phase 0
- build.keep_logs=False removes the log of a node that succeeded
- dry_run logs what would run without spawning anything
"""

from __future__ import annotations

import os
import time
import signal
import threading
import subprocess
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from lpkg.config import get_build_config, get_config
from lpkg.db import DB, get_default_db
from lpkg.errors import LpkgError, PhaseExecutionError
from lpkg.fetcher import get_fetcher
from lpkg.generator import BuildDefinition
from lpkg.graph import BuildGraph, BuildGraphNode, NodeKey
from lpkg.logging import audit, close_build_log, get_logger, open_build_log, stream_build_output
from lpkg.record import archive_basename

logger = get_logger("executor")


class NodeState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (NodeState.SUCCEEDED, NodeState.FAILED, NodeState.SKIPPED)


@dataclass
class NodeResult:
    node: str
    state: NodeState = NodeState.PENDING
    failed_phase: Optional[int] = None
    phase_kind: Optional[str] = None
    error: Optional[str] = None
    phases_run: int = 0
    phases_skipped: int = 0
    log: Optional[str] = None
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        return d


def assemble_env(definition: BuildDefinition, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Process environment plus compiler flags and the record's own variables."""
    env = dict(os.environ if base is None else base)
    flags = definition.flags or {}
    cflags = " ".join(flags.get("cflags") or [])
    ldflags = " ".join(flags.get("ldflags") or [])
    if cflags:
        env["CFLAGS"] = cflags
        env["CXXFLAGS"] = cflags
    if ldflags:
        env["LDFLAGS"] = ldflags
    env.update({str(k): str(v) for k, v in (definition.environment or {}).items()})
    return env


class BuildExecutor:
    def __init__(self, work_dir: Optional[str | Path] = None, log_dir: Optional[str | Path] = None,
                 db: Optional[DB] = None, timeout: Optional[float] = None,
                 cancel_grace: Optional[float] = None, shell: Optional[str] = None,
                 keep_logs: Optional[bool] = None, fetcher=None):
        cfg = get_build_config()
        self.work_dir = Path(work_dir or get_config().get("paths.work_dir")).expanduser()
        self.log_dir = Path(log_dir or get_config().get("paths.log_dir")).expanduser()
        self.timeout = float(timeout if timeout is not None else cfg.get("timeout", 3600))
        self.cancel_grace = float(cancel_grace if cancel_grace is not None else cfg.get("cancel_grace", 10))
        self.shell = shell or cfg.get("shell") or "/bin/bash"
        self.default_workers = cfg.get("workers") or os.cpu_count() or 1
        self.keep_logs = bool(cfg.get("keep_logs", True) if keep_logs is None else keep_logs)
        self.fetcher = fetcher
        self._db = db
        self._cancel = threading.Event()
        self._procs: Dict[str, subprocess.Popen] = {}
        self._procs_lock = threading.Lock()

    @property
    def db(self) -> DB:
        if self._db is None:
            self._db = get_default_db()
        return self._db

    # -----------------------
    # cancellation
    # -----------------------
    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop scheduling; running phases are terminated after the grace period."""
        if self._cancel.is_set():
            return
        self._cancel.set()
        logger.warning("cancellation requested; running phases get %.0fs grace", self.cancel_grace)
        threading.Thread(target=self._reap_after_grace, name="lpkg-cancel", daemon=True).start()

    def _reap_after_grace(self) -> None:
        deadline = time.monotonic() + self.cancel_grace
        while time.monotonic() < deadline:
            with self._procs_lock:
                if not self._procs:
                    return
            time.sleep(0.1)
        self._signal_all(signal.SIGTERM)
        time.sleep(2)
        self._signal_all(signal.SIGKILL)

    def _signal_all(self, sig: int) -> None:
        with self._procs_lock:
            procs = list(self._procs.items())
        for label, proc in procs:
            if proc.poll() is None:
                logger.warning("sending %s to %s (pid %d)", signal.Signals(sig).name, label, proc.pid)
                self._kill(proc, sig)

    @staticmethod
    def _kill(proc: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass

    # -----------------------
    # phase execution
    # -----------------------
    def _run_phase(self, label: str, slot: str, index: int, phase: Dict[str, Any], cwd: Path, env: Dict[str, str]) -> None:
        script = "\n".join(phase.get("commands") or [])
        kind = str(phase.get("kind") or "build")
        logger.info("%s: phase %d (%s)", label, index, kind)
        stream_build_output(slot, f"==> phase {index} ({kind}) in {cwd}")
        proc = subprocess.Popen(
            [self.shell, "-e", "-c", script], cwd=str(cwd), env=env,
            stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True,
            start_new_session=True,
        )
        timed_out = threading.Event()

        def on_timeout():
            timed_out.set()
            self._kill(proc, signal.SIGKILL)

        timer = threading.Timer(self.timeout, on_timeout)
        with self._procs_lock:
            self._procs[label] = proc
        timer.start()
        try:
            for line in proc.stdout:
                stream_build_output(slot, line)
            rc = proc.wait()
        finally:
            timer.cancel()
            with self._procs_lock:
                self._procs.pop(label, None)
            proc.stdout.close()
        if rc != 0 or timed_out.is_set():
            raise PhaseExecutionError(label, index, kind, 124 if timed_out.is_set() else rc, timed_out.is_set())

    def _fetch_sources(self, d: BuildDefinition, slot: str, dest: Path) -> None:
        fetcher = self.fetcher or get_fetcher()
        sums = {c.get("filename"): c for c in d.checksums or []}
        for src in d.sources or []:
            if src.get("kind") == "signature":
                continue
            res = fetcher.download(src["url"], str(dest), checksum=sums.get(archive_basename(src["url"])))
            stream_build_output(slot, f"==> source {res['path']}{' (cached)' if res['cached'] else ''}")

    def _run_node(self, node: BuildGraphNode, resume: bool, dry_run: bool, fetch_sources: bool = False) -> NodeResult:
        d = node.definition
        label = node.label
        result = NodeResult(node=label)
        started = time.monotonic()
        phases = d.phases or []
        def_hash = d.content_hash()

        start = 0
        if resume and not dry_run:
            prev = self.db.get_build_state(label)
            if prev and prev["definition_hash"] == def_hash:
                start = len(phases) if prev["state"] == NodeState.SUCCEEDED.value else int(prev["last_phase"]) + 1
            elif prev:
                logger.info("%s: definition changed since last run; starting over", label)
        result.phases_skipped = start

        if start >= len(phases):
            if phases:
                logger.info("%s: all %d phases already succeeded", label, len(phases))
            else:
                logger.info("%s: no build phases (metadata-only package)", label)
            result.state = NodeState.SUCCEEDED
            if not dry_run:
                self.db.set_build_state(label, def_hash, len(phases) - 1, NodeState.SUCCEEDED.value)
            return result

        if dry_run:
            if fetch_sources:
                for src in d.sources or []:
                    logger.info("[dry-run] %s: would fetch %s", label, src["url"])
            for i in range(start, len(phases)):
                logger.info("[dry-run] %s: would run phase %d (%s): %s", label, i, phases[i].get("kind"),
                            "; ".join(phases[i].get("commands") or []))
            result.state = NodeState.SUCCEEDED
            return result

        work = self.work_dir / node.slot
        work.mkdir(parents=True, exist_ok=True)
        result.log = str(open_build_log(node.slot, self.log_dir))
        env = assemble_env(d)
        try:
            if fetch_sources:
                try:
                    self._fetch_sources(d, node.slot, work / "sources")
                except LpkgError:
                    result.phase_kind = "fetch"
                    raise
            for i in range(start, len(phases)):
                if self.cancelled:
                    raise LpkgError(f"{label}: cancelled before phase {i}")
                phase = phases[i]
                cwd = work / phase["cwd"] if phase.get("cwd") else work
                cwd.mkdir(parents=True, exist_ok=True)
                try:
                    self._run_phase(label, node.slot, i, phase, cwd, env)
                except PhaseExecutionError:
                    self.db.set_build_state(label, def_hash, i - 1, NodeState.FAILED.value, f"phase {i} failed")
                    result.failed_phase, result.phase_kind = i, phase.get("kind")
                    raise
                result.phases_run += 1
                self.db.set_build_state(label, def_hash, i, NodeState.RUNNING.value)
            self.db.set_build_state(label, def_hash, len(phases) - 1, NodeState.SUCCEEDED.value)
            result.state = NodeState.SUCCEEDED
        except (LpkgError, OSError) as e:
            logger.error("%s failed: %s", label, e)
            result.state = NodeState.FAILED
            result.error = str(e)
        finally:
            close_build_log(node.slot)
            result.duration = round(time.monotonic() - started, 3)
        if result.state == NodeState.SUCCEEDED and not self.keep_logs:
            Path(result.log).unlink(missing_ok=True)
            result.log = None
        return result

    # -----------------------
    # scheduling
    # -----------------------
    def run(self, graph: BuildGraph, workers: Optional[int] = None, resume: bool = False,
            dry_run: bool = False, fetch_sources: bool = False) -> Dict[str, Any]:
        """Execute every node of `graph`; returns the execution report."""
        workers = max(1, int(workers or self.default_workers))
        order = graph.topological_order()
        results: Dict[NodeKey, NodeResult] = {n.key: NodeResult(node=n.label) for n in order}
        pending: List[BuildGraphNode] = list(order)
        in_flight: Dict[Future, NodeKey] = {}
        logger.info("building %d node(s) with %d worker(s)%s", len(order), workers, " [dry-run]" if dry_run else "")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lpkg-build") as pool:
            while pending or in_flight:
                progressed = True
                while progressed:
                    progressed = False
                    for node in list(pending):
                        if self.cancelled:
                            results[node.key].state = NodeState.SKIPPED
                            results[node.key].error = "cancelled before start"
                            pending.remove(node)
                            progressed = True
                            continue
                        dep_states = [results[k].state for k in node.dependencies]
                        if not all(s.terminal for s in dep_states):
                            continue
                        pending.remove(node)
                        progressed = True
                        bad = [node.dependencies[i] for i, s in enumerate(dep_states) if s != NodeState.SUCCEEDED]
                        if bad:
                            r = results[node.key]
                            r.state = NodeState.SKIPPED
                            r.error = "dependency not built: " + ", ".join(graph.node(k).label for k in bad)
                            logger.warning("%s skipped: %s", node.label, r.error)
                            continue
                        results[node.key].state = NodeState.RUNNING
                        in_flight[pool.submit(self._run_node, node, resume, dry_run, fetch_sources)] = node.key
                if not in_flight:
                    break
                try:
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.cancel()
                    continue
                for fut in done:
                    key = in_flight.pop(fut)
                    results[key] = fut.result()
                    r = results[key]
                    audit("executor", "node-finished", node=r.node, state=r.state.value,
                          failed_phase=r.failed_phase, dry_run=dry_run)

        nodes = [results[n.key].to_dict() for n in order]
        counts = {s.value: sum(1 for r in results.values() if r.state == s) for s in NodeState}
        report = {
            "ok": counts["failed"] == 0 and counts["skipped"] == 0,
            "cancelled": self.cancelled,
            "dry_run": dry_run,
            "order": [n.label for n in order],
            "nodes": nodes,
            "summary": {
                "total": len(nodes),
                "succeeded": counts["succeeded"],
                "failed": counts["failed"],
                "skipped": counts["skipped"],
            },
        }
        logger.info("build finished: %s", report["summary"])
        return report
