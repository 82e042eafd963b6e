#!/usr/bin/env python3
# lpkg/cli.py
"""
lpkg CLI - drives the metadata pipeline and the build engine

Subcommands:
- refresh   re-fetch book manifests (wget-list + md5sums) into the cache
- harvest   turn book pages into draft package records
- validate  check every stored record against the schema (--promote: update lifecycle states)
- index     rebuild index.json from validated records
- generate  emit build definitions for ready records
- build     order and execute build definitions
- graph     print the build order (or Graphviz DOT)
- config    show or validate the merged configuration

Batch commands print a rich table and a succeeded / soft-issue / failed line.
Exit status: 0 nothing failed, 1 some items failed, 2 fatal error.
"""

from __future__ import annotations

import sys
import json
import argparse
import contextlib
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml
from rich.console import Console
from rich.table import Table

from lpkg import config as config_mod
from lpkg.errors import LpkgError
from lpkg.executor import BuildExecutor
from lpkg.generator import build_definition, get_generator
from lpkg.graph import BuildGraph, parse_reference
from lpkg.harvester import get_harvester
from lpkg.index import rebuild_index
from lpkg.logging import get_logger
from lpkg.manifest import get_manifest_cache
from lpkg.store import get_store
from lpkg.validator import promote_all, validate_all
from lpkg import record as rec

logger = get_logger("cli")

console = Console()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_FATAL = 2

_STATE_STYLE = {
    "succeeded": "green", "ok": "green", "refreshed": "green", "cached": "green",
    "created": "green", "updated": "green", "unchanged": "dim",
    "soft-issue": "yellow", "stale": "yellow", "skipped": "yellow",
    "would-create": "cyan", "would-update": "cyan",
    "failed": "red", "conflict": "red", "error": "red",
}

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")


def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")


def print_err(msg: str):
    console.print(f"[bold red]✖[/] {msg}")


def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")


def _styled(state: Optional[str]) -> str:
    state = state or "-"
    style = _STATE_STYLE.get(state)
    return f"[{style}]{state}[/]" if style else state


def print_summary(succeeded: int, soft: int, failed: int, what: str = "items"):
    line = f"{succeeded} succeeded, {soft} soft-issue, {failed} failed ({what})"
    if failed:
        print_err(line)
    elif soft:
        print_warn(line)
    else:
        print_ok(line)


def _table(title: str, columns: Iterable[str], rows: Iterable[Iterable[Any]]) -> Table:
    t = Table(title=title)
    for c in columns:
        t.add_column(c)
    for r in rows:
        t.add_row(*[str(v) if v is not None else "" for v in r])
    return t

# -----------------------
# CLI Implementation
# -----------------------
class LpkgCLI:
    def __init__(self, as_json: bool = False):
        self.as_json = as_json

    def _emit_json(self, obj: Any):
        sys.stdout.write(json.dumps(obj, indent=2, default=str) + "\n")

    def _status(self, message: str):
        # no spinner when stdout carries JSON
        return contextlib.nullcontext() if self.as_json else console.status(message, spinner="dots")

    # --------------
    # metadata pipeline
    # --------------
    def refresh(self, books: Optional[List[str]], force: bool) -> int:
        with self._status("refreshing manifests"):
            report = get_manifest_cache().refresh(books=books, force=force)
        if self.as_json:
            self._emit_json(report)
        else:
            rows = []
            for r in report["results"]:
                state = r["state"] if r["ok"] else "failed"
                rows.append((r["book"], _styled(state), r.get("entries"), r.get("error")))
            console.print(_table("Manifest refresh", ("book", "state", "entries", "error"), rows))
            soft = sum(1 for r in report["results"] if r["ok"] and r["state"] == "stale")
            print_summary(report["succeeded"] - soft, soft, report["failed"], "books")
        return EXIT_OK if report["ok"] else EXIT_FAILED

    def harvest(self, book: str, pages: List[str], base_url: Optional[str], dry_run: bool) -> int:
        with self._status(f"harvesting {len(pages)} page(s) from {book}"):
            report = get_harvester().harvest_many(book, pages, base_url=base_url, dry_run=dry_run)
        if self.as_json:
            self._emit_json(report)
        elif dry_run and len(pages) == 1 and report["items"][0]["record"]:
            self._emit_json(report["items"][0]["record"])
        else:
            rows = []
            for i in report["items"]:
                issues = ", ".join(x.get("kind", "") for x in i["issues"])
                rows.append((i["item"], i["id"], _styled(i["state"]), issues or i["error"]))
            console.print(_table(f"Harvest {book}", ("page", "id", "state", "issues / error"), rows))
            print_summary(report["succeeded"], report["soft_issues"], report["failed"], "pages")
            if not dry_run and report["succeeded"] + report["soft_issues"]:
                print_info("run `lpkg index` to refresh the index")
        return EXIT_OK if report["ok"] else EXIT_FAILED

    def validate(self, promote: bool = False) -> int:
        promotion = promote_all() if promote else None
        report = validate_all()
        ok = report["ok"] and (promotion is None or promotion["ok"])
        if self.as_json:
            self._emit_json({"promotion": promotion, "validation": report} if promote else report)
            return EXIT_OK if ok else EXIT_FAILED
        if promotion is not None:
            rows = [(i["id"] or i["item"], i["from"], i["to"], _styled(i["state"]), i["error"] or "; ".join(i["violations"]))
                    for i in promotion["items"]]
            console.print(_table("Promotion", ("record", "from", "to", "result", "blocked by"), rows))
        rows = []
        for i in report["items"]:
            state = "failed" if not i["ok"] else ("soft-issue" if i.get("issues") else "ok")
            detail = "; ".join(i["violations"]) or i.get("error") or ""
            rows.append((i["id"] or i["item"], i.get("state"), _styled(state), detail))
        console.print(_table("Record validation", ("record", "status", "result", "violations"), rows))
        print_summary(report["succeeded"], report["soft_issues"], report["failed"], "records")
        return EXIT_OK if ok else EXIT_FAILED

    def index(self, compact: bool) -> int:
        summary = rebuild_index(compact=compact)
        if self.as_json:
            self._emit_json(summary)
        else:
            counts = ", ".join(f"{k}={v}" for k, v in sorted(summary["by_status"].items()))
            print_ok(f"Updated {summary['path']} ({summary['total']} packages{': ' + counts if counts else ''})")
        return EXIT_OK

    def generate(self, paths: List[str], output: Optional[str], overwrite: bool, dry_run: bool) -> int:
        items: List[Any] = list(paths)
        if not items:
            # unreadable files go in by path so they fail as their own items
            for path, record, error in get_store().scan():
                if error is not None:
                    items.append(str(path))
                elif rec.record_state(record) == rec.STATE_READY:
                    items.append(record)
            if not items:
                print_warn("no ready records to generate")
        report = get_generator().generate_many(items, output_dir=output, overwrite=overwrite, dry_run=dry_run)
        if self.as_json:
            self._emit_json(report)
        else:
            rows = [(i["item"], _styled(i["action"]), i.get("path"), i.get("error")) for i in report["items"]]
            console.print(_table("Generate", ("record", "action", "path", "error"), rows))
            if dry_run:
                for i in report["items"]:
                    if i.get("diff"):
                        console.print(i["diff"], markup=False, highlight=False)
            print_summary(report["succeeded"], report["soft_issues"], report["failed"], "definitions")
        return EXIT_OK if report["ok"] else EXIT_FAILED

    # --------------
    # build engine
    # --------------
    def _graph(self, selection: Optional[List[str]] = None) -> Tuple[BuildGraph, List[Dict[str, Any]]]:
        """Graph of every ready record plus the records left out of it: [{"item", "error"}]."""
        definitions = []
        rejected: List[Dict[str, Any]] = []
        for path, record, error in get_store().scan():
            if error is not None:
                # the store keeps <book>/<slug>.json, so the id survives an unreadable file
                rejected.append({"item": f"{path.parent.name}/{path.stem}", "error": str(error)})
                continue
            rid = rec.record_id(record)
            if rec.record_state(record) != rec.STATE_READY:
                logger.debug("%s is %s; not part of the build graph", rid, rec.record_state(record))
                continue
            try:
                definitions.append(build_definition(record))
            except LpkgError as e:
                logger.error("%s left out of the build graph: %s", rid, e)
                rejected.append({"item": rid or str(path), "error": str(e)})

        # dependents of a rejected record cannot be built either
        missing = {r["item"] for r in rejected}
        while missing:
            keep, dropped = [], set()
            for d in definitions:
                bad = sorted({parse_reference(ref)[0] for ref in d.dependencies} & missing)
                if bad:
                    logger.error("%s left out of the build graph: depends on %s", d.key, ", ".join(bad))
                    rejected.append({"item": d.key, "error": "depends on invalid record " + ", ".join(bad)})
                    dropped.add(d.id)
                else:
                    keep.append(d)
            definitions, missing = keep, dropped

        graph = BuildGraph.build(definitions)
        return (graph.select(selection) if selection else graph), rejected

    def build(self, selection: List[str], workers: Optional[int], resume: bool, dry_run: bool,
              fetch: bool = False) -> int:
        graph, rejected = self._graph(selection)
        report = BuildExecutor().run(graph, workers=workers, resume=resume, dry_run=dry_run, fetch_sources=fetch)
        report["rejected"] = rejected
        if rejected:
            report["ok"] = False
        if self.as_json:
            self._emit_json(report)
        else:
            rows = []
            for n in report["nodes"]:
                phase = f"{n['failed_phase']} ({n['phase_kind']})" if n["failed_phase"] is not None else ""
                rows.append((n["node"], _styled(n["state"]), n["phases_run"], n["phases_skipped"], phase, n["error"]))
            console.print(_table("Build", ("node", "state", "run", "resumed", "failed phase", "error"), rows))
            for r in rejected:
                print_err(f"{r['item']} not built: {r['error']}")
            s = report["summary"]
            if report["cancelled"]:
                print_warn("build cancelled")
            print_summary(s["succeeded"], s["skipped"], s["failed"], "nodes")
        return EXIT_OK if report["ok"] else EXIT_FAILED

    def graph(self, dot: bool) -> int:
        graph, rejected = self._graph()
        status = EXIT_FAILED if rejected else EXIT_OK
        if dot:
            sys.stdout.write(graph.export_dot())
            return status
        order = [n.label for n in graph.topological_order()]
        if self.as_json:
            self._emit_json(order)
        else:
            rows = [(i + 1, label) for i, label in enumerate(order)]
            console.print(_table("Build order", ("#", "node"), rows))
            for r in rejected:
                print_err(f"{r['item']} left out: {r['error']}")
        return status

    def config(self, validate: bool) -> int:
        if validate:
            ok, issues = config_mod.validate_config()
            for issue in issues:
                print_warn(issue)
            if ok:
                print_ok("configuration is valid")
            return EXIT_OK if ok else EXIT_FAILED
        merged = config_mod.get_config().as_dict()
        if self.as_json:
            self._emit_json(merged)
        else:
            sys.stdout.write(yaml.safe_dump(merged, sort_keys=True, default_flow_style=False))
        return EXIT_OK

# -----------------------
# Argparse wiring
# -----------------------
def _csv(value: str) -> List[str]:
    return [v.strip().lower() for v in value.split(",") if v.strip()]


def make_parser():
    ap = argparse.ArgumentParser(prog="lpkg", description="LFS-family package metadata and build engine")
    ap.add_argument("--config", help="configuration file (YAML or JSON)")
    ap.add_argument("--json", action="store_true", help="print machine-readable JSON instead of tables")
    sub = ap.add_subparsers(dest="cmd")

    p_refresh = sub.add_parser("refresh", help="refresh cached book manifests")
    p_refresh.add_argument("--books", type=_csv, help="comma separated books (default: all configured)")
    p_refresh.add_argument("--force", action="store_true", help="ignore the staleness window")

    p_harvest = sub.add_parser("harvest", help="harvest package records from book pages")
    p_harvest.add_argument("--book", required=True)
    p_harvest.add_argument("--page", action="append", required=True, help="page name or URL (repeatable)")
    p_harvest.add_argument("--base-url", help="override the book base URL")
    p_harvest.add_argument("--dry-run", action="store_true")

    p_validate = sub.add_parser("validate", help="validate every stored record")
    p_validate.add_argument("--promote", action="store_true",
                            help="first mark records ready (or issues-open) according to what they pass")

    p_index = sub.add_parser("index", help="rebuild the package index")
    p_index.add_argument("--compact", action="store_true", help="single-line JSON")

    p_generate = sub.add_parser("generate", help="generate build definitions")
    p_generate.add_argument("paths", nargs="*", help="record files (default: every ready record)")
    p_generate.add_argument("--output", help="output directory (default: paths.generated_dir)")
    p_generate.add_argument("--overwrite", action="store_true", help="replace hand-edited artifacts")
    p_generate.add_argument("--dry-run", action="store_true")

    p_build = sub.add_parser("build", help="build ready packages in dependency order")
    p_build.add_argument("selection", nargs="*", help="ids, id@variant or stage:<stage>")
    p_build.add_argument("--workers", type=int)
    p_build.add_argument("--resume", action="store_true", help="skip phases that already succeeded")
    p_build.add_argument("--fetch", action="store_true", help="download and verify sources before building")
    p_build.add_argument("--dry-run", action="store_true")

    p_graph = sub.add_parser("graph", help="show the build order")
    p_graph.add_argument("--dot", action="store_true", help="Graphviz DOT output")

    p_config = sub.add_parser("config", help="show or validate configuration")
    g = p_config.add_mutually_exclusive_group()
    g.add_argument("--print", dest="print_config", action="store_true")
    g.add_argument("--validate", action="store_true")

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return EXIT_FATAL

    try:
        if args.config:
            config_mod.reload(args.config)
        config_mod.start_watcher()
        cli = LpkgCLI(as_json=args.json)
        if args.cmd == "refresh":
            return cli.refresh(args.books, args.force)
        if args.cmd == "harvest":
            return cli.harvest(args.book.lower(), args.page, args.base_url, args.dry_run)
        if args.cmd == "validate":
            return cli.validate(args.promote)
        if args.cmd == "index":
            return cli.index(args.compact)
        if args.cmd == "generate":
            return cli.generate(args.paths, args.output, args.overwrite, args.dry_run)
        if args.cmd == "build":
            return cli.build(args.selection, args.workers, args.resume, args.dry_run, args.fetch)
        if args.cmd == "graph":
            return cli.graph(args.dot)
        if args.cmd == "config":
            return cli.config(args.validate)
    except LpkgError as e:
        logger.debug("command %s failed", args.cmd, exc_info=True)
        print_err(f"{type(e).__name__}: {e}")
        return EXIT_FATAL
    finally:
        config_mod.stop_watcher()
    parser.print_help()
    return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
