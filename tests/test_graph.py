"""Tests for BuildGraph construction, ordering and selection."""

import itertools
import sys

import pytest

from lpkg.errors import CycleError, LpkgError, NotFound, UnknownDependencyError
from lpkg.generator import BuildDefinition, build_definition
from lpkg.graph import BuildGraph


def _defs(record_factory, edges):
    """edges: {(name, variant): [deps]}"""
    return [build_definition(record_factory(name, "1.0", variant, deps=deps))
            for (name, variant), deps in edges.items()]


class TestOrdering:
    def test_pass_1_before_pass_2(self, record_factory) -> None:
        defs = _defs(record_factory, {
            ("binutils", "Pass 2"): ["lfs/binutils-pass-1"],
            ("binutils", "Pass 1"): [],
        })
        order = [n.label for n in BuildGraph.build(defs).topological_order()]
        assert order == ["lfs/binutils-pass-1@Pass 1", "lfs/binutils-pass-2@Pass 2"]

    def test_dependencies_precede_dependents_and_ties_are_sorted(self, record_factory) -> None:
        edges = {
            ("zlib", None): [],
            ("gcc", None): ["lfs/binutils", "lfs/zlib"],
            ("binutils", None): ["lfs/zlib"],
            ("bash", None): [],
            ("make", None): [],
        }
        for perm in itertools.permutations(list(edges.items())):
            graph = BuildGraph.build(_defs(record_factory, dict(perm)))
            order = [n.definition.id for n in graph.topological_order()]
            assert order == ["lfs/bash", "lfs/make", "lfs/zlib", "lfs/binutils", "lfs/gcc"]

    def test_bare_reference_depends_on_every_variant(self, record_factory) -> None:
        defs = [
            build_definition(record_factory("gcc", "13.2.0", "Pass 1")),
            build_definition(record_factory("gcc", "13.2.0", "Pass 2")),
        ]
        # one id, two variants
        for d in defs:
            d.id = "lfs/gcc"
        defs.append(build_definition(record_factory("glibc", "2.39", deps=["lfs/gcc"])))
        graph = BuildGraph.build(defs)
        glibc = graph.node(("lfs/glibc", None))
        assert glibc.dependencies == [("lfs/gcc", "Pass 1"), ("lfs/gcc", "Pass 2")]
        assert graph.topological_order()[-1].definition.id == "lfs/glibc"


def _chain(length, close=False):
    """pkg0 <- pkg1 <- ... <- pkgN; close=True makes pkg0 depend on the last one."""
    defs = []
    for i in range(length):
        deps = [f"lfs/pkg{i - 1}"] if i else ([f"lfs/pkg{length - 1}"] if close else [])
        defs.append(BuildDefinition(id=f"lfs/pkg{i}", name=f"pkg{i}", version="1.0", variant=None,
                                    stage=None, module=f"pkg{i}", prefix="pk", dependencies=deps))
    return defs


class TestConstructionErrors:
    @pytest.mark.parametrize("length", [1, 2, 3, 5])
    def test_cycle_of_any_length(self, record_factory, length) -> None:
        names = [f"pkg{i}" for i in range(length)]
        edges = {(n, None): [f"lfs/{names[(i + 1) % length]}"] for i, n in enumerate(names)}
        with pytest.raises(CycleError) as exc:
            BuildGraph.build(_defs(record_factory, edges))
        cycle = exc.value.cycle
        assert cycle[0] == cycle[-1]
        assert len(cycle) == length + 1

    def test_unknown_dependency(self, record_factory) -> None:
        defs = _defs(record_factory, {("gcc", None): ["lfs/nosuch"]})
        with pytest.raises(UnknownDependencyError, match="lfs/nosuch"):
            BuildGraph.build(defs)
        graph = BuildGraph.build(defs, allow_missing=True)
        assert graph.node(("lfs/gcc", None)).dependencies == []

    def test_duplicate_node(self, record_factory) -> None:
        d = build_definition(record_factory())
        with pytest.raises(LpkgError, match="duplicate"):
            BuildGraph.build([d, d])


class TestSelection:
    @pytest.fixture
    def graph(self, record_factory):
        edges = {
            ("zlib", None): [],
            ("binutils", None): ["lfs/zlib"],
            ("gcc", None): ["lfs/binutils"],
            ("bash", None): [],
        }
        defs = _defs(record_factory, edges)
        defs.append(build_definition(record_factory("iana-etc", "20240125", stage="system")))
        return BuildGraph.build(defs)

    def test_selection_includes_closure(self, graph) -> None:
        sub = graph.select(["lfs/gcc"])
        assert [n.definition.id for n in sub.topological_order()] == ["lfs/zlib", "lfs/binutils", "lfs/gcc"]

    def test_stage_selection(self, graph) -> None:
        assert [n.definition.id for n in graph.select(["stage:system"]).nodes] == ["lfs/iana-etc"]

    def test_unknown_selection(self, graph) -> None:
        with pytest.raises(NotFound):
            graph.select(["lfs/nothing"])

    def test_dot_export(self, graph) -> None:
        dot = graph.export_dot()
        assert dot.startswith("digraph build {")
        assert '"lfs/gcc" -> "lfs/binutils";' in dot


class TestDeepGraphs:
    def test_chain_deeper_than_the_recursion_limit(self) -> None:
        length = sys.getrecursionlimit() + 500
        order = BuildGraph.build(_chain(length)).topological_order()
        assert len(order) == length
        assert order[0].definition.id == "lfs/pkg0"
        assert order[-1].definition.id == f"lfs/pkg{length - 1}"

    def test_long_cycle_is_reported_whole(self) -> None:
        length = sys.getrecursionlimit() + 500
        with pytest.raises(CycleError) as exc:
            BuildGraph.build(_chain(length, close=True))
        assert len(exc.value.cycle) == length + 1
