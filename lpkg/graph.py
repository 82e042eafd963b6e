# lpkg/graph.py
"""
graph.py - Build Graph over build definitions

Features:
- Nodes keyed by (id, variant): build passes of one package are distinct nodes
- Dependency references "book/slug" or "book/slug@variant"; a bare id that
  exists as several variants depends on all of them
- Unknown dependencies raise UnknownDependencyError (or are dropped with a
  warning when allow_missing=True)
- Cycle detection at construction (iterative DFS, full cycle path in CycleError)
- topological_order(): dependencies first, ties broken by (id, variant)
- select(): ids, id@variant or stage:<stage> plus transitive dependencies
- export_dot(): Graphviz DOT rendering
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from lpkg.errors import CycleError, LpkgError, NotFound, UnknownDependencyError
from lpkg.generator import BuildDefinition
from lpkg.logging import get_logger

logger = get_logger("graph")

NodeKey = Tuple[str, Optional[str]]


def parse_reference(ref: str) -> NodeKey:
    if "@" in ref:
        rid, variant = ref.split("@", 1)
        return rid.strip(), variant.strip() or None
    return ref.strip(), None


def node_label(key: NodeKey) -> str:
    rid, variant = key
    return f"{rid}@{variant}" if variant else rid


def node_slot(key: NodeKey) -> str:
    """Filesystem name of a node: ('lfs/gcc', 'Pass 1') -> 'lfs__gcc@Pass_1'."""
    label = node_label(key).replace("/", "__")
    return "".join(c if (c.isascii() and c.isalnum()) or c in "+._@-" else "_" for c in label)


def _sort_key(key: NodeKey) -> Tuple[str, str]:
    return key[0], key[1] or ""


@dataclass
class BuildGraphNode:
    definition: BuildDefinition
    dependencies: List[NodeKey] = field(default_factory=list)
    dependents: List[NodeKey] = field(default_factory=list)

    @property
    def key(self) -> NodeKey:
        return self.definition.id, self.definition.variant or None

    @property
    def label(self) -> str:
        return node_label(self.key)

    @property
    def slot(self) -> str:
        return node_slot(self.key)


class BuildGraph:
    def __init__(self, nodes: Dict[NodeKey, BuildGraphNode]):
        self._nodes = nodes

    # -----------------------
    # construction
    # -----------------------
    @classmethod
    def build(cls, definitions: Iterable[BuildDefinition], allow_missing: bool = False) -> "BuildGraph":
        nodes: Dict[NodeKey, BuildGraphNode] = {}
        by_id: Dict[str, List[NodeKey]] = {}
        for d in definitions:
            key = (d.id, d.variant or None)
            if key in nodes:
                raise LpkgError(f"duplicate build node {node_label(key)}")
            nodes[key] = BuildGraphNode(d)
            by_id.setdefault(d.id, []).append(key)

        for key in sorted(nodes, key=_sort_key):
            node = nodes[key]
            resolved: List[NodeKey] = []
            for ref in node.definition.dependencies:
                rid, variant = parse_reference(ref)
                if variant is not None:
                    targets = [(rid, variant)] if (rid, variant) in nodes else []
                else:
                    targets = by_id.get(rid, [])
                if not targets:
                    if allow_missing:
                        logger.warning("%s: ignoring unknown dependency %s", node.label, ref)
                        continue
                    raise UnknownDependencyError(node.label, ref)
                for t in sorted(targets, key=_sort_key):
                    if t not in resolved:
                        resolved.append(t)
            node.dependencies = resolved
            for t in resolved:
                nodes[t].dependents.append(key)

        graph = cls(nodes)
        graph._check_cycles()
        logger.debug("graph built: %d nodes", len(nodes))
        return graph

    def _check_cycles(self) -> None:
        state: Dict[NodeKey, int] = {}
        for root in sorted(self._nodes, key=_sort_key):
            if state.get(root, 0):
                continue
            state[root] = 1
            path: List[NodeKey] = [root]
            frames = [iter(self._nodes[root].dependencies)]
            while frames:
                dep = next(frames[-1], None)
                if dep is None:
                    frames.pop()
                    state[path.pop()] = 2
                    continue
                s = state.get(dep, 0)
                if s == 1:
                    cycle = path[path.index(dep):] + [dep]
                    raise CycleError([node_label(c) for c in cycle])
                if s == 0:
                    state[dep] = 1
                    path.append(dep)
                    frames.append(iter(self._nodes[dep].dependencies))

    # -----------------------
    # queries
    # -----------------------
    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, key: object) -> bool:
        return key in self._nodes

    def node(self, key: NodeKey) -> BuildGraphNode:
        try:
            return self._nodes[key]
        except KeyError:
            raise NotFound(f"no build node {node_label(key)}") from None

    @property
    def nodes(self) -> List[BuildGraphNode]:
        return [self._nodes[k] for k in sorted(self._nodes, key=_sort_key)]

    def topological_order(self) -> List[BuildGraphNode]:
        """Every dependency strictly before its dependents; ties by ascending (id, variant)."""
        remaining = {k: len(n.dependencies) for k, n in self._nodes.items()}
        heap = [(_sort_key(k), k) for k, c in remaining.items() if c == 0]
        heapq.heapify(heap)
        order: List[BuildGraphNode] = []
        while heap:
            _, k = heapq.heappop(heap)
            order.append(self._nodes[k])
            for dep in self._nodes[k].dependents:
                remaining[dep] -= 1
                if remaining[dep] == 0:
                    heapq.heappush(heap, (_sort_key(dep), dep))
        if len(order) != len(self._nodes):
            # construction already rejects cycles
            raise CycleError([n.label for n in self.nodes if n not in order])
        return order

    def select(self, selection: Iterable[str]) -> "BuildGraph":
        """Subgraph with the selected nodes and everything they depend on."""
        wanted: Set[NodeKey] = set()
        for item in selection:
            if item.startswith("stage:"):
                stage = item.split(":", 1)[1]
                matched = [k for k, n in self._nodes.items() if n.definition.stage == stage]
            else:
                rid, variant = parse_reference(item)
                if variant is not None:
                    matched = [(rid, variant)] if (rid, variant) in self._nodes else []
                else:
                    matched = [k for k in self._nodes if k[0] == rid]
            if not matched:
                raise NotFound(f"selection {item!r} matches no build node")
            wanted.update(matched)

        closure: Set[NodeKey] = set()
        pending = list(wanted)
        while pending:
            k = pending.pop()
            if k in closure:
                continue
            closure.add(k)
            pending.extend(self._nodes[k].dependencies)

        sub: Dict[NodeKey, BuildGraphNode] = {}
        for k in closure:
            n = self._nodes[k]
            sub[k] = BuildGraphNode(n.definition, list(n.dependencies), [d for d in n.dependents if d in closure])
        return BuildGraph(sub)

    def export_dot(self) -> str:
        lines = ["digraph build {"]
        for n in self.nodes:
            label = f"{n.label}\\n{n.definition.version}"
            lines.append(f'  "{n.label}" [label="{label}"];')
        for n in self.nodes:
            for dep in n.dependencies:
                lines.append(f'  "{n.label}" -> "{node_label(dep)}";')
        lines.append("}")
        return "\n".join(lines) + "\n"
