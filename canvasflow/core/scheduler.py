"""Execution plan builder for canvas workflows.

Turns the flat node/edge lists of a canvas into a dependency-annotated,
topologically ordered plan. Cycles and dangling edges fail the whole build.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import networkx as nx

from canvasflow.core.config import ESTIMATED_DURATIONS
from canvasflow.core.models import CanvasEdge, CanvasNode, NodeKind

logger = logging.getLogger(__name__)


class PlanError(Exception):
    """Error building an execution plan."""

    pass


class EmptyWorkflowError(PlanError):
    """Workflow has no executable nodes."""

    pass


class InvalidGraphError(PlanError):
    """Workflow graph is malformed (missing or duplicate node ids)."""

    pass


class CyclicDependencyError(PlanError):
    """Circular dependency detected in the node graph."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}. "
            f"Remove one of the connections between these nodes."
        )


class DependencyNotFoundError(PlanError):
    """An edge references a node that does not exist."""

    pass


# DFS colours
_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


@dataclass(frozen=True)
class PlanNode:
    """A node annotated for execution."""

    node_id: str
    label: str
    kind: NodeKind
    dependencies: tuple[str, ...] = ()
    estimated_duration: float = 0.0  # seconds

    @property
    def is_root(self) -> bool:
        return not self.dependencies


@dataclass(frozen=True)
class ExecutionPlan:
    """Topologically ordered nodes. No node precedes any of its dependencies."""

    nodes: tuple[PlanNode, ...]
    edges: tuple[tuple[str, str], ...] = ()
    _index: dict[str, int] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._index.update({n.node_id: i for i, n in enumerate(self.nodes)})

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def __getitem__(self, index: int) -> PlanNode:
        return self.nodes[index]

    def get(self, node_id: str) -> PlanNode | None:
        idx = self._index.get(node_id)
        return self.nodes[idx] if idx is not None else None

    def index_of(self, node_id: str) -> int:
        """Position of a node in the plan.

        Raises:
            KeyError: If the node is not part of the plan
        """
        return self._index[node_id]

    def by_label(self, label: str) -> PlanNode | None:
        return next((n for n in self.nodes if n.label == label), None)

    @property
    def labels(self) -> list[str]:
        return [n.label for n in self.nodes]

    @property
    def roots(self) -> list[PlanNode]:
        return [n for n in self.nodes if n.is_root]

    def final_output_nodes(self) -> list[PlanNode]:
        """Nodes with no downstream edges, in plan order.

        Falls back to the last plan node if every node has a downstream edge.
        """
        sources = {src for src, _ in self.edges}
        finals = [n for n in self.nodes if n.node_id not in sources]
        if not finals and self.nodes:
            finals = [self.nodes[-1]]
        return finals

    def total_estimated_duration(self) -> float:
        return sum(n.estimated_duration for n in self.nodes)

    def to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis."""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.node_id, label=node.label, kind=node.kind.value)
        G.add_edges_from(self.edges)
        return G

    def parallel_levels(self) -> list[list[str]]:
        """Group node ids into topological generations (display only).

        Runs execute one node at a time; levels show which nodes are independent.
        """
        G = self.to_networkx()
        order = {n.node_id: i for i, n in enumerate(self.nodes)}
        return [sorted(level, key=order.__getitem__) for level in nx.topological_generations(G)]

    def critical_path(self) -> list[str]:
        """Longest chain of dependent nodes, weighted by estimated duration."""
        G = self.to_networkx()
        for src, dst in G.edges():
            G[src][dst]["weight"] = self.nodes[self._index[dst]].estimated_duration
        return nx.dag_longest_path(G, weight="weight")


def normalize_kind(raw: str | NodeKind | None, node_id: str = "?") -> NodeKind:
    """Map a raw canvas kind to NodeKind, defaulting to text with a warning."""
    if isinstance(raw, NodeKind):
        return raw
    if isinstance(raw, str):
        try:
            return NodeKind(raw.strip().lower())
        except ValueError:
            pass
    logger.warning(f"Node '{node_id}' has invalid kind {raw!r}, using 'text' as default")
    return NodeKind.TEXT


def estimate_duration(kind: NodeKind) -> float:
    return ESTIMATED_DURATIONS.for_kind(kind)


def build_plan(
    nodes: Sequence[CanvasNode],
    edges: Iterable[CanvasEdge],
) -> ExecutionPlan:
    """Build an execution plan from canvas nodes and edges.

    ALGORITHM:
    1. Index nodes by id (input order is preserved for tie-breaking)
    2. Derive each node's dependencies from its incoming edges
    3. Depth-first topological sort with three-colour marking; reaching a node
       that is still in progress is a cycle

    Args:
        nodes: Canvas nodes, in canvas order
        edges: Directed edges ``from -> to``

    Returns:
        ExecutionPlan with every node placed after all of its dependencies

    Raises:
        EmptyWorkflowError: If there are no nodes
        InvalidGraphError: If a node has no id or an id is duplicated
        DependencyNotFoundError: If an edge endpoint is not a node
        CyclicDependencyError: If the graph contains a cycle
    """
    if not nodes:
        raise EmptyWorkflowError("Workflow has no nodes to execute")

    by_id: dict[str, CanvasNode] = {}
    for node in nodes:
        if not node.id:
            raise InvalidGraphError(f"Node without an id: {node!r}")
        if node.id in by_id:
            raise InvalidGraphError(f"Duplicate node id: '{node.id}'")
        by_id[node.id] = node

    dependencies: dict[str, list[str]] = {node_id: [] for node_id in by_id}
    edge_pairs: list[tuple[str, str]] = []
    for edge in edges:
        for endpoint in (edge.from_id, edge.to_id):
            if endpoint not in by_id:
                raise DependencyNotFoundError(
                    f"Edge {edge.from_id} -> {edge.to_id} references unknown node "
                    f"'{endpoint}'. Available nodes: {sorted(by_id)}"
                )
        # Collapse duplicate edges
        if edge.from_id not in dependencies[edge.to_id]:
            dependencies[edge.to_id].append(edge.from_id)
            edge_pairs.append((edge.from_id, edge.to_id))

    order = _topological_order(list(by_id), dependencies)

    plan_nodes = []
    for position, node_id in enumerate(order, start=1):
        node = by_id[node_id]
        kind = normalize_kind(node.kind, node_id)
        plan_nodes.append(
            PlanNode(
                node_id=node_id,
                label=node.label or f"Block_{position}",
                kind=kind,
                dependencies=tuple(dependencies[node_id]),
                estimated_duration=estimate_duration(kind),
            )
        )

    logger.info(f"Built plan: {len(plan_nodes)} nodes, {len(edge_pairs)} edges")
    return ExecutionPlan(nodes=tuple(plan_nodes), edges=tuple(edge_pairs))


def _topological_order(node_ids: list[str], dependencies: dict[str, list[str]]) -> list[str]:
    """Iterative DFS post-order over dependencies.

    Roots are visited in input order and dependencies in edge order, so the
    result is deterministic for a given input.
    """
    color = dict.fromkeys(node_ids, _UNVISITED)
    result: list[str] = []

    for start in node_ids:
        if color[start] != _UNVISITED:
            continue
        color[start] = _IN_PROGRESS
        # Stack of (node, iterator over its dependencies)
        stack = [(start, iter(dependencies[start]))]
        while stack:
            node_id, deps = stack[-1]
            dep = next(deps, None)
            if dep is None:
                stack.pop()
                color[node_id] = _DONE
                result.append(node_id)
                continue
            if color[dep] == _IN_PROGRESS:
                path = [n for n, _ in stack]
                cycle = path[path.index(dep):] + [dep]
                # Stack runs dependent -> dependency; report in data-flow order
                raise CyclicDependencyError(list(reversed(cycle)))
            if color[dep] == _UNVISITED:
                color[dep] = _IN_PROGRESS
                stack.append((dep, iter(dependencies[dep])))

    return result
