"""Tests for the execution plan builder.

Covers dependency ordering, cycle and dangling-edge failures, kind
normalization and the plan's analysis helpers.
"""

import pytest

from canvasflow.core.models import NodeKind
from canvasflow.core.scheduler import (
    CyclicDependencyError,
    DependencyNotFoundError,
    EmptyWorkflowError,
    InvalidGraphError,
    PlanError,
    build_plan,
    normalize_kind,
)

from conftest import make_edge, make_node


def _assert_dependency_order(plan):
    for index, node in enumerate(plan):
        for dep in node.dependencies:
            assert plan.index_of(dep) < index, f"{dep} must precede {node.node_id}"


class TestBuildPlan:
    """Tests for build_plan()."""

    def test_linear_chain(self, chain_workflow):
        nodes, edges = chain_workflow
        plan = build_plan(nodes, edges)
        assert [n.node_id for n in plan] == ["A01", "A02", "A03"]
        assert plan.get("A02").dependencies == ("A01",)
        assert plan.get("A01").is_root

    def test_dependencies_precede_dependents(self, diamond_workflow):
        nodes, edges = diamond_workflow
        plan = build_plan(nodes, edges)
        _assert_dependency_order(plan)
        assert plan[-1].node_id == "C01"

    def test_reversed_input_still_ordered(self):
        nodes = [make_node(f"A0{i}") for i in range(5, 0, -1)]
        edges = [make_edge(f"A0{i}", f"A0{i + 1}") for i in range(1, 5)]
        plan = build_plan(nodes, edges)
        assert [n.node_id for n in plan] == ["A01", "A02", "A03", "A04", "A05"]

    def test_independent_nodes_keep_input_order(self):
        nodes = [make_node("B01"), make_node("A01"), make_node("C01")]
        plan = build_plan(nodes, [])
        assert [n.node_id for n in plan] == ["B01", "A01", "C01"]

    def test_deterministic(self, diamond_workflow):
        nodes, edges = diamond_workflow
        first = [n.node_id for n in build_plan(nodes, edges)]
        for _ in range(5):
            assert [n.node_id for n in build_plan(nodes, edges)] == first

    def test_long_chain_does_not_recurse(self):
        """Thousands of nodes in a chain build without hitting recursion limits."""
        count = 5000
        nodes = [make_node(f"n{i}", label=f"L{i}") for i in range(count)]
        edges = [make_edge(f"n{i}", f"n{i + 1}") for i in range(count - 1)]
        plan = build_plan(list(reversed(nodes)), edges)
        assert plan[0].node_id == "n0"
        assert plan[-1].node_id == f"n{count - 1}"

    def test_duplicate_edges_collapse(self):
        nodes = [make_node("A01"), make_node("A02")]
        edges = [make_edge("A01", "A02"), make_edge("A01", "A02")]
        plan = build_plan(nodes, edges)
        assert plan.get("A02").dependencies == ("A01",)
        assert plan.edges == (("A01", "A02"),)

    def test_estimates_by_kind(self):
        nodes = [make_node("T", kind="text"), make_node("I", kind="image"), make_node("V", kind="video")]
        plan = build_plan(nodes, [])
        assert [n.estimated_duration for n in plan] == [30, 60, 180]
        assert plan.total_estimated_duration() == 270

    def test_missing_label_gets_block_name(self):
        nodes = [make_node("x"), make_node("y")]
        nodes[1].label = None
        plan = build_plan(nodes, [])
        assert plan.get("y").label == "Block_2"


class TestBuildPlanErrors:
    """Build-time failures never yield a partial plan."""

    def test_empty_workflow(self):
        with pytest.raises(EmptyWorkflowError):
            build_plan([], [])

    def test_cycle_detected(self):
        nodes = [make_node("A01"), make_node("A02"), make_node("A03")]
        edges = [make_edge("A01", "A02"), make_edge("A02", "A03"), make_edge("A03", "A01")]
        with pytest.raises(CyclicDependencyError) as exc_info:
            build_plan(nodes, edges)
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"A01", "A02", "A03"}
        assert "Circular dependency" in str(exc_info.value)

    def test_self_loop_is_a_cycle(self):
        with pytest.raises(CyclicDependencyError):
            build_plan([make_node("A01")], [make_edge("A01", "A01")])

    def test_cycle_after_valid_prefix(self):
        nodes = [make_node("A01"), make_node("B01"), make_node("B02")]
        edges = [make_edge("A01", "B01"), make_edge("B01", "B02"), make_edge("B02", "B01")]
        with pytest.raises(CyclicDependencyError):
            build_plan(nodes, edges)

    def test_edge_to_unknown_node(self):
        with pytest.raises(DependencyNotFoundError, match="ghost"):
            build_plan([make_node("A01")], [make_edge("A01", "ghost")])

    def test_duplicate_node_id(self):
        with pytest.raises(InvalidGraphError, match="Duplicate"):
            build_plan([make_node("A01"), make_node("A01")], [])

    def test_all_errors_are_plan_errors(self):
        for exc in (EmptyWorkflowError, InvalidGraphError, DependencyNotFoundError):
            assert issubclass(exc, PlanError)
        assert issubclass(CyclicDependencyError, PlanError)


class TestKindNormalization:
    def test_invalid_kind_defaults_to_text(self, caplog):
        """Bad upstream data degrades to text with a warning."""
        plan = build_plan([make_node("A01", kind="hologram")], [])
        assert plan[0].kind == NodeKind.TEXT
        assert "invalid kind" in caplog.text

    def test_missing_kind_defaults_to_text(self):
        plan = build_plan([make_node("A01", kind=None)], [])
        assert plan[0].kind == NodeKind.TEXT

    def test_kind_is_case_insensitive(self):
        assert normalize_kind(" Image ") == NodeKind.IMAGE


class TestPlanHelpers:
    """Tests for ExecutionPlan lookups and analysis."""

    def test_lookups(self, diamond_workflow):
        nodes, edges = diamond_workflow
        plan = build_plan(nodes, edges)
        assert plan.by_label("B02").kind == NodeKind.IMAGE
        assert plan.by_label("Z99") is None
        assert plan.get("missing") is None
        assert [n.node_id for n in plan.roots] == ["A01"]
        with pytest.raises(KeyError):
            plan.index_of("missing")

    def test_final_output_nodes_are_sinks(self, diamond_workflow):
        nodes, edges = diamond_workflow
        plan = build_plan(nodes, edges)
        assert [n.node_id for n in plan.final_output_nodes()] == ["C01"]

    def test_final_output_nodes_without_edges(self):
        plan = build_plan([make_node("A01"), make_node("A02")], [])
        assert [n.node_id for n in plan.final_output_nodes()] == ["A01", "A02"]

    def test_parallel_levels(self, diamond_workflow):
        nodes, edges = diamond_workflow
        plan = build_plan(nodes, edges)
        assert plan.parallel_levels() == [["A01"], ["B01", "B02"], ["C01"]]

    def test_critical_path_follows_slowest_branch(self, diamond_workflow):
        """The image branch (60s) outweighs the text branch (30s)."""
        nodes, edges = diamond_workflow
        plan = build_plan(nodes, edges)
        assert plan.critical_path() == ["A01", "B02", "C01"]

    def test_to_networkx(self, chain_workflow):
        nodes, edges = chain_workflow
        graph = build_plan(nodes, edges).to_networkx()
        assert set(graph.nodes) == {"A01", "A02", "A03"}
        assert graph.has_edge("A01", "A02")
