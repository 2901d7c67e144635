"""
Unit Tests for Dependency Graphs
================================

Tests for cycle detection over component, role and entity graphs.
"""

import itertools

import pytest

from layered_dsl.core.dsl.graph import (
    DependencyGraph,
    component_graph,
    normalize_cycle,
    required_reference_graph,
    role_graph,
)
from layered_dsl.models.schemas import (
    Component,
    DiagnosticCategory,
    Relationship,
    RelationshipKind,
    Role,
    Severity,
)


def build_graph(edges, nodes=None):
    graph = DependencyGraph("test dependency")
    for node in nodes or []:
        graph.add_node(node)
    for source, target in edges:
        graph.add_node(source)
        graph.add_node(target)
        graph.add_edge(source, target)
    return graph


class TestNormalizeCycle:
    """Test cycle normalization."""

    def test_rotates_to_smallest_and_closes(self):
        assert normalize_cycle(["C", "A", "B"]) == ["A", "B", "C", "A"]

    def test_self_loop(self):
        assert normalize_cycle(["A"]) == ["A", "A"]


class TestCycleDetection:
    """Test the depth-first cycle detector."""

    def test_acyclic(self):
        graph = build_graph([("A", "B"), ("B", "C"), ("A", "C")])

        assert graph.find_cycles() == []

    def test_three_cycle(self):
        graph = build_graph([("A", "B"), ("B", "C"), ("C", "A")])

        assert graph.find_cycles() == [["A", "B", "C", "A"]]

    def test_self_loop_is_length_one_cycle(self):
        graph = build_graph([("A", "A")])

        assert graph.find_cycles() == [["A", "A"]]

    @pytest.mark.parametrize("order", list(itertools.permutations(["A", "B", "C", "D"])))
    def test_independent_of_declaration_order(self, order):
        edges = {"A": "B", "B": "C", "C": "D", "D": "B"}
        graph = DependencyGraph("test dependency")
        for node in order:
            graph.add_node(node)
        for node in order:
            graph.add_edge(node, edges[node])

        assert graph.find_cycles() == [["B", "C", "D", "B"]]

    def test_two_disjoint_cycles(self):
        graph = build_graph([("A", "B"), ("B", "A"), ("X", "Y"), ("Y", "X")])

        assert graph.find_cycles() == [["A", "B", "A"], ["X", "Y", "X"]]

    def test_edges_to_undeclared_nodes_are_ignored(self):
        graph = DependencyGraph("test dependency")
        graph.add_edge("A", "missing")

        assert graph.find_cycles() == []
        assert graph.adjacency() == {"A": []}

    def test_long_chain_does_not_recurse(self):
        size = 5000
        graph = build_graph([(f"n{i:05d}", f"n{i + 1:05d}") for i in range(size)] + [(f"n{size:05d}", "n00000")])

        cycles = graph.find_cycles()

        assert len(cycles) == 1
        assert len(cycles[0]) == size + 2

    def test_cycle_diagnostics(self):
        graph = build_graph([("A", "B"), ("B", "A")])

        diagnostics = graph.cycle_diagnostics(lambda name: f"components.{name}")

        assert len(diagnostics) == 1
        assert diagnostics[0].category == DiagnosticCategory.CONSISTENCY
        assert diagnostics[0].severity == Severity.ERROR
        assert diagnostics[0].path == "components.A"
        assert diagnostics[0].message == "circular test dependency: A -> B -> A"

    def test_cycle_diagnostics_as_warnings(self):
        graph = build_graph([("A", "A")])

        diagnostics = graph.cycle_diagnostics(lambda name: name, warning=True)

        assert diagnostics[0].severity == Severity.WARNING


class TestGraphBuilders:
    """Test graphs built from document models."""

    def test_component_graph(self):
        graph = component_graph(
            [
                Component(id="web", dependencies=["api"]),
                Component(id="api", dependencies=["db", "unknown"]),
                Component(id="db"),
            ]
        )

        assert graph.adjacency() == {"web": ["api"], "api": ["db"], "db": []}
        assert graph.find_cycles() == []

    def test_role_graph_cycle(self):
        graph = role_graph([Role(name="admin", inherits=["user"]), Role(name="user", inherits=["admin"])])

        assert graph.find_cycles() == [["admin", "user", "admin"]]

    def test_required_reference_graph_skips_optional_links(self):
        relationships = [
            Relationship(source="A", field="b", target="B", kind=RelationshipKind.MANY_TO_ONE, required=True),
            Relationship(source="B", field="a", target="A", kind=RelationshipKind.MANY_TO_ONE, required=False),
        ]

        graph = required_reference_graph(["A", "B"], relationships)

        assert graph.adjacency() == {"A": ["B"], "B": []}
        assert graph.find_cycles() == []
