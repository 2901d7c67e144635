"""
Dependency Graphs
=================

Directed graphs over component dependencies, role inheritance and required
entity references, with cycle detection.
"""

from typing import Callable, Dict, Iterable, Iterator, List, Set, Tuple

from layered_dsl.config.logging import get_logger
from layered_dsl.core.dsl.diagnostics import consistency_error, consistency_warning
from layered_dsl.models.schemas import Component, Diagnostic, Relationship, Role

logger = get_logger(__name__)

WHITE, GRAY, BLACK = 0, 1, 2


def normalize_cycle(nodes: List[str]) -> List[str]:
    """Rotate a cycle to start at its smallest id and close it: [A, B, C, A]."""
    start = nodes.index(min(nodes))
    rotated = nodes[start:] + nodes[:start]
    return rotated + [rotated[0]]


class DependencyGraph:
    """Directed graph keyed by node id. Edges to undeclared nodes are ignored."""

    def __init__(self, label: str) -> None:
        self.label = label
        self._edges: Dict[str, List[str]] = {}

    def add_node(self, node: str) -> None:
        self._edges.setdefault(node, [])

    def add_edge(self, source: str, target: str) -> None:
        self.add_node(source)
        if target not in self._edges[source]:
            self._edges[source].append(target)

    def successors(self, node: str) -> List[str]:
        return sorted(target for target in self._edges.get(node, []) if target in self._edges)

    def adjacency(self) -> Dict[str, List[str]]:
        """Edges between declared nodes, in declaration order."""
        return {
            node: [target for target in targets if target in self._edges]
            for node, targets in self._edges.items()
        }

    def __contains__(self, node: object) -> bool:
        return node in self._edges

    def __len__(self) -> int:
        return len(self._edges)

    def find_cycles(self) -> List[List[str]]:
        """
        Find cycles with an iterative three-colour depth-first search.

        Nodes and successors are visited in sorted order, so the result does not
        depend on declaration order. Every back edge closes one cycle; cycles
        are normalized and reported once each.

        Returns:
            Closed, normalized cycles such as ``[A, B, C, A]``
        """
        colour = {node: WHITE for node in self._edges}
        cycles: List[List[str]] = []
        seen: Set[Tuple[str, ...]] = set()

        for root in sorted(self._edges):
            if colour[root] != WHITE:
                continue
            colour[root] = GRAY
            path = [root]
            stack: List[Tuple[str, Iterator[str]]] = [(root, iter(self.successors(root)))]

            while stack:
                node, pending = stack[-1]
                advanced = False
                for successor in pending:
                    if colour[successor] == WHITE:
                        colour[successor] = GRAY
                        path.append(successor)
                        stack.append((successor, iter(self.successors(successor))))
                        advanced = True
                        break
                    if colour[successor] == GRAY:
                        cycle = normalize_cycle(path[path.index(successor):])
                        key = tuple(cycle)
                        if key not in seen:
                            seen.add(key)
                            cycles.append(cycle)
                if not advanced:
                    colour[node] = BLACK
                    path.pop()
                    stack.pop()

        return sorted(cycles)

    def cycle_diagnostics(self, path_of: Callable[[str], str], warning: bool = False) -> List[Diagnostic]:
        """One Consistency diagnostic per distinct cycle."""
        build = consistency_warning if warning else consistency_error
        diagnostics = [
            build(path_of(cycle[0]), f"circular {self.label}: {' -> '.join(cycle)}")
            for cycle in self.find_cycles()
        ]
        if diagnostics:
            logger.debug("Cycles detected", graph=self.label, count=len(diagnostics))
        return diagnostics


def component_graph(components: Iterable[Component]) -> DependencyGraph:
    graph = DependencyGraph("component dependency")
    components = list(components)
    for component in components:
        graph.add_node(component.id)
    for component in components:
        for dependency in component.dependencies:
            graph.add_edge(component.id, dependency)
    return graph


def role_graph(roles: Iterable[Role]) -> DependencyGraph:
    graph = DependencyGraph("role inheritance")
    roles = list(roles)
    for role in roles:
        graph.add_node(role.name)
    for role in roles:
        for parent in role.inherits:
            graph.add_edge(role.name, parent)
    return graph


def required_reference_graph(entity_names: Iterable[str], relationships: Iterable[Relationship]) -> DependencyGraph:
    """Entities linked by required (non-optional, single) references."""
    graph = DependencyGraph("required entity reference")
    for name in entity_names:
        graph.add_node(name)
    for relationship in relationships:
        if relationship.required and relationship.source in graph:
            graph.add_edge(relationship.source, relationship.target)
    return graph
