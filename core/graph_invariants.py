"""
STRATA GRAPH INVARIANTS - The Structural Superego

This module enforces the physics of a layered plan. If a working copy breaks
one of these rules, the change request that produced it is rejected BEFORE
anything touches disk.

Invariants Implemented:
1. Placement: every node sits in the sub-graph its kind belongs to
2. Scope closure: every edge connects two nodes of its own sub-graph
3. Per-scope acyclicity: narrative, feature, flow, specification
4. Flow references: parent/next screens and entry transitions resolve to screens
5. Cross-layer links: endpoints exist in two different layers matching the type
6. Global acyclicity: all sub-graph edges plus cross-layer links form a DAG

Policy:
- Checks run narrative -> features -> flows -> flow references ->
  specification -> cross-layer, and stop at the first failure
- Expected structural problems are RETURNED as a ValidationResult, never
  raised; the store decides what a failure means
- Dependency-type rules (supersedes/requires) apply to newly proposed edges
  only, through DependencyRules
"""
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from core.graph_db import GraphIndex, ValidationFailure
from core.ontology import DependencyType, SubGraphKey, kind_for_id
from core.schemas import (
    CrossLayerDependency,
    Dependency,
    FlowAction,
    FlowScreen,
    LayeredGraph,
    Node,
    SubGraph,
)


CROSS_LAYER_LABEL = "cross-layer"
GRAPH_LABEL = "graph"


# =============================================================================
# VALIDATION RESULTS
# =============================================================================

@dataclass
class ValidationResult:
    """Outcome of a structural check. ``layer`` names the scope that failed."""
    valid: bool
    error: Optional[str] = None
    layer: Optional[str] = None
    cycle: Optional[List[str]] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, error: str, layer: Optional[str] = None,
             cycle: Optional[List[str]] = None) -> "ValidationResult":
        return cls(valid=False, error=error, layer=layer, cycle=cycle)

    def raise_for_failure(self) -> None:
        """Raise ValidationFailure if this result is a failure."""
        if not self.valid:
            raise ValidationFailure(self.error or "Validation failed", layer=self.layer, cycle=self.cycle)


def _format_cycle(cycle: Sequence[str]) -> str:
    return " -> ".join(cycle)


# =============================================================================
# STRUCTURAL VALIDATOR
# =============================================================================

class StructuralValidator:
    """
    Cycle detection and referential integrity for layered graphs.

    All methods are static; none of them mutate the graph they inspect.
    """

    # =========================================================================
    # PRIMITIVES
    # =========================================================================

    @staticmethod
    def detect_cycle(node_ids: Iterable[str], edges: Iterable[Tuple[str, str]]) -> Optional[List[str]]:
        """
        Find a cycle among ``edges``.

        Returns:
            The cycle as ``[a, b, ..., a]`` in DFS visitation order, or None
        """
        return GraphIndex.build(node_ids, edges).find_cycle()

    @staticmethod
    def validate_layer(
        nodes: Mapping[str, Node],
        edges: Mapping[str, Dependency],
        label: str = "layer",
    ) -> ValidationResult:
        """
        Validate one scope: every edge stays inside it and it has no cycle.

        Args:
            nodes: The scope's nodes keyed by id
            edges: The scope's edges keyed by id
            label: Scope name used in diagnostics
        """
        for edge in edges.values():
            for endpoint in (edge.from_id, edge.to_id):
                if endpoint not in nodes:
                    return ValidationResult.fail(
                        f'Dependency "{edge.id}" in {label} references node "{endpoint}" '
                        f"which is not in this sub-graph",
                        layer=label,
                    )

        cycle = StructuralValidator.detect_cycle(
            nodes.keys(), ((edge.from_id, edge.to_id) for edge in edges.values())
        )
        if cycle is not None:
            return ValidationResult.fail(
                f"Cycle detected in {label}: {_format_cycle(cycle)}", layer=label, cycle=cycle
            )
        return ValidationResult.ok()

    @staticmethod
    def validate_placement(key: SubGraphKey, scope: SubGraph) -> ValidationResult:
        """Every node's kind must match its id prefix and belong to ``key``."""
        for node_id, node in scope.nodes.items():
            if node.id != node_id:
                return ValidationResult.fail(
                    f'Node stored under "{node_id}" carries id "{node.id}"', layer=key.label
                )
            if kind_for_id(node_id) is not node.KIND:
                return ValidationResult.fail(
                    f'Node "{node_id}" is tagged {node.KIND.value} but its id prefix says otherwise',
                    layer=key.label,
                )
            if node.KIND.sub_graph is not key:
                return ValidationResult.fail(
                    f'Node "{node_id}" of kind {node.KIND.value} does not belong in {key.label}',
                    layer=key.label,
                )
        return ValidationResult.ok()

    # =========================================================================
    # FLOW REFERENCES
    # =========================================================================

    @staticmethod
    def validate_flow_references(flow_graph: SubGraph) -> ValidationResult:
        """
        Referential rules of the flow graph.

        - every action's parent screen exists and is a screen
        - every action's next screen, if set, exists and is a screen
        - every screen's entry transitions exist and are screens
        """
        label = SubGraphKey.FLOWS.label
        nodes = flow_graph.nodes

        def screen_problem(target: str) -> Optional[str]:
            if target not in nodes:
                return "missing"
            if not isinstance(nodes[target], FlowScreen):
                return "not a screen"
            return None

        for node in nodes.values():
            if isinstance(node, FlowAction):
                problem = screen_problem(node.parent_screen)
                if problem == "missing":
                    return ValidationResult.fail(
                        f'Flow action "{node.id}" references missing parent screen "{node.parent_screen}"',
                        layer=label,
                    )
                if problem:
                    return ValidationResult.fail(
                        f'Flow action "{node.id}" has parent screen "{node.parent_screen}" which is not a screen',
                        layer=label,
                    )
                if node.next_screen is not None:
                    problem = screen_problem(node.next_screen)
                    if problem == "missing":
                        return ValidationResult.fail(
                            f'Flow action "{node.id}" references missing next screen "{node.next_screen}"',
                            layer=label,
                        )
                    if problem:
                        return ValidationResult.fail(
                            f'Flow action "{node.id}" has next screen "{node.next_screen}" which is not a screen',
                            layer=label,
                        )
            elif isinstance(node, FlowScreen):
                for source in node.entry_transitions:
                    problem = screen_problem(source)
                    if problem == "missing":
                        return ValidationResult.fail(
                            f'Flow screen "{node.id}" has entry transition from missing screen "{source}"',
                            layer=label,
                        )
                    if problem:
                        return ValidationResult.fail(
                            f'Flow screen "{node.id}" has entry transition from "{source}" which is not a screen',
                            layer=label,
                        )
        return ValidationResult.ok()

    # =========================================================================
    # CROSS-LAYER
    # =========================================================================

    @staticmethod
    def validate_cross_layer_link(graph: LayeredGraph, link: CrossLayerDependency) -> ValidationResult:
        """Endpoints exist, sit in different layers, and match the link's declared layers and type."""
        from_layer = graph.layer_of(link.from_node_id)
        to_layer = graph.layer_of(link.to_node_id)
        for endpoint, layer in ((link.from_node_id, from_layer), (link.to_node_id, to_layer)):
            if layer is None:
                return ValidationResult.fail(
                    f'Cross-layer dependency "{link.id}" references missing node "{endpoint}"',
                    layer=CROSS_LAYER_LABEL,
                )
        if from_layer is to_layer:
            return ValidationResult.fail(
                f'Cross-layer dependency "{link.id}" links "{link.from_node_id}" and '
                f'"{link.to_node_id}" inside the {from_layer.value} layer',
                layer=CROSS_LAYER_LABEL,
            )
        if (link.from_layer, link.to_layer) != (from_layer, to_layer):
            return ValidationResult.fail(
                f'Cross-layer dependency "{link.id}" declares {link.from_layer.value} -> '
                f"{link.to_layer.value} but links {from_layer.value} -> {to_layer.value}",
                layer=CROSS_LAYER_LABEL,
            )
        if link.type.layer_pair != (from_layer, to_layer):
            return ValidationResult.fail(
                f'Cross-layer dependency "{link.id}" of type {link.type.value} cannot link '
                f"{from_layer.value} -> {to_layer.value}",
                layer=CROSS_LAYER_LABEL,
            )
        return ValidationResult.ok()

    @staticmethod
    def combined_index(graph: LayeredGraph,
                       extra_edges: Iterable[Tuple[str, str]] = ()) -> GraphIndex:
        """Index over every node, every scope edge and every cross-layer link."""
        index = GraphIndex()
        for node in graph.iter_nodes():
            index.add_node(node.id)
        for _, edge in graph.iter_edges():
            index.add_edge(edge.from_id, edge.to_id)
        for link in graph.cross_layer_dependencies.values():
            index.add_edge(link.from_node_id, link.to_node_id)
        for from_id, to_id in extra_edges:
            index.add_edge(from_id, to_id)
        return index

    @staticmethod
    def validate_combined(graph: LayeredGraph) -> ValidationResult:
        """Cross-layer link checks followed by the union-graph cycle check."""
        seen = {}
        for key, scope in graph.sub_graphs():
            for node_id in scope.nodes:
                if node_id in seen:
                    return ValidationResult.fail(
                        f'Node id "{node_id}" appears in both {seen[node_id].label} and {key.label}',
                        layer=GRAPH_LABEL,
                    )
                seen[node_id] = key

        for link in graph.cross_layer_dependencies.values():
            result = StructuralValidator.validate_cross_layer_link(graph, link)
            if not result.valid:
                return result

        cycle = StructuralValidator.combined_index(graph).find_cycle()
        if cycle is not None:
            return ValidationResult.fail(
                f"Cycle detected across layers: {_format_cycle(cycle)}",
                layer=CROSS_LAYER_LABEL,
                cycle=cycle,
            )
        return ValidationResult.ok()

    # =========================================================================
    # FULL VALIDATION
    # =========================================================================

    @staticmethod
    def validate(graph: LayeredGraph) -> ValidationResult:
        """
        Validate a layered graph, fail-fast.

        Order: narrative -> structure.features -> structure.flows ->
        flow references -> specification -> cross-layer.

        Returns:
            The first failing result, or a valid one
        """
        for key, scope in graph.sub_graphs():
            result = StructuralValidator.validate_placement(key, scope)
            if result.valid:
                result = StructuralValidator.validate_layer(scope.nodes, scope.edges, key.label)
            if result.valid and key is SubGraphKey.FLOWS:
                result = StructuralValidator.validate_flow_references(scope)
            if not result.valid:
                return result
        return StructuralValidator.validate_combined(graph)

    @staticmethod
    def topological_sort(graph: LayeredGraph) -> Optional[List[str]]:
        """Combined topological order (ties by insertion order), or None if cyclic."""
        index = StructuralValidator.combined_index(graph)
        if not index.is_dag():
            return None
        return index.topological_order()

    # =========================================================================
    # PRE-COMMIT CHECKS
    # =========================================================================

    @staticmethod
    def would_create_cycle(graph: LayeredGraph, from_id: str, to_id: str) -> bool:
        """
        Would a scope edge ``from_id -> to_id`` introduce a cycle?

        The hypothetical edge is checked inside the source's sub-graph and
        against the union graph; the graph itself is not touched.
        """
        if from_id == to_id:
            return True
        key = graph.locate(from_id)
        if key is not None:
            scope = graph.sub_graph(key)
            edges = [(edge.from_id, edge.to_id) for edge in scope.edges.values()]
            edges.append((from_id, to_id))
            if StructuralValidator.detect_cycle(scope.nodes.keys(), edges) is not None:
                return True
        return not StructuralValidator.combined_index(graph, [(from_id, to_id)]).is_dag()

    @staticmethod
    def would_create_cross_layer_cycle(graph: LayeredGraph, from_id: str, to_id: str) -> bool:
        """Would a cross-layer link ``from_id -> to_id`` close a cycle in the union graph?"""
        if from_id == to_id:
            return True
        return not StructuralValidator.combined_index(graph, [(from_id, to_id)]).is_dag()


# =============================================================================
# DEPENDENCY-TYPE RULES
# =============================================================================

class DependencyRules:
    """
    Semantic rules per dependency type, applied to newly proposed edges.

    - requires: the target must not have been superseded (a node is
      superseded once a ``supersedes`` edge leaves it)
    - supersedes: both endpoints must be the same kind
    - blocks / impacts: both endpoints must exist
    """

    @staticmethod
    def check(edge: Dependency, nodes: Mapping[str, Node],
              edges: Iterable[Dependency]) -> Optional[str]:
        """Return an error message, or None if ``edge`` is acceptable."""
        if edge.from_id not in nodes:
            return f'Dependency "{edge.id}" source node "{edge.from_id}" does not exist'
        if edge.to_id not in nodes:
            return f'Dependency "{edge.id}" target node "{edge.to_id}" does not exist'

        if edge.type is DependencyType.REQUIRES:
            for other in edges:
                if other.type is DependencyType.SUPERSEDES and other.from_id == edge.to_id:
                    return f'Dependency "{edge.id}" requires "{edge.to_id}" which has been superseded'
        elif edge.type is DependencyType.SUPERSEDES:
            from_kind = nodes[edge.from_id].KIND
            to_kind = nodes[edge.to_id].KIND
            if from_kind is not to_kind:
                return (
                    f'Dependency "{edge.id}" cannot supersede across kinds '
                    f"({from_kind.value} -> {to_kind.value})"
                )
        return None

    @staticmethod
    def validate_new_edges(
        new_edges: Iterable[Dependency],
        nodes: Mapping[str, Node],
        edges: Mapping[str, Dependency],
        label: str,
    ) -> ValidationResult:
        for edge in new_edges:
            error = DependencyRules.check(edge, nodes, edges.values())
            if error:
                return ValidationResult.fail(error, layer=label)
        return ValidationResult.ok()


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def validate_graph(graph: LayeredGraph) -> ValidationResult:
    return StructuralValidator.validate(graph)


def is_valid_graph(graph: LayeredGraph) -> bool:
    return StructuralValidator.validate(graph).valid
