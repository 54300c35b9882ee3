"""
STRATA CHANGE SETS - Merge and Validate Before Commit

A change request is applied in two halves:

  1. prepare (this module, pure):
     working copy -> insert nodes -> patch nodes -> route edges ->
     add mappings and cross-layer links -> validate everything
  2. commit (infrastructure.project_store): persist the prepared snapshot

Nothing here performs I/O and nothing mutates the snapshot it was given;
every failure raises ValidationFailure with a diagnostic naming the scope
and the offending node, edge, cycle or mapping.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.graph_db import ValidationFailure
from core.graph_invariants import CROSS_LAYER_LABEL, GRAPH_LABEL, DependencyRules, StructuralValidator
from core.mappings import validate_mappings
from core.ontology import SubGraphKey, kind_for_id
from core.schemas import (
    ChangeRequest,
    Dependency,
    Epic,
    FlatGraph,
    LayeredGraph,
    ProductIntent,
    now_utc,
)
from core.versioning import apply_modification, increment_version

logger = logging.getLogger(__name__)

FLAT_LABEL = "flat"
MAPPINGS_LABEL = "mappings"


@dataclass
class PreparedChange:
    """A validated working copy, ready to be committed as the next version."""
    graph: object
    version: str
    warnings: List[str] = field(default_factory=list)


# =============================================================================
# LAYERED PATH
# =============================================================================

def merge_layered(graph: LayeredGraph, change_request: ChangeRequest) -> Dict[SubGraphKey, List[Dependency]]:
    """
    Merge ``change_request`` into ``graph`` IN PLACE.

    Callers pass a working copy. Nodes go to the scope their kind belongs to;
    edges go to the scope of their SOURCE node.

    Returns:
        The new edges grouped by the scope they were routed to
    """
    for node in change_request.new_nodes:
        kind = node.KIND
        if kind_for_id(node.id) is not kind:
            raise ValidationFailure(
                f'New node "{node.id}" is tagged {kind.value} but its id prefix does not match',
                layer=GRAPH_LABEL,
            )
        if kind.sub_graph is None:
            raise ValidationFailure(
                f'New node "{node.id}" of kind {kind.value} is not part of the layered schema',
                layer=GRAPH_LABEL,
            )
        if graph.has_node(node.id):
            raise ValidationFailure(f'Node id "{node.id}" already exists', layer=kind.sub_graph.label)
        graph.sub_graph(kind.sub_graph).nodes[node.id] = node

    for modification in change_request.modified_nodes:
        key = graph.locate(modification.node_id)
        if key is None:
            raise ValidationFailure(
                f'Modification targets unknown node "{modification.node_id}"', layer=GRAPH_LABEL
            )
        nodes = graph.sub_graph(key).nodes
        nodes[modification.node_id] = apply_modification(nodes[modification.node_id], modification)

    routed: Dict[SubGraphKey, List[Dependency]] = {}
    for edge in change_request.new_dependencies:
        key = graph.locate(edge.from_id)
        if key is None:
            raise ValidationFailure(
                f'Dependency "{edge.id}" source node "{edge.from_id}" does not exist', layer=GRAPH_LABEL
            )
        edges = graph.sub_graph(key).edges
        if edge.id in edges:
            raise ValidationFailure(f'Dependency id "{edge.id}" already exists', layer=key.label)
        edges[edge.id] = edge
        routed.setdefault(key, []).append(edge)

    for mapping in change_request.new_mappings:
        if mapping.id in graph.mappings:
            raise ValidationFailure(f'Mapping id "{mapping.id}" already exists', layer=MAPPINGS_LABEL)
        graph.mappings[mapping.id] = mapping

    for link in change_request.new_cross_layer_dependencies:
        if link.id in graph.cross_layer_dependencies:
            raise ValidationFailure(
                f'Cross-layer dependency id "{link.id}" already exists', layer=CROSS_LAYER_LABEL
            )
        graph.cross_layer_dependencies[link.id] = link

    return routed


def prepare_layered(
    graph: LayeredGraph,
    change_request: ChangeRequest,
    enforce_dependency_rules: bool = True,
    fail_on_mapping_warnings: bool = False,
) -> PreparedChange:
    """
    Build and validate the snapshot that applying ``change_request`` would produce.

    Raises:
        ValidationFailure: on any merge, structural, dependency-rule or
            mapping error; ``graph`` is left untouched
    """
    working = graph.copy()
    routed = merge_layered(working, change_request)

    StructuralValidator.validate(working).raise_for_failure()

    if enforce_dependency_rules:
        for key, new_edges in routed.items():
            scope = working.sub_graph(key)
            DependencyRules.validate_new_edges(new_edges, scope.nodes, scope.edges, key.label).raise_for_failure()

    mapping_result = validate_mappings(working)
    if not mapping_result.valid:
        raise ValidationFailure(
            mapping_result.errors[0],
            layer=MAPPINGS_LABEL,
            errors=mapping_result.errors,
            warnings=mapping_result.warnings,
        )
    if fail_on_mapping_warnings and mapping_result.warnings:
        raise ValidationFailure(
            mapping_result.warnings[0],
            layer=MAPPINGS_LABEL,
            errors=list(mapping_result.warnings),
            warnings=mapping_result.warnings,
        )
    for warning in mapping_result.warnings:
        logger.warning("%s: %s", change_request.id, warning)

    working.version = increment_version(graph.version)
    working.metadata.last_modified = now_utc()
    return PreparedChange(graph=working, version=working.version, warnings=mapping_result.warnings)


# =============================================================================
# LEGACY FLAT PATH
# =============================================================================

def prepare_flat(
    graph: FlatGraph,
    change_request: ChangeRequest,
    enforce_dependency_rules: bool = True,
) -> PreparedChange:
    """
    Flat-schema counterpart of prepare_layered: one node map, one edge map.

    Raises:
        ValidationFailure: on merge errors, dangling edges, cycles or
            dependency-rule violations
    """
    working = graph.copy()

    for node in change_request.new_nodes:
        if kind_for_id(node.id) is not node.KIND:
            raise ValidationFailure(
                f'New node "{node.id}" is tagged {node.KIND.value} but its id prefix does not match',
                layer=FLAT_LABEL,
            )
        if node.id in working.nodes:
            raise ValidationFailure(f'Node id "{node.id}" already exists', layer=FLAT_LABEL)
        working.nodes[node.id] = node

    for modification in change_request.modified_nodes:
        current = working.nodes.get(modification.node_id)
        if current is None:
            raise ValidationFailure(
                f'Modification targets unknown node "{modification.node_id}"', layer=FLAT_LABEL
            )
        working.nodes[modification.node_id] = apply_modification(current, modification)

    for edge in change_request.new_dependencies:
        if edge.id in working.edges:
            raise ValidationFailure(f'Dependency id "{edge.id}" already exists', layer=FLAT_LABEL)
        working.edges[edge.id] = edge

    StructuralValidator.validate_layer(working.nodes, working.edges, FLAT_LABEL).raise_for_failure()
    if enforce_dependency_rules:
        DependencyRules.validate_new_edges(
            change_request.new_dependencies, working.nodes, working.edges, FLAT_LABEL
        ).raise_for_failure()

    working.version = increment_version(graph.version)
    working.metadata.last_modified = now_utc()
    return PreparedChange(graph=working, version=working.version)


# =============================================================================
# PROJECT NAMING
# =============================================================================

def derive_project_name(change_request: ChangeRequest) -> Optional[str]:
    """Name of the first Epic (layered) or ProductIntent (flat) the request creates."""
    for node in change_request.new_nodes:
        if isinstance(node, (Epic, ProductIntent)) and node.name:
            return node.name
    return None
