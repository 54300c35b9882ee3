"""
STRATA ANALYTICS - Plan Metrics as Tables

Read-only analytics over a LayeredGraph snapshot:
- Polars exports of nodes, edges and impact reports
- Per-scope summaries (how big is each layer?)
- A health report (orphans, unmapped actions, acyclicity)

All functions observe; none modify the snapshot.
"""
from dataclasses import dataclass
from typing import Dict, List

import polars as pl

from core.graph_invariants import StructuralValidator
from core.ontology import NodeKind
from core.schemas import FlowAction, ImpactReport, LayeredGraph


NODE_SCHEMA = {
    "id": pl.Utf8,
    "kind": pl.Utf8,
    "layer": pl.Utf8,
    "sub_graph": pl.Utf8,
    "version": pl.Utf8,
    "updated_at": pl.Utf8,
}

EDGE_SCHEMA = {
    "id": pl.Utf8,
    "from_id": pl.Utf8,
    "to_id": pl.Utf8,
    "type": pl.Utf8,
    "sub_graph": pl.Utf8,
    "cross_layer": pl.Boolean,
}

IMPACT_SCHEMA = {
    "node_id": pl.Utf8,
    "layer": pl.Utf8,
    "target_node": pl.Utf8,
}


# =============================================================================
# DATA CLASSES FOR RESULTS
# =============================================================================

@dataclass
class PlanHealthReport:
    """Overall health metrics for a plan snapshot."""
    version: str
    total_nodes: int
    total_edges: int
    cross_layer_links: int
    mappings: int
    orphan_count: int
    unmapped_action_count: int
    is_dag: bool


# =============================================================================
# POLARS EXPORTS
# =============================================================================

def nodes_frame(graph: LayeredGraph) -> pl.DataFrame:
    """One row per node, in validation order of scopes then insertion order."""
    rows: Dict[str, List] = {column: [] for column in NODE_SCHEMA}
    for key, scope in graph.sub_graphs():
        for node in scope.nodes.values():
            rows["id"].append(node.id)
            rows["kind"].append(node.KIND.value)
            rows["layer"].append(key.layer.value)
            rows["sub_graph"].append(key.value)
            rows["version"].append(node.version)
            rows["updated_at"].append(node.updated_at)
    return pl.DataFrame(rows, schema=NODE_SCHEMA)


def edges_frame(graph: LayeredGraph) -> pl.DataFrame:
    """Scope edges followed by cross-layer links (``sub_graph`` is null for those)."""
    rows: Dict[str, List] = {column: [] for column in EDGE_SCHEMA}
    for key, edge in graph.iter_edges():
        rows["id"].append(edge.id)
        rows["from_id"].append(edge.from_id)
        rows["to_id"].append(edge.to_id)
        rows["type"].append(edge.type.value)
        rows["sub_graph"].append(key.value)
        rows["cross_layer"].append(False)
    for link in graph.cross_layer_dependencies.values():
        rows["id"].append(link.id)
        rows["from_id"].append(link.from_node_id)
        rows["to_id"].append(link.to_node_id)
        rows["type"].append(link.type.value)
        rows["sub_graph"].append(None)
        rows["cross_layer"].append(True)
    return pl.DataFrame(rows, schema=EDGE_SCHEMA)


def impact_frame(report: ImpactReport) -> pl.DataFrame:
    rows: Dict[str, List] = {column: [] for column in IMPACT_SCHEMA}
    for layer, node_ids in report.affected_nodes.items():
        for node_id in node_ids:
            rows["node_id"].append(node_id)
            rows["layer"].append(layer.value)
            rows["target_node"].append(report.target_node)
    return pl.DataFrame(rows, schema=IMPACT_SCHEMA)


# =============================================================================
# SUMMARIES
# =============================================================================

def layer_summary(graph: LayeredGraph) -> pl.DataFrame:
    """
    Node and edge counts per scope.

    Columns: sub_graph, layer, nodes, edges. Every scope appears, even empty.
    """
    return pl.DataFrame(
        {
            "sub_graph": [key.value for key, _ in graph.sub_graphs()],
            "layer": [key.layer.value for key, _ in graph.sub_graphs()],
            "nodes": [len(scope.nodes) for _, scope in graph.sub_graphs()],
            "edges": [len(scope.edges) for _, scope in graph.sub_graphs()],
        },
        schema={"sub_graph": pl.Utf8, "layer": pl.Utf8, "nodes": pl.Int64, "edges": pl.Int64},
    )


def count_nodes_by_kind(graph: LayeredGraph) -> Dict[NodeKind, int]:
    counts: Dict[NodeKind, int] = {}
    for node in graph.iter_nodes():
        counts[node.KIND] = counts.get(node.KIND, 0) + 1
    return counts


def find_orphan_nodes(graph: LayeredGraph) -> List[str]:
    """Nodes touched by no edge, no cross-layer link and no mapping."""
    touched = set()
    for _, edge in graph.iter_edges():
        touched.update((edge.from_id, edge.to_id))
    for link in graph.cross_layer_dependencies.values():
        touched.update((link.from_node_id, link.to_node_id))
    for mapping in graph.mappings.values():
        touched.add(mapping.flow_action_id)
        touched.update(mapping.capability_ids)
    return [node.id for node in graph.iter_nodes() if node.id not in touched]


def get_plan_health_report(graph: LayeredGraph) -> PlanHealthReport:
    mapped = {mapping.flow_action_id for mapping in graph.mappings.values()}
    unmapped = [
        node_id for node_id, node in graph.structure_layer.flow_graph.nodes.items()
        if isinstance(node, FlowAction) and node_id not in mapped
    ]
    return PlanHealthReport(
        version=graph.version,
        total_nodes=graph.node_count,
        total_edges=graph.edge_count,
        cross_layer_links=len(graph.cross_layer_dependencies),
        mappings=len(graph.mappings),
        orphan_count=len(find_orphan_nodes(graph)),
        unmapped_action_count=len(unmapped),
        is_dag=StructuralValidator.combined_index(graph).is_dag(),
    )
