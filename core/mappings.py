"""
Flow-to-capability mapping integrity.

Mappings are the only many-to-many relation in a plan, so they are checked
separately from scope edges:

- hard errors: a mapping names a flow action or a capability that does
  not exist
- soft warnings: a mapping with no capabilities, a mapping without a
  rationale, a flow action no mapping covers

The validator reports; it never raises. The store decides whether errors
abort a commit and logs the warnings.
"""
from dataclasses import dataclass, field
from typing import Iterable, List

from core.schemas import Capability, FlowAction, FlowToCapabilityMapping, LayeredGraph


@dataclass
class MappingValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _flow_action_ids(graph: LayeredGraph) -> List[str]:
    return [
        node_id for node_id, node in graph.structure_layer.flow_graph.nodes.items()
        if isinstance(node, FlowAction)
    ]


def _capability_ids(graph: LayeredGraph) -> List[str]:
    return [
        node_id for node_id, node in graph.structure_layer.feature_graph.nodes.items()
        if isinstance(node, Capability)
    ]


def validate_mappings(graph: LayeredGraph) -> MappingValidationResult:
    """
    Check every mapping of ``graph`` and the mapping coverage of its flow actions.

    A mapping whose flow action is missing is reported once and its
    capabilities are not inspected further.
    """
    errors: List[str] = []
    warnings: List[str] = []
    actions = set(_flow_action_ids(graph))
    capabilities = set(_capability_ids(graph))

    for mapping in graph.mappings.values():
        if mapping.flow_action_id not in actions:
            errors.append(
                f'Mapping "{mapping.id}" references non-existent flow action "{mapping.flow_action_id}"'
            )
            continue

        for capability_id in mapping.capability_ids:
            if capability_id not in capabilities:
                errors.append(
                    f'Mapping "{mapping.id}" references non-existent capability "{capability_id}"'
                )

        if not mapping.capability_ids:
            warnings.append(
                f'Mapping "{mapping.id}" for flow action "{mapping.flow_action_id}" has no capabilities'
            )
        if not mapping.rationale.strip():
            warnings.append(f'Mapping "{mapping.id}" has no rationale')

    mapped = {mapping.flow_action_id for mapping in graph.mappings.values()}
    for action_id in _flow_action_ids(graph):
        if action_id not in mapped:
            warnings.append(f'Flow action "{action_id}" has no mappings')

    return MappingValidationResult(valid=not errors, errors=errors, warnings=warnings)


def would_create_valid_mapping(graph: LayeredGraph, flow_action_id: str,
                               capability_ids: Iterable[str]) -> MappingValidationResult:
    """Check a prospective mapping without adding it to the graph."""
    errors: List[str] = []
    if flow_action_id not in set(_flow_action_ids(graph)):
        errors.append(f'Flow action "{flow_action_id}" does not exist')
    capabilities = set(_capability_ids(graph))
    for capability_id in capability_ids:
        if capability_id not in capabilities:
            errors.append(f'Capability "{capability_id}" does not exist')
    return MappingValidationResult(valid=not errors, errors=errors)


def find_orphaned_mappings(graph: LayeredGraph) -> List[FlowToCapabilityMapping]:
    """Mappings whose flow action or any capability no longer resolves."""
    actions = set(_flow_action_ids(graph))
    capabilities = set(_capability_ids(graph))
    return [
        mapping for mapping in graph.mappings.values()
        if mapping.flow_action_id not in actions
        or any(capability_id not in capabilities for capability_id in mapping.capability_ids)
    ]


# =============================================================================
# QUERIES
# =============================================================================

def mappings_for_action(graph: LayeredGraph, flow_action_id: str) -> List[FlowToCapabilityMapping]:
    return [m for m in graph.mappings.values() if m.flow_action_id == flow_action_id]


def mappings_for_capability(graph: LayeredGraph, capability_id: str) -> List[FlowToCapabilityMapping]:
    return [m for m in graph.mappings.values() if capability_id in m.capability_ids]


def mappings_for_screen(graph: LayeredGraph, screen_id: str) -> List[FlowToCapabilityMapping]:
    """Mappings of every action whose parent screen is ``screen_id``, in action order."""
    flow_nodes = graph.structure_layer.flow_graph.nodes
    action_ids = [
        node_id for node_id, node in flow_nodes.items()
        if isinstance(node, FlowAction) and node.parent_screen == screen_id
    ]
    return [m for action_id in action_ids for m in mappings_for_action(graph, action_id)]
