"""
STRATA SCHEMAS - The Grammar of the Plan

If ontology.py is the Dictionary (the words a plan may use),
schemas.py is the Grammar (how those words are assembled into documents).

This module defines the data that flows through the engine:
- Node variants: one msgspec.Struct per concrete entity, joined in a tagged
  union (``kind`` is the tag)
- Dependency, FlowToCapabilityMapping, CrossLayerDependency
- SubGraph / StructureLayer / LayeredGraph: the layered snapshot
- FlatGraph: the legacy single-map snapshot
- ChangeRequest and its payload pieces
- ImpactReport / TraceReport: analyzer results
- Document encode/decode helpers

Design Principles:
1. TAGGED DISPATCH: node type is an explicit tag, never inferred from
   which fields happen to be present
2. STABLE WIRE NAMES: attributes are snake_case, persisted names keep the
   established camelCase spelling (``userStories``, ``parentScreen``, ...)
3. KW_ONLY: keyword construction everywhere, no positional mix-ups
4. ORDERED COLLECTIONS: node/edge maps are insertion-ordered dicts; every
   traversal order in the engine derives from that order

Legacy documents written before the ``kind`` tag existed are accepted: the
tag is filled in from the id prefix once, at decode time.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Tuple, Type, TypeVar, Union

import msgspec

from core.ontology import (
    ChangeRequestStatus,
    CrossLayerDependencyType,
    DependencyType,
    ImpactType,
    Initiator,
    Layer,
    NodeKind,
    RequirementCategory,
    SubGraphKey,
    TaskCategory,
    TriggerType,
    kind_for_id,
)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def now_utc() -> str:
    """UTC timestamp as ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


def generate_id(prefix: str) -> str:
    """Generate ``{prefix}-{uuid4}``; ``prefix`` is given without the dash."""
    return f"{prefix}-{uuid.uuid4()}"


DEFAULT_NODE_VERSION = "1.0.0"


# =============================================================================
# NODE VARIANTS
# =============================================================================

class NodeBase(msgspec.Struct, kw_only=True, tag_field="kind"):
    """
    Fields shared by every node variant.

    Subclasses set the msgspec ``tag`` to their NodeKind value and expose the
    same value as the ``KIND`` class attribute for dispatch.
    """
    KIND: ClassVar[NodeKind]

    id: str
    version: str = DEFAULT_NODE_VERSION
    created_at: str = msgspec.field(default_factory=now_utc)
    updated_at: str = msgspec.field(default_factory=now_utc)

    @property
    def kind(self) -> NodeKind:
        return self.KIND


# === Narrative ===

class Epic(NodeBase, tag="epic"):
    KIND: ClassVar[NodeKind] = NodeKind.EPIC

    name: str = ""
    description: str = ""
    user_stories: List[str] = msgspec.field(default_factory=list, name="userStories")
    layer: Layer = Layer.NARRATIVE


class UserStory(NodeBase, tag="story"):
    KIND: ClassVar[NodeKind] = NodeKind.STORY

    narrative: str = ""
    acceptance_criteria: List[str] = msgspec.field(default_factory=list, name="acceptanceCriteria")
    linked_capabilities: List[str] = msgspec.field(default_factory=list, name="linkedCapabilities")
    parent_epic: str = msgspec.field(default="", name="parentEpic")
    layer: Layer = Layer.NARRATIVE


# === Structure: feature graph ===

class Capability(NodeBase, tag="capability"):
    KIND: ClassVar[NodeKind] = NodeKind.CAPABILITY

    name: str = ""
    description: str = ""
    linked_user_stories: List[str] = msgspec.field(default_factory=list, name="linkedUserStories")
    linked_technical_reqs: List[str] = msgspec.field(default_factory=list, name="linkedTechnicalReqs")
    layer: Layer = Layer.STRUCTURE


# === Structure: flow graph ===

class FlowScreen(NodeBase, tag="screen"):
    KIND: ClassVar[NodeKind] = NodeKind.SCREEN

    name: str = ""
    description: str = ""
    actions: List[str] = msgspec.field(default_factory=list)
    entry_transitions: List[str] = msgspec.field(default_factory=list, name="entryTransitions")
    layer: Layer = Layer.STRUCTURE


class FlowAction(NodeBase, tag="action"):
    KIND: ClassVar[NodeKind] = NodeKind.ACTION

    name: str = ""
    description: str = ""
    trigger_type: TriggerType = msgspec.field(default=TriggerType.USER, name="triggerType")
    parent_screen: str = msgspec.field(default="", name="parentScreen")
    next_screen: Optional[str] = msgspec.field(default=None, name="nextScreen")
    linked_capabilities: List[str] = msgspec.field(default_factory=list, name="linkedCapabilities")
    layer: Layer = Layer.STRUCTURE


# === Specification ===

class TechnicalRequirement(NodeBase, tag="requirement"):
    KIND: ClassVar[NodeKind] = NodeKind.REQUIREMENT

    category: RequirementCategory = msgspec.field(default=RequirementCategory.OTHER, name="type")
    specification: str = ""
    linked_capabilities: List[str] = msgspec.field(default_factory=list, name="linkedCapabilities")
    linked_tasks: List[str] = msgspec.field(default_factory=list, name="linkedTasks")
    layer: Layer = Layer.SPECIFICATION


class Task(NodeBase, tag="task"):
    """Implementation task. Shared by the layered and the legacy flat schema."""
    KIND: ClassVar[NodeKind] = NodeKind.TASK

    category: TaskCategory = msgspec.field(default=TaskCategory.BACKEND, name="type")
    description: str = ""
    dependencies: List[str] = msgspec.field(default_factory=list)
    parent_feature: str = ""
    layer: Layer = Layer.SPECIFICATION


# === Legacy flat schema ===

class ProductIntent(NodeBase, tag="intent"):
    KIND: ClassVar[NodeKind] = NodeKind.INTENT

    name: str = ""
    description: str = ""
    linked_sub_intents: List[str] = msgspec.field(default_factory=list)


class SubIntent(NodeBase, tag="subintent"):
    KIND: ClassVar[NodeKind] = NodeKind.SUBINTENT

    parent_intent: str = ""
    name: str = ""
    description: str = ""
    linked_features: List[str] = msgspec.field(default_factory=list)


class Feature(NodeBase, tag="feature"):
    KIND: ClassVar[NodeKind] = NodeKind.FEATURE

    name: str = ""
    description: str = ""
    linked_intent: str = ""
    linked_tasks: List[str] = msgspec.field(default_factory=list)
    ux_spec: Optional[str] = None


class UXSpec(NodeBase, tag="uxspec"):
    KIND: ClassVar[NodeKind] = NodeKind.UXSPEC

    linked_feature: str = ""
    experience_goal: str = ""
    design_refs: List[str] = msgspec.field(default_factory=list)


Node = Union[
    Epic, UserStory, Capability, FlowScreen, FlowAction, TechnicalRequirement, Task,
    ProductIntent, SubIntent, Feature, UXSpec,
]

NODE_CLASSES: Dict[NodeKind, Type[NodeBase]] = {
    cls.KIND: cls
    for cls in (
        Epic, UserStory, Capability, FlowScreen, FlowAction, TechnicalRequirement, Task,
        ProductIntent, SubIntent, Feature, UXSpec,
    )
}

# Fields a modification patch may never touch.
PROTECTED_NODE_FIELDS = frozenset({"id", "kind", "layer", "version", "created_at", "updated_at"})


# =============================================================================
# EDGES, MAPPINGS, CROSS-LAYER LINKS
# =============================================================================

class Dependency(msgspec.Struct, kw_only=True):
    """Directed, typed edge scoped to a single sub-graph."""
    id: str
    from_id: str
    to_id: str
    type: DependencyType = DependencyType.REQUIRES
    created_at: str = msgspec.field(default_factory=now_utc)

    @classmethod
    def create(cls, from_id: str, to_id: str,
               type: DependencyType = DependencyType.REQUIRES) -> "Dependency":
        return cls(id=generate_id("dep"), from_id=from_id, to_id=to_id, type=type)


class FlowToCapabilityMapping(msgspec.Struct, kw_only=True):
    """Many-to-many association: one flow action to a set of capabilities."""
    id: str
    flow_action_id: str = msgspec.field(name="flowActionId")
    capability_ids: List[str] = msgspec.field(default_factory=list, name="capabilityIds")
    rationale: str = ""
    version: str = DEFAULT_NODE_VERSION
    created_at: str = msgspec.field(default_factory=now_utc)
    updated_at: str = msgspec.field(default_factory=now_utc)


class CrossLayerDependency(msgspec.Struct, kw_only=True):
    """Directed link between nodes in two different layers."""
    id: str
    type: CrossLayerDependencyType
    from_node_id: str = msgspec.field(name="fromNodeId")
    to_node_id: str = msgspec.field(name="toNodeId")
    from_layer: Layer = msgspec.field(name="fromLayer")
    to_layer: Layer = msgspec.field(name="toLayer")
    rationale: str = ""

    @classmethod
    def create(cls, from_node_id: str, to_node_id: str, from_layer: Layer, to_layer: Layer,
               rationale: str = "") -> "CrossLayerDependency":
        """Build a link whose type is implied by the layer pair."""
        dep_type = CrossLayerDependencyType.for_layers(from_layer, to_layer)
        if dep_type is None:
            raise ValueError(f"No cross-layer dependency type links {from_layer.value} -> {to_layer.value}")
        return cls(
            id=generate_id("cross"),
            type=dep_type,
            from_node_id=from_node_id,
            to_node_id=to_node_id,
            from_layer=from_layer,
            to_layer=to_layer,
            rationale=rationale,
        )


# =============================================================================
# GRAPH SNAPSHOTS
# =============================================================================

class GraphMetadata(msgspec.Struct, kw_only=True):
    created_at: str = msgspec.field(default_factory=now_utc)
    last_modified: str = msgspec.field(default_factory=now_utc)


class SubGraph(msgspec.Struct, kw_only=True):
    """Nodes and edges of one acyclic scope, both keyed by id in insertion order."""
    nodes: Dict[str, Node] = msgspec.field(default_factory=dict)
    edges: Dict[str, Dependency] = msgspec.field(default_factory=dict)


class StructureLayer(msgspec.Struct, kw_only=True):
    feature_graph: SubGraph = msgspec.field(default_factory=SubGraph, name="featureGraph")
    flow_graph: SubGraph = msgspec.field(default_factory=SubGraph, name="flowGraph")
    mappings: Dict[str, FlowToCapabilityMapping] = msgspec.field(default_factory=dict)


T = TypeVar("T", bound=msgspec.Struct)


def _clone(obj: T) -> T:
    return msgspec.msgpack.decode(msgspec.msgpack.encode(obj), type=type(obj))


class LayeredGraph(msgspec.Struct, kw_only=True):
    """
    A complete layered snapshot.

    Nodes live in exactly one of four sub-graphs; mappings sit in the
    structure layer; cross-layer links are kept apart from scope-local edges.
    """
    version: str = "v0"
    narrative_layer: SubGraph = msgspec.field(default_factory=SubGraph, name="narrativeLayer")
    structure_layer: StructureLayer = msgspec.field(default_factory=StructureLayer, name="structureLayer")
    specification_layer: SubGraph = msgspec.field(default_factory=SubGraph, name="specificationLayer")
    cross_layer_dependencies: Dict[str, CrossLayerDependency] = msgspec.field(
        default_factory=dict, name="crossLayerDependencies"
    )
    metadata: GraphMetadata = msgspec.field(default_factory=GraphMetadata)

    # === Scope access ===

    def sub_graph(self, key: SubGraphKey) -> SubGraph:
        if key is SubGraphKey.NARRATIVE:
            return self.narrative_layer
        if key is SubGraphKey.FEATURES:
            return self.structure_layer.feature_graph
        if key is SubGraphKey.FLOWS:
            return self.structure_layer.flow_graph
        return self.specification_layer

    def sub_graphs(self) -> Iterator[Tuple[SubGraphKey, SubGraph]]:
        """Yield every scope in validation order."""
        for key in SubGraphKey:
            yield key, self.sub_graph(key)

    @property
    def mappings(self) -> Dict[str, FlowToCapabilityMapping]:
        return self.structure_layer.mappings

    # === Node lookup ===

    def locate(self, node_id: str) -> Optional[SubGraphKey]:
        """Return the scope holding ``node_id``, or None."""
        for key, scope in self.sub_graphs():
            if node_id in scope.nodes:
                return key
        return None

    def get_node(self, node_id: str) -> Optional[Node]:
        key = self.locate(node_id)
        return self.sub_graph(key).nodes[node_id] if key is not None else None

    def layer_of(self, node_id: str) -> Optional[Layer]:
        key = self.locate(node_id)
        return key.layer if key is not None else None

    def has_node(self, node_id: str) -> bool:
        return self.locate(node_id) is not None

    def iter_nodes(self) -> Iterator[Node]:
        for _, scope in self.sub_graphs():
            yield from scope.nodes.values()

    def iter_edges(self) -> Iterator[Tuple[SubGraphKey, Dependency]]:
        for key, scope in self.sub_graphs():
            for edge in scope.edges.values():
                yield key, edge

    @property
    def node_count(self) -> int:
        return sum(len(scope.nodes) for _, scope in self.sub_graphs())

    @property
    def edge_count(self) -> int:
        return sum(len(scope.edges) for _, scope in self.sub_graphs())

    def copy(self) -> "LayeredGraph":
        """Deep, independent copy (used as the working copy for a commit)."""
        return _clone(self)


class FlatGraph(msgspec.Struct, kw_only=True):
    """Legacy snapshot: a single node map and a single edge map."""
    version: str = "v0"
    nodes: Dict[str, Node] = msgspec.field(default_factory=dict)
    edges: Dict[str, Dependency] = msgspec.field(default_factory=dict)
    metadata: GraphMetadata = msgspec.field(default_factory=GraphMetadata)

    def has_node(self, node_id: str) -> bool:
        return node_id in self.nodes

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    def copy(self) -> "FlatGraph":
        return _clone(self)


Graph = Union[LayeredGraph, FlatGraph]


class ProjectMetadata(msgspec.Struct, kw_only=True):
    project_id: str
    name: str = ""
    created_at: str = msgspec.field(default_factory=now_utc)
    last_modified: str = msgspec.field(default_factory=now_utc)
    current_version: str = "v0"
    # version tag -> id of the change request that produced it
    change_requests: Dict[str, str] = msgspec.field(default_factory=dict)


# =============================================================================
# ANALYZER RESULTS
# =============================================================================

def _empty_layer_buckets() -> Dict[Layer, List[str]]:
    return {layer: [] for layer in Layer}


class ImpactReport(msgspec.Struct, kw_only=True):
    """Everything reachable from a node, bucketed by layer and category."""
    target_node: str = msgspec.field(name="targetNode")
    target_layer: Layer = msgspec.field(name="targetLayer")
    affected_nodes: Dict[Layer, List[str]] = msgspec.field(
        default_factory=_empty_layer_buckets, name="affectedNodes"
    )
    impacted_flows: List[str] = msgspec.field(default_factory=list, name="impactedFlows")
    impacted_capabilities: List[str] = msgspec.field(default_factory=list, name="impactedCapabilities")
    impacted_requirements: List[str] = msgspec.field(default_factory=list, name="impactedRequirements")
    impacted_tasks: List[str] = msgspec.field(default_factory=list, name="impactedTasks")
    cross_layer_dependencies: List[CrossLayerDependency] = msgspec.field(
        default_factory=list, name="crossLayerDependencies"
    )

    @property
    def all_affected(self) -> List[str]:
        return [node_id for layer in Layer for node_id in self.affected_nodes.get(layer, [])]

    @property
    def total_affected(self) -> int:
        return sum(len(ids) for ids in self.affected_nodes.values())


class TraceReport(msgspec.Struct, kw_only=True):
    """Ordered chain connecting a narrative item and its implementation."""
    epic_id: Optional[str] = msgspec.field(default=None, name="epicId")
    user_stories: List[str] = msgspec.field(default_factory=list, name="userStories")
    capabilities: List[str] = msgspec.field(default_factory=list)
    flow_actions: List[str] = msgspec.field(default_factory=list, name="flowActions")
    requirements: List[str] = msgspec.field(default_factory=list)
    tasks: List[str] = msgspec.field(default_factory=list)
    path: List[str] = msgspec.field(default_factory=list)


# =============================================================================
# CHANGE REQUESTS
# =============================================================================

class NodeModification(msgspec.Struct, kw_only=True):
    """
    Field-level patch for one existing node.

    ``changes`` is keyed by attribute name or by persisted name
    (``parent_screen`` and ``parentScreen`` are both accepted).
    """
    node_id: str
    new_version: str
    old_version: Optional[str] = None
    changes: Dict[str, Any] = msgspec.field(default_factory=dict)


class ImpactMapEntry(msgspec.Struct, kw_only=True):
    node_id: str
    node_type: str
    impact_type: ImpactType = ImpactType.IMPACTS
    reason: str = ""


class ChangeRequestDraft(msgspec.Struct, kw_only=True):
    """The caller-supplied payload of a change request, before an id is allocated."""
    description: str = ""
    initiator: Initiator = Initiator.USER
    new_nodes: List[Node] = msgspec.field(default_factory=list)
    modified_nodes: List[NodeModification] = msgspec.field(default_factory=list)
    new_dependencies: List[Dependency] = msgspec.field(default_factory=list)
    new_mappings: List[FlowToCapabilityMapping] = msgspec.field(default_factory=list)
    new_cross_layer_dependencies: List[CrossLayerDependency] = msgspec.field(default_factory=list)
    impact_map: List[ImpactMapEntry] = msgspec.field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.new_nodes or self.modified_nodes or self.new_dependencies
                    or self.new_mappings or self.new_cross_layer_dependencies)


class ChangeRequest(msgspec.Struct, kw_only=True):
    """A stored, atomic batch of proposed mutations. pending -> applied, one way."""
    id: str
    project_id: str
    initiator: Initiator = Initiator.USER
    description: str = ""
    status: ChangeRequestStatus = ChangeRequestStatus.PENDING
    new_nodes: List[Node] = msgspec.field(default_factory=list)
    modified_nodes: List[NodeModification] = msgspec.field(default_factory=list)
    new_dependencies: List[Dependency] = msgspec.field(default_factory=list)
    new_mappings: List[FlowToCapabilityMapping] = msgspec.field(default_factory=list)
    new_cross_layer_dependencies: List[CrossLayerDependency] = msgspec.field(default_factory=list)
    impact_map: List[ImpactMapEntry] = msgspec.field(default_factory=list)
    impact_analysis: List[ImpactReport] = msgspec.field(default_factory=list, name="impactAnalysis")
    created_at: str = msgspec.field(default_factory=now_utc)
    applied_at: Optional[str] = None
    applied_version: Optional[str] = None

    @property
    def is_applied(self) -> bool:
        return self.status is ChangeRequestStatus.APPLIED

    @classmethod
    def from_draft(cls, draft: ChangeRequestDraft, *, id: str, project_id: str) -> "ChangeRequest":
        return cls(
            id=id,
            project_id=project_id,
            initiator=draft.initiator,
            description=draft.description,
            new_nodes=list(draft.new_nodes),
            modified_nodes=list(draft.modified_nodes),
            new_dependencies=list(draft.new_dependencies),
            new_mappings=list(draft.new_mappings),
            new_cross_layer_dependencies=list(draft.new_cross_layer_dependencies),
            impact_map=list(draft.impact_map),
        )


# =============================================================================
# SERIALIZATION
# =============================================================================

_json_encoder = msgspec.json.Encoder()

D = TypeVar("D")


def _tag_node(raw: Any) -> Any:
    """Fill in the ``kind`` tag from the id prefix when a document omits it."""
    if isinstance(raw, dict) and "kind" not in raw:
        kind = kind_for_id(str(raw.get("id", "")))
        if kind is not None:
            raw["kind"] = kind.value
    return raw


def _tag_node_collection(container: Any) -> None:
    if isinstance(container, dict):
        for raw in container.values():
            _tag_node(raw)
    elif isinstance(container, list):
        for raw in container:
            _tag_node(raw)


def _tag_subgraph(raw: Any) -> None:
    if isinstance(raw, dict):
        _tag_node_collection(raw.get("nodes"))


def _prepare(raw: Any, type: Any) -> Any:
    """Walk the node collections a document of ``type`` can hold and tag them."""
    if not isinstance(raw, dict):
        if type is Node:
            return _tag_node(raw)
        return raw
    if type is SubGraph or type is FlatGraph:
        _tag_subgraph(raw)
    elif type is StructureLayer:
        _tag_subgraph(raw.get("featureGraph"))
        _tag_subgraph(raw.get("flowGraph"))
    elif type is LayeredGraph:
        _tag_subgraph(raw.get("narrativeLayer"))
        _prepare(raw.get("structureLayer"), StructureLayer)
        _tag_subgraph(raw.get("specificationLayer"))
    elif type is ChangeRequest or type is ChangeRequestDraft:
        _tag_node_collection(raw.get("new_nodes"))
    elif type is Node:
        _tag_node(raw)
    return raw


def to_builtins(obj: Any) -> Any:
    return msgspec.to_builtins(obj)


def convert(raw: Any, type: Type[D]) -> D:
    """
    Convert decoded JSON builtins into ``type``, tagging untagged nodes first.

    Raises:
        msgspec.ValidationError: if the data does not fit ``type``
    """
    return msgspec.convert(_prepare(raw, type), type)


def encode_document(obj: Any) -> bytes:
    """Encode to indented JSON (documents are meant to be diffable)."""
    return msgspec.json.format(_json_encoder.encode(obj), indent=2)


def decode_document(data: bytes, type: Type[D]) -> D:
    """
    Decode a JSON document into ``type``.

    Raises:
        msgspec.DecodeError: malformed JSON
        msgspec.ValidationError: well-formed JSON of the wrong shape
    """
    return convert(msgspec.json.decode(data), type)


def node_from_builtins(raw: Dict[str, Any]) -> Node:
    """Build a node from a plain dict, resolving its variant from the id prefix."""
    return convert(dict(raw), Node)
