"""
STRATA ONTOLOGY - The Dictionary of the Plan

If schemas.py is the Grammar (how plan documents are structured),
ontology.py is the Dictionary (the words a plan may use).

This module defines:
- Layer: the three fixed strata (Narrative -> Structure -> Specification)
- SubGraphKey: the four acyclic node/edge scopes the layers are split into
- NodeKind: every concrete node variant, with its id prefix and home scope
- Edge, cross-layer, change-request and category vocabularies

Key Principle: the id prefix IS the schema.
A node's kind is resolved from the token before the first "-" of its id
("epic-checkout" -> NodeKind.EPIC) exactly once, and every other decision
(which layer, which sub-graph, which document it is persisted in) is read
off the NodeKind, never re-derived from raw strings.
"""
from enum import Enum
from typing import Dict, Optional, Tuple


# =============================================================================
# LAYERS (The Three Strata)
# =============================================================================

class Layer(str, Enum):
    """The three ordered strata of a plan: why -> what -> how."""
    NARRATIVE = "narrative"
    STRUCTURE = "structure"
    SPECIFICATION = "specification"

    @property
    def rank(self) -> int:
        """Position in the fixed total order (Narrative = 0)."""
        return _LAYER_ORDER.index(self)

    def precedes(self, other: "Layer") -> bool:
        return self.rank < other.rank


_LAYER_ORDER: Tuple[Layer, ...] = (Layer.NARRATIVE, Layer.STRUCTURE, Layer.SPECIFICATION)


def ordered_layers() -> Tuple[Layer, ...]:
    """All layers in their total order."""
    return _LAYER_ORDER


class SubGraphKey(str, Enum):
    """
    The four acyclic scopes a layered graph is partitioned into.

    The value doubles as the persisted document name. Declaration order is
    the validation order.
    """
    NARRATIVE = "narrative"
    FEATURES = "structure-features"
    FLOWS = "structure-flows"
    SPECIFICATION = "specification"

    @property
    def layer(self) -> Layer:
        return _SUBGRAPH_LAYERS[self]

    @property
    def document(self) -> str:
        return f"{self.value}.json"

    @property
    def label(self) -> str:
        """Human-readable scope name used in diagnostics."""
        return _SUBGRAPH_LABELS[self]


_SUBGRAPH_LAYERS: Dict[SubGraphKey, Layer] = {
    SubGraphKey.NARRATIVE: Layer.NARRATIVE,
    SubGraphKey.FEATURES: Layer.STRUCTURE,
    SubGraphKey.FLOWS: Layer.STRUCTURE,
    SubGraphKey.SPECIFICATION: Layer.SPECIFICATION,
}

_SUBGRAPH_LABELS: Dict[SubGraphKey, str] = {
    SubGraphKey.NARRATIVE: "narrative",
    SubGraphKey.FEATURES: "structure.features",
    SubGraphKey.FLOWS: "structure.flows",
    SubGraphKey.SPECIFICATION: "specification",
}


# =============================================================================
# NODE KINDS (Id Prefix -> Variant)
# =============================================================================

class NodeKind(str, Enum):
    """
    Concrete node variants.

    The value is the tag written to the ``kind`` field of persisted nodes.
    Legacy kinds belong to the flat (pre-layered) schema and have no layer.
    """
    # Narrative
    EPIC = "epic"
    STORY = "story"
    # Structure
    CAPABILITY = "capability"
    SCREEN = "screen"
    ACTION = "action"
    # Specification
    REQUIREMENT = "requirement"
    TASK = "task"
    # Legacy flat schema
    INTENT = "intent"
    SUBINTENT = "subintent"
    FEATURE = "feature"
    UXSPEC = "uxspec"

    @property
    def prefix(self) -> str:
        """The id prefix, including the trailing dash."""
        return _KIND_PREFIXES[self] + "-"

    @property
    def sub_graph(self) -> Optional[SubGraphKey]:
        """Home scope in a layered graph, or None for legacy-only kinds."""
        return _KIND_SUBGRAPHS.get(self)

    @property
    def layer(self) -> Optional[Layer]:
        scope = self.sub_graph
        return scope.layer if scope is not None else None

    @property
    def is_legacy(self) -> bool:
        return self.sub_graph is None

    def make_id(self, suffix: str) -> str:
        return f"{self.prefix}{suffix}"


_KIND_PREFIXES: Dict[NodeKind, str] = {
    NodeKind.EPIC: "epic",
    NodeKind.STORY: "story",
    NodeKind.CAPABILITY: "cap",
    NodeKind.SCREEN: "screen",
    NodeKind.ACTION: "action",
    NodeKind.REQUIREMENT: "req",
    NodeKind.TASK: "task",
    NodeKind.INTENT: "intent",
    NodeKind.SUBINTENT: "subintent",
    NodeKind.FEATURE: "feature",
    NodeKind.UXSPEC: "uxspec",
}

_KIND_SUBGRAPHS: Dict[NodeKind, SubGraphKey] = {
    NodeKind.EPIC: SubGraphKey.NARRATIVE,
    NodeKind.STORY: SubGraphKey.NARRATIVE,
    NodeKind.CAPABILITY: SubGraphKey.FEATURES,
    NodeKind.SCREEN: SubGraphKey.FLOWS,
    NodeKind.ACTION: SubGraphKey.FLOWS,
    NodeKind.REQUIREMENT: SubGraphKey.SPECIFICATION,
    NodeKind.TASK: SubGraphKey.SPECIFICATION,
}

_PREFIX_INDEX: Dict[str, NodeKind] = {token: kind for kind, token in _KIND_PREFIXES.items()}


def kind_for_id(node_id: str) -> Optional[NodeKind]:
    """
    Resolve a node id to its kind by the exact token before the first dash.

    Matching the whole token (not ``startswith``) keeps ``subintent-x`` from
    ever being read as an ``intent-`` id.

    Returns:
        The NodeKind, or None if the id has no recognised prefix.
    """
    token, sep, _ = node_id.partition("-")
    if not sep:
        return None
    return _PREFIX_INDEX.get(token)


def layer_for_id(node_id: str) -> Optional[Layer]:
    kind = kind_for_id(node_id)
    return kind.layer if kind is not None else None


# =============================================================================
# EDGES
# =============================================================================

class DependencyType(str, Enum):
    """Kinds of directed, scope-local dependency edges."""
    REQUIRES = "requires"
    BLOCKS = "blocks"
    IMPACTS = "impacts"
    SUPERSEDES = "supersedes"


class CrossLayerDependencyType(str, Enum):
    """Kinds of links between nodes in different layers."""
    NARRATIVE_TO_STRUCTURE = "narrative_to_structure"
    STRUCTURE_TO_SPEC = "structure_to_spec"
    SPEC_TO_NARRATIVE = "spec_to_narrative"

    @property
    def layer_pair(self) -> Tuple[Layer, Layer]:
        """The (from, to) layers this link type connects."""
        return _CROSS_LAYER_PAIRS[self]

    @classmethod
    def for_layers(cls, from_layer: Layer, to_layer: Layer) -> Optional["CrossLayerDependencyType"]:
        for dep_type, pair in _CROSS_LAYER_PAIRS.items():
            if pair == (from_layer, to_layer):
                return dep_type
        return None


_CROSS_LAYER_PAIRS: Dict[CrossLayerDependencyType, Tuple[Layer, Layer]] = {
    CrossLayerDependencyType.NARRATIVE_TO_STRUCTURE: (Layer.NARRATIVE, Layer.STRUCTURE),
    CrossLayerDependencyType.STRUCTURE_TO_SPEC: (Layer.STRUCTURE, Layer.SPECIFICATION),
    CrossLayerDependencyType.SPEC_TO_NARRATIVE: (Layer.SPECIFICATION, Layer.NARRATIVE),
}


# =============================================================================
# CHANGE REQUESTS & PROJECTS
# =============================================================================

class ChangeRequestStatus(str, Enum):
    """One-way lifecycle: pending -> applied."""
    PENDING = "pending"
    APPLIED = "applied"


class Initiator(str, Enum):
    USER = "user"
    AI = "ai"


class ImpactType(str, Enum):
    ALIGNED = "aligned"
    IMPACTS = "impacts"
    CONFLICTS = "conflicts"


class GraphSchema(str, Enum):
    """On-disk schema of a project."""
    LAYERED = "layered"
    FLAT = "flat"


# =============================================================================
# NODE CATEGORIES
# =============================================================================

class TriggerType(str, Enum):
    """Who fires a flow action."""
    USER = "user"
    SYSTEM = "system"


class RequirementCategory(str, Enum):
    PERFORMANCE = "performance"
    SECURITY = "security"
    SCALABILITY = "scalability"
    RELIABILITY = "reliability"
    OTHER = "other"


class TaskCategory(str, Enum):
    BACKEND = "backend"
    FRONTEND = "frontend"
    TEST = "test"
    INFRA = "infra"
