"""
Plan vocabulary: ontology enums and the schema documents built on them.

Tests:
1. Id prefix resolution (exact token before the first dash)
2. Layer order and cross-layer link typing
3. Node variants: tagged encoding, camelCase wire names, legacy untagged input
4. LayeredGraph lookup helpers and deep copies
"""
import unittest

import msgspec
import pytest

from core.ontology import (
    CrossLayerDependencyType,
    Layer,
    NodeKind,
    SubGraphKey,
    kind_for_id,
    layer_for_id,
    ordered_layers,
)
from core.schemas import (
    ChangeRequest,
    ChangeRequestDraft,
    CrossLayerDependency,
    Epic,
    FlowAction,
    LayeredGraph,
    SubGraph,
    Task,
    TechnicalRequirement,
    UserStory,
    decode_document,
    encode_document,
    generate_id,
    node_from_builtins,
)


# =============================================================================
# ONTOLOGY
# =============================================================================

class TestIdPrefixes(unittest.TestCase):
    """kind_for_id resolves the token before the first dash."""

    def test_layered_prefixes(self):
        """Every layered kind resolves from its prefix."""
        self.assertIs(kind_for_id("epic-1"), NodeKind.EPIC)
        self.assertIs(kind_for_id("story-1"), NodeKind.STORY)
        self.assertIs(kind_for_id("cap-1"), NodeKind.CAPABILITY)
        self.assertIs(kind_for_id("screen-1"), NodeKind.SCREEN)
        self.assertIs(kind_for_id("action-1"), NodeKind.ACTION)
        self.assertIs(kind_for_id("req-1"), NodeKind.REQUIREMENT)
        self.assertIs(kind_for_id("task-1"), NodeKind.TASK)

    def test_subintent_is_not_intent(self):
        """The whole token is matched, not a prefix of it."""
        self.assertIs(kind_for_id("subintent-1"), NodeKind.SUBINTENT)
        self.assertIs(kind_for_id("intent-1"), NodeKind.INTENT)

    def test_unknown_or_dashless_ids(self):
        """Unrecognised tokens and ids without a dash resolve to None."""
        self.assertIsNone(kind_for_id("widget-1"))
        self.assertIsNone(kind_for_id("epic"))
        self.assertIsNone(kind_for_id(""))

    def test_layer_for_id(self):
        self.assertIs(layer_for_id("cap-x"), Layer.STRUCTURE)
        self.assertIsNone(layer_for_id("feature-x"))

    def test_make_id_round_trips(self):
        node_id = NodeKind.REQUIREMENT.make_id("latency")
        self.assertEqual(node_id, "req-latency")
        self.assertIs(kind_for_id(node_id), NodeKind.REQUIREMENT)

    def test_generated_ids_carry_prefix(self):
        self.assertIs(kind_for_id(generate_id("cap")), NodeKind.CAPABILITY)


class TestLayers(unittest.TestCase):

    def test_total_order(self):
        """Narrative precedes Structure precedes Specification."""
        self.assertEqual(ordered_layers(), (Layer.NARRATIVE, Layer.STRUCTURE, Layer.SPECIFICATION))
        self.assertTrue(Layer.NARRATIVE.precedes(Layer.SPECIFICATION))
        self.assertFalse(Layer.SPECIFICATION.precedes(Layer.STRUCTURE))

    def test_sub_graph_homes(self):
        """Kinds live in the scope of their layer; legacy kinds have none."""
        self.assertIs(NodeKind.ACTION.sub_graph, SubGraphKey.FLOWS)
        self.assertIs(NodeKind.CAPABILITY.sub_graph, SubGraphKey.FEATURES)
        self.assertIs(SubGraphKey.FLOWS.layer, Layer.STRUCTURE)
        self.assertTrue(NodeKind.FEATURE.is_legacy)
        self.assertIsNone(NodeKind.UXSPEC.layer)

    def test_labels_and_documents(self):
        self.assertEqual(SubGraphKey.FEATURES.label, "structure.features")
        self.assertEqual(SubGraphKey.FLOWS.document, "structure-flows.json")

    def test_cross_layer_types_follow_layer_pairs(self):
        self.assertIs(
            CrossLayerDependencyType.for_layers(Layer.NARRATIVE, Layer.STRUCTURE),
            CrossLayerDependencyType.NARRATIVE_TO_STRUCTURE,
        )
        self.assertIs(
            CrossLayerDependencyType.for_layers(Layer.SPECIFICATION, Layer.NARRATIVE),
            CrossLayerDependencyType.SPEC_TO_NARRATIVE,
        )
        self.assertIsNone(CrossLayerDependencyType.for_layers(Layer.STRUCTURE, Layer.NARRATIVE))


# =============================================================================
# SCHEMAS
# =============================================================================

class TestNodeEncoding(unittest.TestCase):

    def test_kind_tag_and_wire_names(self):
        """Nodes encode with a kind tag and camelCase field names."""
        action = FlowAction(id="action-pay", parent_screen="screen-cart", next_screen="screen-done")
        raw = msgspec.to_builtins(action)
        self.assertEqual(raw["kind"], "action")
        self.assertEqual(raw["parentScreen"], "screen-cart")
        self.assertEqual(raw["nextScreen"], "screen-done")
        self.assertEqual(raw["triggerType"], "user")
        self.assertNotIn("parent_screen", raw)

    def test_category_is_persisted_as_type(self):
        raw = msgspec.to_builtins(TechnicalRequirement(id="req-1"))
        self.assertEqual(raw["type"], "other")

    def test_untagged_node_resolves_from_prefix(self):
        """Documents written without a kind tag decode by id prefix."""
        node = node_from_builtins({"id": "story-1", "narrative": "As a user", "parentEpic": "epic-1"})
        self.assertIsInstance(node, UserStory)
        self.assertEqual(node.parent_epic, "epic-1")

    def test_untagged_nodes_inside_documents(self):
        raw = b'{"nodes": {"task-1": {"id": "task-1", "description": "build"}}, "edges": {}}'
        scope = decode_document(raw, SubGraph)
        self.assertIsInstance(scope.nodes["task-1"], Task)

    def test_change_request_round_trip(self):
        """Nodes of mixed kinds keep their variant through a document."""
        draft = ChangeRequestDraft(new_nodes=[Epic(id="epic-1", name="Shop"), Task(id="task-1")])
        cr = ChangeRequest.from_draft(draft, id="CR-000", project_id="p")
        decoded = decode_document(encode_document(cr), ChangeRequest)
        self.assertIsInstance(decoded.new_nodes[0], Epic)
        self.assertIsInstance(decoded.new_nodes[1], Task)
        self.assertFalse(decoded.is_applied)


def test_cross_layer_dependency_type_is_derived():
    """create() picks the type implied by the two layers."""
    link = CrossLayerDependency.create("cap-1", "req-1", Layer.STRUCTURE, Layer.SPECIFICATION)
    assert link.type is CrossLayerDependencyType.STRUCTURE_TO_SPEC
    assert link.id.startswith("cross-")


def test_cross_layer_dependency_rejects_unlinked_pairs():
    with pytest.raises(ValueError):
        CrossLayerDependency.create("req-1", "cap-1", Layer.SPECIFICATION, Layer.STRUCTURE)


def test_draft_is_empty():
    assert ChangeRequestDraft().is_empty
    assert not ChangeRequestDraft(new_nodes=[Task(id="task-1")]).is_empty


# =============================================================================
# LAYERED GRAPH
# =============================================================================

def test_layered_graph_lookup(plan):
    """locate / get_node / layer_of resolve across scopes."""
    graph = plan.graph(nodes=[plan.story("story-1"), plan.screen("screen-1"), plan.task("task-1")])
    assert graph.locate("screen-1") is SubGraphKey.FLOWS
    assert graph.layer_of("task-1") is Layer.SPECIFICATION
    assert graph.get_node("story-1").id == "story-1"
    assert graph.get_node("cap-missing") is None
    assert graph.node_count == 3
    assert [node.id for node in graph.iter_nodes()] == ["story-1", "screen-1", "task-1"]


def test_layered_graph_copy_is_independent(plan):
    graph = plan.graph(nodes=[plan.task("task-1")])
    clone = graph.copy()
    clone.specification_layer.nodes["task-2"] = plan.task("task-2")
    clone.specification_layer.nodes["task-1"].description = "changed"
    assert graph.node_count == 1
    assert graph.get_node("task-1").description == "task-1"


def test_empty_layered_graph_document():
    """An empty snapshot encodes every scope with its established names."""
    raw = msgspec.json.decode(encode_document(LayeredGraph()))
    assert raw["version"] == "v0"
    assert set(raw["structureLayer"]) == {"featureGraph", "flowGraph", "mappings"}
    assert raw["crossLayerDependencies"] == {}
