"""
Planning-service boundary: name-based proposals resolved into id-linked drafts.
"""
from core.changeset import prepare_layered
from core.ontology import CrossLayerDependencyType, Initiator, NodeKind, kind_for_id
from core.proposal import (
    LayeredProposal,
    ProposalResolver,
    ProposedAction,
    ProposedCapability,
    ProposedEpic,
    ProposedRequirement,
    ProposedScreen,
    ProposedStory,
    ProposedTask,
    plan_change_request,
)
from core.schemas import ChangeRequest, LayeredGraph


def _proposal():
    return LayeredProposal(
        epics=[ProposedEpic(name="Checkout", stories=[
            ProposedStory(narrative="As a shopper I pay", capability_names=["Payments", "unknown"]),
        ])],
        capabilities=[ProposedCapability(name="Payments"), ProposedCapability(name="Cart")],
        screens=[ProposedScreen(name="Cart"), ProposedScreen(name="Receipt")],
        actions=[
            ProposedAction(name="Pay", screen_name="cart", next_screen_name="Receipt",
                           capability_names=["payments", "Cart"]),
            ProposedAction(name="Lost", screen_name="Nowhere"),
        ],
        requirements=[ProposedRequirement(
            specification="p99 under 200ms", capability_names=["Payments"],
            tasks=[ProposedTask(description="Add payment endpoint")],
        )],
    )


def _by_kind(draft, kind):
    return [node for node in draft.new_nodes if node.KIND is kind]


def test_ids_carry_their_prefix():
    draft = ProposalResolver().resolve(_proposal(), description="checkout")
    assert draft.initiator is Initiator.AI
    assert draft.description == "checkout"
    for node in draft.new_nodes:
        assert kind_for_id(node.id) is node.KIND


def test_story_links_capabilities_by_name():
    draft = ProposalResolver().resolve(_proposal())
    (epic,) = _by_kind(draft, NodeKind.EPIC)
    (story,) = _by_kind(draft, NodeKind.STORY)
    payments = next(c for c in _by_kind(draft, NodeKind.CAPABILITY) if c.name == "Payments")
    assert epic.user_stories == [story.id]
    assert story.parent_epic == epic.id
    assert story.linked_capabilities == [payments.id]
    assert story.id in payments.linked_user_stories
    links = [l for l in draft.new_cross_layer_dependencies
             if l.type is CrossLayerDependencyType.NARRATIVE_TO_STRUCTURE]
    assert [(l.from_node_id, l.to_node_id) for l in links] == [(story.id, payments.id)]


def test_actions_resolve_screens_and_capabilities():
    draft = ProposalResolver().resolve(_proposal())
    cart, receipt = _by_kind(draft, NodeKind.SCREEN)
    (pay,) = _by_kind(draft, NodeKind.ACTION)
    assert pay.name == "Pay"
    assert pay.parent_screen == cart.id
    assert pay.next_screen == receipt.id
    assert cart.actions == [pay.id]
    assert receipt.entry_transitions == [cart.id]
    assert len(pay.linked_capabilities) == 2
    (mapping,) = draft.new_mappings
    assert mapping.flow_action_id == pay.id
    assert mapping.capability_ids == pay.linked_capabilities
    assert mapping.rationale


def test_requirements_create_tasks():
    draft = ProposalResolver().resolve(_proposal())
    (requirement,) = _by_kind(draft, NodeKind.REQUIREMENT)
    (task,) = _by_kind(draft, NodeKind.TASK)
    assert requirement.linked_tasks == [task.id]
    assert task.description == "Add payment endpoint"
    spec_links = [l for l in draft.new_cross_layer_dependencies
                  if l.type is CrossLayerDependencyType.STRUCTURE_TO_SPEC]
    assert [l.to_node_id for l in spec_links] == [requirement.id]


def test_resolved_draft_applies_cleanly():
    """Everything the resolver emits passes commit validation."""
    draft = ProposalResolver().resolve(_proposal())
    request = ChangeRequest.from_draft(draft, id="CR-000", project_id="p")
    prepared = prepare_layered(LayeredGraph(), request)
    assert prepared.version == "v1"
    assert prepared.graph.node_count == len(draft.new_nodes)


class _StubPlanner:
    def __init__(self):
        self.calls = []

    def propose(self, intent, prior=None):
        self.calls.append((intent, prior))
        return LayeredProposal(capabilities=[ProposedCapability(name="Search")])


def test_plan_change_request_uses_service():
    planner = _StubPlanner()
    draft = plan_change_request(planner, "Let users search")
    assert planner.calls == [("Let users search", None)]
    assert draft.description == "Let users search"
    assert [node.name for node in draft.new_nodes] == ["Search"]
