"""
PLAN LIFECYCLE - End-to-end behaviour of a versioned layered plan

Scenarios:
1. A new project is an empty v0
2. A change that would close a cycle is rejected and nothing moves
3. A flow action pointing at a missing screen is rejected with a precise message
4. Cross-layer impact lands in the right layer buckets
5. Applying the same change request twice fails

Properties checked across a scripted history:
- versions grow by exactly one per successful apply, never on failure
- every committed snapshot passes structural and mapping validation
- impact analysis is symmetric for scope edges
- a full chain traced forward and backward meets at the same epic
"""
import msgspec
import pytest

from core.graph_db import AlreadyAppliedError, IllegalStateTransition, SchemaMismatchError, ValidationFailure
from core.graph_invariants import StructuralValidator
from core.mappings import validate_mappings
from core.ontology import DependencyType, GraphSchema, Layer
from core.schemas import ChangeRequestDraft, Dependency, Feature, ProductIntent, SubIntent
from core.versioning import parse_version


def _apply(store, draft):
    return store.apply_change_request(store.create_change_request(draft).id)


# =============================================================================
# SCENARIOS
# =============================================================================

def test_new_project_is_empty_v0(registry):
    store = registry.create_project(name="Empty")
    graph = store.load_current()
    assert graph.version == "v0"
    assert graph.node_count == 0
    assert graph.edge_count == 0
    assert store.list_change_requests() == []


def test_cycle_is_rejected_and_nothing_moves(store, plan):
    _apply(store, plan.draft(
        nodes=[plan.task("task-1"), plan.task("task-2")],
        edges=[plan.dep("task-1", "task-2")],
    ))
    before = msgspec.to_builtins(store.load_current())
    cr = store.create_change_request(plan.draft(edges=[plan.dep("task-2", "task-1")]))

    with pytest.raises(ValidationFailure) as ctx:
        store.apply_change_request(cr.id)

    assert ctx.value.cycle == ["task-1", "task-2", "task-1"]
    assert ctx.value.layer == "specification"
    after = store.load_current()
    assert msgspec.to_builtins(after) == before
    assert len(after.specification_layer.edges) == 1
    assert store.load_metadata().current_version == "v1"
    assert not store.load_change_request(cr.id).is_applied


def test_dangling_parent_screen(store, plan):
    cr = store.create_change_request(plan.draft(nodes=[plan.action("action-orphan", "screen-nowhere")]))
    with pytest.raises(ValidationFailure) as ctx:
        store.apply_change_request(cr.id)
    message = str(ctx.value)
    assert "action-orphan" in message
    assert "screen-nowhere" in message
    assert ctx.value.layer == "structure.flows"


def test_cross_layer_impact_buckets(store, plan):
    _apply(store, plan.draft(
        nodes=[
            plan.story("story-A", capabilities=["cap-B"]),
            plan.capability("cap-B", stories=["story-A"], requirements=["req-C"]),
            plan.requirement("req-C", capabilities=["cap-B"]),
        ],
        cross=[plan.cross("story-A", "cap-B"), plan.cross("cap-B", "req-C")],
    ))
    report = store.analyzer().analyze_impact("story-A")
    assert "cap-B" in report.affected_nodes[Layer.STRUCTURE]
    assert "req-C" in report.affected_nodes[Layer.SPECIFICATION]


def test_apply_is_not_repeatable(store, plan):
    cr = store.create_change_request(plan.full_chain())
    store.apply_change_request(cr.id)
    with pytest.raises(AlreadyAppliedError) as ctx:
        store.apply_change_request(cr.id)
    assert isinstance(ctx.value, IllegalStateTransition)
    assert store.list_versions() == ["v0", "v1"]


# =============================================================================
# PROPERTIES OVER A HISTORY
# =============================================================================

def _history(plan):
    """A mix of valid and invalid change requests, in order."""
    return [
        (True, plan.full_chain()),
        (False, plan.draft(cross=[plan.cross("req-latency", "story-checkout")])),
        (True, plan.draft(
            nodes=[plan.task("task-docs"), plan.task("task-ui")],
            edges=[plan.dep("task-api", "task-docs"), plan.dep("task-docs", "task-ui")],
        )),
        (False, plan.draft(edges=[plan.dep("task-ui", "task-api")])),
        (False, plan.draft(mappings=[plan.mapping("action-add", ["cap-ghost"], id="mapping-ghost")])),
        (True, plan.draft(modifications=[plan.modify("cap-cart", "1.1.0", description="Cart")])),
        (False, plan.draft(modifications=[plan.modify("cap-cart", "1.0.5", description="older")])),
        (True, plan.draft(
            nodes=[plan.task("task-api-v2")],
            edges=[plan.dep("task-api", "task-api-v2", type=DependencyType.SUPERSEDES)],
        )),
        (False, plan.draft(nodes=[plan.task("task-late")], edges=[plan.dep("task-late", "task-api")])),
    ]


def test_history_properties(store, plan):
    expected_version = 0
    for should_apply, draft in _history(plan):
        cr = store.create_change_request(draft)
        if should_apply:
            store.apply_change_request(cr.id)
            expected_version += 1
        else:
            with pytest.raises(ValidationFailure):
                store.apply_change_request(cr.id)

        metadata = store.load_metadata()
        assert parse_version(metadata.current_version) == expected_version
        graph = store.load_current()
        assert graph.version == metadata.current_version
        assert StructuralValidator.validate(graph).valid
        assert validate_mappings(graph).valid

    assert store.list_versions() == [f"v{n}" for n in range(expected_version + 1)]
    for tag in store.list_versions():
        assert StructuralValidator.validate(store.load_version(tag)).valid


def test_impact_symmetry_on_scope_edges(store, plan):
    for _, draft in _history(plan)[:3]:
        try:
            _apply(store, draft)
        except ValidationFailure:
            pass
    graph = store.load_current()
    analyzer = store.analyzer()
    for _, edge in graph.iter_edges():
        assert edge.to_id in analyzer.get_downstream_impact(edge.from_id)
        assert edge.from_id in analyzer.get_upstream_impact(edge.to_id)


def test_trace_round_trip(store, plan):
    _apply(store, plan.full_chain())
    analyzer = store.analyzer()
    forward = analyzer.trace_narrative_to_implementation("epic-shop")
    for task_id in forward.tasks:
        backward = analyzer.trace_implementation_to_narrative(task_id)
        assert backward.epic_id == "epic-shop"
        assert set(backward.capabilities) <= set(forward.capabilities)


def test_old_versions_stay_readable(store, plan):
    _apply(store, plan.full_chain())
    _apply(store, plan.draft(modifications=[plan.modify("epic-shop", "2.0.0", name="Shop v2")]))
    assert store.load_version("v1").get_node("epic-shop").name == "Shop"
    assert store.load_version("v2").get_node("epic-shop").name == "Shop v2"
    assert store.load_current().get_node("epic-shop").version == "2.0.0"


# =============================================================================
# LEGACY FLAT PROJECTS
# =============================================================================

def test_flat_project_history(registry, plan):
    store = registry.create_project(project_id="legacy", schema=GraphSchema.FLAT)
    _apply(store, ChangeRequestDraft(new_nodes=[
        ProductIntent(id="intent-1", name="Old shop", linked_sub_intents=["subintent-1"]),
        SubIntent(id="subintent-1", parent_intent="intent-1", linked_features=["feature-1"]),
        Feature(id="feature-1", linked_intent="subintent-1"),
    ], new_dependencies=[Dependency(id="dep-1", from_id="feature-1", to_id="subintent-1")]))

    cr = store.create_change_request(ChangeRequestDraft(
        new_dependencies=[Dependency(id="dep-2", from_id="subintent-1", to_id="feature-1")],
    ))
    with pytest.raises(ValidationFailure):
        store.apply_change_request(cr.id)

    assert store.load_current().version == "v1"
    assert store.load_metadata().name == "Old shop"
    with pytest.raises(SchemaMismatchError):
        store.analyzer()
