"""
Flow-to-capability mapping integrity and mapping queries.
"""
import pytest

from core.mappings import (
    find_orphaned_mappings,
    mappings_for_action,
    mappings_for_capability,
    mappings_for_screen,
    validate_mappings,
    would_create_valid_mapping,
)


@pytest.fixture
def flows(plan):
    """Two screens, three actions, two capabilities, two mappings."""
    return plan.graph(
        nodes=[
            plan.capability("cap-cart"),
            plan.capability("cap-pay"),
            plan.screen("screen-cart", actions=["action-add", "action-remove"]),
            plan.screen("screen-pay", actions=["action-pay"]),
            plan.action("action-add", "screen-cart"),
            plan.action("action-remove", "screen-cart"),
            plan.action("action-pay", "screen-pay"),
        ],
        mappings=[
            plan.mapping("action-add", ["cap-cart"]),
            plan.mapping("action-pay", ["cap-pay", "cap-cart"]),
        ],
    )


# =============================================================================
# VALIDATION
# =============================================================================

def test_valid_mappings_warn_about_unmapped_actions(flows):
    result = validate_mappings(flows)
    assert result.valid
    assert result.errors == []
    assert result.warnings == ['Flow action "action-remove" has no mappings']


def test_missing_flow_action_is_reported_once(flows, plan):
    """Capabilities of a mapping with a missing action are not inspected."""
    flows.mappings["mapping-ghost"] = plan.mapping("action-ghost", ["cap-ghost"], id="mapping-ghost")
    result = validate_mappings(flows)
    assert not result.valid
    assert result.errors == ['Mapping "mapping-ghost" references non-existent flow action "action-ghost"']


def test_missing_capability(flows, plan):
    flows.mappings["mapping-x"] = plan.mapping("action-remove", ["cap-cart", "cap-gone"], id="mapping-x")
    result = validate_mappings(flows)
    assert result.errors == ['Mapping "mapping-x" references non-existent capability "cap-gone"']


def test_soft_warnings(flows, plan):
    """Empty capability lists and blank rationales are warnings, not errors."""
    flows.mappings["mapping-x"] = plan.mapping("action-remove", [], rationale="  ", id="mapping-x")
    result = validate_mappings(flows)
    assert result.valid
    assert 'Mapping "mapping-x" for flow action "action-remove" has no capabilities' in result.warnings
    assert 'Mapping "mapping-x" has no rationale' in result.warnings
    assert not any("has no mappings" in warning for warning in result.warnings)


def test_capability_id_pointing_at_non_capability(flows, plan):
    """A capability reference must resolve to a capability node."""
    flows.mappings["mapping-x"] = plan.mapping("action-remove", ["screen-cart"], id="mapping-x")
    assert not validate_mappings(flows).valid


def test_would_create_valid_mapping(flows):
    assert would_create_valid_mapping(flows, "action-remove", ["cap-pay"]).valid
    result = would_create_valid_mapping(flows, "action-nope", ["cap-nope"])
    assert len(result.errors) == 2
    assert "mapping-action-remove" not in flows.mappings


def test_find_orphaned_mappings(flows):
    del flows.structure_layer.feature_graph.nodes["cap-pay"]
    assert [m.id for m in find_orphaned_mappings(flows)] == ["mapping-action-pay"]


# =============================================================================
# QUERIES
# =============================================================================

def test_mapping_queries(flows):
    assert [m.id for m in mappings_for_action(flows, "action-add")] == ["mapping-action-add"]
    assert [m.id for m in mappings_for_capability(flows, "cap-cart")] == ["mapping-action-add", "mapping-action-pay"]
    assert mappings_for_capability(flows, "cap-none") == []
    assert [m.id for m in mappings_for_screen(flows, "screen-pay")] == ["mapping-action-pay"]
    assert [m.id for m in mappings_for_screen(flows, "screen-cart")] == ["mapping-action-add"]
