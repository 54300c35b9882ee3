"""
Version tags and validated node modifications.
"""
import unittest

import pytest

from core.graph_db import ValidationFailure
from core.ontology import RequirementCategory
from core.schemas import FlowAction, NodeModification, TechnicalRequirement
from core.versioning import (
    apply_modification,
    compare_node_versions,
    compare_versions,
    format_version,
    increment_version,
    is_valid_version,
    node_version_key,
    parse_version,
)


# =============================================================================
# SNAPSHOT TAGS
# =============================================================================

class TestSnapshotTags(unittest.TestCase):

    def test_parse_and_format(self):
        self.assertEqual(parse_version("v0"), 0)
        self.assertEqual(parse_version("v12"), 12)
        self.assertEqual(format_version(3), "v3")

    def test_invalid_tags(self):
        for tag in ("3", "v", "v1.0", "V1", "v-1", ""):
            self.assertFalse(is_valid_version(tag), tag)
        with self.assertRaises(ValueError):
            parse_version("version1")
        with self.assertRaises(ValueError):
            format_version(-1)

    def test_increment(self):
        self.assertEqual(increment_version("v0"), "v1")
        self.assertEqual(increment_version("v9"), "v10")

    def test_compare_is_numeric(self):
        """v10 is newer than v9 even though it sorts lower as text."""
        self.assertEqual(compare_versions("v10", "v9"), 1)
        self.assertEqual(compare_versions("v2", "v2"), 0)
        self.assertEqual(compare_versions("v1", "v2"), -1)


class TestNodeVersions(unittest.TestCase):

    def test_trailing_zeros_are_ignored(self):
        self.assertEqual(node_version_key("1.2.0"), (1, 2))
        self.assertEqual(compare_node_versions("1.2", "1.2.0"), 0)
        self.assertEqual(compare_node_versions("v2.0.0", "1.9.9"), 1)

    def test_invalid_node_version(self):
        with self.assertRaises(ValueError):
            node_version_key("1.x")


# =============================================================================
# MODIFICATIONS
# =============================================================================

def _action():
    return FlowAction(id="action-pay", name="Pay", parent_screen="screen-cart")


def test_apply_modification_patches_copy():
    action = _action()
    patched = apply_modification(action, NodeModification(
        node_id="action-pay", new_version="1.1.0", changes={"name": "Pay now", "nextScreen": "screen-done"},
    ))
    assert patched.name == "Pay now"
    assert patched.next_screen == "screen-done"
    assert patched.version == "1.1.0"
    assert patched.created_at == action.created_at
    assert action.name == "Pay"


def test_attribute_names_are_accepted():
    patched = apply_modification(_action(), NodeModification(
        node_id="action-pay", new_version="2", changes={"parent_screen": "screen-other"},
    ))
    assert patched.parent_screen == "screen-other"


def test_enum_fields_are_converted():
    requirement = TechnicalRequirement(id="req-1")
    patched = apply_modification(requirement, NodeModification(
        node_id="req-1", new_version="1.0.1", changes={"type": "security"},
    ))
    assert patched.category is RequirementCategory.SECURITY


@pytest.mark.parametrize("changes", [{"id": "action-x"}, {"layer": "narrative"}, {"created_at": "now"}])
def test_protected_fields(changes):
    with pytest.raises(ValidationFailure, match="may not change"):
        apply_modification(_action(), NodeModification(node_id="action-pay", new_version="2", changes=changes))


def test_unknown_field():
    with pytest.raises(ValidationFailure, match="unknown field"):
        apply_modification(_action(), NodeModification(node_id="action-pay", new_version="2", changes={"colour": 1}))


def test_version_must_grow():
    with pytest.raises(ValidationFailure, match="bump"):
        apply_modification(_action(), NodeModification(node_id="action-pay", new_version="1.0"))


def test_stale_old_version():
    with pytest.raises(ValidationFailure, match="expects version"):
        apply_modification(_action(), NodeModification(node_id="action-pay", new_version="3", old_version="2"))


def test_ill_typed_value():
    with pytest.raises(ValidationFailure, match="invalid"):
        apply_modification(_action(), NodeModification(
            node_id="action-pay", new_version="2", changes={"triggerType": "telepathy"},
        ))
