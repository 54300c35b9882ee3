"""
Version tags.

Two version notions coexist:
- snapshot tags ``v<N>``: one per committed graph, strictly ``+1`` per apply
- node versions: dotted numbers (``1.0.0``), optionally ``v``-prefixed,
  that must grow on every modification

Node modifications are applied here too, as explicit validated patches:
only declared fields may be overwritten and the version bump is mandatory.
"""
import re
from typing import Any, Dict, Tuple, TypeVar

import msgspec

from core.graph_db import ValidationFailure
from core.schemas import PROTECTED_NODE_FIELDS, NodeBase, NodeModification, now_utc

_SNAPSHOT_TAG = re.compile(r"^v(\d+)$")
_NODE_VERSION = re.compile(r"^v?(\d+(?:\.\d+)*)$")


# =============================================================================
# SNAPSHOT TAGS
# =============================================================================

def is_valid_version(tag: str) -> bool:
    return _SNAPSHOT_TAG.match(tag) is not None


def parse_version(tag: str) -> int:
    """
    ``"v3"`` -> ``3``.

    Raises:
        ValueError: if ``tag`` is not of the form ``v<N>``
    """
    match = _SNAPSHOT_TAG.match(tag)
    if match is None:
        raise ValueError(f"Invalid version tag: {tag}")
    return int(match.group(1))


def format_version(number: int) -> str:
    if number < 0:
        raise ValueError(f"Version number cannot be negative: {number}")
    return f"v{number}"


def increment_version(tag: str) -> str:
    return format_version(parse_version(tag) + 1)


def compare_versions(left: str, right: str) -> int:
    """-1, 0 or 1 as ``left`` is older than, equal to or newer than ``right``."""
    a, b = parse_version(left), parse_version(right)
    return (a > b) - (a < b)


# =============================================================================
# NODE VERSIONS
# =============================================================================

def node_version_key(version: str) -> Tuple[int, ...]:
    """
    ``"1.2.0"`` -> ``(1, 2)``; trailing zeros are dropped so ``1.2`` == ``1.2.0``.

    Raises:
        ValueError: if ``version`` is not dotted-numeric
    """
    match = _NODE_VERSION.match(version.strip())
    if match is None:
        raise ValueError(f"Invalid node version: {version}")
    parts = [int(part) for part in match.group(1).split(".")]
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def compare_node_versions(left: str, right: str) -> int:
    a, b = node_version_key(left), node_version_key(right)
    return (a > b) - (a < b)


# =============================================================================
# PATCHES
# =============================================================================

N = TypeVar("N", bound=NodeBase)


def _resolve_field_names(node: NodeBase) -> Dict[str, str]:
    """Map attribute names and persisted names to persisted names."""
    names: Dict[str, str] = {}
    for info in msgspec.structs.fields(node):
        names[info.name] = info.encode_name
        names[info.encode_name] = info.encode_name
    return names


def _protected_names(node: NodeBase) -> set:
    protected = set(PROTECTED_NODE_FIELDS)
    for info in msgspec.structs.fields(node):
        if info.name in PROTECTED_NODE_FIELDS:
            protected.add(info.encode_name)
    return protected


def apply_modification(node: N, modification: NodeModification) -> N:
    """
    Return a patched copy of ``node``.

    Raises:
        ValidationFailure: unknown or protected field, ill-typed value,
            stale ``old_version``, or a ``new_version`` that is not newer
    """
    label = node.KIND.layer.value if node.KIND.layer else "graph"
    try:
        if modification.old_version is not None and \
                compare_node_versions(modification.old_version, node.version) != 0:
            raise ValidationFailure(
                f'Modification of "{node.id}" expects version {modification.old_version} '
                f"but the node is at {node.version}",
                layer=label,
            )
        if compare_node_versions(modification.new_version, node.version) <= 0:
            raise ValidationFailure(
                f'Modification of "{node.id}" must bump its version above {node.version} '
                f"(got {modification.new_version})",
                layer=label,
            )
    except ValueError as exc:
        raise ValidationFailure(f'Modification of "{node.id}": {exc}', layer=label) from exc

    names = _resolve_field_names(node)
    protected = _protected_names(node)
    patched: Dict[str, Any] = msgspec.to_builtins(node)
    for key, value in modification.changes.items():
        if key in protected:
            raise ValidationFailure(f'Modification of "{node.id}" may not change field "{key}"', layer=label)
        if key not in names:
            raise ValidationFailure(
                f'Modification of "{node.id}" names unknown field "{key}" for {node.KIND.value}',
                layer=label,
            )
        patched[names[key]] = value

    patched["version"] = modification.new_version
    patched["updated_at"] = now_utc()
    try:
        return msgspec.convert(patched, type(node))
    except msgspec.ValidationError as exc:
        raise ValidationFailure(f'Modification of "{node.id}" is invalid: {exc}', layer=label) from exc
