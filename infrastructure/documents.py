"""
Document persistence primitives.

Every document is written to a temporary sibling and moved into place with
``os.replace``, so a reader sees either the old or the new file, never a
torn one. Layered snapshots are written as a bundle directory staged the
same way:

    <bundle>/manifest.json                  version + graph metadata
    <bundle>/narrative.json                 SubGraph
    <bundle>/structure-features.json        SubGraph
    <bundle>/structure-flows.json           SubGraph
    <bundle>/specification.json             SubGraph
    <bundle>/mappings.json                  {id: FlowToCapabilityMapping}
    <bundle>/cross-layer-dependencies.json  {id: CrossLayerDependency}
"""
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, Type, TypeVar

import msgspec

from core.graph_db import DocumentError
from core.ontology import GraphSchema, SubGraphKey
from core.schemas import (
    CrossLayerDependency,
    FlowToCapabilityMapping,
    GraphMetadata,
    LayeredGraph,
    StructureLayer,
    SubGraph,
    decode_document,
    encode_document,
)

MANIFEST = "manifest.json"
MAPPINGS = "mappings.json"
CROSS_LAYER = "cross-layer-dependencies.json"

D = TypeVar("D")


class BundleManifest(msgspec.Struct, kw_only=True):
    schema: GraphSchema = GraphSchema.LAYERED
    version: str
    metadata: GraphMetadata


# =============================================================================
# SINGLE DOCUMENTS
# =============================================================================

def write_document(path: Path, obj: Any) -> None:
    """Atomically write ``obj`` as indented JSON to ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(encode_document(obj))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def read_document(path: Path, type: Type[D]) -> D:
    """
    Read and decode a JSON document.

    Raises:
        FileNotFoundError: if ``path`` does not exist
        DocumentError: if the content is malformed or of the wrong shape
    """
    data = path.read_bytes()
    try:
        return decode_document(data, type)
    except (msgspec.DecodeError, msgspec.ValidationError) as exc:
        raise DocumentError(str(path), str(exc)) from exc


# =============================================================================
# LAYERED BUNDLES
# =============================================================================

def _write_bundle_files(directory: Path, graph: LayeredGraph) -> None:
    write_document(directory / MANIFEST, BundleManifest(version=graph.version, metadata=graph.metadata))
    for key, scope in graph.sub_graphs():
        write_document(directory / key.document, scope)
    write_document(directory / MAPPINGS, graph.mappings)
    write_document(directory / CROSS_LAYER, graph.cross_layer_dependencies)


def write_layered_bundle(target: Path, graph: LayeredGraph) -> None:
    """
    Write ``graph`` as a bundle directory at ``target``.

    The bundle is staged in a hidden sibling directory and renamed into
    place; an existing bundle at ``target`` is swapped out and removed.
    """
    parent = target.parent
    parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f".{target.name}.staging-", dir=parent))
    try:
        _write_bundle_files(staging, graph)
        if target.exists():
            retired = parent / f".{target.name}.retired-{uuid.uuid4().hex}"
            os.replace(target, retired)
            os.replace(staging, target)
            shutil.rmtree(retired, ignore_errors=True)
        else:
            os.replace(staging, target)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise


def read_manifest(directory: Path) -> BundleManifest:
    return read_document(directory / MANIFEST, BundleManifest)


def read_layered_bundle(directory: Path) -> LayeredGraph:
    """
    Load a bundle directory into a LayeredGraph.

    Raises:
        FileNotFoundError: if the bundle or one of its documents is missing
        DocumentError: if a document is malformed
    """
    manifest = read_manifest(directory)
    scopes: Dict[SubGraphKey, SubGraph] = {
        key: read_document(directory / key.document, SubGraph) for key in SubGraphKey
    }
    mappings = read_document(directory / MAPPINGS, Dict[str, FlowToCapabilityMapping])
    cross_layer = read_document(directory / CROSS_LAYER, Dict[str, CrossLayerDependency])
    return LayeredGraph(
        version=manifest.version,
        narrative_layer=scopes[SubGraphKey.NARRATIVE],
        structure_layer=StructureLayer(
            feature_graph=scopes[SubGraphKey.FEATURES],
            flow_graph=scopes[SubGraphKey.FLOWS],
            mappings=mappings,
        ),
        specification_layer=scopes[SubGraphKey.SPECIFICATION],
        cross_layer_dependencies=cross_layer,
        metadata=manifest.metadata,
    )
