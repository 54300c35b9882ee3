"""
STRATA PROJECT STORE - The Versioned Plan

One ProjectStore owns one project directory:

    <root>/projects/<project_id>/
        metadata.json                    ProjectMetadata (current_version pointer)
        change-requests/CR-000.json      ChangeRequest documents
        current/                         layered bundle of the current version
        versions/v0/, versions/v1/ ...   immutable layered bundles
        graph.json                       legacy flat snapshot
        versions/v0.json ...             legacy flat history

Schema detection: a project with ``graph.json`` is a legacy flat project;
anything else is layered. Change requests are applied through the path
matching the schema; analyzer and mapping queries need a layered project.

Commit protocol (apply_change_request):
  1. prepare the next snapshot in memory (core.changeset); any failure
     leaves every file untouched and the change request pending
  2. write the immutable ``versions/<tag>`` record
  3. write the change request as applied, recording ``applied_version``
  4. replace ``metadata.json``: the new ``current_version`` is the commit
     point
  5. refresh ``current``

Readers trust ``current`` only when it carries the version the metadata
points at, and otherwise read ``versions/<tag>``, so an interrupted commit
never surfaces a partial snapshot. The metadata also maps each version to
the change request that produced it; a change request marked applied
without a matching entry belongs to a commit that never reached step 4
and is read back as pending. All operations on one project are serialised
by a per-project re-entrant lock.
"""
import logging
import re
import shutil
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

import msgspec

from core.changeset import derive_project_name, prepare_flat, prepare_layered
from core.graph_db import (
    AlreadyAppliedError,
    CannotDeleteAppliedError,
    ChangeRequestNotFoundError,
    ProjectExistsError,
    ProjectNotFoundError,
    SchemaMismatchError,
    ValidationFailure,
    VersionNotFoundError,
)
from core.impact import ImpactAnalyzer
from core.mappings import MappingValidationResult, validate_mappings
from core.ontology import ChangeRequestStatus, GraphSchema
from core.schemas import (
    ChangeRequest,
    ChangeRequestDraft,
    FlatGraph,
    Graph,
    LayeredGraph,
    ProjectMetadata,
    now_utc,
)
from core.versioning import format_version, is_valid_version, parse_version
from infrastructure.documents import (
    read_document,
    read_layered_bundle,
    read_manifest,
    write_document,
    write_layered_bundle,
)
from infrastructure.logger import MutationLogger

logger = logging.getLogger(__name__)

PROJECT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
CHANGE_REQUEST_ID_PATTERN = re.compile(r"^CR-(\d{3,})$")


# =============================================================================
# PER-PROJECT LOCKS
# =============================================================================

_PROJECT_LOCKS: Dict[str, threading.RLock] = {}
_PROJECT_LOCKS_GUARD = threading.Lock()


def project_lock(base_path: Path) -> threading.RLock:
    """The lock shared by every store instance opened on ``base_path``."""
    key = str(base_path.resolve())
    with _PROJECT_LOCKS_GUARD:
        lock = _PROJECT_LOCKS.get(key)
        if lock is None:
            lock = _PROJECT_LOCKS[key] = threading.RLock()
        return lock


def release_project_lock(base_path: Path) -> None:
    """Forget the lock of a deleted project."""
    with _PROJECT_LOCKS_GUARD:
        _PROJECT_LOCKS.pop(str(base_path.resolve()), None)


def format_change_request_id(number: int) -> str:
    return f"CR-{number:03d}"


def _mark_pending(change_request: ChangeRequest) -> None:
    change_request.status = ChangeRequestStatus.PENDING
    change_request.applied_at = None
    change_request.applied_version = None


# =============================================================================
# PROJECT STORE
# =============================================================================

class ProjectStore:
    """
    Current snapshot, version history and change requests of one project.

    Usage:
        store = ProjectStore("shop", Path("/data/strata"))
        store.initialize(name="Shop")
        cr = store.create_change_request(draft)
        store.apply_change_request(cr.id)
        graph = store.load_current()
    """

    def __init__(
        self,
        project_id: str,
        root: Union[str, Path],
        *,
        mutation_logger: Optional[MutationLogger] = None,
        enforce_dependency_rules: bool = True,
        fail_on_mapping_warnings: bool = False,
    ):
        if not PROJECT_ID_PATTERN.match(project_id):
            raise ValueError(f"Invalid project id: {project_id!r}")
        self.project_id = project_id
        self.root = Path(root)
        self.base_path = self.root / "projects" / project_id
        self.events = mutation_logger or MutationLogger()
        self.enforce_dependency_rules = enforce_dependency_rules
        self.fail_on_mapping_warnings = fail_on_mapping_warnings

    @property
    def _lock(self) -> threading.RLock:
        return project_lock(self.base_path)

    # =========================================================================
    # PATHS
    # =========================================================================

    @property
    def metadata_path(self) -> Path:
        return self.base_path / "metadata.json"

    @property
    def change_requests_dir(self) -> Path:
        return self.base_path / "change-requests"

    @property
    def versions_dir(self) -> Path:
        return self.base_path / "versions"

    @property
    def current_dir(self) -> Path:
        return self.base_path / "current"

    @property
    def flat_graph_path(self) -> Path:
        return self.base_path / "graph.json"

    def _change_request_path(self, change_request_id: str) -> Path:
        if not CHANGE_REQUEST_ID_PATTERN.match(change_request_id):
            raise ChangeRequestNotFoundError(change_request_id)
        return self.change_requests_dir / f"{change_request_id}.json"

    # =========================================================================
    # PROJECT LIFECYCLE
    # =========================================================================

    def exists(self) -> bool:
        return self.metadata_path.exists()

    def _require_exists(self) -> None:
        if not self.exists():
            raise ProjectNotFoundError(self.project_id)

    def initialize(self, name: str = "", schema: GraphSchema = GraphSchema.LAYERED) -> ProjectMetadata:
        """
        Create the project with an empty ``v0`` snapshot.

        Raises:
            ProjectExistsError: if the project already exists
        """
        with self._lock:
            if self.exists():
                raise ProjectExistsError(self.project_id)
            self.change_requests_dir.mkdir(parents=True, exist_ok=True)
            self.versions_dir.mkdir(parents=True, exist_ok=True)

            if schema is GraphSchema.FLAT:
                graph = FlatGraph()
                write_document(self.versions_dir / f"{graph.version}.json", graph)
                write_document(self.flat_graph_path, graph)
            else:
                graph = LayeredGraph()
                write_layered_bundle(self.versions_dir / graph.version, graph)
                write_layered_bundle(self.current_dir, graph)

            metadata = ProjectMetadata(
                project_id=self.project_id,
                name=name,
                created_at=graph.metadata.created_at,
                last_modified=graph.metadata.last_modified,
                current_version=graph.version,
            )
            write_document(self.metadata_path, metadata)
            logger.info("Initialized %s project %s", schema.value, self.project_id)
            self.events.log_project_created(self.project_id, detail=schema.value)
            return metadata

    def delete(self) -> None:
        """Remove the project and every version of it."""
        with self._lock:
            self._require_exists()
            shutil.rmtree(self.base_path)
            release_project_lock(self.base_path)
            logger.info("Deleted project %s", self.project_id)
            self.events.log_project_deleted(self.project_id)

    def load_metadata(self) -> ProjectMetadata:
        with self._lock:
            self._require_exists()
            return read_document(self.metadata_path, ProjectMetadata)

    @property
    def schema(self) -> GraphSchema:
        self._require_exists()
        return GraphSchema.FLAT if self.flat_graph_path.exists() else GraphSchema.LAYERED

    def is_layered(self) -> bool:
        return self.schema is GraphSchema.LAYERED

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def load_current(self) -> Graph:
        """The latest committed snapshot (LayeredGraph or, for legacy projects, FlatGraph)."""
        with self._lock:
            metadata = self.load_metadata()
            return self._load_committed(metadata.current_version)

    def load_version(self, version: str) -> Graph:
        """
        A historical snapshot.

        Raises:
            VersionNotFoundError: if ``version`` was never committed
        """
        with self._lock:
            metadata = self.load_metadata()
            if not is_valid_version(version) or parse_version(version) > parse_version(metadata.current_version):
                raise VersionNotFoundError(version)
            return self._load_version_record(version)

    def load_layered(self, version: Optional[str] = None) -> LayeredGraph:
        """
        Current (or ``version``) snapshot of a layered project.

        Raises:
            SchemaMismatchError: if the project uses the legacy flat schema
        """
        self._require_layered("loading a layered snapshot")
        graph = self.load_current() if version is None else self.load_version(version)
        return graph

    def list_versions(self) -> List[str]:
        """Committed version tags, oldest first."""
        with self._lock:
            current = parse_version(self.load_metadata().current_version)
            tags = []
            for entry in self.versions_dir.iterdir():
                tag = entry.stem if entry.is_file() and entry.suffix == ".json" else entry.name
                if is_valid_version(tag) and parse_version(tag) <= current:
                    tags.append(tag)
            return sorted(set(tags), key=parse_version)

    def _load_committed(self, version: str) -> Graph:
        if self.schema is GraphSchema.FLAT:
            if self.flat_graph_path.exists():
                graph = read_document(self.flat_graph_path, FlatGraph)
                if graph.version == version:
                    return graph
            return self._load_version_record(version)

        if self.current_dir.exists():
            try:
                if read_manifest(self.current_dir).version == version:
                    return read_layered_bundle(self.current_dir)
            except FileNotFoundError:
                logger.warning("Incomplete current snapshot for %s; reading %s", self.project_id, version)
        return self._load_version_record(version)

    def _load_version_record(self, version: str) -> Graph:
        try:
            if self.schema is GraphSchema.FLAT:
                return read_document(self.versions_dir / f"{version}.json", FlatGraph)
            return read_layered_bundle(self.versions_dir / version)
        except FileNotFoundError:
            raise VersionNotFoundError(version)

    def _require_layered(self, operation: str) -> None:
        if not self.is_layered():
            raise SchemaMismatchError(self.project_id, operation)

    # =========================================================================
    # CHANGE REQUESTS
    # =========================================================================

    def _change_request_numbers(self) -> List[int]:
        numbers = []
        if self.change_requests_dir.exists():
            for entry in self.change_requests_dir.glob("CR-*.json"):
                match = CHANGE_REQUEST_ID_PATTERN.match(entry.stem)
                if match:
                    numbers.append(int(match.group(1)))
        return numbers

    def next_change_request_id(self) -> str:
        with self._lock:
            numbers = self._change_request_numbers()
            return format_change_request_id(max(numbers) + 1 if numbers else 0)

    def create_change_request(self, draft: ChangeRequestDraft) -> ChangeRequest:
        """
        Store ``draft`` as the next pending change request. The graph is not touched.

        For layered projects, an impact report is attached for every modified
        node that exists in the current snapshot.
        """
        with self._lock:
            self._require_exists()
            change_request = ChangeRequest.from_draft(
                draft, id=self.next_change_request_id(), project_id=self.project_id
            )
            if draft.modified_nodes and self.is_layered():
                analyzer = ImpactAnalyzer(self.load_current())
                for modification in draft.modified_nodes:
                    if analyzer.graph.has_node(modification.node_id):
                        change_request.impact_analysis.append(analyzer.analyze_impact(modification.node_id))

            write_document(self._change_request_path(change_request.id), change_request)
            logger.info("Created change request %s for %s", change_request.id, self.project_id)
            self.events.log_change_request_created(
                self.project_id, change_request.id, [node.id for node in change_request.new_nodes]
            )
            return change_request

    def load_change_request(self, change_request_id: str) -> ChangeRequest:
        with self._lock:
            self._require_exists()
            path = self._change_request_path(change_request_id)
            try:
                change_request = read_document(path, ChangeRequest)
            except FileNotFoundError:
                raise ChangeRequestNotFoundError(change_request_id)
            return self._reconcile(change_request)

    def _reconcile(self, change_request: ChangeRequest) -> ChangeRequest:
        """Undo an ``applied`` status that the metadata does not record."""
        applied_version = change_request.applied_version
        if not change_request.is_applied or applied_version is None:
            return change_request
        metadata = self.load_metadata()
        if metadata.change_requests.get(applied_version) == change_request.id:
            return change_request
        logger.warning(
            "Change request %s of %s is marked applied as %s, which was never committed by it; "
            "treating it as pending",
            change_request.id, self.project_id, applied_version,
        )
        _mark_pending(change_request)
        return change_request

    def list_change_requests(self) -> List[ChangeRequest]:
        """All change requests, newest first."""
        with self._lock:
            self._require_exists()
            requests = [
                self.load_change_request(format_change_request_id(number))
                for number in sorted(self._change_request_numbers())
            ]
            return sorted(requests, key=lambda cr: (cr.created_at, cr.id), reverse=True)

    def delete_change_request(self, change_request_id: str) -> None:
        """
        Raises:
            CannotDeleteAppliedError: if the change request was applied
        """
        with self._lock:
            change_request = self.load_change_request(change_request_id)
            if change_request.is_applied:
                raise CannotDeleteAppliedError(change_request_id)
            self._change_request_path(change_request_id).unlink()
            logger.info("Deleted change request %s of %s", change_request_id, self.project_id)
            self.events.log_change_request_deleted(self.project_id, change_request_id)

    def apply_change_request(self, change_request_id: str) -> ChangeRequest:
        """
        Validate and commit a pending change request as the next version.

        Returns:
            The change request, now applied

        Raises:
            ChangeRequestNotFoundError: unknown id
            AlreadyAppliedError: the request was applied before
            ValidationFailure: the result would break an invariant; nothing
                is written and the request stays pending
        """
        with self._lock:
            change_request = self.load_change_request(change_request_id)
            if change_request.is_applied:
                raise AlreadyAppliedError(change_request_id)

            metadata = self.load_metadata()
            current = self._load_committed(metadata.current_version)
            try:
                if isinstance(current, LayeredGraph):
                    prepared = prepare_layered(
                        current,
                        change_request,
                        enforce_dependency_rules=self.enforce_dependency_rules,
                        fail_on_mapping_warnings=self.fail_on_mapping_warnings,
                    )
                else:
                    prepared = prepare_flat(
                        current, change_request, enforce_dependency_rules=self.enforce_dependency_rules
                    )
            except ValidationFailure as exc:
                logger.info("Rejected %s for %s: %s", change_request_id, self.project_id, exc)
                self.events.log_change_request_rejected(self.project_id, change_request_id, str(exc))
                raise

            self._commit(prepared.graph, metadata, change_request)
            logger.info("Applied %s to %s as %s", change_request_id, self.project_id, prepared.version)
            self.events.log_change_request_applied(
                self.project_id,
                change_request_id,
                prepared.version,
                [node.id for node in change_request.new_nodes]
                + [modification.node_id for modification in change_request.modified_nodes],
            )
            return change_request

    def _commit(self, graph: Graph, metadata: ProjectMetadata, change_request: ChangeRequest) -> None:
        first_apply = metadata.current_version == format_version(0)

        if isinstance(graph, LayeredGraph):
            record = self.versions_dir / graph.version
            if record.exists():
                # Left behind by a commit interrupted before its metadata update.
                shutil.rmtree(record)
            write_layered_bundle(record, graph)
        else:
            write_document(self.versions_dir / f"{graph.version}.json", graph)

        change_request_path = self._change_request_path(change_request.id)
        change_request.status = ChangeRequestStatus.APPLIED
        change_request.applied_at = now_utc()
        change_request.applied_version = graph.version
        try:
            write_document(change_request_path, change_request)
        except OSError:
            _mark_pending(change_request)
            raise

        updated = msgspec.structs.replace(
            metadata,
            current_version=graph.version,
            last_modified=graph.metadata.last_modified,
            change_requests={**metadata.change_requests, graph.version: change_request.id},
        )
        if first_apply and not updated.name:
            updated.name = derive_project_name(change_request) or ""
        try:
            write_document(self.metadata_path, updated)
        except OSError:
            _mark_pending(change_request)
            try:
                write_document(change_request_path, change_request)
            except OSError as exc:
                # load_change_request still reads it back as pending.
                logger.warning("Could not reset %s to pending: %s", change_request.id, exc)
            raise

        try:
            if isinstance(graph, LayeredGraph):
                write_layered_bundle(self.current_dir, graph)
            else:
                write_document(self.flat_graph_path, graph)
        except OSError as exc:
            # Committed; readers fall back to versions/<tag>.
            logger.warning("Could not refresh current snapshot of %s at %s: %s",
                           self.project_id, graph.version, exc)

    # =========================================================================
    # LAYERED QUERIES
    # =========================================================================

    def analyzer(self, version: Optional[str] = None) -> ImpactAnalyzer:
        """
        Impact analyzer over the current (or ``version``) snapshot.

        Raises:
            SchemaMismatchError: for legacy flat projects
        """
        self._require_layered("impact analysis")
        return ImpactAnalyzer(self.load_layered(version))

    def validate_mappings(self, version: Optional[str] = None) -> MappingValidationResult:
        self._require_layered("mapping validation")
        return validate_mappings(self.load_layered(version))

    def __repr__(self) -> str:
        return f"ProjectStore(project_id={self.project_id!r}, root={str(self.root)!r})"
