"""
Project registry: every project under one storage root.

The registry only enumerates and opens projects; each project's content is
owned by its ProjectStore.
"""
import logging
import uuid
from pathlib import Path
from typing import List, Optional, Union

from core.graph_db import DocumentError, ProjectNotFoundError
from core.ontology import GraphSchema
from core.schemas import ProjectMetadata
from infrastructure.config import StrataConfig
from infrastructure.logger import MutationLogger
from infrastructure.project_store import ProjectStore

logger = logging.getLogger(__name__)


class ProjectRegistry:
    """
    Usage:
        registry = ProjectRegistry(Path("/data/strata"))
        store = registry.create_project(name="Shop")
        for metadata in registry.list_projects():
            print(metadata.project_id, metadata.current_version)
    """

    def __init__(
        self,
        root: Union[str, Path],
        *,
        mutation_logger: Optional[MutationLogger] = None,
        enforce_dependency_rules: bool = True,
        fail_on_mapping_warnings: bool = False,
    ):
        self.root = Path(root)
        self.events = mutation_logger or MutationLogger()
        self._store_options = {
            "enforce_dependency_rules": enforce_dependency_rules,
            "fail_on_mapping_warnings": fail_on_mapping_warnings,
        }

    @classmethod
    def from_config(cls, config: StrataConfig,
                    mutation_logger: Optional[MutationLogger] = None) -> "ProjectRegistry":
        return cls(
            config.storage.root_path,
            mutation_logger=mutation_logger or MutationLogger(config.logger_config()),
            enforce_dependency_rules=config.validation.enforce_dependency_rules,
            fail_on_mapping_warnings=config.validation.fail_on_mapping_warnings,
        )

    @property
    def projects_dir(self) -> Path:
        return self.root / "projects"

    def _store(self, project_id: str) -> ProjectStore:
        return ProjectStore(project_id, self.root, mutation_logger=self.events, **self._store_options)

    def create_project(
        self,
        name: str = "",
        project_id: Optional[str] = None,
        schema: GraphSchema = GraphSchema.LAYERED,
    ) -> ProjectStore:
        """
        Create and initialize a project; an id is generated when none is given.

        Raises:
            ProjectExistsError: if ``project_id`` is taken
        """
        store = self._store(project_id or f"proj-{uuid.uuid4().hex[:12]}")
        store.initialize(name=name, schema=schema)
        return store

    def open_project(self, project_id: str) -> ProjectStore:
        """
        Raises:
            ProjectNotFoundError: if the project does not exist or the id is
                not a valid project id
        """
        try:
            store = self._store(project_id)
        except ValueError:
            raise ProjectNotFoundError(project_id) from None
        if not store.exists():
            raise ProjectNotFoundError(project_id)
        return store

    def project_exists(self, project_id: str) -> bool:
        try:
            return self._store(project_id).exists()
        except ValueError:
            return False

    def delete_project(self, project_id: str) -> None:
        """
        Raises:
            ProjectNotFoundError: as for ``open_project``
        """
        self.open_project(project_id).delete()

    def list_projects(self) -> List[ProjectMetadata]:
        """
        Metadata of every readable project, most recently created first.

        Directories without readable metadata are skipped with a warning.
        """
        if not self.projects_dir.exists():
            return []
        projects: List[ProjectMetadata] = []
        for entry in sorted(self.projects_dir.iterdir()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            try:
                projects.append(self._store(entry.name).load_metadata())
            except (ValueError, ProjectNotFoundError, DocumentError) as exc:
                logger.warning("Skipping project directory %s: %s", entry.name, exc)
        return sorted(projects, key=lambda metadata: metadata.created_at, reverse=True)
