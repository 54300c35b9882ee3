"""
Pytest configuration and shared fixtures for the strata test suite.
"""
import sys
from pathlib import Path
from typing import Iterable, Optional

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from core.ontology import DependencyType, GraphSchema, kind_for_id  # noqa: E402
from core.schemas import (  # noqa: E402
    Capability,
    ChangeRequestDraft,
    CrossLayerDependency,
    Dependency,
    Epic,
    FlowAction,
    FlowScreen,
    FlowToCapabilityMapping,
    LayeredGraph,
    NodeModification,
    Task,
    TechnicalRequirement,
    UserStory,
)


class PlanBuilder:
    """Terse constructors for plan content with readable, fixed ids."""

    # === Nodes ===

    def epic(self, id: str, name: str = "", stories: Iterable[str] = ()) -> Epic:
        return Epic(id=id, name=name or id, user_stories=list(stories))

    def story(self, id: str, epic: str = "", capabilities: Iterable[str] = ()) -> UserStory:
        return UserStory(id=id, narrative=f"As a shopper, {id}", parent_epic=epic,
                         linked_capabilities=list(capabilities))

    def capability(self, id: str, stories: Iterable[str] = (), requirements: Iterable[str] = ()) -> Capability:
        return Capability(id=id, name=id, linked_user_stories=list(stories),
                          linked_technical_reqs=list(requirements))

    def screen(self, id: str, actions: Iterable[str] = (), entry: Iterable[str] = ()) -> FlowScreen:
        return FlowScreen(id=id, name=id, actions=list(actions), entry_transitions=list(entry))

    def action(self, id: str, screen: str, next_screen: Optional[str] = None,
               capabilities: Iterable[str] = ()) -> FlowAction:
        return FlowAction(id=id, name=id, parent_screen=screen, next_screen=next_screen,
                          linked_capabilities=list(capabilities))

    def requirement(self, id: str, capabilities: Iterable[str] = (), tasks: Iterable[str] = ()) -> TechnicalRequirement:
        return TechnicalRequirement(id=id, specification=f"spec of {id}",
                                    linked_capabilities=list(capabilities), linked_tasks=list(tasks))

    def task(self, id: str, description: str = "") -> Task:
        return Task(id=id, description=description or id)

    # === Links ===

    def dep(self, from_id: str, to_id: str, type: DependencyType = DependencyType.REQUIRES,
            id: Optional[str] = None) -> Dependency:
        return Dependency(id=id or f"dep-{from_id}-{to_id}", from_id=from_id, to_id=to_id, type=type)

    def cross(self, from_id: str, to_id: str, rationale: str = "linked") -> CrossLayerDependency:
        link = CrossLayerDependency.create(
            from_id, to_id, kind_for_id(from_id).layer, kind_for_id(to_id).layer, rationale=rationale
        )
        link.id = f"cross-{from_id}-{to_id}"
        return link

    def mapping(self, action_id: str, capability_ids: Iterable[str], rationale: str = "needed",
                id: Optional[str] = None) -> FlowToCapabilityMapping:
        return FlowToCapabilityMapping(id=id or f"mapping-{action_id}", flow_action_id=action_id,
                                       capability_ids=list(capability_ids), rationale=rationale)

    def modify(self, node_id: str, new_version: str, **changes) -> NodeModification:
        return NodeModification(node_id=node_id, new_version=new_version, changes=changes)

    # === Aggregates ===

    def draft(self, nodes=(), edges=(), mappings=(), cross=(), modifications=(),
              description: str = "test change") -> ChangeRequestDraft:
        return ChangeRequestDraft(
            description=description,
            new_nodes=list(nodes),
            modified_nodes=list(modifications),
            new_dependencies=list(edges),
            new_mappings=list(mappings),
            new_cross_layer_dependencies=list(cross),
        )

    def graph(self, nodes=(), edges=(), mappings=(), cross=()) -> LayeredGraph:
        """Place content directly into a LayeredGraph, bypassing validation."""
        graph = LayeredGraph()
        for node in nodes:
            graph.sub_graph(node.KIND.sub_graph).nodes[node.id] = node
        for edge in edges:
            graph.sub_graph(graph.locate(edge.from_id)).edges[edge.id] = edge
        for mapping in mappings:
            graph.mappings[mapping.id] = mapping
        for link in cross:
            graph.cross_layer_dependencies[link.id] = link
        return graph

    def full_chain(self) -> ChangeRequestDraft:
        """
        epic-shop -> story-checkout -> cap-cart -> req-latency -> task-api,
        plus screen-cart / action-add mapped to cap-cart.
        """
        return self.draft(
            nodes=[
                self.epic("epic-shop", name="Shop", stories=["story-checkout"]),
                self.story("story-checkout", epic="epic-shop", capabilities=["cap-cart"]),
                self.capability("cap-cart", stories=["story-checkout"], requirements=["req-latency"]),
                self.screen("screen-cart", actions=["action-add"]),
                self.action("action-add", screen="screen-cart", capabilities=["cap-cart"]),
                self.requirement("req-latency", capabilities=["cap-cart"], tasks=["task-api"]),
                self.task("task-api"),
            ],
            mappings=[self.mapping("action-add", ["cap-cart"])],
            cross=[
                self.cross("story-checkout", "cap-cart"),
                self.cross("cap-cart", "req-latency"),
            ],
            description="Initial plan",
        )


@pytest.fixture
def plan():
    """Provide a PlanBuilder."""
    return PlanBuilder()


@pytest.fixture
def events():
    """Provide an in-memory MutationLogger."""
    from infrastructure.logger import MutationLogger
    return MutationLogger()


@pytest.fixture
def store(tmp_path, events):
    """Provide an initialized, empty layered project."""
    from infrastructure.project_store import ProjectStore
    project = ProjectStore("test-project", tmp_path, mutation_logger=events)
    project.initialize()
    return project


@pytest.fixture
def flat_store(tmp_path, events):
    """Provide an initialized, empty legacy flat project."""
    from infrastructure.project_store import ProjectStore
    project = ProjectStore("legacy-project", tmp_path, mutation_logger=events)
    project.initialize(schema=GraphSchema.FLAT)
    return project


@pytest.fixture
def registry(tmp_path, events):
    """Provide a ProjectRegistry over a temporary root."""
    from infrastructure.registry import ProjectRegistry
    return ProjectRegistry(tmp_path, mutation_logger=events)
