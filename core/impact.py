"""
STRATA IMPACT ANALYZER - What Moves When a Node Moves

Read-only queries over one loaded LayeredGraph snapshot:

- analyze_impact(node_id): downstream + upstream + cross-layer partners,
  bucketed by layer and by convenience category
- get_downstream_impact / get_upstream_impact / get_cross_layer_impact:
  the same queries one direction at a time, as node ids
- get_cross_layer_dependencies: the link records behind
  get_cross_layer_impact
- trace_narrative_to_implementation(epic_id):
      Epic -> Stories -> Capabilities -> Requirements -> Tasks (+ FlowActions)
- trace_implementation_to_narrative(task_id): the mirror walk

Traversal Rules:
- Downstream follows scope edges forward, cross-layer links whose ``from``
  is the current node, and mappings (action -> capabilities,
  capability -> actions).
- Upstream follows scope edges backward, cross-layer links whose ``to`` is
  the current node, and the same mapping hops (mappings express need, not
  direction, so they are walked both ways).
- Every walk is breadth-first over insertion-ordered collections with a
  visited set: results are deterministic and no id is emitted twice.

All adjacency is indexed once at construction; the snapshot is never
mutated.
"""
from collections import deque
from typing import Callable, Dict, Iterable, List, Optional

from core.graph_db import GraphIndex, NodeNotFoundError
from core.ontology import Layer, NodeKind, SubGraphKey, kind_for_id
from core.schemas import (
    Capability,
    CrossLayerDependency,
    Epic,
    ImpactReport,
    LayeredGraph,
    Task,
    TechnicalRequirement,
    TraceReport,
    UserStory,
)


class _OrderedSet:
    """Insertion-ordered set of ids."""

    def __init__(self, items: Iterable[str] = ()):
        self._items: Dict[str, None] = dict.fromkeys(items)

    def add(self, item: str) -> None:
        self._items.setdefault(item, None)

    def extend(self, items: Iterable[str]) -> None:
        for item in items:
            self.add(item)

    def __contains__(self, item: str) -> bool:
        return item in self._items

    def to_list(self) -> List[str]:
        return list(self._items)


class ImpactAnalyzer:
    """
    Impact and trace queries over a single snapshot.

    Usage:
        analyzer = ImpactAnalyzer(store.load_layered())
        report = analyzer.analyze_impact("story-checkout")
        report.affected_nodes[Layer.STRUCTURE]   # ["cap-cart", ...]
    """

    def __init__(self, graph: LayeredGraph):
        self._graph = graph
        self._scope_of: Dict[str, SubGraphKey] = {}
        self._scope_index: Dict[SubGraphKey, GraphIndex] = {}
        for key, scope in graph.sub_graphs():
            for node_id in scope.nodes:
                self._scope_of.setdefault(node_id, key)
            self._scope_index[key] = GraphIndex.build(
                scope.nodes.keys(), ((edge.from_id, edge.to_id) for edge in scope.edges.values())
            )

        self._cross_from: Dict[str, List[CrossLayerDependency]] = {}
        self._cross_to: Dict[str, List[CrossLayerDependency]] = {}
        for link in graph.cross_layer_dependencies.values():
            self._cross_from.setdefault(link.from_node_id, []).append(link)
            self._cross_to.setdefault(link.to_node_id, []).append(link)

        self._action_capabilities: Dict[str, _OrderedSet] = {}
        self._capability_actions: Dict[str, _OrderedSet] = {}
        for mapping in graph.mappings.values():
            self._action_capabilities.setdefault(mapping.flow_action_id, _OrderedSet()).extend(mapping.capability_ids)
            for capability_id in mapping.capability_ids:
                self._capability_actions.setdefault(capability_id, _OrderedSet()).add(mapping.flow_action_id)

    @property
    def graph(self) -> LayeredGraph:
        return self._graph

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def _layer_of(self, node_id: str) -> Layer:
        key = self._scope_of.get(node_id)
        if key is not None:
            return key.layer
        kind = kind_for_id(node_id)
        if kind is None or kind.layer is None:
            raise NodeNotFoundError(node_id)
        return kind.layer

    def _require(self, node_id: str) -> SubGraphKey:
        key = self._scope_of.get(node_id)
        if key is None:
            raise NodeNotFoundError(node_id)
        return key

    def _kind_of(self, node_id: str) -> Optional[NodeKind]:
        key = self._scope_of.get(node_id)
        if key is not None:
            return self._graph.sub_graph(key).nodes[node_id].KIND
        return kind_for_id(node_id)

    def _mapping_neighbours(self, node_id: str) -> List[str]:
        kind = self._kind_of(node_id)
        if kind is NodeKind.ACTION:
            return self._action_capabilities.get(node_id, _OrderedSet()).to_list()
        if kind is NodeKind.CAPABILITY:
            return self._capability_actions.get(node_id, _OrderedSet()).to_list()
        return []

    # =========================================================================
    # TRAVERSALS
    # =========================================================================

    def _breadth_first(self, start: str, neighbours: Callable[[str], Iterable[str]]) -> List[str]:
        visited = _OrderedSet([start])
        reached: List[str] = []
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for neighbour in neighbours(current):
                if neighbour in visited:
                    continue
                visited.add(neighbour)
                reached.append(neighbour)
                queue.append(neighbour)
        return reached

    def _forward(self, node_id: str) -> List[str]:
        found: List[str] = []
        key = self._scope_of.get(node_id)
        if key is not None:
            found.extend(self._scope_index[key].successors(node_id))
        found.extend(link.to_node_id for link in self._cross_from.get(node_id, []))
        found.extend(self._mapping_neighbours(node_id))
        return found

    def _backward(self, node_id: str) -> List[str]:
        found: List[str] = []
        key = self._scope_of.get(node_id)
        if key is not None:
            found.extend(self._scope_index[key].predecessors(node_id))
        found.extend(link.from_node_id for link in self._cross_to.get(node_id, []))
        found.extend(self._mapping_neighbours(node_id))
        return found

    def get_downstream_impact(self, node_id: str) -> List[str]:
        """Everything reachable forward from ``node_id`` (excluding itself), BFS order."""
        self._require(node_id)
        return self._breadth_first(node_id, self._forward)

    def get_upstream_impact(self, node_id: str) -> List[str]:
        """Everything that reaches ``node_id``, BFS order."""
        self._require(node_id)
        return self._breadth_first(node_id, self._backward)

    def get_cross_layer_dependencies(self, node_id: str) -> List[CrossLayerDependency]:
        """Cross-layer links with ``node_id`` at either end, outgoing first."""
        self._require(node_id)
        links = list(self._cross_from.get(node_id, []))
        links.extend(link for link in self._cross_to.get(node_id, []) if link not in links)
        return links

    def get_cross_layer_impact(self, node_id: str) -> List[str]:
        """Ids at the other end of every cross-layer link of ``node_id``."""
        partners = _OrderedSet()
        for link in self.get_cross_layer_dependencies(node_id):
            partner = link.to_node_id if link.from_node_id == node_id else link.from_node_id
            if partner != node_id:
                partners.add(partner)
        return partners.to_list()

    # =========================================================================
    # IMPACT REPORT
    # =========================================================================

    def analyze_impact(self, node_id: str) -> ImpactReport:
        """
        Full impact report for ``node_id``.

        Raises:
            NodeNotFoundError: if the id resolves in no sub-graph
        """
        target_layer = self._require(node_id).layer
        affected = _OrderedSet()
        affected.extend(self.get_downstream_impact(node_id))
        affected.extend(self.get_upstream_impact(node_id))
        affected.extend(self.get_cross_layer_impact(node_id))

        report = ImpactReport(target_node=node_id, target_layer=target_layer)
        for affected_id in affected.to_list():
            report.affected_nodes[self._layer_of(affected_id)].append(affected_id)

            kind = self._kind_of(affected_id)
            if kind in (NodeKind.SCREEN, NodeKind.ACTION):
                report.impacted_flows.append(affected_id)
            elif kind is NodeKind.CAPABILITY:
                report.impacted_capabilities.append(affected_id)
            elif kind is NodeKind.REQUIREMENT:
                report.impacted_requirements.append(affected_id)
            elif kind is NodeKind.TASK:
                report.impacted_tasks.append(affected_id)

        report.cross_layer_dependencies = self.get_cross_layer_dependencies(node_id)
        return report

    # =========================================================================
    # TRACES
    # =========================================================================

    def _nodes(self, key: SubGraphKey):
        return self._graph.sub_graph(key).nodes

    def _actions_for(self, capability_ids: Iterable[str]) -> List[str]:
        actions = _OrderedSet()
        for capability_id in capability_ids:
            actions.extend(self._capability_actions.get(capability_id, _OrderedSet()).to_list())
        return actions.to_list()

    def trace_narrative_to_implementation(self, epic_id: str) -> TraceReport:
        """
        Walk Epic -> Stories -> Capabilities -> Requirements -> Tasks.

        Stories, capabilities and requirements that do not resolve are
        skipped, since the walk cannot continue through them. Task ids are
        the end of the walk and are reported as linked, resolved or not.
        Flow actions mapped to any visited capability are collected
        separately and appended to the path last.

        Raises:
            NodeNotFoundError: if ``epic_id`` is not an Epic of this snapshot
        """
        narrative = self._nodes(SubGraphKey.NARRATIVE)
        features = self._nodes(SubGraphKey.FEATURES)
        specification = self._nodes(SubGraphKey.SPECIFICATION)

        epic = narrative.get(epic_id)
        if not isinstance(epic, Epic):
            raise NodeNotFoundError(epic_id)

        path = _OrderedSet([epic_id])
        stories, capabilities, requirements, tasks = _OrderedSet(), _OrderedSet(), _OrderedSet(), _OrderedSet()

        for story_id in epic.user_stories:
            story = narrative.get(story_id)
            if not isinstance(story, UserStory):
                continue
            stories.add(story_id)
            path.add(story_id)
            for capability_id in story.linked_capabilities:
                capability = features.get(capability_id)
                if not isinstance(capability, Capability):
                    continue
                capabilities.add(capability_id)
                path.add(capability_id)
                for requirement_id in capability.linked_technical_reqs:
                    requirement = specification.get(requirement_id)
                    if not isinstance(requirement, TechnicalRequirement):
                        continue
                    requirements.add(requirement_id)
                    path.add(requirement_id)
                    tasks.extend(requirement.linked_tasks)
                    path.extend(requirement.linked_tasks)

        flow_actions = self._actions_for(capabilities.to_list())
        path.extend(flow_actions)

        return TraceReport(
            epic_id=epic_id,
            user_stories=stories.to_list(),
            capabilities=capabilities.to_list(),
            flow_actions=flow_actions,
            requirements=requirements.to_list(),
            tasks=tasks.to_list(),
            path=path.to_list(),
        )

    def trace_implementation_to_narrative(self, task_id: str) -> TraceReport:
        """
        Walk Task -> Requirements -> Capabilities -> Stories -> Epic.

        The epic reported is the ``parent_epic`` of the first story found
        that names one, whether or not that epic resolves; other epics
        reachable from the same task are not reported.

        Raises:
            NodeNotFoundError: if ``task_id`` is not a Task of this snapshot
        """
        narrative = self._nodes(SubGraphKey.NARRATIVE)
        features = self._nodes(SubGraphKey.FEATURES)
        specification = self._nodes(SubGraphKey.SPECIFICATION)

        if not isinstance(specification.get(task_id), Task):
            raise NodeNotFoundError(task_id)

        path = _OrderedSet([task_id])
        requirements, capabilities, stories = _OrderedSet(), _OrderedSet(), _OrderedSet()

        for node_id, node in specification.items():
            if isinstance(node, TechnicalRequirement) and task_id in node.linked_tasks:
                requirements.add(node_id)
                path.add(node_id)

        for requirement_id in requirements.to_list():
            requirement = specification[requirement_id]
            for capability_id in requirement.linked_capabilities:
                if isinstance(features.get(capability_id), Capability):
                    capabilities.add(capability_id)
                    path.add(capability_id)

        for capability_id in capabilities.to_list():
            for story_id in features[capability_id].linked_user_stories:
                if isinstance(narrative.get(story_id), UserStory):
                    stories.add(story_id)
                    path.add(story_id)

        epic_id: Optional[str] = None
        for story_id in stories.to_list():
            parent = narrative[story_id].parent_epic
            if parent:
                epic_id = parent
                path.add(parent)
                break

        flow_actions = self._actions_for(capabilities.to_list())
        path.extend(flow_actions)

        return TraceReport(
            epic_id=epic_id,
            user_stories=stories.to_list(),
            capabilities=capabilities.to_list(),
            flow_actions=flow_actions,
            requirements=requirements.to_list(),
            tasks=[task_id],
            path=path.to_list(),
        )
