"""
Planning-service boundary.

A planning service (typically LLM-backed, always external) turns a free-text
intent into plan content that refers to other content BY NAME. The
ProposalResolver allocates real ``{prefix}-{uuid}`` ids, resolves every name
reference into an id link, and emits a ChangeRequestDraft the store can
persist and apply like any other change request.

Resolution rules:
- story -> capability names: story.linked_capabilities, capability back-link,
  and a narrative_to_structure cross-layer dependency
- requirement -> capability names: requirement.linked_capabilities,
  capability.linked_technical_reqs, and a structure_to_spec dependency
- action -> screen name: appended to the screen's actions; an action whose
  screen does not resolve is dropped
- action -> next screen name: next_screen, plus the parent screen recorded as
  an entry transition of the target
- action -> capability names: linked_capabilities and one mapping
- requirement -> tasks: tasks are created and linked

Names match after trimming and case folding. References that do not
resolve are dropped and logged.
"""
import logging
from typing import Dict, List, Optional, Protocol

import msgspec

from core.ontology import Initiator, Layer, RequirementCategory, TaskCategory, TriggerType
from core.schemas import (
    Capability,
    ChangeRequestDraft,
    CrossLayerDependency,
    Epic,
    FlowAction,
    FlowScreen,
    FlowToCapabilityMapping,
    Task,
    TechnicalRequirement,
    UserStory,
    generate_id,
)

logger = logging.getLogger(__name__)


# =============================================================================
# NAME-BASED PROPOSALS
# =============================================================================

class ProposedStory(msgspec.Struct, kw_only=True):
    narrative: str
    acceptance_criteria: List[str] = msgspec.field(default_factory=list)
    capability_names: List[str] = msgspec.field(default_factory=list)


class ProposedEpic(msgspec.Struct, kw_only=True):
    name: str
    description: str = ""
    stories: List[ProposedStory] = msgspec.field(default_factory=list)


class ProposedCapability(msgspec.Struct, kw_only=True):
    name: str
    description: str = ""


class ProposedScreen(msgspec.Struct, kw_only=True):
    name: str
    description: str = ""


class ProposedAction(msgspec.Struct, kw_only=True):
    name: str
    screen_name: str
    description: str = ""
    trigger_type: TriggerType = TriggerType.USER
    next_screen_name: Optional[str] = None
    capability_names: List[str] = msgspec.field(default_factory=list)
    rationale: str = ""


class ProposedTask(msgspec.Struct, kw_only=True):
    description: str
    category: TaskCategory = TaskCategory.BACKEND


class ProposedRequirement(msgspec.Struct, kw_only=True):
    specification: str
    category: RequirementCategory = RequirementCategory.OTHER
    capability_names: List[str] = msgspec.field(default_factory=list)
    tasks: List[ProposedTask] = msgspec.field(default_factory=list)


class LayeredProposal(msgspec.Struct, kw_only=True):
    """Everything a planning service may propose for one intent."""
    epics: List[ProposedEpic] = msgspec.field(default_factory=list)
    capabilities: List[ProposedCapability] = msgspec.field(default_factory=list)
    screens: List[ProposedScreen] = msgspec.field(default_factory=list)
    actions: List[ProposedAction] = msgspec.field(default_factory=list)
    requirements: List[ProposedRequirement] = msgspec.field(default_factory=list)


class PlanningService(Protocol):
    """
    External content generator.

    ``prior`` carries the content proposed so far when generation is staged
    (narrative first, then structure, then specification).
    """

    def propose(self, intent: str, prior: Optional[LayeredProposal] = None) -> LayeredProposal:
        ...


# =============================================================================
# RESOLVER
# =============================================================================

def _key(name: str) -> str:
    return name.strip().casefold()


class ProposalResolver:
    """Turns a LayeredProposal into an id-linked ChangeRequestDraft."""

    def __init__(self, initiator: Initiator = Initiator.AI):
        self.initiator = initiator

    def resolve(self, proposal: LayeredProposal, description: str = "") -> ChangeRequestDraft:
        draft = ChangeRequestDraft(description=description, initiator=self.initiator)

        capabilities: Dict[str, Capability] = {}
        for proposed in proposal.capabilities:
            capabilities.setdefault(_key(proposed.name), Capability(
                id=generate_id("cap"), name=proposed.name, description=proposed.description,
            ))

        def lookup_capabilities(names: List[str], owner: str) -> List[Capability]:
            found: List[Capability] = []
            for name in names:
                capability = capabilities.get(_key(name))
                if capability is None:
                    logger.warning('%s references unknown capability "%s"', owner, name)
                elif capability not in found:
                    found.append(capability)
            return found

        # === Narrative ===
        for proposed_epic in proposal.epics:
            epic = Epic(id=generate_id("epic"), name=proposed_epic.name, description=proposed_epic.description)
            draft.new_nodes.append(epic)
            for proposed_story in proposed_epic.stories:
                story = UserStory(
                    id=generate_id("story"),
                    narrative=proposed_story.narrative,
                    acceptance_criteria=list(proposed_story.acceptance_criteria),
                    parent_epic=epic.id,
                )
                for capability in lookup_capabilities(proposed_story.capability_names, f'Story "{story.narrative}"'):
                    story.linked_capabilities.append(capability.id)
                    capability.linked_user_stories.append(story.id)
                    draft.new_cross_layer_dependencies.append(CrossLayerDependency.create(
                        story.id, capability.id, Layer.NARRATIVE, Layer.STRUCTURE,
                        rationale=f'User Story "{story.narrative}" requires capability "{capability.name}"',
                    ))
                epic.user_stories.append(story.id)
                draft.new_nodes.append(story)

        # === Structure: features ===
        draft.new_nodes.extend(capabilities.values())

        # === Structure: flows ===
        screens: Dict[str, FlowScreen] = {}
        for proposed in proposal.screens:
            screens.setdefault(_key(proposed.name), FlowScreen(
                id=generate_id("screen"), name=proposed.name, description=proposed.description,
            ))
        draft.new_nodes.extend(screens.values())

        for proposed in proposal.actions:
            screen = screens.get(_key(proposed.screen_name))
            if screen is None:
                logger.warning('Action "%s" dropped: unknown screen "%s"', proposed.name, proposed.screen_name)
                continue
            action = FlowAction(
                id=generate_id("action"),
                name=proposed.name,
                description=proposed.description,
                trigger_type=proposed.trigger_type,
                parent_screen=screen.id,
            )
            screen.actions.append(action.id)

            if proposed.next_screen_name:
                target = screens.get(_key(proposed.next_screen_name))
                if target is None:
                    logger.warning('Action "%s" has unknown next screen "%s"', proposed.name, proposed.next_screen_name)
                else:
                    action.next_screen = target.id
                    if screen.id not in target.entry_transitions:
                        target.entry_transitions.append(screen.id)

            linked = lookup_capabilities(proposed.capability_names, f'Action "{proposed.name}"')
            action.linked_capabilities = [capability.id for capability in linked]
            draft.new_nodes.append(action)
            if linked:
                draft.new_mappings.append(FlowToCapabilityMapping(
                    id=generate_id("mapping"),
                    flow_action_id=action.id,
                    capability_ids=list(action.linked_capabilities),
                    rationale=proposed.rationale or (
                        f'Flow action "{action.name}" requires '
                        + ", ".join(f'"{capability.name}"' for capability in linked)
                    ),
                ))

        # === Specification ===
        for proposed in proposal.requirements:
            requirement = TechnicalRequirement(
                id=generate_id("req"), category=proposed.category, specification=proposed.specification,
            )
            for capability in lookup_capabilities(proposed.capability_names, f'Requirement "{proposed.specification}"'):
                requirement.linked_capabilities.append(capability.id)
                capability.linked_technical_reqs.append(requirement.id)
                draft.new_cross_layer_dependencies.append(CrossLayerDependency.create(
                    capability.id, requirement.id, Layer.STRUCTURE, Layer.SPECIFICATION,
                    rationale=f'Capability "{capability.name}" is specified by "{requirement.specification}"',
                ))
            draft.new_nodes.append(requirement)
            for proposed_task in proposed.tasks:
                task = Task(id=generate_id("task"), category=proposed_task.category,
                            description=proposed_task.description)
                requirement.linked_tasks.append(task.id)
                draft.new_nodes.append(task)

        return draft


def plan_change_request(service: PlanningService, intent: str,
                        prior: Optional[LayeredProposal] = None) -> ChangeRequestDraft:
    """Ask ``service`` for a proposal and resolve it into a draft."""
    proposal = service.propose(intent, prior)
    return ProposalResolver().resolve(proposal, description=intent)
