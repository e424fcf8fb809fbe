"""Definition Registry - Validated, compiled workflow definitions"""
import threading
from collections import deque
from typing import Dict, List, Optional, Union

from ..domain.models import WorkflowDefinition, WorkflowState, WorkflowTransition
from ..domain.rules import (
    Action, MalformedRule, PermissionRule, Rule, parse_actions, parse_permissions, parse_rule
)
from ..domain.errors import (
    DefinitionInvalidError, DefinitionNotFoundError, NoDefaultDefinitionError
)
from ..repositories.definition_repo import DefinitionRepository
from ..utils.logger import get_logger

logger = get_logger(__name__)

PermissionCheck = Union[PermissionRule, MalformedRule, None]


class CompiledDefinition:
    """
    A definition whose states and transitions are indexed by id and whose rule
    columns have been parsed once

    Instances never hold references into this object; they look states and
    transitions up by id.
    """

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self.states: Dict[str, WorkflowState] = {s.state_id: s for s in definition.states}
        self.transitions: Dict[str, WorkflowTransition] = {t.transition_id: t for t in definition.transitions}

        self.outgoing: Dict[str, List[str]] = {state_id: [] for state_id in self.states}
        for transition in definition.transitions:
            self.outgoing.setdefault(transition.from_state_id, []).append(transition.transition_id)

        initial = [s.state_id for s in definition.states if s.is_initial]
        self.initial_state_id: Optional[str] = initial[0] if len(initial) == 1 else None

        self.instance_validation: Optional[Rule] = parse_rule(definition.validation_rules)
        self.state_permissions: Dict[str, PermissionCheck] = {
            s.state_id: parse_permissions(s.required_permissions) for s in definition.states
        }
        self.state_automation: Dict[str, List[Action]] = {
            s.state_id: parse_actions(s.automation_rules) for s in definition.states
        }
        self.transition_permissions: Dict[str, PermissionCheck] = {
            t.transition_id: parse_permissions(t.required_permissions) for t in definition.transitions
        }
        self.transition_validation: Dict[str, Optional[Rule]] = {
            t.transition_id: parse_rule(t.validation_rules) for t in definition.transitions
        }
        self.transition_automation: Dict[str, List[Action]] = {
            t.transition_id: parse_actions(t.automation_rules) for t in definition.transitions
        }

    @property
    def definition_id(self) -> str:
        return self.definition.definition_id

    @property
    def entity_type(self) -> str:
        return self.definition.entity_type

    def outgoing_transitions(self, state_id: str) -> List[WorkflowTransition]:
        """Transitions leaving a state, in definition order"""
        return [self.transitions[t] for t in self.outgoing.get(state_id, [])]

    def find_transition(self, from_state_id: str, to_state_id: str) -> Optional[WorkflowTransition]:
        """First transition from one state to another, if any"""
        for transition in self.outgoing_transitions(from_state_id):
            if transition.to_state_id == to_state_id:
                return transition
        return None

    def malformed_rules(self) -> List[str]:
        """Describe every rule column that failed to parse"""
        problems = []
        if isinstance(self.instance_validation, MalformedRule):
            problems.append(f"definition validation: {self.instance_validation.reason}")
        for state_id, check in self.state_permissions.items():
            if isinstance(check, MalformedRule):
                problems.append(f"state {state_id} permissions: {check.reason}")
        for transition_id, check in self.transition_permissions.items():
            if isinstance(check, MalformedRule):
                problems.append(f"transition {transition_id} permissions: {check.reason}")
        for transition_id, rule in self.transition_validation.items():
            if isinstance(rule, MalformedRule):
                problems.append(f"transition {transition_id} validation: {rule.reason}")
        for owner, actions in list(self.state_automation.items()) + list(self.transition_automation.items()):
            for action in actions:
                if isinstance(action, MalformedRule):
                    problems.append(f"{owner} automation: {action.reason}")
        return problems


def validate_definition(definition: WorkflowDefinition) -> List[str]:
    """
    Check a definition's graph

    Returns:
        List of problems; empty when the definition is usable
    """
    errors: List[str] = []

    if not definition.states:
        return ["definition has no states"]

    state_ids = [s.state_id for s in definition.states]
    duplicates = {s for s in state_ids if state_ids.count(s) > 1}
    if duplicates:
        errors.append(f"duplicate state ids: {', '.join(sorted(duplicates))}")

    names = [s.name for s in definition.states]
    duplicate_names = {n for n in names if names.count(n) > 1}
    if duplicate_names:
        errors.append(f"duplicate state names: {', '.join(sorted(duplicate_names))}")

    initial = [s.state_id for s in definition.states if s.is_initial]
    if len(initial) != 1:
        errors.append(f"expected exactly one initial state, found {len(initial)}")

    transition_ids = [t.transition_id for t in definition.transitions]
    duplicate_transitions = {t for t in transition_ids if transition_ids.count(t) > 1}
    if duplicate_transitions:
        errors.append(f"duplicate transition ids: {', '.join(sorted(duplicate_transitions))}")

    states = {s.state_id: s for s in definition.states}
    for transition in definition.transitions:
        if transition.from_state_id not in states:
            errors.append(f"transition {transition.transition_id} starts at unknown state {transition.from_state_id}")
        elif states[transition.from_state_id].is_terminal:
            errors.append(f"transition {transition.transition_id} leaves terminal state {transition.from_state_id}")
        if transition.to_state_id not in states:
            errors.append(f"transition {transition.transition_id} targets unknown state {transition.to_state_id}")

    if len(initial) == 1:
        reachable = {initial[0]}
        queue = deque([initial[0]])
        while queue:
            current = queue.popleft()
            for transition in definition.transitions:
                if transition.from_state_id == current and transition.to_state_id in states:
                    if transition.to_state_id not in reachable:
                        reachable.add(transition.to_state_id)
                        queue.append(transition.to_state_id)
        unreachable = [s for s in state_ids if s not in reachable]
        if unreachable:
            errors.append(f"states unreachable from initial state: {', '.join(unreachable)}")

    return errors


class DefinitionRegistry:
    """
    Load, validate and cache workflow definitions

    Definitions are immutable once published, so a compiled definition is cached
    by id for the life of the process. Reads need no locking; only cache fills do.
    """

    def __init__(self, repo: Optional[DefinitionRepository] = None):
        self.repo = repo or DefinitionRepository()
        self._cache: Dict[str, CompiledDefinition] = {}
        self._fill_lock = threading.Lock()

    def compile(self, definition: WorkflowDefinition) -> CompiledDefinition:
        """Validate and compile a definition without caching it"""
        errors = validate_definition(definition)
        if errors:
            logger.error(
                f"Definition {definition.definition_id} is invalid: {'; '.join(errors)}",
                extra={"definition_id": definition.definition_id}
            )
            raise DefinitionInvalidError(
                f"Definition {definition.definition_id} is invalid",
                details={"definition_id": definition.definition_id, "errors": errors}
            )

        compiled = CompiledDefinition(definition)
        for problem in compiled.malformed_rules():
            # Malformed rules deny at evaluation time
            logger.warning(
                f"Malformed rule in {definition.definition_id}: {problem}",
                extra={"definition_id": definition.definition_id}
            )
        return compiled

    def get(self, definition_id: str) -> CompiledDefinition:
        """Get a compiled definition by id"""
        compiled = self._cache.get(definition_id)
        if compiled is not None:
            return compiled

        with self._fill_lock:
            compiled = self._cache.get(definition_id)
            if compiled is None:
                definition = self.repo.get_definition(definition_id)
                if not definition:
                    raise DefinitionNotFoundError(f"Workflow definition {definition_id} not found")
                compiled = self.compile(definition)
                self._cache[definition_id] = compiled
        return compiled

    def get_default(self, entity_type: str) -> CompiledDefinition:
        """Get the compiled default definition for an entity type"""
        definition = self.repo.get_default_for_entity_type(entity_type)
        if not definition:
            raise NoDefaultDefinitionError(
                f"No default workflow definition for {entity_type}",
                details={"entity_type": entity_type}
            )
        return self.get(definition.definition_id)

    def reload(self, definition_id: Optional[str] = None) -> None:
        """Drop one cached definition, or all of them"""
        with self._fill_lock:
            if definition_id is None:
                self._cache.clear()
            else:
                self._cache.pop(definition_id, None)
        logger.info("Definition cache reloaded", extra={"definition_id": definition_id})
