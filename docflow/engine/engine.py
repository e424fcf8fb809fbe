"""
Workflow Engine - Transition orchestration

This module contains the WorkflowEngine class that moves workflow instances
between the states of their definition.

=============================================================================
MODULE STRUCTURE
=============================================================================

1. INITIALIZATION
   - Constructor wiring repositories, collaborators and the shared lock registry

2. INSTANCE CREATION
   - create_instance: Bind an entity to a definition at its initial state

3. TRANSITIONS
   - request_transition: Legality, authorization, approval gating, commit
   - request_transition_to_state: Same, addressed by target state
   - validate_transition: Dry run of the checks, no mutation
   - validate_transition_to_state: Same, addressed by target state

4. APPROVAL CALLBACKS
   - resolve_approval: Record a decision through the coordinator
   - on_approval_quorum_reached: Commit the pending transition
   - on_approval_rejected_or_expired: Abandon the pending transition

5. QUERIES
   - get_instance_status, get_history, get_instance_for_entity,
     get_available_transitions, get_pending_approvals, list_instance_approvals

6. COMMIT & AUTOMATION
   - _commit: Instance update + history append as one unit
   - _run_automation: Set-field, notify and request-approval actions

=============================================================================
CONCURRENCY
=============================================================================

Every read-check-mutate sequence runs under the instance's lock from the
InstanceLockRegistry shared with the ApprovalCoordinator. The instance row also
carries a version that is checked on every update, so a writer in another
process surfaces as ConcurrencyError instead of a lost update.

Notification intents are queued on the lock's deferred queue and dispatched
after the outermost lock is released.

=============================================================================
"""
import copy
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from ..config.settings import settings
from ..domain.models import (
    PENDING_TRANSITION_KEY, SYSTEM_CALLER, ApprovalResult, CallerContext, Decision,
    InstanceStatus, SideEffectIntent, TransitionResult, WorkflowApproval, WorkflowHistory,
    WorkflowInstance, WorkflowTransition
)
from ..domain.enums import (
    ApprovalDecision, ApproverType, IntentKind, TransitionOutcome
)
from ..domain.errors import (
    ApprovalNotFoundError, ApproverResolutionError, ConcurrencyError, DefinitionInvalidError,
    DomainError, IllegalTransitionError, InstanceAlreadyExistsError, TransitionAlreadyPendingError,
    TransitionNotFoundError
)
from ..domain.rules import Action
from ..repositories.definition_repo import DefinitionRepository
from ..repositories.instance_repo import InstanceRepository
from ..repositories.history_repo import HistoryRepository
from ..repositories.approval_repo import ApprovalRepository
from ..services.notification_service import NotificationService
from ..utils.idgen import generate_instance_id
from ..utils.time import format_iso
from ..utils.logger import get_logger
from .approval_coordinator import ApprovalCoordinator
from .collaborators import (
    Clock, DirectoryPermissionResolver, EntityStore, IntentDispatcher, MongoEntityStore,
    NotificationDispatcher, PermissionResolver, SystemClock
)
from .definition_registry import CompiledDefinition, DefinitionRegistry
from .history_recorder import HistoryRecorder
from .instance_locks import InstanceLockRegistry
from .rule_evaluator import RuleEvaluator

logger = get_logger(__name__)


class WorkflowEngine:
    """
    The Workflow Engine - Central orchestrator for instance transitions

    Operations raise DomainError subclasses for caller mistakes (unknown ids,
    illegal or already-pending transitions). A denied permission or validation
    check is a normal outcome, returned as TransitionOutcome.DENIED.
    """

    def __init__(
        self,
        definition_repo: Optional[DefinitionRepository] = None,
        instance_repo: Optional[InstanceRepository] = None,
        history_repo: Optional[HistoryRepository] = None,
        approval_repo: Optional[ApprovalRepository] = None,
        entity_store: Optional[EntityStore] = None,
        permission_resolver: Optional[PermissionResolver] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Clock] = None,
        rule_evaluator: Optional[RuleEvaluator] = None
    ):
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher or NotificationService()
        self.locks = InstanceLockRegistry(
            on_release=IntentDispatcher(self.dispatcher, settings.automation_max_retries)
        )
        self.entity_store = entity_store or MongoEntityStore()
        self.permission_resolver = permission_resolver or DirectoryPermissionResolver()
        self.evaluator = rule_evaluator or RuleEvaluator()

        self.registry = DefinitionRegistry(definition_repo)
        self.instance_repo = instance_repo or InstanceRepository()
        self.history = HistoryRecorder(history_repo, self.clock)
        self.approvals = ApprovalCoordinator(
            approval_repo, self.permission_resolver, self.locks, self.clock
        )
        self.approvals.bind(self)

    # =========================================================================
    # Instance Creation
    # =========================================================================

    def create_instance(
        self,
        entity_type: str,
        entity_id: str,
        definition_id: Optional[str] = None,
        state_data: Optional[Dict[str, Any]] = None,
        caller: Optional[CallerContext] = None
    ) -> WorkflowInstance:
        """
        Create a workflow instance for an entity

        Args:
            entity_type: Letter, Document, ...
            entity_id: Id of the entity in its own store
            definition_id: Explicit definition; the entity type's default when omitted
            state_data: Initial instance data
            caller: Who is creating the instance (system when omitted)

        Returns:
            The instance, positioned at the definition's initial state
        """
        compiled = self.registry.get(definition_id) if definition_id else self.registry.get_default(entity_type)
        if compiled.entity_type != entity_type:
            raise DefinitionInvalidError(
                f"Definition {compiled.definition_id} is for {compiled.entity_type}, not {entity_type}",
                details={"definition_id": compiled.definition_id, "entity_type": entity_type}
            )

        data = dict(state_data or {})
        data.pop(PENDING_TRANSITION_KEY, None)
        initial = compiled.states[compiled.initial_state_id]

        # The unique (entity_type, entity_id) index still guards other processes
        with self.locks.hold(f"{entity_type}:{entity_id}"):
            existing = self.instance_repo.get_by_entity(entity_type, entity_id)
            if existing is not None:
                raise InstanceAlreadyExistsError(
                    f"{entity_type} {entity_id} already has a workflow instance",
                    details={
                        "entity_type": entity_type,
                        "entity_id": entity_id,
                        "instance_id": existing.instance_id
                    }
                )

            now = self.clock.now()
            instance = WorkflowInstance(
                instance_id=generate_instance_id(),
                definition_id=compiled.definition_id,
                entity_type=entity_type,
                entity_id=entity_id,
                current_state_id=initial.state_id,
                state_data=data,
                is_archived=initial.is_terminal,
                archived_at=now if initial.is_terminal else None,
                created_at=now,
                updated_at=now
            )

            with self.locks.hold(instance.instance_id) as deferred:
                instance = self.instance_repo.create_instance(instance)
                instance = self._run_automation(
                    instance,
                    compiled,
                    compiled.state_automation.get(initial.state_id, []),
                    caller or SYSTEM_CALLER,
                    None,
                    deferred
                )

        return instance

    # =========================================================================
    # Transitions
    # =========================================================================

    def request_transition(
        self,
        instance_id: str,
        transition_id: str,
        caller: CallerContext,
        comments: Optional[str] = None
    ) -> TransitionResult:
        """
        Request a transition on behalf of a caller

        Returns:
            COMMITTED, PENDING_APPROVAL (approvals opened) or DENIED (with reason)
        """
        with self.locks.hold(instance_id) as deferred:
            instance = self.instance_repo.get_instance_or_raise(instance_id)
            compiled = self.registry.get(instance.definition_id)
            transition = self._get_transition(compiled, transition_id)

            self._ensure_legal(instance, compiled, transition)

            decision = self._authorize(instance, compiled, transition, caller)
            if not decision.allowed:
                logger.info(
                    f"Transition denied: {decision.reason}",
                    extra={
                        "instance_id": instance_id,
                        "transition_id": transition_id,
                        "actor_id": caller.user_id,
                        "outcome": TransitionOutcome.DENIED.value
                    }
                )
                return self._result(TransitionOutcome.DENIED, instance, transition_id, reason=decision.reason)

            if transition.requires_approval:
                try:
                    instance, approvals = self._open_gate(instance, transition, caller, comments, deferred)
                except ApproverResolutionError as e:
                    logger.warning(
                        f"Transition denied: {e.message}",
                        extra={"instance_id": instance_id, "transition_id": transition_id}
                    )
                    return self._result(TransitionOutcome.DENIED, instance, transition_id, reason=e.message)

                return self._result(
                    TransitionOutcome.PENDING_APPROVAL, instance, transition_id, approvals=approvals
                )

            instance, record = self._commit(instance, compiled, transition, caller, comments, deferred)
            return self._result(TransitionOutcome.COMMITTED, instance, transition_id, history=record)

    def request_transition_to_state(
        self,
        instance_id: str,
        target_state_id: str,
        caller: CallerContext,
        comments: Optional[str] = None
    ) -> TransitionResult:
        """Request the transition from the current state to a target state"""
        with self.locks.hold(instance_id):
            instance = self.instance_repo.get_instance_or_raise(instance_id)
            compiled = self.registry.get(instance.definition_id)

            transition = compiled.find_transition(instance.current_state_id, target_state_id)
            if transition is None:
                raise IllegalTransitionError(
                    f"No transition from {instance.current_state_id} to {target_state_id}",
                    details={"instance_id": instance_id, "target_state_id": target_state_id}
                )

            return self.request_transition(instance_id, transition.transition_id, caller, comments)

    def validate_transition(
        self,
        instance_id: str,
        transition_id: str,
        caller: CallerContext
    ) -> Decision:
        """Run the transition checks without changing anything"""
        with self.locks.hold(instance_id):
            instance = self.instance_repo.get_instance_or_raise(instance_id)
            compiled = self.registry.get(instance.definition_id)
            transition = self._get_transition(compiled, transition_id)

            try:
                self._ensure_legal(instance, compiled, transition)
            except (IllegalTransitionError, TransitionAlreadyPendingError) as e:
                return Decision.deny(e.message)

            return self._authorize(instance, compiled, transition, caller)

    def validate_transition_to_state(
        self,
        instance_id: str,
        target_state_id: str,
        caller: CallerContext
    ) -> Decision:
        """Dry run of the checks for the transition from the current state to a target state"""
        with self.locks.hold(instance_id):
            instance = self.instance_repo.get_instance_or_raise(instance_id)
            compiled = self.registry.get(instance.definition_id)

            transition = compiled.find_transition(instance.current_state_id, target_state_id)
            if transition is None:
                return Decision.deny(f"No transition from {instance.current_state_id} to {target_state_id}")

            return self.validate_transition(instance_id, transition.transition_id, caller)

    # =========================================================================
    # Approval Callbacks
    # =========================================================================

    def resolve_approval(
        self,
        approval_id: str,
        decision: ApprovalDecision,
        comments: Optional[str] = None,
        actor: Optional[CallerContext] = None
    ) -> ApprovalResult:
        """
        Resolve an approval and report what happened to the gated transition

        Raises:
            ApprovalNotFoundError, ApprovalAlreadyResolvedError, ApproverNotEligibleError
        """
        approval = self.approvals.repo.get_approval(approval_id)
        if not approval:
            raise ApprovalNotFoundError(f"Approval {approval_id} not found")

        with self.locks.hold(approval.instance_id):
            updated, outcome = self.approvals.resolve(approval_id, decision, comments=comments, actor=actor)
            instance = self.instance_repo.get_instance_or_raise(approval.instance_id)

        return ApprovalResult(
            approval=updated,
            transition_outcome=outcome,
            current_state_id=instance.current_state_id
        )

    def on_approval_quorum_reached(
        self,
        instance_id: str,
        transition_id: str,
        actor_id: str,
        comments: Optional[str] = None
    ) -> None:
        """Commit a pending transition once every approval it needs is granted"""
        with self.locks.hold(instance_id) as deferred:
            instance = self.instance_repo.get_instance_or_raise(instance_id)
            if instance.pending_transition_id != transition_id:
                logger.warning(
                    "Quorum reached for a transition that is not pending",
                    extra={"instance_id": instance_id, "transition_id": transition_id}
                )
                return

            compiled = self.registry.get(instance.definition_id)
            transition = self._get_transition(compiled, transition_id)
            self._commit(
                instance,
                compiled,
                transition,
                CallerContext(user_id=actor_id),
                comments,
                deferred,
                metadata={"approved": True}
            )

    def on_approval_rejected_or_expired(
        self,
        instance_id: str,
        transition_id: str,
        outcome: TransitionOutcome,
        actor_id: str,
        comments: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Abandon a pending transition: clear the marker and record why"""
        with self.locks.hold(instance_id) as deferred:
            instance = self.instance_repo.get_instance_or_raise(instance_id)
            if instance.pending_transition_id != transition_id:
                logger.warning(
                    "Abandon requested for a transition that is not pending",
                    extra={"instance_id": instance_id, "transition_id": transition_id}
                )
                return

            state_data = dict(instance.state_data)
            state_data.pop(PENDING_TRANSITION_KEY, None)
            updated = self.instance_repo.update_instance(
                instance,
                {"state_data": state_data, "updated_at": format_iso(self.clock.now())},
                instance.version
            )

            try:
                self.history.record_abandoned(
                    instance_id=instance_id,
                    state_id=instance.current_state_id,
                    transition_id=transition_id,
                    actor_id=actor_id,
                    reason=outcome.value,
                    comments=comments,
                    metadata=metadata
                )
            except (PyMongoError, ConcurrencyError):
                self._revert(instance, updated)
                raise

            logger.info(
                f"Pending transition abandoned ({outcome.value})",
                extra={
                    "instance_id": instance_id,
                    "transition_id": transition_id,
                    "actor_id": actor_id,
                    "outcome": outcome.value
                }
            )
            deferred.append(SideEffectIntent(
                kind=IntentKind.TRANSITION_ABANDONED,
                template_key="transition_abandoned",
                payload={"outcome": outcome.value, "comments": comments, "actor_id": actor_id},
                instance_id=instance_id,
                transition_id=transition_id
            ))

    def check_expirations(self) -> Dict[str, int]:
        """Run one reminder/expiry sweep"""
        return self.approvals.check_expirations()

    # =========================================================================
    # Queries
    # =========================================================================

    def get_instance_status(self, instance_id: str) -> InstanceStatus:
        """Current state, pending transition and its outstanding approvals"""
        with self.locks.hold(instance_id):
            instance = self.instance_repo.get_instance_or_raise(instance_id)
            compiled = self.registry.get(instance.definition_id)
            pending: List[WorkflowApproval] = []
            if instance.pending_transition_id:
                pending = self.approvals.pending_for_transition(instance_id, instance.pending_transition_id)

        return InstanceStatus(
            instance_id=instance.instance_id,
            entity_type=instance.entity_type,
            entity_id=instance.entity_id,
            current_state=compiled.states[instance.current_state_id],
            pending_transition_id=instance.pending_transition_id,
            pending_approvals=pending,
            is_archived=instance.is_archived
        )

    def get_history(
        self,
        instance_id: str,
        after_sequence: int = 0,
        limit: Optional[int] = None
    ) -> List[WorkflowHistory]:
        """History records, oldest first"""
        with self.locks.hold(instance_id):
            self.instance_repo.get_instance_or_raise(instance_id)
            return self.history.query_by_instance(instance_id, after_sequence=after_sequence, limit=limit)

    def get_instance_for_entity(self, entity_type: str, entity_id: str) -> Optional[WorkflowInstance]:
        return self.instance_repo.get_by_entity(entity_type, entity_id)

    def get_available_transitions(
        self,
        instance_id: str,
        caller: CallerContext
    ) -> List[WorkflowTransition]:
        """Transitions the caller could request right now"""
        with self.locks.hold(instance_id):
            instance = self.instance_repo.get_instance_or_raise(instance_id)
            if instance.pending_transition_id:
                return []

            compiled = self.registry.get(instance.definition_id)
            if compiled.states[instance.current_state_id].is_terminal:
                return []

            context = self._build_context(instance, caller)
            return [
                t for t in compiled.outgoing_transitions(instance.current_state_id)
                if self._authorize(instance, compiled, t, caller, context).allowed
            ]

    def get_pending_approvals(self, approver_type: ApproverType, approver_id: str) -> List[WorkflowApproval]:
        return self.approvals.get_pending_approvals(approver_type, approver_id)

    def list_instance_approvals(self, instance_id: str) -> List[WorkflowApproval]:
        """Every approval row of an instance, newest first"""
        self.instance_repo.get_instance_or_raise(instance_id)
        return self.approvals.list_for_instance(instance_id)

    # =========================================================================
    # Checks
    # =========================================================================

    def _get_transition(self, compiled: CompiledDefinition, transition_id: str) -> WorkflowTransition:
        transition = compiled.transitions.get(transition_id)
        if transition is None:
            raise TransitionNotFoundError(
                f"Transition {transition_id} not found in definition {compiled.definition_id}",
                details={"transition_id": transition_id, "definition_id": compiled.definition_id}
            )
        return transition

    def _ensure_legal(
        self,
        instance: WorkflowInstance,
        compiled: CompiledDefinition,
        transition: WorkflowTransition
    ) -> None:
        current = compiled.states[instance.current_state_id]
        if current.is_terminal:
            raise IllegalTransitionError(
                f"Instance is in terminal state {current.name}",
                details={"instance_id": instance.instance_id, "current_state_id": current.state_id}
            )
        if transition.from_state_id != current.state_id:
            raise IllegalTransitionError(
                f"Transition {transition.transition_id} does not leave {current.name}",
                details={
                    "instance_id": instance.instance_id,
                    "transition_id": transition.transition_id,
                    "current_state_id": current.state_id
                }
            )
        if instance.pending_transition_id:
            raise TransitionAlreadyPendingError(
                f"Transition {instance.pending_transition_id} is awaiting approval",
                details={
                    "instance_id": instance.instance_id,
                    "pending_transition_id": instance.pending_transition_id
                }
            )

    def _authorize(
        self,
        instance: WorkflowInstance,
        compiled: CompiledDefinition,
        transition: WorkflowTransition,
        caller: CallerContext,
        context: Optional[Dict[str, Any]] = None
    ) -> Decision:
        """Permission checks first, then validation; the first denial wins"""
        if context is None:
            context = self._build_context(instance, caller)
        return self.evaluator.evaluate_all(
            [
                compiled.transition_permissions.get(transition.transition_id),
                compiled.state_permissions.get(transition.to_state_id),
                compiled.instance_validation,
                compiled.transition_validation.get(transition.transition_id),
            ],
            context
        )

    def _build_context(self, instance: WorkflowInstance, caller: CallerContext) -> Dict[str, Any]:
        permissions = self.permission_resolver.resolve_caller_permissions(caller)
        entity = self.entity_store.load_entity_snapshot(instance.entity_type, instance.entity_id)
        return self.evaluator.build_context(permissions, instance.state_data, entity, caller)

    # =========================================================================
    # Commit
    # =========================================================================

    def _open_gate(
        self,
        instance: WorkflowInstance,
        transition: WorkflowTransition,
        caller: CallerContext,
        comments: Optional[str],
        deferred: List[SideEffectIntent]
    ) -> tuple:
        """Create approval rows and mark the transition pending"""
        approvals, intents = self.approvals.request_approvals(
            instance.instance_id, transition.transition_id, transition.approvals
        )

        state_data = dict(instance.state_data)
        state_data[PENDING_TRANSITION_KEY] = transition.transition_id
        try:
            updated = self.instance_repo.update_instance(
                instance,
                {"state_data": state_data, "updated_at": format_iso(self.clock.now())},
                instance.version
            )
        except (PyMongoError, ConcurrencyError):
            self.approvals.repo.cancel_pending(instance.instance_id, transition.transition_id, self.clock.now())
            raise

        for intent in intents:
            intent.payload.update({"requested_by": caller.user_id, "comments": comments})
        deferred.extend(intents)

        logger.info(
            f"Transition awaiting {len(approvals)} approval(s)",
            extra={
                "instance_id": instance.instance_id,
                "transition_id": transition.transition_id,
                "actor_id": caller.user_id,
                "outcome": TransitionOutcome.PENDING_APPROVAL.value
            }
        )
        return updated, approvals

    def _commit(
        self,
        instance: WorkflowInstance,
        compiled: CompiledDefinition,
        transition: WorkflowTransition,
        actor: CallerContext,
        comments: Optional[str],
        deferred: List[SideEffectIntent],
        metadata: Optional[Dict[str, Any]] = None
    ) -> tuple:
        """
        Move the instance to the transition's target state and append history

        The instance update and the history append succeed or fail together:
        if the append fails the instance is put back and the error re-raised.
        """
        now = self.clock.now()
        target = compiled.states[transition.to_state_id]

        state_data = dict(instance.state_data)
        state_data.pop(PENDING_TRANSITION_KEY, None)
        updates: Dict[str, Any] = {
            "current_state_id": target.state_id,
            "state_data": state_data,
            "updated_at": format_iso(now)
        }
        if target.is_terminal:
            updates["is_archived"] = True
            updates["archived_at"] = format_iso(now)

        updated = self.instance_repo.update_instance(instance, updates, instance.version)

        try:
            record = self.history.record_committed(
                instance_id=instance.instance_id,
                from_state_id=instance.current_state_id,
                to_state_id=target.state_id,
                transition_id=transition.transition_id,
                actor_id=actor.user_id,
                comments=comments,
                metadata=metadata
            )
        except (PyMongoError, ConcurrencyError):
            self._revert(instance, updated)
            raise

        logger.info(
            f"Transition committed: {instance.current_state_id} -> {target.state_id}",
            extra={
                "instance_id": instance.instance_id,
                "transition_id": transition.transition_id,
                "actor_id": actor.user_id,
                "outcome": TransitionOutcome.COMMITTED.value
            }
        )

        actions = (
            compiled.transition_automation.get(transition.transition_id, [])
            + compiled.state_automation.get(target.state_id, [])
        )
        updated = self._run_automation(updated, compiled, actions, actor, transition.transition_id, deferred)
        return updated, record

    def _revert(self, original: WorkflowInstance, updated: WorkflowInstance) -> None:
        """Put an instance back after its history append failed"""
        logger.error(
            "History append failed; reverting instance",
            extra={"instance_id": original.instance_id}
        )
        self.instance_repo.update_instance(
            updated,
            {
                "current_state_id": original.current_state_id,
                "state_data": original.state_data,
                "is_archived": original.is_archived,
                "archived_at": format_iso(original.archived_at) if original.archived_at else None,
                "updated_at": format_iso(original.updated_at)
            },
            updated.version
        )

    # =========================================================================
    # Automation
    # =========================================================================

    def _run_automation(
        self,
        instance: WorkflowInstance,
        compiled: CompiledDefinition,
        actions: List[Action],
        actor: CallerContext,
        transition_id: Optional[str],
        deferred: List[SideEffectIntent]
    ) -> WorkflowInstance:
        """
        Apply automation after a commit

        Failures are logged and never undo the commit that triggered them.
        """
        if not actions:
            return instance

        try:
            context = self._build_context(instance, actor)
            intents = self.evaluator.apply(actions, context, instance.instance_id, transition_id)
        except Exception as e:
            logger.error(
                f"Automation could not be evaluated: {e}",
                extra={"instance_id": instance.instance_id, "transition_id": transition_id},
                exc_info=True
            )
            return instance

        set_fields = [i for i in intents if i.kind == IntentKind.SET_FIELD]
        if set_fields:
            instance = self._apply_set_fields(instance, set_fields)

        for intent in intents:
            if intent.kind == IntentKind.REQUEST_APPROVAL:
                instance = self._apply_request_approval(instance, compiled, intent, actor, deferred)
            elif intent.kind != IntentKind.SET_FIELD:
                deferred.append(intent)

        return instance

    def _apply_set_fields(
        self,
        instance: WorkflowInstance,
        intents: List[SideEffectIntent]
    ) -> WorkflowInstance:
        data = copy.deepcopy(instance.state_data)
        changed = False

        for intent in intents:
            field = intent.payload.get("field", "")
            if not field or field.split(".")[0] == PENDING_TRANSITION_KEY:
                logger.error(
                    f"Automation may not set {field!r}",
                    extra={"instance_id": instance.instance_id, "transition_id": intent.transition_id}
                )
                continue
            _set_path(data, field, intent.payload.get("value"))
            changed = True

        if not changed:
            return instance

        try:
            return self.instance_repo.update_instance(
                instance,
                {"state_data": data, "updated_at": format_iso(self.clock.now())},
                instance.version
            )
        except (PyMongoError, DomainError) as e:
            logger.error(
                f"Automation set-field failed: {e}",
                extra={
                    "instance_id": instance.instance_id,
                    "reason": [i.payload for i in intents]
                }
            )
            return instance

    def _apply_request_approval(
        self,
        instance: WorkflowInstance,
        compiled: CompiledDefinition,
        intent: SideEffectIntent,
        actor: CallerContext,
        deferred: List[SideEffectIntent]
    ) -> WorkflowInstance:
        transition = compiled.transitions.get(intent.transition_id or "")

        problem = None
        if transition is None:
            problem = "unknown transition"
        elif transition.from_state_id != instance.current_state_id:
            problem = "transition does not leave the current state"
        elif not transition.requires_approval:
            problem = "transition has no approvers"
        elif instance.pending_transition_id:
            problem = f"transition {instance.pending_transition_id} is already pending"

        if problem:
            logger.error(
                f"Automation approval request skipped: {problem}",
                extra={"instance_id": instance.instance_id, "transition_id": intent.transition_id}
            )
            return instance

        try:
            instance, _ = self._open_gate(instance, transition, actor, None, deferred)
        except (PyMongoError, DomainError) as e:
            logger.error(
                f"Automation approval request failed: {e}",
                extra={"instance_id": instance.instance_id, "transition_id": intent.transition_id}
            )
        return instance

    # =========================================================================
    # Response Building
    # =========================================================================

    def _result(
        self,
        outcome: TransitionOutcome,
        instance: WorkflowInstance,
        transition_id: str,
        reason: Optional[str] = None,
        history: Optional[WorkflowHistory] = None,
        approvals: Optional[List[WorkflowApproval]] = None
    ) -> TransitionResult:
        return TransitionResult(
            outcome=outcome,
            instance_id=instance.instance_id,
            transition_id=transition_id,
            current_state_id=instance.current_state_id,
            reason=reason,
            history=history,
            approvals=approvals or []
        )


def _set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    """Set a dot-path value, creating intermediate objects"""
    parts = path.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value
