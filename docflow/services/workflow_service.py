"""
Workflow Service - Caller-facing operations

Wraps the engine so every operation returns an OperationResult instead of
raising. Expected failures (unknown ids, illegal or already-pending transitions,
ineligible approvers, bad definitions) come back as ``error`` payloads built by
DomainError.to_dict(). Infrastructure failures (PyMongoError) still propagate.
"""
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel

from ..domain.models import (
    ApprovalResult, CallerContext, Decision, InstanceStatus, TransitionResult,
    WorkflowApproval, WorkflowHistory, WorkflowInstance, WorkflowTransition
)
from ..domain.enums import ApprovalDecision, ApproverType
from ..domain.errors import DomainError
from ..engine.engine import WorkflowEngine
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_logger, get_correlation_id, set_correlation_id

logger = get_logger(__name__)

T = TypeVar("T")


class OperationResult(BaseModel, Generic[T]):
    """Success value or error payload"""
    
    ok: bool
    value: Optional[T] = None
    error: Optional[Dict[str, Any]] = None
    correlation_id: Optional[str] = None
    
    @classmethod
    def success(cls, value: Any, correlation_id: Optional[str] = None) -> "OperationResult":
        return cls(ok=True, value=value, correlation_id=correlation_id)
    
    @classmethod
    def failure(cls, error: DomainError, correlation_id: Optional[str] = None) -> "OperationResult":
        return cls(ok=False, error=error.to_dict(), correlation_id=correlation_id)
    
    @property
    def error_code(self) -> Optional[str]:
        if not self.error:
            return None
        return self.error["error"]["code"]


class WorkflowService:
    """Service for workflow instance operations"""
    
    def __init__(self, engine: Optional[WorkflowEngine] = None):
        self.engine = engine or WorkflowEngine()
    
    # =========================================================================
    # Commands
    # =========================================================================
    
    def create_workflow_instance(
        self,
        entity_type: str,
        entity_id: str,
        definition_id: Optional[str] = None,
        state_data: Optional[Dict[str, Any]] = None,
        caller: Optional[CallerContext] = None
    ) -> OperationResult[WorkflowInstance]:
        """Bind an entity to a workflow definition"""
        return self._run(
            "create_workflow_instance",
            self.engine.create_instance,
            entity_type,
            entity_id,
            definition_id=definition_id,
            state_data=state_data,
            caller=caller
        )
    
    def request_transition(
        self,
        instance_id: str,
        transition_id: str,
        caller: CallerContext,
        comments: Optional[str] = None
    ) -> OperationResult[TransitionResult]:
        """Request a transition; a DENIED outcome is still a successful result"""
        return self._run(
            "request_transition",
            self.engine.request_transition,
            instance_id,
            transition_id,
            caller,
            comments=comments
        )
    
    def request_transition_to_state(
        self,
        instance_id: str,
        target_state_id: str,
        caller: CallerContext,
        comments: Optional[str] = None
    ) -> OperationResult[TransitionResult]:
        return self._run(
            "request_transition_to_state",
            self.engine.request_transition_to_state,
            instance_id,
            target_state_id,
            caller,
            comments=comments
        )
    
    def resolve_approval(
        self,
        approval_id: str,
        decision: ApprovalDecision,
        actor: CallerContext,
        comments: Optional[str] = None
    ) -> OperationResult[ApprovalResult]:
        """Approve or reject one approval"""
        return self._run(
            "resolve_approval",
            self.engine.resolve_approval,
            approval_id,
            decision,
            comments=comments,
            actor=actor
        )
    
    # =========================================================================
    # Queries
    # =========================================================================
    
    def validate_transition(
        self,
        instance_id: str,
        transition_id: str,
        caller: CallerContext
    ) -> OperationResult[Decision]:
        return self._run("validate_transition", self.engine.validate_transition, instance_id, transition_id, caller)
    
    def validate_transition_to_state(
        self,
        instance_id: str,
        target_state_id: str,
        caller: CallerContext
    ) -> OperationResult[Decision]:
        return self._run(
            "validate_transition_to_state",
            self.engine.validate_transition_to_state,
            instance_id,
            target_state_id,
            caller
        )
    
    def get_instance_status(self, instance_id: str) -> OperationResult[InstanceStatus]:
        return self._run("get_instance_status", self.engine.get_instance_status, instance_id)
    
    def get_history(
        self,
        instance_id: str,
        after_sequence: int = 0,
        limit: Optional[int] = None
    ) -> OperationResult[List[WorkflowHistory]]:
        return self._run(
            "get_history",
            self.engine.get_history,
            instance_id,
            after_sequence=after_sequence,
            limit=limit
        )
    
    def get_instance_for_entity(
        self,
        entity_type: str,
        entity_id: str
    ) -> OperationResult[Optional[WorkflowInstance]]:
        return self._run("get_instance_for_entity", self.engine.get_instance_for_entity, entity_type, entity_id)
    
    def get_available_transitions(
        self,
        instance_id: str,
        caller: CallerContext
    ) -> OperationResult[List[WorkflowTransition]]:
        return self._run("get_available_transitions", self.engine.get_available_transitions, instance_id, caller)
    
    def get_pending_approvals(
        self,
        approver_type: ApproverType,
        approver_id: str
    ) -> OperationResult[List[WorkflowApproval]]:
        return self._run("get_pending_approvals", self.engine.get_pending_approvals, approver_type, approver_id)
    
    def list_instance_approvals(self, instance_id: str) -> OperationResult[List[WorkflowApproval]]:
        return self._run("list_instance_approvals", self.engine.list_instance_approvals, instance_id)
    
    # =========================================================================
    # Helpers
    # =========================================================================
    
    def _run(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> OperationResult:
        """Call an engine operation, converting DomainError into a failure result"""
        correlation_id = get_correlation_id()
        if not correlation_id:
            correlation_id = generate_correlation_id()
            set_correlation_id(correlation_id)
        
        try:
            value = fn(*args, **kwargs)
        except DomainError as exc:
            logger.warning(
                f"{operation} failed: {exc.error_code} - {exc.message}",
                extra={"reason": exc.details}
            )
            return OperationResult.failure(exc, correlation_id)
        
        return OperationResult.success(value, correlation_id)
