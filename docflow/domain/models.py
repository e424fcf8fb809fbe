"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict

from .enums import (
    ApproverType, ApprovalMode, ApprovalStatus, TransitionOutcome, HistoryKind,
    IntentKind, NotificationStatus
)


# Reserved state_data key holding the id of the transition waiting for approval
PENDING_TRANSITION_KEY = "pending_transition"


# ============================================================================
# Caller Context
# ============================================================================

class CallerContext(BaseModel):
    """Who is asking the engine to act"""
    model_config = ConfigDict(extra="forbid")
    
    user_id: str = Field(..., description="Stable user identifier")
    display_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list, description="Permissions already known for the caller")


SYSTEM_CALLER = CallerContext(user_id="system", display_name="Workflow Engine")


# ============================================================================
# Approval Configuration
# ============================================================================

class ReminderSettings(BaseModel):
    """Reminder/escalation configuration for an approval"""
    model_config = ConfigDict(extra="forbid")
    
    reminder_minutes_before_due: List[int] = Field(default_factory=list, description="Send a reminder this many minutes before due")
    escalation_recipients: List[str] = Field(default_factory=list, description="Who hears about an expired approval")
    hard_deadline: bool = Field(default=True, description="Expiry abandons the pending transition")


class ApproverSpec(BaseModel):
    """Approver configured on a gated transition"""
    model_config = ConfigDict(extra="forbid")
    
    approver_type: ApproverType
    approver_id: str
    mode: ApprovalMode = Field(default=ApprovalMode.ANY)
    due_minutes: Optional[int] = Field(default=None, description="Minutes until due; settings default when omitted")
    reminders: Optional[ReminderSettings] = None


# ============================================================================
# Workflow Definition
# ============================================================================

class WorkflowState(BaseModel):
    """State node of a definition"""
    model_config = ConfigDict(extra="forbid")
    
    state_id: str
    name: str
    description: Optional[str] = None
    is_initial: bool = False
    is_terminal: bool = False
    required_permissions: Any = Field(default=None, description="JSON array or list of permission strings")
    automation_rules: Any = Field(default=None, description="Actions run when the state is entered")


class WorkflowTransition(BaseModel):
    """Directed edge between two states of the same definition"""
    model_config = ConfigDict(extra="forbid")
    
    transition_id: str
    name: str
    from_state_id: str
    to_state_id: str
    required_permissions: Any = None
    validation_rules: Any = None
    automation_rules: Any = None
    approvals: List[ApproverSpec] = Field(default_factory=list)
    
    @property
    def requires_approval(self) -> bool:
        return bool(self.approvals)


class WorkflowDefinition(BaseModel):
    """Published workflow definition (immutable once referenced)"""
    model_config = ConfigDict(extra="ignore")
    
    definition_id: str
    name: str
    description: Optional[str] = None
    entity_type: str = Field(..., description="Letter, Document, ...")
    is_default: bool = False
    version_number: int = 1
    validation_rules: Any = Field(default=None, description="Instance-level rules checked on every transition")
    states: List[WorkflowState] = Field(default_factory=list)
    transitions: List[WorkflowTransition] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    published_by: Optional[str] = None


# ============================================================================
# Runtime
# ============================================================================

class WorkflowInstance(BaseModel):
    """Live lifecycle record bound to one entity"""
    model_config = ConfigDict(extra="ignore")
    
    instance_id: str
    definition_id: str
    entity_type: str
    entity_id: str
    current_state_id: str
    state_data: Dict[str, Any] = Field(default_factory=dict)
    is_archived: bool = False
    archived_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int = Field(default=1, description="Optimistic concurrency version")
    
    @property
    def pending_transition_id(self) -> Optional[str]:
        return self.state_data.get(PENDING_TRANSITION_KEY)


class WorkflowHistory(BaseModel):
    """Audit record (append-only)"""
    model_config = ConfigDict(extra="forbid", frozen=True)
    
    history_id: str
    instance_id: str
    sequence: int
    kind: HistoryKind
    from_state_id: str
    to_state_id: str
    transition_id: str
    actor_id: str
    timestamp: datetime
    comments: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowApproval(BaseModel):
    """One approver's vote on a gated transition"""
    model_config = ConfigDict(extra="ignore")
    
    approval_id: str
    instance_id: str
    transition_id: str
    approver_type: ApproverType
    approver_id: str
    status: ApprovalStatus = Field(default=ApprovalStatus.PENDING)
    comments: Optional[str] = None
    due_date: Optional[datetime] = None
    reminder_settings: ReminderSettings = Field(default_factory=ReminderSettings)
    reminders_sent: List[int] = Field(default_factory=list)
    escalated_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


# ============================================================================
# Intents & Notifications
# ============================================================================

class SideEffectIntent(BaseModel):
    """Side effect queued during a transition, dispatched after the lock is released"""
    model_config = ConfigDict(extra="forbid")
    
    kind: IntentKind
    template_key: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)
    instance_id: Optional[str] = None
    transition_id: Optional[str] = None
    approval_id: Optional[str] = None


class NotificationOutbox(BaseModel):
    """Notification in outbox"""
    model_config = ConfigDict(extra="ignore")
    
    notification_id: str
    kind: IntentKind
    template_key: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)
    instance_id: Optional[str] = None
    transition_id: Optional[str] = None
    approval_id: Optional[str] = None
    status: NotificationStatus = Field(default=NotificationStatus.PENDING)
    retry_count: int = 0
    created_at: datetime


# ============================================================================
# Results
# ============================================================================

class Decision(BaseModel):
    """Allowed, or Denied with a reason"""
    model_config = ConfigDict(frozen=True)
    
    allowed: bool
    reason: Optional[str] = None
    
    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)
    
    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(allowed=False, reason=reason)


class TransitionResult(BaseModel):
    """Outcome of a transition request"""
    
    outcome: TransitionOutcome
    instance_id: str
    transition_id: str
    current_state_id: str
    reason: Optional[str] = None
    history: Optional[WorkflowHistory] = None
    approvals: List[WorkflowApproval] = Field(default_factory=list)


class ApprovalResult(BaseModel):
    """Outcome of resolving one approval"""
    
    approval: WorkflowApproval
    transition_outcome: TransitionOutcome
    current_state_id: str


class InstanceStatus(BaseModel):
    """Snapshot returned to callers asking where an instance stands"""
    
    instance_id: str
    entity_type: str
    entity_id: str
    current_state: WorkflowState
    pending_transition_id: Optional[str] = None
    pending_approvals: List[WorkflowApproval] = Field(default_factory=list)
    is_archived: bool = False
