"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class ApproverType(str, Enum):
    """Who an approval is addressed to"""
    ROLE = "ROLE"
    USER = "USER"
    GROUP = "GROUP"


class ApprovalMode(str, Enum):
    """How a Role/Group approver spec turns into approval rows"""
    ANY = "ANY"  # One row for the whole role/group; any member may resolve it
    ALL = "ALL"  # One row per resolved member; every member must approve


class ApprovalStatus(str, Enum):
    """Per-approval lifecycle: PENDING -> one terminal status"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"  # Withdrawn because a sibling was rejected or expired
    
    @property
    def is_terminal(self) -> bool:
        return self != ApprovalStatus.PENDING


class ApprovalDecision(str, Enum):
    """Decision an approver can submit"""
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class TransitionOutcome(str, Enum):
    """Result of a transition request"""
    COMMITTED = "COMMITTED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    DENIED = "DENIED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class HistoryKind(str, Enum):
    """Kinds of workflow history records"""
    TRANSITION_COMMITTED = "TRANSITION_COMMITTED"
    TRANSITION_ABANDONED = "TRANSITION_ABANDONED"


class IntentKind(str, Enum):
    """Side-effect intents produced by automation and approval gating"""
    NOTIFY = "NOTIFY"
    SET_FIELD = "SET_FIELD"
    REQUEST_APPROVAL = "REQUEST_APPROVAL"
    APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
    APPROVAL_REMINDER = "APPROVAL_REMINDER"
    APPROVAL_ESCALATION = "APPROVAL_ESCALATION"
    TRANSITION_ABANDONED = "TRANSITION_ABANDONED"


class ConditionOperator(str, Enum):
    """Operators for comparison rules"""
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    GREATER_THAN_OR_EQUALS = "GREATER_THAN_OR_EQUALS"
    LESS_THAN_OR_EQUALS = "LESS_THAN_OR_EQUALS"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    IN = "IN"
    NOT_IN = "NOT_IN"
    IS_EMPTY = "IS_EMPTY"
    IS_NOT_EMPTY = "IS_NOT_EMPTY"


class NotificationStatus(str, Enum):
    """Notification outbox status"""
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
