"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""
    
    error_code: str = "DOMAIN_ERROR"
    
    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a caller-facing payload"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Configuration Errors
class ConfigurationError(DomainError):
    """Workflow configuration is unusable"""
    error_code = "CONFIGURATION_ERROR"


class DefinitionInvalidError(ConfigurationError):
    """Workflow definition failed validation"""
    error_code = "DEFINITION_INVALID"


class NoDefaultDefinitionError(ConfigurationError):
    """No default definition exists for an entity type"""
    error_code = "NO_DEFAULT_DEFINITION"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"


class DefinitionNotFoundError(NotFoundError):
    """Workflow definition not found"""
    error_code = "DEFINITION_NOT_FOUND"


class InstanceNotFoundError(NotFoundError):
    """Workflow instance not found"""
    error_code = "INSTANCE_NOT_FOUND"


class TransitionNotFoundError(NotFoundError):
    """Transition not found in the instance's definition"""
    error_code = "TRANSITION_NOT_FOUND"


class ApprovalNotFoundError(NotFoundError):
    """Approval not found"""
    error_code = "APPROVAL_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Request conflicts with current state"""
    error_code = "CONFLICT"


class ConcurrencyError(ConflictError):
    """Optimistic concurrency conflict"""
    error_code = "CONCURRENCY_CONFLICT"


class IllegalTransitionError(ConflictError):
    """Transition does not leave the current state, or the current state is terminal"""
    error_code = "ILLEGAL_TRANSITION"


class TransitionAlreadyPendingError(ConflictError):
    """Another transition is already waiting for approval"""
    error_code = "TRANSITION_ALREADY_PENDING"


class InstanceAlreadyExistsError(ConflictError):
    """Entity already has a workflow instance"""
    error_code = "INSTANCE_ALREADY_EXISTS"


class ApprovalAlreadyResolvedError(ConflictError):
    """Approval is no longer pending"""
    error_code = "APPROVAL_ALREADY_RESOLVED"


# Authorization Errors
class AuthorizationError(DomainError):
    """Caller lacks permission for action"""
    error_code = "AUTHORIZATION_ERROR"


class ApproverNotEligibleError(AuthorizationError):
    """Caller is not one of the approvers the approval is addressed to"""
    error_code = "APPROVER_NOT_ELIGIBLE"


class ApproverResolutionError(ConfigurationError):
    """Approver spec resolved to nobody who could vote"""
    error_code = "APPROVER_RESOLUTION_ERROR"
