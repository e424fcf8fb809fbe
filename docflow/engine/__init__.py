"""Workflow Engine - State machine runtime"""
from .engine import WorkflowEngine
from .approval_coordinator import ApprovalCoordinator
from .definition_registry import CompiledDefinition, DefinitionRegistry, validate_definition
from .history_recorder import HistoryRecorder
from .instance_locks import InstanceLockRegistry
from .rule_evaluator import RuleEvaluator
from .collaborators import (
    Clock, DirectoryPermissionResolver, EntityStore, IntentDispatcher, MongoEntityStore,
    NotificationDispatcher, PermissionResolver, SystemClock
)

__all__ = [
    "WorkflowEngine",
    "ApprovalCoordinator",
    "CompiledDefinition",
    "DefinitionRegistry",
    "validate_definition",
    "HistoryRecorder",
    "InstanceLockRegistry",
    "RuleEvaluator",
    "Clock",
    "DirectoryPermissionResolver",
    "EntityStore",
    "IntentDispatcher",
    "MongoEntityStore",
    "NotificationDispatcher",
    "PermissionResolver",
    "SystemClock",
]
