"""Repository modules - Data access layer"""
from .mongo_client import get_database, get_collection, create_indexes, health_check
from .definition_repo import DefinitionRepository
from .instance_repo import InstanceRepository
from .history_repo import HistoryRepository
from .approval_repo import ApprovalRepository
from .notification_repo import NotificationRepository

__all__ = [
    "get_database",
    "get_collection",
    "create_indexes",
    "health_check",
    "DefinitionRepository",
    "InstanceRepository",
    "HistoryRepository",
    "ApprovalRepository",
    "NotificationRepository",
]
