"""Notification Repository - Data access for the notification outbox"""
from typing import List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING

from .mongo_client import get_collection, NOTIFICATION_OUTBOX
from ..domain.models import NotificationOutbox
from ..domain.enums import NotificationStatus
from ..utils.logger import get_logger

logger = get_logger(__name__)


class NotificationRepository:
    """Repository for notification outbox operations"""
    
    def __init__(self, collection: Optional[Collection] = None):
        self._outbox: Collection = collection if collection is not None else get_collection(NOTIFICATION_OUTBOX)
    
    def create_notification(self, notification: NotificationOutbox) -> NotificationOutbox:
        """Create a notification in outbox"""
        doc = notification.model_dump(mode="json")
        doc["_id"] = notification.notification_id
        
        self._outbox.insert_one(doc)
        logger.info(
            f"Queued notification: {notification.kind.value}",
            extra={
                "instance_id": notification.instance_id,
                "approval_id": notification.approval_id
            }
        )
        return notification
    
    def get_pending_notifications(self, limit: int = 100) -> List[NotificationOutbox]:
        """Pending notifications, oldest first"""
        cursor = self._outbox.find(
            {"status": NotificationStatus.PENDING.value}
        ).sort("created_at", ASCENDING).limit(limit)
        
        notifications = []
        for doc in cursor:
            doc.pop("_id", None)
            notifications.append(NotificationOutbox.model_validate(doc))
        return notifications
    
    def list_for_instance(self, instance_id: str) -> List[NotificationOutbox]:
        """Notifications queued for an instance, oldest first"""
        cursor = self._outbox.find({"instance_id": instance_id}).sort("created_at", ASCENDING)
        
        notifications = []
        for doc in cursor:
            doc.pop("_id", None)
            notifications.append(NotificationOutbox.model_validate(doc))
        return notifications
