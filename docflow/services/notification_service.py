"""Notification Service - Outbox for side-effect intents

Delivery (email, in-app, ...) is someone else's job: this service only turns
intents into durable outbox rows that a sender can pick up.
"""
from typing import List, Optional

from ..domain.models import NotificationOutbox, SideEffectIntent
from ..domain.enums import NotificationStatus
from ..repositories.notification_repo import NotificationRepository
from ..utils.idgen import generate_notification_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class NotificationService:
    """Service for queueing notifications"""
    
    def __init__(self, repo: Optional[NotificationRepository] = None):
        self.repo = repo or NotificationRepository()
    
    def enqueue(self, intent: SideEffectIntent) -> NotificationOutbox:
        """Queue an intent in the outbox"""
        notification = NotificationOutbox(
            notification_id=generate_notification_id(),
            kind=intent.kind,
            template_key=intent.template_key,
            recipients=intent.recipients,
            payload=intent.payload,
            instance_id=intent.instance_id,
            transition_id=intent.transition_id,
            approval_id=intent.approval_id,
            status=NotificationStatus.PENDING,
            created_at=utc_now()
        )
        
        if not notification.recipients:
            logger.debug(
                f"Queued {intent.kind.value} without recipients",
                extra={"instance_id": intent.instance_id, "transition_id": intent.transition_id}
            )
        
        return self.repo.create_notification(notification)
    
    def get_pending(self, limit: int = 100) -> List[NotificationOutbox]:
        """Notifications waiting for a sender"""
        return self.repo.get_pending_notifications(limit=limit)
    
    def list_for_instance(self, instance_id: str) -> List[NotificationOutbox]:
        return self.repo.list_for_instance(instance_id)
