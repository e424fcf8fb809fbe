"""Approval Repository - Data access for workflow approvals"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from .mongo_client import get_collection, APPROVALS
from ..domain.models import WorkflowApproval
from ..domain.enums import ApprovalStatus, ApproverType
from ..utils.time import format_iso
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ApprovalRepository:
    """Repository for approval rows (append-mostly; status moves PENDING -> terminal once)"""
    
    def __init__(self, collection: Optional[Collection] = None):
        self._approvals: Collection = collection if collection is not None else get_collection(APPROVALS)
    
    def create_approvals(self, approvals: List[WorkflowApproval]) -> List[WorkflowApproval]:
        """Insert approval rows"""
        if not approvals:
            return []
        
        docs = []
        for approval in approvals:
            doc = approval.model_dump(mode="json")
            doc["_id"] = approval.approval_id
            docs.append(doc)
        
        self._approvals.insert_many(docs)
        logger.info(
            f"Created {len(approvals)} approvals",
            extra={"instance_id": approvals[0].instance_id, "transition_id": approvals[0].transition_id}
        )
        return approvals
    
    def get_approval(self, approval_id: str) -> Optional[WorkflowApproval]:
        """Get approval by ID"""
        doc = self._approvals.find_one({"approval_id": approval_id})
        return self._to_model(doc) if doc else None
    
    def list_for_transition(
        self,
        instance_id: str,
        transition_id: str,
        statuses: Optional[List[ApprovalStatus]] = None
    ) -> List[WorkflowApproval]:
        """Approvals of one gated transition, oldest first"""
        query: Dict[str, Any] = {"instance_id": instance_id, "transition_id": transition_id}
        if statuses:
            query["status"] = {"$in": [s.value for s in statuses]}
        
        cursor = self._approvals.find(query).sort("created_at", ASCENDING)
        return [self._to_model(doc) for doc in cursor]
    
    def list_for_instance(
        self,
        instance_id: str,
        statuses: Optional[List[ApprovalStatus]] = None
    ) -> List[WorkflowApproval]:
        """All approvals of an instance, newest first"""
        query: Dict[str, Any] = {"instance_id": instance_id}
        if statuses:
            query["status"] = {"$in": [s.value for s in statuses]}
        
        cursor = self._approvals.find(query).sort("created_at", DESCENDING)
        return [self._to_model(doc) for doc in cursor]
    
    def list_pending_for_approver(
        self,
        approver_type: ApproverType,
        approver_id: str,
        limit: int = 100
    ) -> List[WorkflowApproval]:
        """Pending approvals addressed to an approver, soonest due first, undated ones last"""
        query: Dict[str, Any] = {
            "approver_type": approver_type.value,
            "approver_id": approver_id,
            "status": ApprovalStatus.PENDING.value
        }
        
        cursor = self._approvals.find(
            {**query, "due_date": {"$ne": None}}
        ).sort([("due_date", ASCENDING), ("created_at", ASCENDING)]).limit(limit)
        approvals = [self._to_model(doc) for doc in cursor]
        
        if len(approvals) < limit:
            cursor = self._approvals.find(
                {**query, "due_date": None}
            ).sort("created_at", ASCENDING).limit(limit - len(approvals))
            approvals.extend(self._to_model(doc) for doc in cursor)
        return approvals
    
    def list_pending_with_due_date(self, limit: int = 500) -> List[WorkflowApproval]:
        """Pending approvals that have a due date (candidates for reminders/expiry)"""
        cursor = self._approvals.find({
            "status": ApprovalStatus.PENDING.value,
            "due_date": {"$ne": None}
        }).sort("created_at", ASCENDING).limit(limit)
        return [self._to_model(doc) for doc in cursor]
    
    def resolve(
        self,
        approval_id: str,
        status: ApprovalStatus,
        decided_at: datetime,
        decided_by: Optional[str] = None,
        comments: Optional[str] = None
    ) -> Optional[WorkflowApproval]:
        """
        Move a PENDING approval to a terminal status
        
        Returns:
            The updated approval, or None if it was no longer pending
        """
        result = self._approvals.find_one_and_update(
            {"approval_id": approval_id, "status": ApprovalStatus.PENDING.value},
            {"$set": {
                "status": status.value,
                "decided_by": decided_by,
                "decided_at": format_iso(decided_at),
                "comments": comments,
                "updated_at": format_iso(decided_at)
            }},
            return_document=ReturnDocument.AFTER
        )
        return self._to_model(result) if result else None
    
    def cancel_pending(self, instance_id: str, transition_id: str, now: datetime) -> List[str]:
        """Cancel every still-pending sibling of a gated transition; returns the cancelled ids"""
        pending_ids = [
            doc["approval_id"] for doc in self._approvals.find(
                {
                    "instance_id": instance_id,
                    "transition_id": transition_id,
                    "status": ApprovalStatus.PENDING.value
                },
                {"approval_id": 1}
            )
        ]
        if not pending_ids:
            return []
        
        self._approvals.update_many(
            {"approval_id": {"$in": pending_ids}, "status": ApprovalStatus.PENDING.value},
            {"$set": {
                "status": ApprovalStatus.CANCELLED.value,
                "decided_at": format_iso(now),
                "updated_at": format_iso(now)
            }}
        )
        logger.info(
            f"Cancelled {len(pending_ids)} pending approvals",
            extra={"instance_id": instance_id, "transition_id": transition_id}
        )
        return pending_ids
    
    def reopen(self, approval_ids: List[str], now: datetime) -> int:
        """Put resolved or cancelled approvals back to PENDING after the transition could not be settled"""
        if not approval_ids:
            return 0
        
        result = self._approvals.update_many(
            {"approval_id": {"$in": approval_ids}},
            {"$set": {
                "status": ApprovalStatus.PENDING.value,
                "decided_by": None,
                "decided_at": None,
                "comments": None,
                "updated_at": format_iso(now)
            }}
        )
        return result.modified_count
    
    def mark_reminder_sent(self, approval_id: str, minutes_before_due: int, now: datetime) -> bool:
        """Record a reminder offset as sent (caller checks reminders_sent under the instance lock)"""
        result = self._approvals.update_one(
            {"approval_id": approval_id, "status": ApprovalStatus.PENDING.value},
            {
                "$push": {"reminders_sent": minutes_before_due},
                "$set": {"updated_at": format_iso(now)}
            }
        )
        return result.modified_count == 1
    
    def mark_escalated(self, approval_id: str, now: datetime) -> bool:
        """Record a soft-deadline escalation; False if already escalated"""
        result = self._approvals.update_one(
            {
                "approval_id": approval_id,
                "status": ApprovalStatus.PENDING.value,
                "escalated_at": None
            },
            {"$set": {"escalated_at": format_iso(now), "updated_at": format_iso(now)}}
        )
        return result.modified_count == 1
    
    def _to_model(self, doc: Dict[str, Any]) -> WorkflowApproval:
        doc.pop("_id", None)
        return WorkflowApproval.model_validate(doc)
