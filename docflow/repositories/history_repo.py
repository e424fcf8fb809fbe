"""History Repository - Data access for workflow history (append-only)"""
from typing import Iterator, List, Optional
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, HISTORY
from ..domain.models import WorkflowHistory
from ..domain.errors import ConcurrencyError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class HistoryRepository:
    """
    Repository for workflow history records
    
    There is deliberately no update or delete path: records are inserted once and
    read back ordered by their per-instance sequence.
    """
    
    def __init__(self, collection: Optional[Collection] = None):
        self._history: Collection = collection if collection is not None else get_collection(HISTORY)
    
    def append(self, record: WorkflowHistory) -> WorkflowHistory:
        """Insert a history record"""
        doc = record.model_dump(mode="json")
        doc["_id"] = record.history_id
        
        try:
            self._history.insert_one(doc)
        except DuplicateKeyError:
            raise ConcurrencyError(
                f"History sequence {record.sequence} already taken for {record.instance_id}",
                details={"instance_id": record.instance_id, "sequence": record.sequence}
            )
        
        logger.info(
            f"Appended history: {record.kind.value}",
            extra={
                "instance_id": record.instance_id,
                "transition_id": record.transition_id,
                "actor_id": record.actor_id
            }
        )
        return record
    
    def get_last(self, instance_id: str) -> Optional[WorkflowHistory]:
        """Most recent record for an instance"""
        doc = self._history.find_one(
            {"instance_id": instance_id},
            sort=[("sequence", DESCENDING)]
        )
        if doc:
            doc.pop("_id", None)
            return WorkflowHistory.model_validate(doc)
        return None
    
    def iter_for_instance(
        self,
        instance_id: str,
        after_sequence: int = 0,
        batch_size: int = 100
    ) -> Iterator[WorkflowHistory]:
        """Stream records oldest first, starting after a given sequence"""
        cursor = self._history.find(
            {"instance_id": instance_id, "sequence": {"$gt": after_sequence}}
        ).sort("sequence", ASCENDING).batch_size(batch_size)
        
        for doc in cursor:
            doc.pop("_id", None)
            yield WorkflowHistory.model_validate(doc)
    
    def list_for_instance(
        self,
        instance_id: str,
        after_sequence: int = 0,
        limit: Optional[int] = None
    ) -> List[WorkflowHistory]:
        """Records oldest first"""
        records = []
        for record in self.iter_for_instance(instance_id, after_sequence=after_sequence):
            records.append(record)
            if limit is not None and len(records) >= limit:
                break
        return records
    