"""Instance Repository - Data access for workflow instances"""
from typing import Any, Dict, Optional
from pymongo.collection import Collection
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, INSTANCES
from ..domain.models import WorkflowInstance
from ..domain.errors import InstanceNotFoundError, InstanceAlreadyExistsError, ConcurrencyError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class InstanceRepository:
    """Repository for workflow instances (one mutable row per entity, never deleted)"""
    
    def __init__(self, collection: Optional[Collection] = None):
        self._instances: Collection = collection if collection is not None else get_collection(INSTANCES)
    
    def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Create an instance; the (entity_type, entity_id) index rejects a second one"""
        doc = instance.model_dump(mode="json")
        doc["_id"] = instance.instance_id
        
        try:
            self._instances.insert_one(doc)
        except DuplicateKeyError:
            raise InstanceAlreadyExistsError(
                f"{instance.entity_type} {instance.entity_id} already has a workflow instance",
                details={"entity_type": instance.entity_type, "entity_id": instance.entity_id}
            )
        
        logger.info(
            f"Created workflow instance: {instance.instance_id}",
            extra={
                "instance_id": instance.instance_id,
                "entity_type": instance.entity_type,
                "entity_id": instance.entity_id
            }
        )
        return instance
    
    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Get instance by ID"""
        doc = self._instances.find_one({"instance_id": instance_id})
        if doc:
            doc.pop("_id", None)
            return WorkflowInstance.model_validate(doc)
        return None
    
    def get_instance_or_raise(self, instance_id: str) -> WorkflowInstance:
        """Get instance by ID or raise error"""
        instance = self.get_instance(instance_id)
        if not instance:
            raise InstanceNotFoundError(f"Workflow instance {instance_id} not found")
        return instance
    
    def get_by_entity(self, entity_type: str, entity_id: str) -> Optional[WorkflowInstance]:
        """Get the instance bound to an entity"""
        doc = self._instances.find_one({"entity_type": entity_type, "entity_id": entity_id})
        if doc:
            doc.pop("_id", None)
            return WorkflowInstance.model_validate(doc)
        return None
    
    def update_instance(
        self,
        instance: WorkflowInstance,
        updates: Dict[str, Any],
        expected_version: int
    ) -> WorkflowInstance:
        """
        Update instance with optimistic concurrency
        
        Args:
            instance: Instance as read inside the critical section
            updates: Fields to set (JSON-serializable)
            expected_version: Version the caller read
        """
        updates = dict(updates)
        updates["version"] = expected_version + 1
        
        result = self._instances.find_one_and_update(
            {"instance_id": instance.instance_id, "version": expected_version},
            {"$set": updates},
            return_document=ReturnDocument.AFTER
        )
        
        if result is None:
            exists = self._instances.find_one({"instance_id": instance.instance_id})
            if exists:
                raise ConcurrencyError(
                    f"Workflow instance {instance.instance_id} was modified concurrently",
                    details={"expected_version": expected_version}
                )
            raise InstanceNotFoundError(f"Workflow instance {instance.instance_id} not found")
        
        result.pop("_id", None)
        return WorkflowInstance.model_validate(result)
