"""Definition Repository - Data access for workflow definitions"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError
from pydantic import ValidationError

from .mongo_client import get_collection, DEFINITIONS
from ..domain.models import WorkflowDefinition
from ..domain.errors import DefinitionInvalidError, ConflictError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DefinitionRepository:
    """
    Repository for workflow definitions
    
    Definitions are write-once: a changed graph is stored as a new record with a
    higher version_number. Only the is_default flag is ever updated in place.
    """
    
    def __init__(self, collection: Optional[Collection] = None):
        self._definitions: Collection = collection if collection is not None else get_collection(DEFINITIONS)
    
    def create_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert a new definition version"""
        doc = definition.model_dump(mode="json")
        doc["_id"] = definition.definition_id
        
        try:
            self._definitions.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Definition {definition.definition_id} already exists")
        
        logger.info(
            f"Created definition: {definition.name} v{definition.version_number}",
            extra={"definition_id": definition.definition_id, "entity_type": definition.entity_type}
        )
        return definition
    
    def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        """Get definition by ID"""
        doc = self._definitions.find_one({"definition_id": definition_id})
        return self._to_model(doc) if doc else None
    
    def get_default_for_entity_type(self, entity_type: str) -> Optional[WorkflowDefinition]:
        """Get the default definition for an entity type (newest wins if data is inconsistent)"""
        cursor = self._definitions.find(
            {"entity_type": entity_type, "is_default": True}
        ).sort("version_number", DESCENDING)
        
        docs = list(cursor)
        if len(docs) > 1:
            logger.warning(
                f"{len(docs)} default definitions found for {entity_type}; using newest",
                extra={"entity_type": entity_type}
            )
        return self._to_model(docs[0]) if docs else None
    
    def list_definitions(
        self,
        entity_type: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowDefinition]:
        """List definitions, newest version first"""
        query: Dict[str, Any] = {}
        if entity_type:
            query["entity_type"] = entity_type
        
        cursor = self._definitions.find(query).sort("version_number", DESCENDING).skip(skip).limit(limit)
        return [self._to_model(doc) for doc in cursor]
    
    def get_latest_version_number(self, entity_type: str, name: str) -> int:
        """Highest stored version number for (entity_type, name), 0 if none"""
        doc = self._definitions.find_one(
            {"entity_type": entity_type, "name": name},
            sort=[("version_number", DESCENDING)]
        )
        return int(doc["version_number"]) if doc else 0
    
    def set_default(self, definition_id: str, entity_type: str) -> None:
        """Make one definition the default for its entity type, clearing any other"""
        self._definitions.update_many(
            {"entity_type": entity_type, "is_default": True, "definition_id": {"$ne": definition_id}},
            {"$set": {"is_default": False}}
        )
        self._definitions.update_one(
            {"definition_id": definition_id},
            {"$set": {"is_default": True}}
        )
        logger.info(
            f"Default definition for {entity_type} is now {definition_id}",
            extra={"definition_id": definition_id, "entity_type": entity_type}
        )
    
    def _to_model(self, doc: Dict[str, Any]) -> WorkflowDefinition:
        doc.pop("_id", None)
        try:
            return WorkflowDefinition.model_validate(doc)
        except ValidationError as e:
            definition_id = doc.get("definition_id", "unknown")
            logger.error(
                f"Corrupted definition data for {definition_id}: {str(e)[:500]}",
                extra={"definition_id": definition_id}
            )
            raise DefinitionInvalidError(
                f"Definition {definition_id} cannot be read",
                details={"errors": [err["msg"] for err in e.errors()]}
            )
