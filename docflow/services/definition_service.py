"""Definition Service - Publishing and looking up workflow definitions"""
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..domain.models import CallerContext, WorkflowDefinition
from ..domain.errors import DefinitionInvalidError, DefinitionNotFoundError
from ..engine.definition_registry import DefinitionRegistry
from ..repositories.definition_repo import DefinitionRepository
from ..utils.idgen import generate_definition_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DefinitionService:
    """
    Service for workflow definitions
    
    Publishing never edits a stored definition: each publish writes a new record
    with the next version_number for (entity_type, name). Instances keep pointing
    at the version they were created with.
    """
    
    def __init__(
        self,
        repo: Optional[DefinitionRepository] = None,
        registry: Optional[DefinitionRegistry] = None
    ):
        self.repo = repo or DefinitionRepository()
        self.registry = registry or DefinitionRegistry(self.repo)
    
    def publish(
        self,
        draft: Dict[str, Any],
        actor: Optional[CallerContext] = None,
        make_default: bool = True
    ) -> WorkflowDefinition:
        """
        Validate and publish a definition as a new immutable version
        
        Args:
            draft: Definition fields (name, entity_type, states, transitions, ...)
            actor: Who is publishing
            make_default: Move the entity type's default flag to this version
            
        Raises:
            DefinitionInvalidError: If the draft fails validation
        """
        fields = {k: v for k, v in draft.items() if k not in ("definition_id", "version_number", "is_default")}
        name = fields.get("name")
        entity_type = fields.get("entity_type")
        
        version_number = 1
        if name and entity_type:
            version_number = self.repo.get_latest_version_number(entity_type, name) + 1
        
        try:
            definition = WorkflowDefinition(
                definition_id=generate_definition_id(),
                version_number=version_number,
                is_default=False,
                created_at=utc_now(),
                published_by=actor.user_id if actor else None,
                **{k: v for k, v in fields.items() if k not in ("created_at", "published_by")}
            )
        except ValidationError as e:
            raise DefinitionInvalidError(
                "Definition draft is malformed",
                details={"errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]}
            )
        
        # Raises DefinitionInvalidError with the full list of graph problems
        self.registry.compile(definition)
        
        self.repo.create_definition(definition)
        if make_default:
            self.repo.set_default(definition.definition_id, definition.entity_type)
            definition = definition.model_copy(update={"is_default": True})
        
        logger.info(
            f"Published definition {definition.name} v{version_number}",
            extra={"definition_id": definition.definition_id, "entity_type": definition.entity_type}
        )
        return definition
    
    def validate(self, draft: Dict[str, Any]) -> List[str]:
        """Problems with a draft; empty when it could be published"""
        try:
            definition = WorkflowDefinition(
                definition_id=draft.get("definition_id") or "draft",
                **{k: v for k, v in draft.items() if k != "definition_id"}
            )
        except ValidationError as e:
            return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        
        try:
            compiled = self.registry.compile(definition)
        except DefinitionInvalidError as e:
            return list(e.details.get("errors", [e.message]))
        return compiled.malformed_rules()
    
    def get_definition(self, definition_id: str) -> WorkflowDefinition:
        """Get definition by ID"""
        definition = self.repo.get_definition(definition_id)
        if not definition:
            raise DefinitionNotFoundError(f"Workflow definition {definition_id} not found")
        return definition
    
    def get_default(self, entity_type: str) -> WorkflowDefinition:
        """Get the default definition for an entity type"""
        return self.registry.get_default(entity_type).definition
    
    def list_definitions(
        self,
        entity_type: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[WorkflowDefinition]:
        """List definitions, newest version first"""
        return self.repo.list_definitions(entity_type=entity_type, skip=skip, limit=limit)
    
    def set_default(self, definition_id: str) -> WorkflowDefinition:
        """Make an existing definition the default for its entity type"""
        definition = self.get_definition(definition_id)
        self.registry.get(definition_id)
        self.repo.set_default(definition_id, definition.entity_type)
        return definition.model_copy(update={"is_default": True})
