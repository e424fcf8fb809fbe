"""Collaborators - Narrow interfaces the engine consumes, plus default implementations"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from pymongo.collection import Collection

from ..domain.enums import ApproverType
from ..domain.models import CallerContext, SideEffectIntent
from ..repositories.mongo_client import get_collection
from ..utils.time import utc_now
from ..utils.logger import get_logger, get_context_logger

logger = get_logger(__name__)


class EntityStore(Protocol):
    def load_entity_snapshot(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        ...


class PermissionResolver(Protocol):
    def resolve_caller_permissions(self, caller: CallerContext) -> Set[str]:
        ...
    
    def resolve_approvers(self, approver_type: ApproverType, approver_id: str) -> Set[str]:
        ...


class NotificationDispatcher(Protocol):
    def enqueue(self, intent: SideEffectIntent) -> Any:
        ...


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC"""
    
    def now(self) -> datetime:
        return utc_now()


class DirectoryPermissionResolver:
    """
    Resolve permissions and approvers from static role/group directories
    
    Caller permissions are the union of the permissions already carried on the
    caller context and those granted to each of the caller's roles.
    """
    
    def __init__(
        self,
        role_permissions: Optional[Dict[str, Iterable[str]]] = None,
        role_members: Optional[Dict[str, Iterable[str]]] = None,
        group_members: Optional[Dict[str, Iterable[str]]] = None
    ):
        self._role_permissions = {k: set(v) for k, v in (role_permissions or {}).items()}
        self._role_members = {k: set(v) for k, v in (role_members or {}).items()}
        self._group_members = {k: set(v) for k, v in (group_members or {}).items()}
    
    def resolve_caller_permissions(self, caller: CallerContext) -> Set[str]:
        permissions = set(caller.permissions)
        for role in caller.roles:
            permissions |= self._role_permissions.get(role, set())
        return permissions
    
    def resolve_approvers(self, approver_type: ApproverType, approver_id: str) -> Set[str]:
        if approver_type == ApproverType.USER:
            return {approver_id}
        if approver_type == ApproverType.ROLE:
            return set(self._role_members.get(approver_id, set()))
        return set(self._group_members.get(approver_id, set()))


class MongoEntityStore:
    """Read entity snapshots from one collection per entity type (``letters``, ``documents``, ...)"""
    
    def __init__(self, collection_names: Optional[Dict[str, str]] = None):
        self._collection_names = collection_names or {}
        self._collections: Dict[str, Collection] = {}
    
    def load_entity_snapshot(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        collection = self._collections.get(entity_type)
        if collection is None:
            name = self._collection_names.get(entity_type, f"{entity_type.lower()}s")
            collection = get_collection(name)
            self._collections[entity_type] = collection
        
        doc = collection.find_one({"_id": entity_id})
        if not doc:
            logger.warning(
                f"No snapshot for {entity_type} {entity_id}",
                extra={"entity_type": entity_type, "entity_id": entity_id}
            )
            return {}
        doc.pop("_id", None)
        return doc


class IntentDispatcher:
    """Hand queued intents to the notification dispatcher, retrying each a few times"""
    
    def __init__(self, dispatcher: NotificationDispatcher, max_retries: int = 3):
        self._dispatcher = dispatcher
        self._max_retries = max(1, max_retries)
    
    def __call__(self, intents: List[SideEffectIntent]) -> None:
        for intent in intents:
            log = get_context_logger(
                __name__,
                instance_id=intent.instance_id,
                transition_id=intent.transition_id,
                approval_id=intent.approval_id
            )
            for attempt in range(1, self._max_retries + 1):
                try:
                    self._dispatcher.enqueue(intent)
                    break
                except Exception as e:
                    log.warning(f"Dispatch of {intent.kind.value} failed: {e}", extra={"attempt": attempt})
            else:
                log.error(
                    f"Giving up on {intent.kind.value} intent after {self._max_retries} attempts",
                    extra={"reason": intent.model_dump_json()}
                )
