"""
Pytest Configuration and Fixtures

Engine fixtures run against an in-memory MongoDB (mongomock) with the real
indexes, a controllable clock and a dispatcher that records intents.
"""
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import mongomock
import pytest

from docflow.domain.enums import IntentKind
from docflow.domain.models import CallerContext, SideEffectIntent
from docflow.engine.collaborators import DirectoryPermissionResolver
from docflow.engine.engine import WorkflowEngine
from docflow.repositories.mongo_client import (
    create_indexes, DEFINITIONS, INSTANCES, HISTORY, APPROVALS, NOTIFICATION_OUTBOX
)
from docflow.repositories import (
    ApprovalRepository, DefinitionRepository, HistoryRepository, InstanceRepository,
    NotificationRepository
)
from docflow.services.definition_service import DefinitionService
from docflow.services.workflow_service import WorkflowService


class FakeClock:
    """Clock the tests move by hand"""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, minutes: int = 0, seconds: int = 0) -> None:
        self._now = self._now + timedelta(minutes=minutes, seconds=seconds)

    def rewind(self, minutes: int) -> None:
        self._now = self._now - timedelta(minutes=minutes)


class RecordingDispatcher:
    """Notification dispatcher that keeps every intent it is handed"""

    def __init__(self):
        self.intents: List[SideEffectIntent] = []
        self.failures_remaining = 0
        self.attempts = 0
        self._lock = threading.Lock()

    def enqueue(self, intent: SideEffectIntent) -> None:
        with self._lock:
            self.attempts += 1
            if self.failures_remaining > 0:
                self.failures_remaining -= 1
                raise RuntimeError("outbox unavailable")
            self.intents.append(intent)

    def of_kind(self, kind: IntentKind) -> List[SideEffectIntent]:
        return [i for i in self.intents if i.kind == kind]


class InMemoryEntityStore:
    """Entity snapshots keyed by (entity_type, entity_id)"""

    def __init__(self):
        self.snapshots: Dict[tuple, Dict[str, Any]] = {}
        self.loads = 0

    def put(self, entity_type: str, entity_id: str, snapshot: Dict[str, Any]) -> None:
        self.snapshots[(entity_type, entity_id)] = dict(snapshot)

    def load_entity_snapshot(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        self.loads += 1
        return dict(self.snapshots.get((entity_type, entity_id), {}))


def letter_draft(**overrides: Any) -> Dict[str, Any]:
    """Letter definition: Draft -> Review -> Approved, with Review -> Approved gated on a Manager"""
    draft: Dict[str, Any] = {
        "name": "Letter Approval",
        "entity_type": "Letter",
        "states": [
            {"state_id": "draft", "name": "Draft", "is_initial": True},
            {"state_id": "review", "name": "Review"},
            {
                "state_id": "approved",
                "name": "Approved",
                "is_terminal": True,
                "automation_rules": [
                    {"kind": "set_field", "field": "approved", "value": True},
                    {"kind": "notify", "template_key": "letter_approved", "recipients": ["entity.owner_email"]}
                ]
            },
        ],
        "transitions": [
            {
                "transition_id": "submit",
                "name": "Submit for review",
                "from_state_id": "draft",
                "to_state_id": "review",
                "required_permissions": '["letter.submit"]',
                "validation_rules": '[{"field": "entity.subject", "operator": "is_not_empty"}]'
            },
            {
                "transition_id": "approve",
                "name": "Approve",
                "from_state_id": "review",
                "to_state_id": "approved",
                "approvals": [
                    {
                        "approver_type": "ROLE",
                        "approver_id": "Manager",
                        "due_minutes": 60,
                        "reminders": {
                            "reminder_minutes_before_due": [30],
                            "escalation_recipients": ["ops@example.com"]
                        }
                    }
                ]
            },
            {
                "transition_id": "return",
                "name": "Return to author",
                "from_state_id": "review",
                "to_state_id": "draft",
                "required_permissions": ["letter.approve"]
            },
        ],
    }
    draft.update(overrides)
    return draft


@pytest.fixture
def db():
    """Fresh in-memory database with production indexes"""
    database = mongomock.MongoClient().docflow_test
    create_indexes(database)
    return database


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def entity_store() -> InMemoryEntityStore:
    store = InMemoryEntityStore()
    store.put("Letter", "L1", {"subject": "Quarterly report", "owner_email": "alice@example.com"})
    store.put("Letter", "L2", {"subject": "", "owner_email": "alice@example.com"})
    return store


@pytest.fixture
def resolver() -> DirectoryPermissionResolver:
    return DirectoryPermissionResolver(
        role_permissions={
            "Author": ["letter.submit"],
            "Manager": ["letter.approve"],
        },
        role_members={
            "Manager": ["mia"],
            "Legal": ["lars", "lena"],
            "Vacant": [],
        },
        group_members={"Board": ["bob", "bea"]},
    )


@pytest.fixture
def repos(db) -> Dict[str, Any]:
    return {
        "definition_repo": DefinitionRepository(db[DEFINITIONS]),
        "instance_repo": InstanceRepository(db[INSTANCES]),
        "history_repo": HistoryRepository(db[HISTORY]),
        "approval_repo": ApprovalRepository(db[APPROVALS]),
    }


@pytest.fixture
def engine(repos, entity_store, resolver, dispatcher, clock) -> WorkflowEngine:
    return WorkflowEngine(
        entity_store=entity_store,
        permission_resolver=resolver,
        dispatcher=dispatcher,
        clock=clock,
        **repos
    )


@pytest.fixture
def definitions(engine) -> DefinitionService:
    return DefinitionService(engine.registry.repo, engine.registry)


@pytest.fixture
def letter_definition(definitions):
    return definitions.publish(letter_draft(), actor=CallerContext(user_id="admin"))


@pytest.fixture
def service(engine) -> WorkflowService:
    return WorkflowService(engine)


@pytest.fixture
def notification_repo(db) -> NotificationRepository:
    return NotificationRepository(db[NOTIFICATION_OUTBOX])


@pytest.fixture
def author() -> CallerContext:
    return CallerContext(user_id="alice", roles=["Author"])


@pytest.fixture
def manager() -> CallerContext:
    return CallerContext(user_id="mia", roles=["Manager"])


@pytest.fixture
def outsider() -> CallerContext:
    return CallerContext(user_id="oscar")


@pytest.fixture
def letter(engine, letter_definition):
    """Instance for Letter L1, in Draft"""
    return engine.create_instance("Letter", "L1")


@pytest.fixture
def letter_in_review(engine, letter, author):
    engine.request_transition(letter.instance_id, "submit", author)
    return engine.instance_repo.get_instance(letter.instance_id)
