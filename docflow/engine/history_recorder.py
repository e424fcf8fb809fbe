"""History Recorder - Append-only transition history"""
from typing import Any, Dict, Iterator, List, Optional

from ..domain.models import WorkflowHistory
from ..domain.enums import HistoryKind
from ..repositories.history_repo import HistoryRepository
from ..utils.idgen import generate_history_id
from ..utils.time import ensure_utc
from ..utils.logger import get_logger
from .collaborators import Clock, SystemClock

logger = get_logger(__name__)


class HistoryRecorder:
    """
    Write history records (append-only)

    Callers hold the instance lock, so the next sequence number and a timestamp
    no earlier than the previous record's are computed here without a race.
    """

    def __init__(self, repo: Optional[HistoryRepository] = None, clock: Optional[Clock] = None):
        self.repo = repo or HistoryRepository()
        self.clock = clock or SystemClock()

    def append(
        self,
        instance_id: str,
        kind: HistoryKind,
        from_state_id: str,
        to_state_id: str,
        transition_id: str,
        actor_id: str,
        comments: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> WorkflowHistory:
        """Append a single record"""
        last = self.repo.get_last(instance_id)
        timestamp = ensure_utc(self.clock.now())
        sequence = 1
        if last:
            sequence = last.sequence + 1
            timestamp = max(timestamp, ensure_utc(last.timestamp))

        record = WorkflowHistory(
            history_id=generate_history_id(),
            instance_id=instance_id,
            sequence=sequence,
            kind=kind,
            from_state_id=from_state_id,
            to_state_id=to_state_id,
            transition_id=transition_id,
            actor_id=actor_id,
            timestamp=timestamp,
            comments=comments,
            metadata=metadata or {}
        )
        return self.repo.append(record)

    def record_committed(
        self,
        instance_id: str,
        from_state_id: str,
        to_state_id: str,
        transition_id: str,
        actor_id: str,
        comments: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> WorkflowHistory:
        """Record a committed state change"""
        return self.append(
            instance_id=instance_id,
            kind=HistoryKind.TRANSITION_COMMITTED,
            from_state_id=from_state_id,
            to_state_id=to_state_id,
            transition_id=transition_id,
            actor_id=actor_id,
            comments=comments,
            metadata=metadata
        )

    def record_abandoned(
        self,
        instance_id: str,
        state_id: str,
        transition_id: str,
        actor_id: str,
        reason: str,
        comments: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> WorkflowHistory:
        """Record a pending transition that was rejected or expired (state unchanged)"""
        details = dict(metadata or {})
        details["reason"] = reason
        return self.append(
            instance_id=instance_id,
            kind=HistoryKind.TRANSITION_ABANDONED,
            from_state_id=state_id,
            to_state_id=state_id,
            transition_id=transition_id,
            actor_id=actor_id,
            comments=comments,
            metadata=details
        )

    def query_by_instance(
        self,
        instance_id: str,
        after_sequence: int = 0,
        limit: Optional[int] = None
    ) -> List[WorkflowHistory]:
        """Records for an instance, oldest first"""
        return self.repo.list_for_instance(instance_id, after_sequence=after_sequence, limit=limit)

    def stream_by_instance(self, instance_id: str, after_sequence: int = 0) -> Iterator[WorkflowHistory]:
        """Lazily iterate records for long-lived instances"""
        return self.repo.iter_for_instance(instance_id, after_sequence=after_sequence)
