"""Instance Locks - Per-instance critical sections with deferred intent dispatch"""
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional

from ..domain.models import SideEffectIntent
from ..utils.logger import get_logger

logger = get_logger(__name__)


class _LockEntry:
    __slots__ = ("lock", "users")
    
    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class InstanceLockRegistry:
    """
    Process-wide map of lock handles keyed by instance id
    
    An entry exists only while some thread holds or waits for it. Locks are
    reentrant so approval callbacks can re-enter the engine for the same instance.
    
    Intents queued inside a hold are dispatched when the outermost hold on the
    current thread exits, after every lock has been released.
    """
    
    def __init__(self, on_release: Optional[Callable[[List[SideEffectIntent]], None]] = None):
        self._guard = threading.Lock()
        self._entries: Dict[str, _LockEntry] = {}
        self._local = threading.local()
        self._on_release = on_release
    
    @contextmanager
    def hold(self, instance_id: str) -> Iterator[List[SideEffectIntent]]:
        """Serialize work on one instance; yields the thread's deferred intent queue"""
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            self._local.queue = []
        self._local.depth = depth + 1
        
        entry = self._checkout(instance_id)
        try:
            with entry.lock:
                yield self._local.queue
        finally:
            self._checkin(instance_id, entry)
            self._local.depth -= 1
            if self._local.depth == 0:
                queued, self._local.queue = self._local.queue, []
                if queued and self._on_release is not None:
                    self._on_release(queued)
    
    def active_count(self) -> int:
        """Number of instances with a live lock handle"""
        with self._guard:
            return len(self._entries)
    
    def _checkout(self, instance_id: str) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(instance_id)
            if entry is None:
                entry = _LockEntry()
                self._entries[instance_id] = entry
            entry.users += 1
            return entry
    
    def _checkin(self, instance_id: str, entry: _LockEntry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(instance_id, None)
