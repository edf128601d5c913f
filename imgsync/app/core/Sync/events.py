# events.py
# Description: Typed in-process publish/subscribe channel for sync lifecycle notifications.
#
# Imports
import enum
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, ClassVar, Deque, Dict, List, Optional, Union
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
#
########################################################################################################################
#
# Classes:


class SyncEventType(str, enum.Enum):
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_ERROR = "sync_error"
    CONFLICT_DETECTED = "conflict_detected"
    OPERATION_APPLIED = "operation_applied"


@dataclass(frozen=True)
class SyncStarted:
    type: ClassVar[SyncEventType] = SyncEventType.SYNC_STARTED
    trigger: str
    last_applied_sequence: int


@dataclass(frozen=True)
class SyncCompleted:
    type: ClassVar[SyncEventType] = SyncEventType.SYNC_COMPLETED
    operations_applied: int
    current_sequence: int
    full_resync: bool = False
    trigger: str = "manual"


@dataclass(frozen=True)
class SyncErrorOccurred:
    type: ClassVar[SyncEventType] = SyncEventType.SYNC_ERROR
    error: BaseException
    trigger: str = "manual"


@dataclass(frozen=True)
class ConflictDetected:
    type: ClassVar[SyncEventType] = SyncEventType.CONFLICT_DETECTED
    operations_behind: Optional[int]
    current_sequence: Optional[int] = None


@dataclass(frozen=True)
class OperationApplied:
    type: ClassVar[SyncEventType] = SyncEventType.OPERATION_APPLIED
    uuid: str
    action: str
    sequence: int


SyncEvent = Union[SyncStarted, SyncCompleted, SyncErrorOccurred, ConflictDetected, OperationApplied]
Listener = Callable[[SyncEvent], None]


class SyncEventBus:
    """
    Synchronous fan-out of sync events.

    Listeners run on the publishing thread, in registration order. Listeners
    subscribed with event_type=None receive every event and are ordered with
    the typed ones by registration. A publish issued from inside a listener is
    queued and delivered once the current event has reached every listener.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: List[tuple] = []  # (event_type or None, listener)
        self._local = threading.local()

    def subscribe(self, event_type: Optional[SyncEventType], listener: Listener) -> Callable[[], None]:
        """Registers a listener; returns a callable that unregisters it."""
        if event_type is not None:
            event_type = SyncEventType(event_type)
        with self._lock:
            self._subscriptions.append((event_type, listener))
        logger.debug(f"Listener {getattr(listener, '__name__', listener)!r} subscribed to {event_type.value if event_type else 'all events'}")
        return lambda: self.unsubscribe(listener, event_type)

    def unsubscribe(self, listener: Listener, event_type: Optional[SyncEventType] = None) -> bool:
        """Removes the listener's registrations for event_type (or all of them if None)."""
        if event_type is not None:
            event_type = SyncEventType(event_type)
        with self._lock:
            before = len(self._subscriptions)
            self._subscriptions = [
                (et, fn) for et, fn in self._subscriptions
                if not (fn == listener and (event_type is None or et == event_type))
            ]
            return len(self._subscriptions) != before

    def listener_count(self, event_type: Optional[SyncEventType] = None) -> int:
        with self._lock:
            if event_type is None:
                return len(self._subscriptions)
            return sum(1 for et, _ in self._subscriptions if et is None or et == event_type)

    def publish(self, event: SyncEvent) -> None:
        pending: Optional[Deque[SyncEvent]] = getattr(self._local, "pending", None)
        if pending is not None:
            # Already dispatching on this thread; deliver after the current event
            pending.append(event)
            return

        pending = deque([event])
        self._local.pending = pending
        try:
            while pending:
                self._dispatch(pending.popleft())
        finally:
            self._local.pending = None

    def _dispatch(self, event: SyncEvent) -> None:
        with self._lock:
            targets = [fn for et, fn in self._subscriptions if et is None or et == event.type]
        for listener in targets:
            try:
                listener(event)
            except Exception as e:
                logger.opt(exception=e).error(f"Listener {getattr(listener, '__name__', listener)!r} failed on {event.type.value}: {e}")

#
# End of events.py
########################################################################################################################
