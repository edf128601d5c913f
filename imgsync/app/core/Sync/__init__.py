# Sync/__init__.py
# Leaf modules only: the engine (core.py) and reconciler (reconcile.py) depend on
# DB_Management.Image_DB, which itself imports Sync.models.
from .models import (ImageRecord, ExtendedMetadata, PageDimension, SyncFact, FactType, SyncState, WriteRequest,
                     WriteResult, SyncStatus, SyncSummary, StateDiff)
from .events import (SyncEventBus, SyncEventType, SyncStarted, SyncCompleted, SyncErrorOccurred, ConflictDetected,
                     OperationApplied)
from .retry import with_sync_retry
from .transport import SyncTransport, HttpApiTransport, InProcessTransport
from .authority import AuthoritativeImageStore

__all__ = [
    "ImageRecord",
    "ExtendedMetadata",
    "PageDimension",
    "SyncFact",
    "FactType",
    "SyncState",
    "WriteRequest",
    "WriteResult",
    "SyncStatus",
    "SyncSummary",
    "StateDiff",
    "SyncEventBus",
    "SyncEventType",
    "SyncStarted",
    "SyncCompleted",
    "SyncErrorOccurred",
    "ConflictDetected",
    "OperationApplied",
    "with_sync_retry",
    "SyncTransport",
    "HttpApiTransport",
    "InProcessTransport",
    "AuthoritativeImageStore",
]
