# core.py
# Description: Sync engine: pulls and reconciles the authoritative log, submits writes, drives auto-sync.
#
# Imports
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from imgsync.app.core.DB_Management.Image_DB import ImageDB
from imgsync.app.core.exceptions import (ConflictError, DuplicateImageError, ImageNotFoundError, ResetDetectedError,
                                         ValidationError)
from imgsync.app.core.Sync.events import (ConflictDetected, OperationApplied, SyncCompleted, SyncErrorOccurred,
                                          SyncEventBus, SyncStarted)
from imgsync.app.core.Sync.models import (OperationsPage, SyncState, SyncStatus, SyncSummary, WriteKind,
                                          WriteRequest, WriteResult, utc_now)
from imgsync.app.core.Sync.reconcile import (ConflictResolver, ReconcilePlan, Reconciler, compute_sync_status,
                                             detect_reset)
from imgsync.app.core.Sync.retry import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY, with_sync_retry
from imgsync.app.core.Sync.transport import SyncTransport
#
########################################################################################################################
#
# Classes:

T = TypeVar("T")

_WRITE_ACTIONS = {
    WriteKind.CREATE: "created",
    WriteKind.UPDATE: "updated",
    WriteKind.REPLACE: "replaced",
    WriteKind.DELETE: "deleted",
}


class ImageSyncEngine:
    """
    Owns the Idle -> Syncing -> Idle state machine.

    At most one sync runs at a time. Calls from other threads wait for the
    running one; a call made from a listener while this thread is syncing is
    queued and runs right after the current pass. Auto-sync ticks that find a
    sync in flight are skipped.
    """

    def __init__(self,
                 store: ImageDB,
                 transport: SyncTransport,
                 bus: Optional[SyncEventBus] = None,
                 client_id: Optional[str] = None,
                 *,
                 batch_size: int = 100,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 retry_delay: float = DEFAULT_RETRY_DELAY,
                 repush_local_only: bool = True,
                 resolver: Optional[ConflictResolver] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Args:
            store: The local image store.
            transport: Binding to the authoritative service.
            bus: Event bus lifecycle events are published on (a private one is created if omitted).
            client_id: Identity attached to writes; read from (or generated into) the store if omitted.
            batch_size: Facts requested per page.
            max_retries: Default retry budget for with_retry.
            retry_delay: Seconds to wait between conflict retries.
            repush_local_only: After a full resync, push records that only exist locally as creates.
                Locally newer versions of known records are pushed back regardless.
        """
        if not isinstance(store, ImageDB): raise TypeError("store must be an ImageDB object")
        if not isinstance(transport, SyncTransport): raise TypeError("transport must be a SyncTransport object")
        if batch_size < 1: raise ValueError("batch_size must be positive")

        self.store = store
        self.transport = transport
        self.bus = bus if bus is not None else SyncEventBus()
        self.reconciler = Reconciler(store, resolver)
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.repush_local_only = repush_local_only
        self._sleep = sleep or time.sleep
        self._client_id = client_id

        self._sync_lock = threading.RLock()
        self._sync_owner: Optional[int] = None
        self._resync_requested = False
        # uuid -> write that pushes the local version after a full resync
        self._pending_push: Dict[str, WriteKind] = {}
        self._pending_lock = threading.Lock()
        self._push_lock = threading.Lock()

        self._auto_thread: Optional[threading.Thread] = None
        self._auto_stop = threading.Event()
        self._auto_interval: Optional[float] = None

        logger.info(f"ImageSyncEngine initialized (batch_size={batch_size}, max_retries={max_retries})")

    # --- Identity / state ---
    @property
    def client_id(self) -> str:
        if not self._client_id:
            self._client_id = self.store.get_or_create_client_id()
        return self._client_id

    @property
    def is_syncing(self) -> bool:
        return self._sync_owner is not None

    @property
    def is_auto_syncing(self) -> bool:
        return self._auto_thread is not None and self._auto_thread.is_alive()

    @property
    def pending_push(self) -> List[str]:
        with self._pending_lock:
            return list(self._pending_push)

    def get_sync_state(self) -> SyncState:
        return self.store.get_sync_state()

    def initialize(self) -> Optional[SyncSummary]:
        """Resolves the client identity and performs the first sync."""
        logger.info(f"Initializing sync engine for client {self.client_id}")
        return self.sync(trigger="initialize")

    def reset_sync_state(self) -> SyncState:
        """Forgets cursor and anchor; the next sync replays the whole log."""
        with self._sync_lock, self._pending_lock:
            self._pending_push.clear()
            return self.store.reset_sync_state()

    # --- Sync ---
    def sync(self, trigger: str = "manual") -> Optional[SyncSummary]:
        """
        Pulls everything the service has past the local cursor and reconciles it.

        Returns:
            The summary of the (last) pass, or None when the call was queued
            because it came from a listener of the sync currently running on this thread.

        Raises:
            TransientNetworkError, StorageError, ValidationError: after a sync_error event is published.
        """
        if self._sync_owner == threading.get_ident():
            logger.debug(f"sync({trigger}) requested during a running sync; queued")
            self._resync_requested = True
            return None

        with self._sync_lock:
            summary = self._sync_locked(trigger)
        self._after_sync()
        return summary

    def _sync_locked(self, trigger: str) -> SyncSummary:
        self._sync_owner = threading.get_ident()
        try:
            summary = self._run_sync(trigger)
            while self._resync_requested:
                self._resync_requested = False
                summary = self._run_sync("queued")
            return summary
        finally:
            self._resync_requested = False
            self._sync_owner = None

    def _run_sync(self, trigger: str) -> SyncSummary:
        state = self.store.get_sync_state()
        logger.info(f"Sync ({trigger}) starting from sequence {state.last_applied_sequence} (anchor {state.anchor_id})")
        self.bus.publish(SyncStarted(trigger=trigger, last_applied_sequence=state.last_applied_sequence))
        try:
            page = self.transport.fetch_operations(state.last_applied_sequence, self.batch_size)
            if detect_reset(state, page.anchor_id, page.current_sequence):
                logger.warning(f"Reset detected: local anchor {state.anchor_id} at {state.last_applied_sequence}, "
                               f"remote anchor {page.anchor_id} at {page.current_sequence}")
                summary = self._full_resync(trigger)
            else:
                try:
                    summary = self._pull_incremental(trigger, state, page)
                except ResetDetectedError as e:
                    logger.warning(f"{e}; switching to full resync")
                    summary = self._full_resync(trigger)
        except Exception as e:
            logger.error(f"Sync ({trigger}) failed: {e}")
            self.bus.publish(SyncErrorOccurred(error=e, trigger=trigger))
            raise

        logger.info(f"Sync ({trigger}) completed: {summary.operations_applied} operations, "
                    f"{summary.records_changed} records changed, now at {summary.current_sequence}")
        self.bus.publish(SyncCompleted(operations_applied=summary.operations_applied,
                                       current_sequence=summary.current_sequence,
                                       full_resync=summary.full_resync, trigger=trigger))
        return summary

    def _pull_incremental(self, trigger: str, state: SyncState, page: OperationsPage) -> SyncSummary:
        anchor = page.anchor_id
        summary = SyncSummary(trigger=trigger, anchor_id=anchor)
        state_extra = {"last_sync_time": utc_now()}
        if state.anchor_id is None and anchor is not None:
            state_extra["anchor_id"] = anchor

        while True:
            plans = self.reconciler.apply_facts(page.facts, state_extra, on_applied=self._publish_plan)
            summary.operations_applied += len(plans)
            summary.records_changed += sum(len(p.applied) for p in plans)
            if not page.has_more:
                break
            if not page.facts:
                # The cursor stays at the last applied fact; the next sync asks again
                raise ValidationError("Service reported more operations but returned an empty page",
                                      operation="fetch_operations",
                                      context={"current_sequence": page.current_sequence})
            cursor = self.store.get_sync_state().last_applied_sequence
            page = self.transport.fetch_operations(cursor, self.batch_size)
            if page.anchor_id != anchor:
                raise ResetDetectedError("Anchor changed while paging operations", local_anchor=anchor,
                                         remote_anchor=page.anchor_id)

        current = self.store.get_sync_state()
        if page.current_sequence > current.last_applied_sequence or not summary.operations_applied \
                or current.anchor_id != anchor:
            # Nothing left to apply below the service's sequence: fast-forward the cursor
            updates = dict(state_extra)
            updates["last_applied_sequence"] = max(current.last_applied_sequence, page.current_sequence)
            current = self.store.set_sync_state(**updates)
        summary.current_sequence = current.last_applied_sequence
        return summary

    def _full_resync(self, trigger: str) -> SyncSummary:
        snapshot = self.transport.fetch_snapshot()
        diff, plan = self.reconciler.apply_snapshot(snapshot, {"last_sync_time": utc_now()})
        self._publish_plan(plan)

        remote_deleted = {image.record.uuid for image in snapshot.images if image.record.is_deleted}
        queued: List[Tuple[str, WriteKind]] = []
        if self.repush_local_only:
            queued.extend((record.uuid, WriteKind.CREATE) for record in diff.to_upload)
        # Locally newer versions survived the snapshot and go back to the service
        queued.extend((record.uuid, WriteKind.CREATE if record.uuid in remote_deleted else WriteKind.REPLACE)
                      for record in diff.to_replace_remote)
        queued.extend((record.uuid, WriteKind.UPDATE) for record in diff.to_update_remote)
        queued.extend((record.uuid, WriteKind.DELETE) for record in diff.to_delete_remote)
        self._queue_push(queued)
        if plan.kept_local:
            logger.info(f"Full resync kept {len(plan.kept_local)} locally newer records; queued to push back")

        return SyncSummary(trigger=trigger, operations_applied=len(plan.applied), records_changed=len(plan.applied),
                           current_sequence=snapshot.current_sequence, anchor_id=snapshot.anchor_id,
                           full_resync=True, pending_push=self.pending_push, diff=diff)

    def _publish_plan(self, plan: ReconcilePlan) -> None:
        for outcome in plan.applied:
            self.bus.publish(OperationApplied(uuid=outcome.uuid, action=outcome.action, sequence=outcome.sequence))

    def _after_sync(self) -> None:
        if self.pending_push:
            self.push_pending()

    # --- Pending pushes ---
    def _queue_push(self, entries: Iterable[Tuple[str, WriteKind]]) -> None:
        with self._pending_lock:
            for uuid, kind in entries:
                self._pending_push[uuid] = kind

    def _next_push(self) -> Optional[Tuple[str, WriteKind]]:
        with self._pending_lock:
            return next(iter(self._pending_push.items()), None)

    def _drop_push(self, uuid: str) -> None:
        with self._pending_lock:
            self._pending_push.pop(uuid, None)

    def push_pending(self) -> List[str]:
        """
        Pushes what the last full resync kept locally: local-only records as
        creates, locally newer records as replaces, updates or deletes. Returns
        the uuids the service accepted. Returns [] at once if another thread (or
        a sync triggered by this push) is already pushing.
        """
        if not self._push_lock.acquire(blocking=False):
            return []
        try:
            return self._push_pending()
        finally:
            self._push_lock.release()

    def _push_pending(self) -> List[str]:
        pushed: List[str] = []
        while True:
            entry = self._next_push()
            if entry is None:
                break
            uuid, kind = entry
            request = self._pending_request(uuid, kind)
            if request is not None:
                try:
                    self.with_retry(lambda: self.submit_write(request))
                    pushed.append(uuid)
                except DuplicateImageError:
                    logger.warning(f"Pending push of {uuid} skipped: the service already has it")
                except ImageNotFoundError:
                    logger.warning(f"Pending {request.kind.value} of {uuid} skipped: the service no longer has it")
            self._drop_push(uuid)
        if pushed:
            logger.info(f"Pushed {len(pushed)} locally kept images after resync")
        return pushed

    def _pending_request(self, uuid: str, kind: WriteKind) -> Optional[WriteRequest]:
        """Builds the write from the local record as it is now, not as the resync saw it."""
        record = self.store.get_image(uuid, include_deleted=True)
        if record is None or (record.is_deleted and kind is WriteKind.CREATE):
            logger.debug(f"Pending push of {uuid} dropped: image was deleted locally")
            return None
        if record.is_deleted:
            return WriteRequest.delete(uuid)
        metadata = self.store.get_extended_metadata(uuid)
        if kind is WriteKind.CREATE:
            return WriteRequest.create(record, metadata)
        if kind is WriteKind.UPDATE:
            changes = {k: v for k, v in record.to_wire().items()
                       if k not in ("uuid", "createdAt", "updatedAt", "deletedAt")}
            return WriteRequest.update(uuid, changes, metadata)
        # A queued delete whose record came back locally is pushed as a replace
        return WriteRequest.replace(record, metadata)

    # --- Status ---
    def check_sync_status(self) -> SyncStatus:
        """Compares local cursor and anchor with the service's without changing anything."""
        remote = self.transport.fetch_status()
        status = compute_sync_status(self.store.get_sync_state(), remote)
        logger.debug(f"Sync status: {status}")
        return status

    # --- Writes ---
    def submit_write(self, request: WriteRequest) -> WriteResult:
        """
        Sends one write with the current client id and cursor. On success the
        authoritative result is stored and its sequence adopted in one
        transaction. A conflict is published and raised, never retried here.
        """
        if not isinstance(request, WriteRequest):
            raise ValidationError("submit_write expects a WriteRequest", operation="submit_write")
        with self._sync_lock:
            state = self.store.get_sync_state()
            try:
                result = self.transport.submit_write(request, self.client_id, state.last_applied_sequence)
            except ConflictError as e:
                logger.info(f"Write of {request.uuid} conflicted at sequence {state.last_applied_sequence}: "
                            f"{e.operations_behind} operations behind")
                self.bus.publish(ConflictDetected(operations_behind=e.operations_behind,
                                                  current_sequence=e.current_sequence))
                raise

            with self.store.transaction():
                local = self.store.get_image(request.uuid, include_deleted=True)
                mutations = self.reconciler.mutations_for_write(request, result, local)
                self.store.apply_batch(mutations, {"last_applied_sequence": result.sequence})
        self.bus.publish(OperationApplied(uuid=request.uuid, action=_WRITE_ACTIONS[request.kind],
                                          sequence=result.sequence))
        return result

    def with_retry(self, operation: Callable[[], T], max_retries: Optional[int] = None,
                   retry_delay: Optional[float] = None) -> T:
        """Runs operation(), syncing and retrying on ConflictError."""
        return with_sync_retry(
            operation,
            on_conflict=lambda err: self.sync(trigger="conflict"),
            max_retries=self.max_retries if max_retries is None else max_retries,
            delay=self.retry_delay if retry_delay is None else retry_delay,
            sleep=self._sleep,
        )

    # --- Auto-sync ---
    def start_auto_sync(self, interval_seconds: float = 30.0) -> None:
        if interval_seconds <= 0:
            raise ValidationError("interval_seconds must be positive", operation="start_auto_sync",
                                  context={"interval_seconds": interval_seconds})
        self.stop_auto_sync()
        self._auto_stop = threading.Event()
        self._auto_interval = interval_seconds
        self._auto_thread = threading.Thread(target=self._auto_sync_loop, args=(interval_seconds, self._auto_stop),
                                             name="imgsync-auto-sync", daemon=True)
        self._auto_thread.start()
        logger.info(f"Auto-sync started every {interval_seconds}s")

    def stop_auto_sync(self) -> None:
        """Stops the timer. A sync that is already running is allowed to finish."""
        thread = self._auto_thread
        if thread is None:
            return
        self._auto_stop.set()
        if thread is not threading.current_thread():
            thread.join()
        self._auto_thread = None
        self._auto_interval = None
        logger.info("Auto-sync stopped")

    def _auto_sync_loop(self, interval: float, stop_event: threading.Event) -> None:
        while not stop_event.wait(interval):
            self._auto_sync_tick()

    def _auto_sync_tick(self) -> bool:
        """One timer tick. Returns False if skipped or failed; errors never escape the timer."""
        if not self._sync_lock.acquire(blocking=False):
            logger.debug("Auto-sync tick skipped: a sync is already in progress")
            return False
        try:
            self._sync_locked("auto")
        except Exception as e:
            # Already published as sync_error by the sync itself
            logger.warning(f"Auto-sync failed: {e}")
            return False
        finally:
            self._sync_lock.release()

        try:
            self._after_sync()
        except Exception as e:
            logger.warning(f"Auto-sync re-push failed: {e}")
            self.bus.publish(SyncErrorOccurred(error=e, trigger="auto"))
            return False
        return True

#
# End of core.py
########################################################################################################################
