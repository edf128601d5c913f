# authority.py
# Description: In-memory authoritative image store: the sequence-numbered log that clients sync against.
#
# Imports
import threading
import uuid as uuid_lib
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from imgsync.app.core.exceptions import ConflictError, DuplicateImageError, ImageNotFoundError, ValidationError
from imgsync.app.core.Sync.models import (ExtendedMetadata, FactType, ImageRecord, OperationsPage, RemoteImage,
                                          RemoteSnapshot, RemoteStatus, SyncFact, WriteKind, WriteRequest,
                                          WriteResult, parse_timestamp, utc_now)
#
########################################################################################################################
#
# Classes:

SERVER_CLIENT_ID = "server"


class AuthoritativeImageStore:
    """
    Reference implementation of the authoritative side of the protocol.

    Every accepted write appends one fact and bumps the sequence by one. Writes
    from clients are only accepted as fast-forwards: the client's
    last_applied_sequence must equal the current sequence. `reset()` starts a
    new generation with a fresh anchor and a sequence restarting at zero.
    """

    def __init__(self, anchor_id: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None):
        self._lock = threading.RLock()
        self._clock = clock or utc_now
        self._anchor_id = anchor_id or str(uuid_lib.uuid4())
        self._sequence = 0
        self._log: List[SyncFact] = []
        self._images: Dict[str, ImageRecord] = {}
        self._metadata: Dict[str, ExtendedMetadata] = {}
        logger.info(f"Authoritative store created with anchor {self._anchor_id}")

    @property
    def anchor_id(self) -> str:
        return self._anchor_id

    @property
    def current_sequence(self) -> int:
        return self._sequence

    # --- Reads ---
    def status(self) -> RemoteStatus:
        with self._lock:
            return RemoteStatus(current_sequence=self._sequence, anchor_id=self._anchor_id)

    def operations_since(self, since_sequence: int = 0, limit: int = 100) -> OperationsPage:
        if limit < 1:
            raise ValidationError("limit must be positive", operation="operations_since", context={"limit": limit})
        with self._lock:
            pending = [f for f in self._log if f.sequence > since_sequence]
            page = pending[:limit]
            return OperationsPage(facts=[f.model_copy(deep=True) for f in page],
                                  current_sequence=self._sequence,
                                  anchor_id=self._anchor_id,
                                  has_more=len(pending) > limit)

    def snapshot(self) -> RemoteSnapshot:
        with self._lock:
            images = [RemoteImage(record=record.model_copy(), metadata=self._metadata.get(uuid))
                      for uuid, record in self._images.items()]
            return RemoteSnapshot(images=images, current_sequence=self._sequence, anchor_id=self._anchor_id)

    def get_image(self, uuid: str) -> Optional[ImageRecord]:
        with self._lock:
            return self._images.get(uuid)

    def get_metadata(self, uuid: str) -> Optional[ExtendedMetadata]:
        with self._lock:
            return self._metadata.get(uuid)

    # --- Writes ---
    def accept_write(self, request: WriteRequest, client_id: str, last_applied_sequence: int,
                     timestamp: Optional[datetime] = None) -> WriteResult:
        """Applies a client write if it is a fast-forward, otherwise raises ConflictError."""
        if not client_id:
            raise ValidationError("client_id is required", operation="accept_write")
        with self._lock:
            if last_applied_sequence != self._sequence:
                behind = max(0, self._sequence - last_applied_sequence)
                logger.info(f"Rejecting {request.kind.value} of {request.uuid} from {client_id}: client at "
                            f"{last_applied_sequence}, service at {self._sequence}")
                raise ConflictError("Sync Conflict", operations_behind=behind, current_sequence=self._sequence,
                                    context={"client_id": client_id})
            return self._commit(request, client_id, timestamp)

    def apply_external_write(self, request: WriteRequest, client_id: str = SERVER_CLIENT_ID,
                             timestamp: Optional[datetime] = None) -> WriteResult:
        """A write that does not go through the optimistic check (another device, the server itself)."""
        with self._lock:
            return self._commit(request, client_id, timestamp)

    def apply_external_batch(self, requests: List[WriteRequest], client_id: str = SERVER_CLIENT_ID,
                             timestamp: Optional[datetime] = None) -> int:
        """Applies several writes as one batch fact under a single sequence number."""
        if not requests:
            raise ValidationError("A batch needs at least one write", operation="apply_external_batch")
        with self._lock:
            ts = parse_timestamp(timestamp) or self._clock()
            images = dict(self._images)
            metadata = dict(self._metadata)
            children = []
            for request in requests:
                fact_type, record, meta = self._resolve_write(request, ts, images)
                images[record.uuid] = record
                if record.is_deleted:
                    metadata.pop(record.uuid, None)
                elif meta is not None:
                    metadata[record.uuid] = meta
                children.append(self._fact_for(fact_type, record, meta, ts, client_id, sequence=0))
            self._sequence += 1
            batch = SyncFact(sequence=self._sequence, type=FactType.BATCH, timestamp=ts, client_id=client_id,
                             facts=children)
            self._images, self._metadata = images, metadata
            self._log.append(batch)
            logger.info(f"Batch of {len(children)} writes committed as sequence {self._sequence}")
            return self._sequence

    def reset(self, anchor_id: Optional[str] = None, keep_records: bool = False) -> str:
        """Starts a new generation: fresh anchor, empty log, sequence back to zero."""
        with self._lock:
            self._anchor_id = anchor_id or str(uuid_lib.uuid4())
            self._sequence = 0
            self._log = []
            if not keep_records:
                self._images = {}
                self._metadata = {}
            logger.warning(f"Authoritative store reset to anchor {self._anchor_id} (records kept: {keep_records})")
            return self._anchor_id

    # --- Internals ---
    def _commit(self, request: WriteRequest, client_id: str, timestamp: Optional[datetime]) -> WriteResult:
        ts = parse_timestamp(timestamp) or self._clock()
        fact_type, record, meta = self._resolve_write(request, ts, self._images)
        self._sequence += 1
        self._images[record.uuid] = record
        if record.is_deleted:
            # Metadata is deleted with its parent
            self._metadata.pop(record.uuid, None)
        elif meta is not None:
            self._metadata[record.uuid] = meta
        self._log.append(self._fact_for(fact_type, record, meta, ts, client_id, sequence=self._sequence))
        logger.debug(f"Accepted {request.kind.value} of {record.uuid} from {client_id} as sequence {self._sequence}")
        return WriteResult(sequence=self._sequence, record=record.model_copy(), metadata=meta)

    @staticmethod
    def _resolve_write(request: WriteRequest, ts: datetime,
                       images: Dict[str, ImageRecord]) -> Tuple[FactType, ImageRecord, Optional[ExtendedMetadata]]:
        existing = images.get(request.uuid)
        active = existing is not None and not existing.is_deleted

        if request.kind is WriteKind.CREATE:
            if request.record is None:
                raise ValidationError("A create needs a full record", operation="accept_write",
                                      context={"uuid": request.uuid})
            if active:
                raise DuplicateImageError(f"Image '{request.uuid}' already exists", uuid=request.uuid,
                                          operation="accept_write")
            record = request.record.model_copy(update={"updated_at": ts, "deleted_at": None})
            return FactType.CREATE, record, request.metadata

        if not active:
            raise ImageNotFoundError(f"Image '{request.uuid}' not found", uuid=request.uuid,
                                     operation="accept_write")

        if request.kind is WriteKind.DELETE:
            return FactType.DELETE, existing.model_copy(update={"updated_at": ts, "deleted_at": ts}), None

        if request.kind is WriteKind.REPLACE:
            if request.record is None:
                raise ValidationError("A replace needs a full record", operation="accept_write",
                                      context={"uuid": request.uuid})
            record = request.record.model_copy(update={"created_at": existing.created_at, "updated_at": ts,
                                                       "deleted_at": None})
            return FactType.REPLACE, record, request.metadata

        changes = {k: v for k, v in request.changes.items() if k not in ("uuid", "createdAt", "deletedAt")}
        try:
            record = ImageRecord.model_validate({**existing.to_wire(), **changes, "updatedAt": ts})
        except ValueError as e:
            raise ValidationError("Invalid update", operation="accept_write", context={"uuid": request.uuid},
                                  original_error=e) from e
        return FactType.UPDATE, record, request.metadata

    @staticmethod
    def _fact_for(fact_type: FactType, record: ImageRecord, meta: Optional[ExtendedMetadata], ts: datetime,
                  client_id: str, sequence: int) -> SyncFact:
        if fact_type is FactType.DELETE:
            payload = {}
        else:
            payload = record.to_wire()
            if meta is not None:
                payload["exifData"] = meta.to_wire()
        return SyncFact(sequence=sequence, type=fact_type, uuid=record.uuid, payload=payload, timestamp=ts,
                        client_id=client_id)

#
# End of authority.py
########################################################################################################################
