# reconcile.py
# Description: Turns authoritative facts or snapshots into local store mutations (last-write-wins per uuid).
#
# Imports
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
#
# 3rd-party Libraries
from loguru import logger
from pydantic import ValidationError as PydanticValidationError
#
# Local Imports
from imgsync.app.core.DB_Management.Image_DB import ImageDB
from imgsync.app.core.exceptions import ValidationError
from imgsync.app.core.Sync.models import (ExtendedMetadata, FactType, ImageRecord, Mutation, RemoteImage,
                                          RemoteSnapshot, RemoteStatus, StateDiff, SyncFact, SyncState, SyncStatus,
                                          WriteKind, WriteRequest, WriteResult, split_payload, utc_now)
#
########################################################################################################################
#
# Functions:

Lookup = Callable[[str], Optional[ImageRecord]]

# Fields compared when deciding whether two versions differ in more than their timestamps
_COMPARED_FIELDS = ("filename", "file_size", "width", "height", "is_corrupted", "mime_type", "page_count",
                    "page_dimensions")


class Resolution(str, enum.Enum):
    APPLY_REMOTE = "apply_remote"
    KEEP_LOCAL = "keep_local"


class ConflictResolver(ABC):
    """Decides between the local version of a record and an incoming authoritative fact."""

    @abstractmethod
    def resolve(self, local: Optional[ImageRecord], fact: SyncFact) -> Resolution:
        pass


class LastWriteWinsStrategy(ConflictResolver):
    """The later timestamp wins; on a tie the incoming fact wins."""

    def resolve(self, local: Optional[ImageRecord], fact: SyncFact) -> Resolution:
        if local is None:
            return Resolution.APPLY_REMOTE
        if local.updated_at > fact.timestamp:
            logger.debug(f"LWW (UUID: {fact.uuid}): local {local.updated_at} newer than fact #{fact.sequence} "
                         f"{fact.timestamp}. Outcome: Keep Local.")
            return Resolution.KEEP_LOCAL
        return Resolution.APPLY_REMOTE


def detect_reset(local: SyncState, remote_anchor: Optional[str], remote_sequence: int) -> bool:
    """
    True when the authoritative store is not the generation the local cursor belongs to:
    the anchors differ, the cursor exists without an anchor, or the service is behind the cursor.
    """
    if local.anchor_id is not None and remote_anchor is not None and local.anchor_id != remote_anchor:
        return True
    if local.anchor_id is None and remote_anchor is not None and local.last_applied_sequence > 0:
        return True
    return remote_sequence < local.last_applied_sequence


def compute_sync_status(local: SyncState, remote: RemoteStatus) -> SyncStatus:
    """Read-only comparison of the local cursor/anchor with the service's current ones."""
    reset = detect_reset(local, remote.anchor_id, remote.current_sequence)
    behind = None if reset else max(0, remote.current_sequence - local.last_applied_sequence)
    return SyncStatus(
        in_sync=(not reset and behind == 0),
        reset_detected=reset,
        operations_behind=behind,
        local_sequence=local.last_applied_sequence,
        remote_sequence=remote.current_sequence,
        local_anchor=local.anchor_id,
        remote_anchor=remote.anchor_id,
    )


def has_metadata_changes(local: ImageRecord, remote: ImageRecord,
                         local_meta: Optional[ExtendedMetadata] = None,
                         remote_meta: Optional[ExtendedMetadata] = None) -> bool:
    for name in _COMPARED_FIELDS:
        if getattr(local, name) != getattr(remote, name):
            return True
    local_content = local_meta.content() if local_meta else None
    remote_content = remote_meta.content() if remote_meta else None
    return local_content != remote_content


@dataclass
class RecordOutcome:
    uuid: str
    action: str
    sequence: int


@dataclass
class ReconcilePlan:
    """Mutations for one fact (or one snapshot) plus what happened to each record."""
    sequence: int
    mutations: List[Mutation] = field(default_factory=list)
    applied: List[RecordOutcome] = field(default_factory=list)
    kept_local: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class Reconciler:
    def __init__(self, store: ImageDB, resolver: Optional[ConflictResolver] = None):
        self.store = store
        self.resolver = resolver or LastWriteWinsStrategy()

    # --- Incremental facts ---
    def plan_fact(self, fact: SyncFact, lookup: Lookup) -> ReconcilePlan:
        """
        Plans the mutations for one fact. A batch expands to its children, which
        see the effect of earlier children in the same batch.
        """
        plan = ReconcilePlan(sequence=fact.sequence)
        working: Dict[str, Optional[ImageRecord]] = {}

        def current(uuid: str) -> Optional[ImageRecord]:
            if uuid in working:
                return working[uuid]
            return lookup(uuid)

        for child in fact.expand():
            local = current(child.uuid)
            if self.resolver.resolve(local, child) is Resolution.KEEP_LOCAL:
                plan.kept_local.append(child.uuid)
                continue
            result = self._plan_child(child, local)
            if result is None:
                plan.skipped.append(child.uuid)
                continue
            record, metadata, action = result
            plan.mutations.append(Mutation.upsert_image(record))
            if metadata is not None and not record.is_deleted:
                plan.mutations.append(Mutation.upsert_metadata(metadata))
            plan.applied.append(RecordOutcome(child.uuid, action, fact.sequence))
            working[child.uuid] = record
        return plan

    def _plan_child(self, fact: SyncFact, local: Optional[ImageRecord]):
        image_fields, metadata_fields = split_payload(fact.payload)
        image_fields.pop("uuid", None)
        metadata = None
        if metadata_fields is not None:
            metadata = self._parse_metadata(fact, metadata_fields)

        if fact.type is FactType.DELETE:
            if local is None:
                logger.debug(f"Delete fact #{fact.sequence} for unknown image {fact.uuid}; nothing to tombstone")
                return None
            deleted_at = fact.timestamp
            record = local.model_copy(update={"deleted_at": deleted_at, "updated_at": deleted_at})
            return record, None, "deleted"

        if fact.type in (FactType.CREATE, FactType.REPLACE):
            base = {"createdAt": local.created_at if local else fact.timestamp}
            record = self._build_record(fact, {**base, **image_fields, "deletedAt": image_fields.get("deletedAt")})
            if local is not None and local.is_deleted and not record.is_deleted:
                logger.warning(f"Fact #{fact.sequence} ({fact.type.value}) resurrects tombstoned image {fact.uuid}")
                return record, metadata, "resurrected"
            if fact.type is FactType.REPLACE:
                return record, metadata, "replaced"
            return record, metadata, "created" if local is None else "updated"

        # UPDATE: merge onto the local version when there is one
        if local is None:
            try:
                record = ImageRecord.model_validate({"createdAt": fact.timestamp, **image_fields,
                                                     "uuid": fact.uuid,
                                                     "updatedAt": image_fields.get("updatedAt", fact.timestamp)})
            except PydanticValidationError:
                logger.warning(f"Update fact #{fact.sequence} targets unknown image {fact.uuid} with a partial "
                               f"payload; skipping")
                return None
            return record, metadata, "created"

        merged = {**local.to_wire(), **image_fields}
        merged["updatedAt"] = image_fields.get("updatedAt") or fact.timestamp
        record = self._build_record(fact, merged)
        return record, metadata, "updated"

    @staticmethod
    def _build_record(fact: SyncFact, fields: Dict[str, Any]) -> ImageRecord:
        fields = dict(fields)
        fields["uuid"] = fact.uuid
        fields.setdefault("updatedAt", fact.timestamp)
        if fields.get("updatedAt") is None:
            fields["updatedAt"] = fact.timestamp
        try:
            return ImageRecord.model_validate(fields)
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed payload in {fact.type.value} fact", operation="reconcile",
                                  context={"sequence": fact.sequence, "uuid": fact.uuid}, original_error=e) from e

    @staticmethod
    def _parse_metadata(fact: SyncFact, fields: Dict[str, Any]) -> ExtendedMetadata:
        try:
            return ExtendedMetadata.model_validate({**fields, "uuid": fact.uuid})
        except PydanticValidationError as e:
            raise ValidationError("Malformed extended metadata in fact", operation="reconcile",
                                  context={"sequence": fact.sequence, "uuid": fact.uuid}, original_error=e) from e

    def apply_fact(self, fact: SyncFact, sync_state: Optional[Dict[str, Any]] = None) -> ReconcilePlan:
        """
        Applies one fact (a batch counts as one) and moves the cursor to its
        sequence in the same transaction.
        """
        state_update = dict(sync_state or {})
        state_update["last_applied_sequence"] = fact.sequence
        uuids = [child.uuid for child in fact.expand()]
        with self.store.transaction():
            current = self.store.get_images(uuids)
            plan = self.plan_fact(fact, current.get)
            self.store.apply_batch(plan.mutations, state_update)
        logger.debug(f"Fact #{fact.sequence} ({fact.type.value}) applied: {len(plan.applied)} changed, "
                     f"{len(plan.kept_local)} kept local, {len(plan.skipped)} skipped")
        return plan

    def apply_facts(self, facts: Iterable[SyncFact], sync_state: Optional[Dict[str, Any]] = None,
                    on_applied: Optional[Callable[[ReconcilePlan], None]] = None) -> List[ReconcilePlan]:
        """
        Applies facts in ascending sequence order, one transaction each. Facts at
        or below the stored cursor were already applied and are skipped.
        """
        cursor = self.store.get_sync_state().last_applied_sequence
        plans = []
        for fact in sorted(facts, key=lambda f: f.sequence):
            if fact.sequence <= cursor:
                logger.debug(f"Skipping already applied fact #{fact.sequence} (cursor {cursor})")
                continue
            plan = self.apply_fact(fact, sync_state)
            cursor = fact.sequence
            plans.append(plan)
            if on_applied is not None:
                on_applied(plan)
        return plans

    # --- Full snapshot ---
    def calculate_diff(self, local_records: Iterable[ImageRecord], remote_images: Iterable[RemoteImage],
                       local_metadata: Optional[Dict[str, ExtendedMetadata]] = None) -> StateDiff:
        local_by_uuid = {r.uuid: r for r in local_records}
        remote_by_uuid = {r.record.uuid: r for r in remote_images}
        local_metadata = local_metadata or {}
        diff = StateDiff()

        for uuid in list(local_by_uuid) + [u for u in remote_by_uuid if u not in local_by_uuid]:
            local = local_by_uuid.get(uuid)
            remote = remote_by_uuid.get(uuid)

            if remote is None:
                if not local.is_deleted:
                    diff.to_upload.append(local)
                continue
            if local is None:
                if not remote.record.is_deleted:
                    diff.to_download.append(remote)
                continue

            local_meta = local_metadata.get(uuid)
            if local.updated_at > remote.record.updated_at:
                if local.is_deleted:
                    if not remote.record.is_deleted:
                        diff.to_delete_remote.append(local)
                elif remote.record.is_deleted or local.hash != remote.record.hash:
                    diff.to_replace_remote.append(local)
                elif has_metadata_changes(local, remote.record, local_meta, remote.metadata):
                    diff.to_update_remote.append(local)
            elif remote.record.updated_at > local.updated_at:
                if remote.record.is_deleted:
                    if not local.is_deleted:
                        diff.to_delete_local.append(remote)
                elif local.is_deleted or local.hash != remote.record.hash:
                    diff.to_replace_local.append(remote)
                elif has_metadata_changes(local, remote.record, local_meta, remote.metadata):
                    diff.to_update_local.append(remote)
            # Equal timestamps: already in sync

        logger.debug(f"State diff: {diff.summary()}")
        return diff

    def plan_snapshot(self, diff: StateDiff, sequence: int) -> ReconcilePlan:
        """Mutations pulling every remote-newer record into the local store."""
        plan = ReconcilePlan(sequence=sequence)
        buckets = (("to_download", "created"), ("to_replace_local", "replaced"),
                   ("to_update_local", "updated"), ("to_delete_local", "deleted"))
        for bucket, action in buckets:
            for remote in getattr(diff, bucket):
                plan.mutations.append(Mutation.upsert_image(remote.record))
                if remote.metadata is not None and not remote.record.is_deleted:
                    plan.mutations.append(Mutation.upsert_metadata(remote.metadata))
                plan.applied.append(RecordOutcome(remote.record.uuid, action, sequence))
        for local in diff.to_replace_remote + diff.to_update_remote + diff.to_delete_remote:
            plan.kept_local.append(local.uuid)
        return plan

    def apply_snapshot(self, snapshot: RemoteSnapshot, sync_state: Optional[Dict[str, Any]] = None):
        """
        Full resync: diffs the whole local store against the snapshot, pulls
        remote-newer records and adopts the snapshot's cursor and anchor, all in
        one transaction. Returns (diff, plan).
        """
        state_update = dict(sync_state or {})
        state_update["last_applied_sequence"] = snapshot.current_sequence
        state_update["anchor_id"] = snapshot.anchor_id
        with self.store.transaction():
            diff = self.calculate_diff(self.store.list_all(), snapshot.images, self.store.get_all_metadata())
            plan = self.plan_snapshot(diff, snapshot.current_sequence)
            self.store.apply_batch(plan.mutations, state_update, allow_rewind=True)
        logger.info(f"Full resync to anchor {snapshot.anchor_id} at sequence {snapshot.current_sequence}: "
                    f"{diff.summary()}")
        return diff, plan

    # --- Accepted writes ---
    @staticmethod
    def mutations_for_write(request: WriteRequest, result: WriteResult,
                            local: Optional[ImageRecord]) -> List[Mutation]:
        """Local mutations mirroring a write the authoritative service accepted."""
        mutations: List[Mutation] = []
        record = result.record
        if record is None:
            if request.kind is WriteKind.DELETE:
                if local is not None:
                    mutations.append(Mutation.tombstone(request.uuid, utc_now()))
                return mutations
            if request.record is not None:
                record = request.record
            elif local is not None:
                record = ImageRecord.model_validate({**local.to_wire(), **request.changes,
                                                     "updatedAt": request.changes.get("updatedAt", utc_now())})
        if record is not None:
            mutations.append(Mutation.upsert_image(record))
            metadata = result.metadata or request.metadata
            if metadata is not None and not record.is_deleted:
                mutations.append(Mutation.upsert_metadata(metadata))
        return mutations

#
# End of reconcile.py
########################################################################################################################
