# models.py
# Description: Data model shared by the image store, the reconciler and the sync engine.
#
# Imports
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Optional, Tuple
#
# 3rd-party Libraries
from pydantic import (AliasChoices, BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError,
                      field_validator, model_validator)
from pydantic.alias_generators import to_camel
#
# Local Imports
from imgsync.app.core.exceptions import ValidationError
#
########################################################################################################################
#
# Functions:

# Keys in a fact payload / snapshot entry holding the extended metadata sub-map
METADATA_PAYLOAD_KEYS = ("exifData", "extendedMetadata", "exif_data", "extended_metadata")


def parse_timestamp(ts: Any) -> Optional[datetime]:
    """
    Parses an ISO 8601 string (with 'Z' or offset) or a datetime into a UTC-aware
    datetime truncated to millisecond precision. Naive values are taken as UTC.
    """
    if ts is None or ts == "":
        return None
    if isinstance(ts, datetime):
        dt = ts
    elif isinstance(ts, str):
        value = ts.strip()
        if value.endswith('Z'):
            value = value[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            try:
                dt = datetime.strptime(value, '%Y-%m-%d %H:%M:%S')
            except ValueError as e:
                raise ValueError(f"Invalid timestamp: {ts!r}") from e
    else:
        raise ValueError(f"Unsupported timestamp type: {type(ts).__name__}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Formats a datetime as 'YYYY-MM-DDTHH:MM:SS.mmmZ'."""
    if dt is None:
        return None
    dt = parse_timestamp(dt)
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def utc_now() -> datetime:
    return parse_timestamp(datetime.now(timezone.utc))


def normalize_payload_keys(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Maps snake_case keys onto the camelCase wire names so payloads from either side merge cleanly."""
    return {to_camel(k) if '_' in k else k: v for k, v in payload.items()}


def split_payload(payload: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
    """Separates image fields from the embedded extended metadata map."""
    image_fields = dict(payload)
    metadata = None
    for key in METADATA_PAYLOAD_KEYS:
        if key in image_fields:
            value = image_fields.pop(key)
            if value is not None:
                metadata = value
    return normalize_payload_keys(image_fields), metadata

# --- Pydantic Models ---

class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class PageDimension(_WireModel):
    width: int = Field(..., ge=0)
    height: int = Field(..., ge=0)


class ImageRecord(_WireModel):
    """The canonical unit of synchronization."""
    uuid: str = Field(..., min_length=1, description="Stable identifier, never reused.")
    filename: str
    file_size: int = Field(0, ge=0)
    format: str
    width: int = Field(0, ge=0)
    height: int = Field(0, ge=0)
    mime_type: str
    hash: Optional[str] = Field(None, description="Content fingerprint.")
    is_corrupted: bool = False
    page_count: int = Field(1, ge=1)
    page_dimensions: List[PageDimension] = Field(
        default_factory=list,
        validation_alias=AliasChoices("pageDimensions", "page_dimensions", "tiffDimensions"),
    )
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "uuid": "0b7e6a43-2f5a-4c0e-9f7e-1d0f4d9b2a11",
                "filename": "scan_0001.tiff",
                "fileSize": 2483912,
                "format": "tiff",
                "width": 2480,
                "height": 3508,
                "mimeType": "image/tiff",
                "hash": "9f86d081884c7d659a2feaa0c55ad015",
                "isCorrupted": False,
                "pageCount": 2,
                "pageDimensions": [{"width": 2480, "height": 3508}, {"width": 2480, "height": 3508}],
                "createdAt": "2024-03-01T09:15:00.000Z",
                "updatedAt": "2024-03-02T10:00:00.000Z",
                "deletedAt": None
            }
        }
    )

    @field_validator("created_at", "updated_at", "deleted_at", mode="before")
    @classmethod
    def _normalize_timestamps(cls, v):
        return parse_timestamp(v)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class ExtendedMetadata(_WireModel):
    """Optional 1:1 companion of an ImageRecord, keyed by the same uuid."""
    uuid: str = Field(..., min_length=1)
    camera_make: Optional[str] = None
    camera_model: Optional[str] = None
    lens_model: Optional[str] = None
    iso: Optional[int] = Field(None, ge=0)
    shutter_speed: Optional[str] = None
    aperture: Optional[str] = None
    focal_length: Optional[str] = None
    date_taken: Optional[str] = None
    orientation: Optional[int] = Field(None, ge=1, le=8)
    gps_latitude: Optional[float] = Field(None, ge=-90, le=90)
    gps_longitude: Optional[float] = Field(None, ge=-180, le=180)
    gps_altitude: Optional[float] = None
    extra: Dict[str, Any] = Field(
        default_factory=dict,
        alias="metadata",
        validation_alias=AliasChoices("metadata", "extra"),
        description="Open-ended key/value facts.",
    )

    # Structured columns, in storage order
    STRUCTURED_FIELDS: ClassVar[Tuple[str, ...]] = (
        "camera_make", "camera_model", "lens_model", "iso", "shutter_speed", "aperture",
        "focal_length", "date_taken", "orientation", "gps_latitude", "gps_longitude", "gps_altitude",
    )

    def content(self) -> Dict[str, Any]:
        """Comparable content, without the key."""
        return self.model_dump(exclude={"uuid"})


class FactType(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    BATCH = "batch"


# Operation names used by the service's change log
FACT_TYPE_ALIASES = {
    "upload": FactType.CREATE,
    "batch_upload": FactType.BATCH,
    "batch_delete": FactType.BATCH,
}


class SyncFact(BaseModel):
    """One authoritative operation from the service's log."""
    sequence: int = Field(0, ge=0, description="Sequence number assigned by the authoritative service.")
    type: FactType
    uuid: Optional[str] = Field(None, description="Target image; absent for batch facts.")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Full or partial image fields (camelCase).")
    timestamp: datetime
    client_id: Optional[str] = Field(None, alias="clientId")
    facts: List["SyncFact"] = Field(default_factory=list, description="Constituent facts of a batch.")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "sequence": 42,
                "type": "update",
                "uuid": "0b7e6a43-2f5a-4c0e-9f7e-1d0f4d9b2a11",
                "payload": {"filename": "renamed.tiff", "updatedAt": "2024-03-02T10:00:00.000Z"},
                "timestamp": "2024-03-02T10:00:00.000Z",
                "clientId": "desktop-app-v1.0-5f0c..."
            }
        }
    )

    @model_validator(mode="before")
    @classmethod
    def _inherit_batch_position(cls, data):
        # Children of a batch share the batch's sequence and timestamp unless they carry their own
        if isinstance(data, dict) and isinstance(data.get("facts"), list):
            inherited = {k: data[k] for k in ("sequence", "timestamp") if data.get(k) is not None}
            data = dict(data)
            data["facts"] = [
                {**inherited, **child} if isinstance(child, dict) else child
                for child in data["facts"]
            ]
        return data

    @field_validator("type", mode="before")
    @classmethod
    def _map_type_alias(cls, v):
        if isinstance(v, str):
            return FACT_TYPE_ALIASES.get(v.lower(), v.lower())
        return v

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalize_timestamp(cls, v):
        return parse_timestamp(v)

    @model_validator(mode="after")
    def _check_shape(self):
        if self.type is FactType.BATCH:
            for child in self.facts:
                if child.type is FactType.BATCH:
                    raise ValueError("Nested batch facts are not supported")
                # Children inherit the batch's position in the log
                child.sequence = self.sequence
            if self.uuid is not None:
                raise ValueError("A batch fact does not target a single uuid")
        else:
            if not self.uuid:
                raise ValueError(f"A '{self.type.value}' fact requires a uuid")
            if self.facts:
                raise ValueError(f"A '{self.type.value}' fact cannot carry child facts")
        return self

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> "SyncFact":
        """Validates a raw fact, raising the library's ValidationError on malformed input."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError("Malformed sync fact", operation="parse_fact",
                                  context={"sequence": data.get("sequence") if isinstance(data, dict) else None},
                                  original_error=e) from e

    def expand(self) -> List["SyncFact"]:
        """Constituent per-record facts (a non-batch fact expands to itself)."""
        return list(self.facts) if self.type is FactType.BATCH else [self]

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


SyncFact.model_rebuild()


def parse_image_payload(payload: Dict[str, Any]) -> Tuple[ImageRecord, Optional[ExtendedMetadata]]:
    """Parses a full snapshot entry (image fields plus optional metadata sub-map)."""
    image_fields, metadata_fields = split_payload(payload)
    try:
        record = ImageRecord.model_validate(image_fields)
        metadata = None
        if metadata_fields is not None:
            metadata = ExtendedMetadata.model_validate({**metadata_fields, "uuid": record.uuid})
    except PydanticValidationError as e:
        raise ValidationError("Malformed image payload", operation="parse_image",
                              context={"uuid": payload.get("uuid")}, original_error=e) from e
    return record, metadata


def parse_metadata_payload(uuid: str, data: Dict[str, Any]) -> ExtendedMetadata:
    try:
        return ExtendedMetadata.model_validate({**data, "uuid": uuid})
    except PydanticValidationError as e:
        raise ValidationError("Malformed extended metadata", operation="parse_metadata",
                              context={"uuid": uuid}, original_error=e) from e

# --- Local store types ---

class MutationKind(str, enum.Enum):
    CREATE_IMAGE = "create_image"
    UPSERT_IMAGE = "upsert_image"
    UPSERT_METADATA = "upsert_metadata"
    TOMBSTONE = "tombstone"


@dataclass
class Mutation:
    """One change to the local store. Applied in order inside a single transaction by ImageDB.apply_batch."""
    kind: MutationKind
    uuid: str
    record: Optional[ImageRecord] = None
    metadata: Optional[ExtendedMetadata] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def upsert_image(cls, record: ImageRecord) -> "Mutation":
        return cls(MutationKind.UPSERT_IMAGE, record.uuid, record=record)

    @classmethod
    def create_image(cls, record: ImageRecord) -> "Mutation":
        return cls(MutationKind.CREATE_IMAGE, record.uuid, record=record)

    @classmethod
    def upsert_metadata(cls, metadata: ExtendedMetadata) -> "Mutation":
        return cls(MutationKind.UPSERT_METADATA, metadata.uuid, metadata=metadata)

    @classmethod
    def tombstone(cls, uuid: str, deleted_at: datetime) -> "Mutation":
        return cls(MutationKind.TOMBSTONE, uuid, deleted_at=deleted_at)


@dataclass
class SyncState:
    last_applied_sequence: int = 0
    last_sync_time: Optional[datetime] = None
    anchor_id: Optional[str] = None
    client_id: Optional[str] = None

# --- Remote service types ---

@dataclass
class RemoteStatus:
    current_sequence: int
    anchor_id: Optional[str]


@dataclass
class OperationsPage:
    facts: List[SyncFact]
    current_sequence: int
    anchor_id: Optional[str]
    has_more: bool = False


@dataclass
class RemoteImage:
    record: ImageRecord
    metadata: Optional[ExtendedMetadata] = None


@dataclass
class RemoteSnapshot:
    images: List[RemoteImage]
    current_sequence: int
    anchor_id: Optional[str]


class WriteKind(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


@dataclass
class WriteRequest:
    """
    A write destined for the authoritative service. It does not carry the
    sequence: the engine attaches the current cursor each time it is submitted.
    """
    kind: WriteKind
    uuid: str
    record: Optional[ImageRecord] = None
    changes: Dict[str, Any] = field(default_factory=dict)
    metadata: Optional[ExtendedMetadata] = None

    @classmethod
    def create(cls, record: ImageRecord, metadata: Optional[ExtendedMetadata] = None) -> "WriteRequest":
        return cls(WriteKind.CREATE, record.uuid, record=record, metadata=metadata)

    @classmethod
    def replace(cls, record: ImageRecord, metadata: Optional[ExtendedMetadata] = None) -> "WriteRequest":
        return cls(WriteKind.REPLACE, record.uuid, record=record, metadata=metadata)

    @classmethod
    def update(cls, uuid: str, changes: Dict[str, Any], metadata: Optional[ExtendedMetadata] = None) -> "WriteRequest":
        if not changes and metadata is None:
            raise ValidationError("An update needs at least one changed field or metadata",
                                  operation="build_write", context={"uuid": uuid})
        return cls(WriteKind.UPDATE, uuid, changes=normalize_payload_keys(changes), metadata=metadata)

    @classmethod
    def delete(cls, uuid: str) -> "WriteRequest":
        return cls(WriteKind.DELETE, uuid)

    def body(self) -> Dict[str, Any]:
        """JSON body sent to the service."""
        body: Dict[str, Any] = {}
        if self.record is not None:
            body["image"] = self.record.to_wire()
        if self.changes:
            body["changes"] = {k: to_iso(v) if isinstance(v, datetime) else v for k, v in self.changes.items()}
        if self.metadata is not None:
            body["exifData"] = self.metadata.to_wire()
        return body


@dataclass
class WriteResult:
    sequence: int
    record: Optional[ImageRecord] = None
    metadata: Optional[ExtendedMetadata] = None

# --- Engine results ---

@dataclass
class SyncStatus:
    in_sync: bool
    reset_detected: bool
    operations_behind: Optional[int]
    local_sequence: int
    remote_sequence: int
    local_anchor: Optional[str]
    remote_anchor: Optional[str]


@dataclass
class StateDiff:
    """Per-record actions needed to converge local and authoritative state."""
    to_upload: List[ImageRecord] = field(default_factory=list)
    to_replace_remote: List[ImageRecord] = field(default_factory=list)
    to_update_remote: List[ImageRecord] = field(default_factory=list)
    to_delete_remote: List[ImageRecord] = field(default_factory=list)
    to_download: List[RemoteImage] = field(default_factory=list)
    to_replace_local: List[RemoteImage] = field(default_factory=list)
    to_update_local: List[RemoteImage] = field(default_factory=list)
    to_delete_local: List[RemoteImage] = field(default_factory=list)

    BUCKETS = (
        "to_upload", "to_replace_remote", "to_update_remote", "to_delete_remote",
        "to_download", "to_replace_local", "to_update_local", "to_delete_local",
    )

    def summary(self) -> Dict[str, int]:
        counts = {name: len(getattr(self, name)) for name in self.BUCKETS}
        counts["total"] = sum(counts.values())
        return counts

    @property
    def is_empty(self) -> bool:
        return all(not getattr(self, name) for name in self.BUCKETS)


@dataclass
class SyncSummary:
    trigger: str
    operations_applied: int = 0
    records_changed: int = 0
    current_sequence: int = 0
    anchor_id: Optional[str] = None
    full_resync: bool = False
    pending_push: List[str] = field(default_factory=list)
    diff: Optional[StateDiff] = None

#
# End of models.py
########################################################################################################################
