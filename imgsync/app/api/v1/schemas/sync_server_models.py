# sync_server_models.py
# Description: Request/response models for the authoritative sync service API.
#
# Imports
from typing import Any, Dict, List, Optional
#
# 3rd-party Libraries
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# --- Pydantic Models ---

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncInfo(_CamelModel):
    """Cursor information attached to every read response."""
    current_sequence: int = Field(..., ge=0, description="The service's latest sequence number.")
    anchor_id: Optional[str] = Field(None, description="Identity of the current log generation; changes on reset.")
    has_more: bool = Field(False, description="True when more operations are available past this page.")


class OperationsResponse(BaseModel):
    """
    Response of GET /api/sync/operations.
    `data` holds facts with sequence > since, in ascending order.
    """
    data: List[Dict[str, Any]] = Field(default_factory=list, description="Sync facts, serialized with camelCase keys.")
    sync: SyncInfo

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "data": [
                    {
                        "sequence": 43,
                        "type": "update",
                        "uuid": "0b7e6a43-2f5a-4c0e-9f7e-1d0f4d9b2a11",
                        "payload": {"filename": "renamed.tiff", "updatedAt": "2024-03-02T10:00:00.000Z"},
                        "timestamp": "2024-03-02T10:00:00.000Z",
                        "clientId": "desktop-app-v1.0-5f0c2d1e-8a0b-4a53-9c3e-0e1f2a3b4c5d"
                    }
                ],
                "sync": {"currentSequence": 43, "anchorId": "7c9e6679-7425-40de-944b-e07fc1f90ae7", "hasMore": False}
            }
        }
    )


class SnapshotResponse(BaseModel):
    """Response of GET /api/sync/snapshot: every record, tombstones included, with exifData embedded."""
    data: List[Dict[str, Any]] = Field(default_factory=list)
    sync: SyncInfo


class StatusResponse(BaseModel):
    sync: SyncInfo


class ImageWriteBody(BaseModel):
    """
    Body of the image write endpoints. `image` carries a full record (create,
    replace); `changes` carries the changed fields of an update.
    """
    image: Optional[Dict[str, Any]] = Field(None, description="Full image record with camelCase keys.")
    changes: Optional[Dict[str, Any]] = Field(None, description="Changed fields for an update.")
    exif_data: Optional[Dict[str, Any]] = Field(None, alias="exifData", description="Extended metadata map.")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "image": {
                    "uuid": "0b7e6a43-2f5a-4c0e-9f7e-1d0f4d9b2a11",
                    "filename": "scan_0001.tiff",
                    "fileSize": 2483912,
                    "format": "tiff",
                    "width": 2480,
                    "height": 3508,
                    "mimeType": "image/tiff",
                    "pageCount": 1,
                    "createdAt": "2024-03-01T09:15:00.000Z",
                    "updatedAt": "2024-03-01T09:15:00.000Z"
                },
                "exifData": {"cameraMake": "Canon", "iso": 200}
            }
        }
    )


class WriteResponse(BaseModel):
    """Response of an accepted write: the new sequence and the record as stored by the service."""
    success: bool = True
    sequence: int = Field(..., ge=1, description="Sequence number assigned to the write.")
    data: Optional[Dict[str, Any]] = Field(None, description="The authoritative record, with exifData embedded.")


class ConflictResponse(_CamelModel):
    """Body of a 409; the same numbers are also sent as X-Operations-Behind / X-Current-Sequence headers."""
    success: bool = False
    message: str = "Sync Conflict"
    operations_behind: Optional[int] = Field(None, ge=0)
    current_sequence: Optional[int] = Field(None, ge=0)

#
# End of sync_server_models.py
########################################################################################################################
