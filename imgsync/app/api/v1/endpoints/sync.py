# sync.py
# Description: FastAPI endpoints of the authoritative sync service: operation log, snapshot, status and image writes.
#
# Imports
import asyncio
from typing import Any, Dict, Optional
#
# 3rd-party imports
from fastapi import APIRouter, Depends, Header, Query, status
from fastapi.responses import JSONResponse
from loguru import logger
#
# Local Imports
from imgsync.app.api.v1.API_Deps.Sync_Deps import get_authority
from imgsync.app.api.v1.schemas.sync_server_models import (ConflictResponse, ImageWriteBody, OperationsResponse,
                                                           SnapshotResponse, StatusResponse, SyncInfo,
                                                           WriteResponse)
from imgsync.app.core.exceptions import (ConflictError, DuplicateImageError, ImageNotFoundError, ImageSyncError,
                                         ValidationError)
from imgsync.app.core.Sync.authority import AuthoritativeImageStore
from imgsync.app.core.Sync.models import (WriteRequest, WriteResult, parse_image_payload, parse_metadata_payload,
                                          to_iso, utc_now)
from imgsync.app.core.Sync.transport import (HEADER_ANCHOR_ID, HEADER_CLIENT_ID, HEADER_CURRENT_SEQUENCE,
                                             HEADER_LAST_SYNC_SEQUENCE, HEADER_OPERATIONS_BEHIND)
#
#
#######################################################################################################################
#
# Functions:

router = APIRouter()


def _image_entry(record, metadata) -> Dict[str, Any]:
    entry = record.to_wire()
    if metadata is not None:
        entry["exifData"] = metadata.to_wire()
    return entry


def _error_response(status_code: int, error: ImageSyncError, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": error.message, "errorType": error.kind},
        headers=headers,
    )


def _conflict_response(error: ConflictError, anchor_id: str) -> JSONResponse:
    body = ConflictResponse(operations_behind=error.operations_behind, current_sequence=error.current_sequence)
    headers = {
        HEADER_OPERATIONS_BEHIND: str(error.operations_behind or 0),
        HEADER_CURRENT_SEQUENCE: str(error.current_sequence or 0),
        HEADER_ANCHOR_ID: anchor_id,
    }
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump(by_alias=True), headers=headers)


def _record_from_body(body: ImageWriteBody, uuid: Optional[str] = None):
    if not body.image:
        raise ValidationError("Request body must contain an 'image' object", operation="parse_write")
    image = dict(body.image)
    if uuid is not None:
        if image.get("uuid", uuid) != uuid:
            raise ValidationError("Image uuid does not match the request path", operation="parse_write",
                                  context={"uuid": uuid})
        image["uuid"] = uuid
    # The service stamps updatedAt itself; clients may omit the timestamps
    now = to_iso(utc_now())
    image.setdefault("createdAt", now)
    image.setdefault("updatedAt", now)
    if body.exif_data is not None:
        image["exifData"] = body.exif_data
    return parse_image_payload(image)


async def _submit(authority: AuthoritativeImageStore, build_request, client_id: str, last_sequence: int):
    """Builds the write, applies it as a fast-forward and maps library errors onto HTTP responses."""
    try:
        request: WriteRequest = build_request()
        result: WriteResult = await asyncio.to_thread(authority.accept_write, request, client_id, last_sequence)
    except ConflictError as e:
        return _conflict_response(e, authority.anchor_id)
    except ImageNotFoundError as e:
        logger.info(f"Write from {client_id} rejected: {e.message}")
        return _error_response(status.HTTP_404_NOT_FOUND, e)
    except (DuplicateImageError, ValidationError) as e:
        logger.info(f"Write from {client_id} rejected: {e.message}")
        return _error_response(status.HTTP_400_BAD_REQUEST, e)

    logger.info(f"{request.kind.value} of {request.uuid} from {client_id} committed as sequence {result.sequence}")
    return WriteResponse(sequence=result.sequence, data=_image_entry(result.record, result.metadata))

# --- FastAPI Endpoint Definitions ---

@router.get("/sync/operations",
            response_model=OperationsResponse,
            summary="Operations after a sequence number")
async def get_operations(
    since: int = Query(0, ge=0, description="Return facts with a sequence strictly greater than this."),
    limit: int = Query(100, ge=1, le=1000),
    authority: AuthoritativeImageStore = Depends(get_authority),
):
    page = await asyncio.to_thread(authority.operations_since, since, limit)
    logger.debug(f"Serving {len(page.facts)} operations since {since} (current {page.current_sequence})")
    return OperationsResponse(
        data=[fact.to_wire() for fact in page.facts],
        sync=SyncInfo(current_sequence=page.current_sequence, anchor_id=page.anchor_id, has_more=page.has_more),
    )


@router.get("/sync/snapshot",
            response_model=SnapshotResponse,
            summary="Every image record, tombstones included")
async def get_snapshot(authority: AuthoritativeImageStore = Depends(get_authority)):
    snapshot = await asyncio.to_thread(authority.snapshot)
    images = [_image_entry(entry.record, entry.metadata) for entry in snapshot.images]
    logger.info(f"Serving snapshot of {len(images)} images at sequence {snapshot.current_sequence}")
    return SnapshotResponse(data=images,
                            sync=SyncInfo(current_sequence=snapshot.current_sequence, anchor_id=snapshot.anchor_id))


@router.get("/sync/status",
            response_model=StatusResponse,
            summary="Current sequence and anchor")
async def get_status(authority: AuthoritativeImageStore = Depends(get_authority)):
    remote = authority.status()
    return StatusResponse(sync=SyncInfo(current_sequence=remote.current_sequence, anchor_id=remote.anchor_id))


@router.post("/images",
             response_model=WriteResponse,
             status_code=status.HTTP_201_CREATED,
             responses={409: {"model": ConflictResponse}},
             summary="Create an image")
async def create_image(
    body: ImageWriteBody,
    client_id: str = Header(..., alias=HEADER_CLIENT_ID),
    last_sync_sequence: int = Header(..., alias=HEADER_LAST_SYNC_SEQUENCE),
    authority: AuthoritativeImageStore = Depends(get_authority),
):
    def build():
        return WriteRequest.create(*_record_from_body(body))
    return await _submit(authority, build, client_id, last_sync_sequence)


@router.put("/images/{uuid}",
            response_model=WriteResponse,
            responses={409: {"model": ConflictResponse}},
            summary="Update fields of an image")
async def update_image(
    uuid: str,
    body: ImageWriteBody,
    client_id: str = Header(..., alias=HEADER_CLIENT_ID),
    last_sync_sequence: int = Header(..., alias=HEADER_LAST_SYNC_SEQUENCE),
    authority: AuthoritativeImageStore = Depends(get_authority),
):
    def build():
        metadata = parse_metadata_payload(uuid, body.exif_data) if body.exif_data is not None else None
        return WriteRequest.update(uuid, body.changes or {}, metadata)
    return await _submit(authority, build, client_id, last_sync_sequence)


@router.put("/images/{uuid}/replace",
            response_model=WriteResponse,
            responses={409: {"model": ConflictResponse}},
            summary="Replace an image's content")
async def replace_image(
    uuid: str,
    body: ImageWriteBody,
    client_id: str = Header(..., alias=HEADER_CLIENT_ID),
    last_sync_sequence: int = Header(..., alias=HEADER_LAST_SYNC_SEQUENCE),
    authority: AuthoritativeImageStore = Depends(get_authority),
):
    def build():
        return WriteRequest.replace(*_record_from_body(body, uuid))
    return await _submit(authority, build, client_id, last_sync_sequence)


@router.delete("/images/{uuid}",
               response_model=WriteResponse,
               responses={409: {"model": ConflictResponse}},
               summary="Tombstone an image")
async def delete_image(
    uuid: str,
    client_id: str = Header(..., alias=HEADER_CLIENT_ID),
    last_sync_sequence: int = Header(..., alias=HEADER_LAST_SYNC_SEQUENCE),
    authority: AuthoritativeImageStore = Depends(get_authority),
):
    return await _submit(authority, lambda: WriteRequest.delete(uuid), client_id, last_sync_sequence)

#
# End of sync.py
#######################################################################################################################
