# transport.py
# Description: Client side of the authoritative service contract (HTTP and in-process bindings).
#
# Imports
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
#
# 3rd-party Libraries
import requests
from loguru import logger
#
# Local Imports
from imgsync.app.core.exceptions import (ConflictError, DuplicateImageError, ImageNotFoundError, ImageSyncError,
                                         TransientNetworkError, ValidationError)
from imgsync.app.core.Sync.authority import AuthoritativeImageStore
from imgsync.app.core.Sync.models import (OperationsPage, RemoteImage, RemoteSnapshot, RemoteStatus, SyncFact,
                                          WriteKind, WriteRequest, WriteResult, parse_image_payload)
#
########################################################################################################################
#
# Classes:

HEADER_CLIENT_ID = "X-Client-ID"
HEADER_LAST_SYNC_SEQUENCE = "X-Last-Sync-Sequence"
HEADER_CURRENT_SEQUENCE = "X-Current-Sequence"
HEADER_OPERATIONS_BEHIND = "X-Operations-Behind"
HEADER_ANCHOR_ID = "X-Sync-Anchor"


class SyncTransport(ABC):
    """Abstract contract with the authoritative service."""

    @abstractmethod
    def fetch_operations(self, since_sequence: int, limit: int = 100) -> OperationsPage:
        """
        Facts with sequence > since_sequence, ascending, at most `limit` of them.

        Raises:
            TransientNetworkError: The service could not be reached in time.
            ValidationError: The response was malformed.
        """
        pass

    @abstractmethod
    def fetch_snapshot(self) -> RemoteSnapshot:
        """Every authoritative record (tombstones included) with the current sequence and anchor."""
        pass

    @abstractmethod
    def fetch_status(self) -> RemoteStatus:
        pass

    @abstractmethod
    def submit_write(self, request: WriteRequest, client_id: str, last_applied_sequence: int) -> WriteResult:
        """
        Sends one write carrying the client's identity and cursor.

        Raises:
            ConflictError: The service's sequence is ahead of last_applied_sequence.
        """
        pass


class InProcessTransport(SyncTransport):
    """Binds the engine directly to an AuthoritativeImageStore living in the same process."""

    def __init__(self, authority: AuthoritativeImageStore):
        self.authority = authority

    def fetch_operations(self, since_sequence: int, limit: int = 100) -> OperationsPage:
        return self.authority.operations_since(since_sequence, limit)

    def fetch_snapshot(self) -> RemoteSnapshot:
        return self.authority.snapshot()

    def fetch_status(self) -> RemoteStatus:
        return self.authority.status()

    def submit_write(self, request: WriteRequest, client_id: str, last_applied_sequence: int) -> WriteResult:
        return self.authority.accept_write(request, client_id, last_applied_sequence)


class HttpApiTransport(SyncTransport):
    """
    HTTP binding. `session` may be any object with a requests-style
    `request(method, url, params=, json=, headers=, timeout=)` method.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, api_key: Optional[str] = None, session=None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.api_key = api_key
        self.session = session if session is not None else requests.Session()
        logger.info(f"HTTP Transport initialized for URL: {self.base_url}")

    def _get_headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None,
                 json_body: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url} params={params}")
        try:
            response = self.session.request(method, url, params=params, json=json_body,
                                            headers=self._get_headers(headers), timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.warning(f"Request to {url} timed out after {self.timeout}s")
            raise TransientNetworkError(f"Request timed out after {self.timeout}s", operation=f"{method} {path}",
                                        original_error=e) from e
        except requests.exceptions.RequestException as e:
            logger.warning(f"HTTP request failed for {url}: {e}")
            raise TransientNetworkError("Network error talking to the sync service", operation=f"{method} {path}",
                                        original_error=e) from e
        return self._check_response(response, f"{method} {path}")

    @staticmethod
    def _json(response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _check_response(self, response, operation: str) -> Dict[str, Any]:
        status_code = response.status_code
        if 200 <= status_code < 300:
            try:
                body = response.json()
            except ValueError as e:
                raise ValidationError("Service returned a non-JSON body", operation=operation,
                                      context={"status_code": status_code}, original_error=e) from e
            if not isinstance(body, dict):
                raise ValidationError("Service returned an unexpected body", operation=operation,
                                      context={"status_code": status_code})
            return body

        body = self._json(response)
        message = body.get("message") or body.get("detail") or body.get("error") or f"HTTP {status_code}"
        if not isinstance(message, str):
            message = str(message)

        if status_code == 409:
            behind = _as_int(response.headers.get(HEADER_OPERATIONS_BEHIND), body.get("operationsBehind"))
            current = _as_int(response.headers.get(HEADER_CURRENT_SEQUENCE), body.get("currentSequence"))
            raise ConflictError(message, operations_behind=behind, current_sequence=current, operation=operation)
        if status_code >= 500 or status_code in (408, 429):
            raise TransientNetworkError(message, status_code=status_code, operation=operation)
        if status_code == 404:
            raise ImageNotFoundError(message, operation=operation, context={"status_code": status_code})
        if status_code in (400, 422):
            if body.get("errorType") == DuplicateImageError.__name__:
                raise DuplicateImageError(message, operation=operation, context={"status_code": status_code})
            raise ValidationError(message, operation=operation, context={"status_code": status_code})
        raise ImageSyncError(message, operation=operation, context={"status_code": status_code})

    @staticmethod
    def _sync_block(body: Dict[str, Any], operation: str) -> Dict[str, Any]:
        sync = body.get("sync")
        if not isinstance(sync, dict) or "currentSequence" not in sync:
            raise ValidationError("Response is missing its sync block", operation=operation)
        return sync

    # --- SyncTransport ---
    def fetch_operations(self, since_sequence: int, limit: int = 100) -> OperationsPage:
        body = self._request("GET", "/api/sync/operations", params={"since": since_sequence, "limit": limit})
        sync = self._sync_block(body, "fetch_operations")
        facts = [SyncFact.parse(item) for item in body.get("data") or []]
        logger.debug(f"Fetched {len(facts)} operations since {since_sequence} (current {sync['currentSequence']})")
        return OperationsPage(facts=facts, current_sequence=int(sync["currentSequence"]),
                              anchor_id=sync.get("anchorId"), has_more=bool(sync.get("hasMore", False)))

    def fetch_snapshot(self) -> RemoteSnapshot:
        body = self._request("GET", "/api/sync/snapshot")
        sync = self._sync_block(body, "fetch_snapshot")
        images = [RemoteImage(*parse_image_payload(item)) for item in body.get("data") or []]
        logger.info(f"Fetched snapshot of {len(images)} images at sequence {sync['currentSequence']}")
        return RemoteSnapshot(images=images, current_sequence=int(sync["currentSequence"]),
                              anchor_id=sync.get("anchorId"))

    def fetch_status(self) -> RemoteStatus:
        body = self._request("GET", "/api/sync/status")
        sync = self._sync_block(body, "fetch_status")
        return RemoteStatus(current_sequence=int(sync["currentSequence"]), anchor_id=sync.get("anchorId"))

    def submit_write(self, request: WriteRequest, client_id: str, last_applied_sequence: int) -> WriteResult:
        headers = {HEADER_CLIENT_ID: client_id, HEADER_LAST_SYNC_SEQUENCE: str(last_applied_sequence)}
        if request.kind is WriteKind.CREATE:
            method, path = "POST", "/api/images"
        elif request.kind is WriteKind.UPDATE:
            method, path = "PUT", f"/api/images/{request.uuid}"
        elif request.kind is WriteKind.REPLACE:
            method, path = "PUT", f"/api/images/{request.uuid}/replace"
        else:
            method, path = "DELETE", f"/api/images/{request.uuid}"

        body = self._request(method, path, json_body=request.body() or None, headers=headers)
        sequence = body.get("sequence")
        if sequence is None:
            raise ValidationError("Write response is missing the new sequence", operation=f"{method} {path}")
        record = metadata = None
        if isinstance(body.get("data"), dict):
            record, metadata = parse_image_payload(body["data"])
        logger.info(f"{request.kind.value} of {request.uuid} accepted at sequence {sequence}")
        return WriteResult(sequence=int(sequence), record=record, metadata=metadata)


def _as_int(*candidates) -> Optional[int]:
    for value in candidates:
        if value is None or value == "":
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None

#
# End of transport.py
########################################################################################################################
