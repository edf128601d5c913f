# exceptions.py
# Description: Exception hierarchy for the image library store and sync engine
#
"""
Image Sync Exception Hierarchy
==============================

Every error raised through the public surface of the library derives from
ImageSyncError and carries a `kind`, the failing `operation` and a `context`
dict, so callers (UI, logging) can decide whether to show a message or retry
silently.

Exception Categories:
- ImageSyncError: Base exception for all library errors
- ConflictError: The authoritative service is ahead of the client (recoverable by sync + retry)
- TransientNetworkError: Network/service hiccup, retryable by the caller or the next auto-sync tick
- StorageError: Local durability failure, fatal to the current operation
- ResetDetectedError: Anchor mismatch, a signal to run a full resync rather than a failure
- ValidationError: Malformed fact, bad input or duplicate uuid creation (never retried)
  - DuplicateImageError / ImageNotFoundError: the two write-target cases
"""
#
# Imports
from typing import Optional, Any, Dict
#
########################################################################################################################
#
# Classes:


class ImageSyncError(Exception):
    """
    Base exception for all imgsync errors.

    Attributes:
        operation: The operation that failed (e.g., "sync", "apply_batch", "submit_write")
        context: Additional context about the error (uuids, sequences, etc.)
        original_error: The original exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.context = context or {}
        self.original_error = original_error

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        parts = [self.message]

        if self.operation:
            parts.append(f"Operation: {self.operation}")

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"Context: {context_str}")

        if self.original_error:
            parts.append(f"Caused by: {type(self.original_error).__name__}: {self.original_error}")

        return " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.kind,
            "message": self.message,
            "operation": self.operation,
            "context": self.context,
            "original_error": str(self.original_error) if self.original_error else None
        }


class ConflictError(ImageSyncError):
    """
    The authoritative service rejected a write because its current sequence is
    ahead of the sequence the client attached to the request.

    Handled internally by the retry wrapper (sync, then retry).
    """

    def __init__(
        self,
        message: str = "Sync conflict: client is behind the authoritative service.",
        operations_behind: Optional[int] = None,
        current_sequence: Optional[int] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        if operations_behind is not None:
            context['operations_behind'] = operations_behind
        if current_sequence is not None:
            context['current_sequence'] = current_sequence
        kwargs.setdefault('operation', "submit_write")
        super().__init__(message, context=context, **kwargs)
        self.operations_behind = operations_behind
        self.current_sequence = current_sequence


class TransientNetworkError(ImageSyncError):
    """Timeouts, refused connections and 5xx responses from the service."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        context = kwargs.pop('context', {})
        if status_code is not None:
            context['status_code'] = status_code
        super().__init__(message, context=context, **kwargs)
        self.status_code = status_code


class StorageError(ImageSyncError):
    """
    Local durability failure.

    Raised when the store cannot be opened, or when a transaction fails and is
    rolled back. The sync cursor is never advanced past a StorageError.
    """
    pass


class SchemaError(StorageError):
    """Schema version mismatch or failed schema initialization."""
    pass


class ResetDetectedError(ImageSyncError):
    """The authoritative store was reset or replaced (anchor mismatch)."""

    def __init__(
        self,
        message: str = "Authoritative store anchor changed; full resync required.",
        local_anchor: Optional[str] = None,
        remote_anchor: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        context['local_anchor'] = local_anchor
        context['remote_anchor'] = remote_anchor
        kwargs.setdefault('operation', "sync")
        super().__init__(message, context=context, **kwargs)
        self.local_anchor = local_anchor
        self.remote_anchor = remote_anchor


class ValidationError(ImageSyncError, ValueError):
    """Malformed fact or request, or invalid input. Indicates a logic error; not retried."""
    pass


class DuplicateImageError(ValidationError):
    """Creation of an image whose uuid already exists."""

    def __init__(self, message: str, uuid: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if uuid:
            context['uuid'] = uuid
        super().__init__(message, context=context, **kwargs)
        self.uuid = uuid


class ImageNotFoundError(ValidationError):
    """A write targeted an image that does not exist (or is tombstoned)."""

    def __init__(self, message: str, uuid: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if uuid:
            context['uuid'] = uuid
        super().__init__(message, context=context, **kwargs)
        self.uuid = uuid

#
# End of exceptions.py
########################################################################################################################
