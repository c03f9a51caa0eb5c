from __future__ import annotations

from typing import Any


class StorageError(Exception):
    """Base class for every caller-facing storage failure."""

    code = 'storage_error'
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {'code': self.code, 'detail': self.message, 'retryable': self.retryable, **self.details}


class PathEscape(StorageError):
    code = 'path_escape'


class InvalidFilename(StorageError):
    code = 'invalid_filename'


class UnsupportedExtension(StorageError):
    code = 'unsupported_extension'


class SizeExceeded(StorageError):
    code = 'size_exceeded'


class RatioExceeded(StorageError):
    code = 'ratio_exceeded'


class ArchiveRejected(StorageError):
    """Archive metadata failed inspection.

    ``reason`` is one of ``entry_ratio``, ``entry_size``, ``aggregate_ratio``,
    ``total_size``, ``entry_count``, ``unsafe_entry_name``, ``duplicate_entry``,
    ``encrypted_entry``, ``unsupported_compression``, ``size_mismatch`` or ``malformed``.
    """

    code = 'archive_rejected'

    def __init__(self, reason: str, message: str, **details: Any):
        super().__init__(message, reason=reason, **details)
        self.reason = reason


class DocumentRejected(StorageError):
    code = 'document_rejected'

    def __init__(self, reason: str, message: str, **details: Any):
        super().__init__(message, reason=reason, **details)
        self.reason = reason


class LockTimeout(StorageError):
    code = 'lock_timeout'
    retryable = True


class NotFound(StorageError):
    code = 'not_found'


class AlreadyExists(StorageError):
    code = 'already_exists'


class IOFailure(StorageError):
    code = 'io_failure'

    def __init__(self, operation: str, message: str, **details: Any):
        super().__init__(f'{operation}: {message}', operation=operation, **details)
        self.operation = operation


def from_os_error(operation: str, exc: OSError, path: str | None = None) -> StorageError:
    reason = exc.strerror or str(exc)
    if isinstance(exc, FileNotFoundError):
        return NotFound(f'{operation}: {reason}', operation=operation, path=path)
    if isinstance(exc, FileExistsError):
        return AlreadyExists(f'{operation}: {reason}', operation=operation, path=path)
    return IOFailure(operation, reason, path=path, errno=exc.errno)
