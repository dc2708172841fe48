"""Error taxonomy for the site migration pipeline."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Stable identifiers for migration failures."""
    UNKNOWN = "unknown_error"
    AUTH_FAILURE = "auth_failure"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    PATH_VIOLATION = "path_violation"
    SCHEMA_APPLY_FAILURE = "schema_apply_failure"
    ROW_APPLY_FAILURE = "row_apply_failure"
    TRANSIENT_NETWORK_FAILURE = "transient_network_failure"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    SOURCE_REQUEST_ERROR = "source_request_error"
    STATE_VERSION_ERROR = "state_version_error"
    INVALID_CONNECTION_KEY = "invalid_connection_key"


class MigrationError(Exception):
    """Base class for all migration failures."""

    # Fatal errors move the session to the error state
    fatal = True

    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error for JSON responses and the session error log."""
        return {
            'code': self.code.value,
            'message': self.message,
            'details': self.details
        }


class AuthFailure(MigrationError):
    """Missing or invalid shared secret."""

    def __init__(self, message: str = "Authentication failed", status_code: Optional[int] = None):
        super().__init__(message, ErrorCode.AUTH_FAILURE, {'status_code': status_code})
        self.status_code = status_code


class ChecksumMismatch(MigrationError):
    """Payload checksum did not match the supplied digest."""

    fatal = False

    def __init__(self, path: str, expected: str, actual: str):
        super().__init__(
            f"Checksum mismatch for {path}: expected {expected}, got {actual}",
            ErrorCode.CHECKSUM_MISMATCH,
            {'path': path, 'expected': expected, 'actual': actual}
        )
        self.path = path


class PathViolation(MigrationError):
    """A path resolves outside the permitted root."""

    fatal = False

    def __init__(self, path: str, reason: str = "outside allowed directory"):
        super().__init__(f"Unsafe path '{path}': {reason}", ErrorCode.PATH_VIOLATION,
                         {'path': path, 'reason': reason})
        self.path = path


class SchemaApplyFailure(MigrationError):
    """DDL execution failed for a table."""

    def __init__(self, table: str, engine_error: str):
        super().__init__(f"Failed to create table {table}: {engine_error}",
                         ErrorCode.SCHEMA_APPLY_FAILURE,
                         {'table': table, 'engine_error': engine_error})
        self.table = table
        self.engine_error = engine_error


class RowApplyFailure(MigrationError):
    """A row or a whole batch could not be applied."""

    fatal = False

    def __init__(self, table: str, message: str, details: Optional[Dict[str, Any]] = None):
        merged = {'table': table}
        merged.update(details or {})
        super().__init__(f"{table}: {message}", ErrorCode.ROW_APPLY_FAILURE, merged)
        self.table = table


class TransientNetworkFailure(MigrationError):
    """Connection, timeout or 5xx failure that outlived its retry budget."""

    def __init__(self, message: str, attempts: int = 0, status_code: Optional[int] = None):
        super().__init__(message, ErrorCode.TRANSIENT_NETWORK_FAILURE,
                         {'attempts': attempts, 'status_code': status_code})
        self.attempts = attempts
        self.status_code = status_code


class ConcurrencyConflict(MigrationError):
    """Another migration session holds the destination lock."""

    def __init__(self, holder: Optional[str] = None, expires_at: Optional[float] = None):
        super().__init__("Migration already in progress", ErrorCode.CONCURRENCY_CONFLICT,
                         {'holder': holder, 'expires_at': expires_at})


class SourceRequestError(MigrationError):
    """Non-retryable client error returned by the source."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, ErrorCode.SOURCE_REQUEST_ERROR, {'status_code': status_code})
        self.status_code = status_code


class StateVersionError(MigrationError):
    """Persisted session state cannot be loaded."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.STATE_VERSION_ERROR)


class InvalidConnectionKey(MigrationError):
    """Connection key is not of the form url|base64(secret)."""

    def __init__(self, message: str = "Invalid connection key format"):
        super().__init__(message, ErrorCode.INVALID_CONNECTION_KEY)


__all__ = [
    'ErrorCode',
    'MigrationError',
    'AuthFailure',
    'ChecksumMismatch',
    'PathViolation',
    'SchemaApplyFailure',
    'RowApplyFailure',
    'TransientNetworkFailure',
    'ConcurrencyConflict',
    'SourceRequestError',
    'StateVersionError',
    'InvalidConnectionKey',
]
