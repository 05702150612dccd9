"""
Sync Error Taxonomy

Every failure the engine can hit is one of these. Services catch them at
operation boundaries and turn them into structured results; nothing here
is meant to escape to the HTTP layer.

- AuthError: expired/invalid/unrefreshable token
- RateLimitError: credit budget exhausted, aborts the batch
- ApiError: non-2xx response from the external API
- TransportError: connect/read failure or timeout, aborts the batch
- MappingError / ValidationError: per-record, counted and skipped
- DataIntegrityError: only reported by the repair pass
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all channel sync errors"""

    code = "sync_error"

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class AuthError(SyncError):
    code = "auth_error"


class RateLimitError(SyncError):
    code = "rate_limited"

    def __init__(self, message: str, *, resets_in: Optional[int] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.resets_in = resets_in


# Name used by the API client contract
RateLimitExceeded = RateLimitError


class ApiError(SyncError):
    code = "api_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 0,
        error_code: str = "unknown",
        retryable: bool = False,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.status_code = status_code
        self.error_code = error_code
        self.retryable = retryable


class TransportError(SyncError):
    code = "transport_error"


class MappingError(SyncError):
    code = "mapping_error"


class ValidationError(SyncError):
    code = "validation_error"


class DataIntegrityError(SyncError):
    code = "data_integrity_error"
