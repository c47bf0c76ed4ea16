"""
errors.py - Sync error taxonomy
Every adapter failure is mapped onto one of these before it reaches the engine
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all sync failures"""
    code = "SYNC_ERROR"
    retryable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            'code': self.code,
            'message': self.message,
            'retryable': self.retryable,
        }


class NotFoundError(SyncError):
    """Remote has no bookmark data yet"""
    code = "NOT_FOUND"


class UnauthorizedError(SyncError):
    """Credentials missing, expired or rejected"""
    code = "UNAUTHORIZED"


class NetworkError(SyncError):
    """Connection failure, timeout, rate limit or server-side error"""
    code = "NETWORK_ERROR"
    retryable = True

    def __init__(self, message: str, *, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class ConflictError(SyncError):
    """Remote changed since it was last read (stale sha, rev or version)"""
    code = "CONFLICT"
    retryable = True


class ValidationError(SyncError):
    """Malformed bookmark data or configuration"""
    code = "VALIDATION_ERROR"


class RetryLimitExceeded(SyncError):
    """Too many consecutive failures; scheduled syncs are paused"""
    code = "RETRY_LIMIT_EXCEEDED"
