"""
Standardised error handling for AI Speaker.

Every error that crosses a stage boundary is a ServiceError carrying a code
from constants.ErrorCode and the HTTP status it maps to.
"""

from aispeaker.core.constants import ErrorCode, RETRYABLE_ERRORS


class ServiceError(Exception):
    """Raised when a request or job encounters a known error condition."""

    http_status = 500

    def __init__(self, code: str, message: str, retryable: bool | None = None,
                 details=None):
        self.code = code
        self.message = message
        self.details = details
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")

    def to_dict(self) -> dict:
        body = {'error': self.message, 'code': self.code}
        if self.details is not None:
            body['details'] = self.details
        return body


class ValidationError(ServiceError):
    """Malformed input. Never retried."""

    http_status = 400

    def __init__(self, message: str, code: str = ErrorCode.INVALID_REQUEST, details=None):
        super().__init__(code, message, retryable=False, details=details)


class PrerequisiteError(ServiceError):
    """A pipeline step the caller must run first has not produced its artifact."""

    http_status = 400

    def __init__(self, message: str, details=None):
        super().__init__(ErrorCode.MISSING_PREREQUISITE, message, retryable=False,
                         details=details)


class NotFoundError(ServiceError):
    http_status = 404

    def __init__(self, message: str, code: str = ErrorCode.NOT_FOUND):
        super().__init__(code, message, retryable=False)


class QuotaExceededError(ServiceError):
    http_status = 429

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(ErrorCode.QUOTA_EXCEEDED,
                         f"Maximum questions per video exceeded ({limit})",
                         retryable=False, details={'limit': limit})


class CollaboratorError(ServiceError):
    """Downstream provider failure or timeout."""

    http_status = 502

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        super().__init__(code, message, retryable=retryable)
        if code in (ErrorCode.DEEPGRAM_TIMEOUT, ErrorCode.COLLABORATOR_TIMEOUT):
            self.http_status = 504


class InternalError(ServiceError):
    http_status = 500

    def __init__(self, message: str, code: str = ErrorCode.INTERNAL):
        super().__init__(code, message, retryable=False)


class CacheUnavailableError(InternalError):
    """The shared cache could not be reached; never read as a cache miss."""

    http_status = 503

    def __init__(self, message: str):
        super().__init__(message, code=ErrorCode.CACHE_UNAVAILABLE)


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
