"""Error kinds surfaced by the engine.

Caller-facing errors carry a short code, a kind name and an HTTP status; the
API layer turns them into the JSON envelope. Origin errors classify upstream
failures so the worker knows whether the queue should retry.
"""


class EngineError(Exception):
    """Base class for errors that cross the API boundary."""

    code = "INTERNAL_ERROR"
    kind = "Internal"
    status_code = 500

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or "Internal error"
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.code,
            "kind": self.kind,
            "message": self.message,
        }


class ValidationError(EngineError):
    code = "VALIDATION_ERROR"
    kind = "ValidationError"
    status_code = 400


class AuthError(EngineError):
    code = "UNAUTHORIZED"
    kind = "AuthError"
    status_code = 401


class PermissionDenied(EngineError):
    code = "FORBIDDEN"
    kind = "PermissionError"
    status_code = 403


class NotFound(EngineError):
    code = "NOT_FOUND"
    kind = "NotFound"
    status_code = 404


class RateLimited(EngineError):
    code = "RATE_LIMITED"
    kind = "RateLimited"
    status_code = 429


class UpstreamUnavailable(EngineError):
    code = "UPSTREAM_UNAVAILABLE"
    kind = "UpstreamUnavailable"
    status_code = 503


class AuthUnavailable(UpstreamUnavailable):
    """The Certificate Authority could not issue or verify a token."""

    code = "AUTH_UNAVAILABLE"


class InternalError(EngineError):
    pass


# ═══════════════ ORIGIN CLASSIFICATION ═══════════════

class OriginError(Exception):
    """Failure talking to the origin timeline service."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class OriginUnauthorized(OriginError):
    """Origin rejected the bearer token; the cached token must be re-issued."""


class OriginTransientError(OriginError):
    """5xx, timeout or connection reset."""


class OriginPermanentError(OriginError):
    retryable = False


# ═══════════════ QUEUE MARKERS ═══════════════

class PermanentJobError(Exception):
    """Raised by a job handler to fail the job without further attempts."""
