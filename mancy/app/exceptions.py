"""Custom exceptions for the Mancy service."""


class MancyException(Exception):
    """Base class for Mancy exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their
    specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Mancy error"):
        self.message = message
        super().__init__(message)


class AdmissionDenied(MancyException):
    """Raised when the rate limiter refuses a request.

    User-visible and non-fatal: carries the number of seconds to wait.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(
        self,
        wait_time: float = 0.0,
        reason: str = "rate_limited",
        text: str | None = None,
    ):
        self.wait_time = wait_time
        self.reason = reason
        self.text = text
        super().__init__(f"Admission denied ({reason}); retry in {wait_time:.1f}s")


class ValidationRejected(MancyException):
    """Raised when generated text fails the structural checks."""
    status_code = 502

    def __init__(self, reason: str, preview: str = ""):
        self.reason = reason
        self.preview = preview
        super().__init__(f"Generated text rejected: {reason}")


class UpstreamError(MancyException):
    """Raised when the completion service or a lookup call fails."""
    status_code = 502

    def __init__(self, message: str = "Upstream call failed", source: str | None = None):
        self.source = source
        super().__init__(message)


class UpstreamTimeout(UpstreamError):
    """Raised when an upstream call exceeds its per-call timeout."""
    status_code = 504

    def __init__(self, timeout: float, source: str | None = None):
        self.timeout = timeout
        super().__init__(f"Upstream call timed out after {timeout:.1f}s", source=source)


class ExhaustionFallback(MancyException):
    """Raised when every generation attempt was used without a valid answer."""
    status_code = 503

    def __init__(self, attempts: int, last_error: str | None = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"All {attempts} generation attempts exhausted")


class StateCorruption(MancyException):
    """Raised when an unexpected failure leaves a principal's state unusable.

    Handling it resets the principal's conversation and rate state.
    """
    status_code = 500

    def __init__(self, principal_id: str, cause: BaseException | None = None):
        self.principal_id = principal_id
        self.cause = cause
        detail = f": {type(cause).__name__}: {cause}" if cause else ""
        super().__init__(f"State corrupted for principal {principal_id}{detail}")
