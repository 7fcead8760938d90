"""
Error taxonomy for the pipeline.

Every failure a stage can hit maps to one class here. The HTTP layer turns
them into `{"error": message}` bodies using `status_code`; the coordinator
uses `retryable` to decide whether the UI may offer a retry.
"""

from typing import Optional


class EvidentiaError(Exception):
    """Base class for all pipeline errors"""

    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(EvidentiaError):
    """Missing or invalid server configuration (e.g. no API key)"""

    status_code = 500


class InputValidationError(EvidentiaError):
    """Caller input or upstream stage data is missing or malformed"""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ModelClientError(EvidentiaError):
    """Base class for failures talking to the model API"""

    status_code = 502
    retryable = True


class UpstreamError(ModelClientError):
    """Non-2xx response (or connection failure) from the model API"""

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class ModelTimeout(ModelClientError):
    """The model call exceeded its timeout and was cancelled"""


class TruncatedResponse(ModelClientError):
    """The model stopped early without producing any text"""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class EmptyResponse(ModelClientError):
    """The model returned 200 but no usable text"""


class StageParseError(EvidentiaError):
    """Cleanup output could not be turned into a usable structured payload"""

    status_code = 502
    retryable = True


class StageFailure(EvidentiaError):
    """A stage phase failed; wraps the underlying cause"""

    def __init__(self, message: str, cause: EvidentiaError):
        super().__init__(message)
        self.cause = cause
        self.status_code = cause.status_code
        self.retryable = cause.retryable
