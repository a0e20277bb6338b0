from __future__ import annotations

from typing import Optional

from .state import FailureReason


class ConversionError(Exception):
    """Base error for the conversion service.

    ``status_code`` is the HTTP status the API answers with when the error
    reaches a request handler. Errors carrying a ``reason`` are job outcomes:
    the tracker records them on the job instead of raising them to callers.
    """

    status_code = 500
    reason: Optional[FailureReason] = None

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ConversionError):
    status_code = 400


class NotFound(ConversionError):
    status_code = 404


class InvalidState(ConversionError):
    status_code = 400


class LaunchFailure(ConversionError):
    reason = FailureReason.LAUNCH_FAILURE


class WorkerFailure(ConversionError):
    reason = FailureReason.WORKER_FAILURE


class JobTimeout(ConversionError):
    reason = FailureReason.TIMEOUT
