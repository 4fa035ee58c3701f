"""
MIT License — OOTD Try-On error taxonomy
Every failure the service can report carries a machine code and an HTTP status.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional


class TryOnError(Exception):
    """Base class for failures surfaced to the caller."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, detail: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    @property
    def retry_after_s(self) -> Optional[int]:
        return None


class InvalidRequestError(TryOnError):
    """Missing or malformed inputs. Never retried."""

    code = "validation_error"
    status_code = 400


class UploadTooLargeError(InvalidRequestError):
    code = "upload_too_large"
    status_code = 413


class ThrottledError(TryOnError):
    """The caller has no tries left in the current usage window."""

    code = "throttled"
    status_code = 429

    def __init__(self, message: str, *, reset_in: timedelta, detail: Optional[Any] = None) -> None:
        super().__init__(message, detail=detail)
        self.reset_in = reset_in

    @property
    def retry_after_s(self) -> Optional[int]:
        return max(0, int(self.reset_in.total_seconds()))


class RemoteError(TryOnError):
    """A single remote call failed. Raised by the inference client."""

    code = "upstream_error"
    status_code = 502

    def __init__(self, message: str, *, retryable: bool = True, detail: Optional[Any] = None) -> None:
        super().__init__(message, detail=detail)
        self.retryable = retryable


class QuotaExceededError(TryOnError):
    """The backend declared its quota exhausted on the last allowed attempt."""

    code = "quota_exceeded"
    status_code = 429

    def __init__(self, hours: int, minutes: int, seconds: int, *, detail: Optional[Any] = None) -> None:
        super().__init__(
            f"GPU quota exceeded. Please try again in {hours}h {minutes}m {seconds}s",
            detail=detail,
        )
        self.hours = hours
        self.minutes = minutes
        self.seconds = seconds

    @property
    def retry_after_s(self) -> Optional[int]:
        return self.hours * 3600 + self.minutes * 60 + self.seconds


class RetriesExhaustedError(TryOnError):
    code = "upstream_error"
    status_code = 502

    def __init__(self, attempts: int, last_message: str, *, detail: Optional[Any] = None) -> None:
        super().__init__(f"Failed after {attempts} attempts: {last_message}", detail=detail)
        self.attempts = attempts
        self.last_message = last_message


class FatalRemoteError(TryOnError):
    """A remote failure that retrying cannot fix (bad credentials, bad config)."""

    code = "upstream_error"
    status_code = 502


class NoResultError(TryOnError):
    """The backend answered but the expected image reference was absent."""

    code = "no_result"
    status_code = 502


class GenerationTimeoutError(TryOnError):
    code = "timeout"
    status_code = 504
