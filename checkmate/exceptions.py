"""Exception types raised across the grading pipeline."""
from typing import Optional


class CheckmateError(Exception):
    """Base class for pipeline errors."""


class CapabilityError(CheckmateError):
    """The vision/language capability failed after all retry attempts."""

    def __init__(self, message: str, attempts: int = 0, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.attempts = attempts
        self.original_error = original_error


class ImageDecodeError(CheckmateError):
    """An uploaded exam page could not be read as an image."""


class MemoryStoreError(CheckmateError):
    """
    Reading or writing the teacher memory store failed.

    Never swallowed by the pipeline: losing a teacher correction silently
    is worse than failing the request.
    """


class InputValidationError(CheckmateError, ValueError):
    """A grading request was rejected before any capability call."""
