"""
Error Types
===========
Exception hierarchy shared by the extraction client and the renderer.

    QExtractError
    ├── ExtractionError
    │   ├── KeysExhaustedError      all credentials failed this run
    │   ├── ExtractionFailedError   every attempt failed, carries last cause
    │   └── TransientServiceError   one attempt failed, recovered by rotation
    └── MalformedContentError       unparseable diagram JSON / math fragment
"""

from __future__ import annotations

from typing import Optional


class QExtractError(Exception):
    """Base class for all package errors."""


class ExtractionError(QExtractError):
    """A page could not be extracted."""


class KeysExhaustedError(ExtractionError):
    """Every credential in the pool has been marked failed."""

    def __init__(self, message: str = "All API keys have failed"):
        super().__init__(message)


class TransientServiceError(ExtractionError):
    """A single request failed; the caller should rotate to another key."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExtractionFailedError(ExtractionError):
    """All attempts for a page failed."""

    def __init__(self, cause: Optional[BaseException] = None):
        message = "Failed to extract questions from all API keys"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.cause = cause


class MalformedContentError(QExtractError):
    """Markup that cannot be interpreted. Never escapes the renderer."""
