"""Error types raised by the backend layer.

Every error derives from BackendError so callers at the application
boundary can catch a single type.
"""

from __future__ import annotations

from typing import Optional


class BackendError(Exception):
    """Base error for all backend operations."""


class APIError(BackendError):
    """A provider API responded with an unexpected status.

    Args:
        message: Human readable description
        status: HTTP status code, if a response was received
        api_name: Name of the backend that produced the error
    """

    def __init__(
        self, message: str, status: Optional[int] = None, api_name: str = ""
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.api_name = api_name

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status={self.status!r})"


class NotFoundError(APIError):
    """Repository, branch or file does not exist."""


class AuthError(BackendError):
    """Invalid credentials or insufficient permission."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class WorkflowConfigError(AuthError):
    """Publish mode and fork settings cannot be combined."""


class ParseError(BackendError):
    """A response could not be decoded into the requested format."""

    def __init__(self, format: str, message: str) -> None:
        super().__init__(
            f"Response cannot be parsed into the expected format ({format}): {message}"
        )
        self.format = format
        self.message = message


class CursorValidationError(BackendError):
    """A pagination cursor has an invalid shape."""


class NetworkError(BackendError):
    """The request never produced a response."""
