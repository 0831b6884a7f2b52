from __future__ import annotations

from typing import List, Optional


class DerivAlertError(Exception):
    """Base class for every error raised by the alert service."""


class FeedConnectionError(DerivAlertError):
    """The feed transport could not be opened or was lost."""


class FeedClosedError(FeedConnectionError):
    """A request could not complete because the transport is (or went) down."""


class ReconnectExhaustedError(FeedConnectionError):
    """Automatic recovery gave up; the process should terminate."""


class FeedRequestError(DerivAlertError):
    """The feed answered a request with an explicit error payload."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class AlertValidationError(DerivAlertError, ValueError):
    """Rejected input (unknown symbol, bad condition or price) before any upstream call."""

    def __init__(self, message: str, suggestions: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.suggestions = list(suggestions or [])


class StorageError(DerivAlertError):
    """An alert persistence backend failed to load or save."""
