"""Connector error taxonomy."""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base connector error. Any subclass aborts the current fetch."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransientError(ConnectorError):
    """Retryable upstream failure (rate limit, 5xx, network hiccup)."""


class PermanentError(ConnectorError):
    """Non-retryable upstream failure (error envelope, 4xx, malformed body)."""
