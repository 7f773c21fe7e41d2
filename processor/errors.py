"""Exceptions raised by the calendar feed pipeline."""
from typing import Optional


class NetworkError(Exception):
    """The calendar page could not be fetched or returned a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnavailableError(Exception):
    """Upstream fetch failed and no stale copy was available to serve instead."""


class InvalidArgumentError(ValueError):
    """A required input was missing or blank."""
