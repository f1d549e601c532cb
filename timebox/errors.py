"""Exception hierarchy shared by the store, the calendar client and the sync loop."""

from __future__ import annotations


class TimeboxError(Exception):
    """Base class for every error raised by the timebox core."""


class ValidationFailure(TimeboxError, ValueError):
    """Input rejected before any state was touched."""


class TransientNetworkFailure(TimeboxError):
    """The provider could not be reached or answered with a retryable status."""


class AuthExpired(TimeboxError):
    """The provider rejected our credentials; the user must reconnect."""


class CalendarApiError(TimeboxError):
    """Non-retryable provider failure (4xx other than 401)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class PersistenceWriteFailure(TimeboxError):
    """A write to the relational store or local cache did not go through."""


class ReadOnlyEntry(TimeboxError):
    """The entry belongs to a calendar we are not allowed to modify."""
