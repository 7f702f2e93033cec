"""Exception types shared by the renewal tracker backends and web layer."""

from __future__ import annotations


class TrackerError(RuntimeError):
    """Base class for errors raised by the tracker."""


class ValidationError(TrackerError):
    """Raised when incoming data fails validation."""


class NotFoundError(TrackerError):
    """Raised when a requested record does not exist for the current user."""


class ConflictError(TrackerError):
    """Raised when a delete is blocked by rows that still reference the record."""


class IntegrityError(TrackerError):
    """Raised when a renewal points at a client or service that no longer exists."""


class StoreError(TrackerError):
    """Raised when the persistence layer fails during a write."""


class TransientStoreError(StoreError):
    """Raised for connectivity problems such as an exhausted connection pool."""
