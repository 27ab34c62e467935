"""Error types raised by the store and the directories."""

from __future__ import annotations


class EventideError(Exception):
    """Base class for domain failures surfaced to the HTTP layer."""


class Unauthenticated(EventideError):
    """Missing or invalid bearer credential, or an identity that never synced."""


class NotFound(EventideError):
    """Key absent from its index, or the caller may not see the event."""


class Forbidden(EventideError):
    """Authenticated caller is not the owner of the record."""


class AlreadyExists(EventideError):
    """Key is already indexed in its collection."""


class InvalidInput(EventideError):
    """Missing or malformed fields."""


class WriteConflict(EventideError):
    """Concurrent writers kept winning until the retry budget ran out."""
