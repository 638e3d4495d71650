"""Typed failures surfaced by the synchronisation core."""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for every failure the core reports to callers."""

    def __init__(self, message: str, *, entity_type: Optional[str] = None):
        self.entity_type = entity_type
        super().__init__(message)


class NotFound(SyncError):
    def __init__(self, entity_type: str, entity_id: Optional[str] = None, message: Optional[str] = None):
        self.entity_id = entity_id
        if message is None:
            message = (
                f"{entity_type} with id={entity_id} not found"
                if entity_id is not None
                else f"{entity_type} not found"
            )
        super().__init__(message, entity_type=entity_type)


class Conflict(SyncError):
    """The write raced with a server-side change or broke a uniqueness rule."""

    def __init__(self, entity_type: str, message: str, *, conflicting_field: Optional[str] = None):
        self.conflicting_field = conflicting_field
        super().__init__(message, entity_type=entity_type)

    def __str__(self) -> str:
        base = super().__str__()
        if self.conflicting_field:
            return f"{self.entity_type} conflict on {self.conflicting_field}: {base}"
        return f"{self.entity_type} conflict: {base}"


class NetworkFailure(SyncError):
    """Transport failure or timeout; the write may be retried by the caller."""


class AuthFailure(SyncError):
    """Session rejected by the backend. Never handled inside the core."""


class ValidationFailure(SyncError):
    def __init__(self, message: str, *, entity_type: Optional[str] = None, field: Optional[str] = None):
        self.field = field
        super().__init__(message, entity_type=entity_type)


class ProgrammingError(SyncError):
    """An invariant of the core was violated. Must never be swallowed."""


# Failures the mutation executor rolls back and returns as a typed Failure.
RECOVERABLE_ERRORS = (NotFound, Conflict, NetworkFailure, ValidationFailure)


__all__ = [
    "AuthFailure",
    "Conflict",
    "NetworkFailure",
    "NotFound",
    "ProgrammingError",
    "RECOVERABLE_ERRORS",
    "SyncError",
    "ValidationFailure",
]
