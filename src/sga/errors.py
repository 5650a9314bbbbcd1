# src/sga/errors.py
from __future__ import annotations


class AffinityError(Exception):
    """Base exception for the affinity subsystem."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"{type(self).__name__}: {self.message}"


class InvalidReference(AffinityError):
    """An identifier, genre or limit failed validation."""


class NotFound(AffinityError):
    """The referenced track does not exist in the catalog."""


class StoreUnavailable(AffinityError):
    """A backing store could not be reached (or is closed / locked)."""


class QueryTimeout(StoreUnavailable):
    """A read query ran past its request deadline."""


class ServiceError(AffinityError):
    """Error surfaced to the serving layer."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def require_positive(name: str, value) -> int:
    """Validate a positive integer identifier, raising InvalidReference otherwise."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidReference(f"{name} must be a positive integer, got {value!r}")
    return value


def normalize_genre(genre: str | None) -> str:
    """Trim a genre name; None becomes the empty string."""
    if genre is None:
        return ""
    if not isinstance(genre, str):
        raise InvalidReference(f"genre must be a string, got {genre!r}")
    return genre.strip()
