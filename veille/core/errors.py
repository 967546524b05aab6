from __future__ import annotations


class VeilleError(Exception):
    """Base error for veille operations."""


class InvalidInputError(VeilleError):
    """Raised when user input is rejected before it reaches the store."""


class DuplicateSourceError(VeilleError):
    """Raised when a source with the same normalized URL already exists in the dossier."""


class QuotaExceededError(VeilleError):
    """Raised when a dossier already holds the maximum number of sources."""


class NotFoundError(VeilleError):
    """Raised when the requested source, question or engine does not exist."""


class UnsafeURLError(ValueError):
    """Raised by the URL validator for non-http schemes and private network targets."""


class HandlerError(VeilleError):
    """Raised by a source handler after its failure has been recorded on the source."""

    def __init__(self, message: str, *, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class HandlerCrashError(HandlerError):
    """Raised when a handler fails with an unexpected exception."""
