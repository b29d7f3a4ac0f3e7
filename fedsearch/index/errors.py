"""Error taxonomy for the index subsystem."""

from __future__ import annotations


class SearchSubsystemError(Exception):
    """Base class for every error raised by fedsearch.index."""


class ConfigurationError(SearchSubsystemError, RuntimeError):
    """Raised at startup when the index root or settings are unusable."""


class NotInitializedError(SearchSubsystemError, RuntimeError):
    """Raised when a handle is requested on an index that was never created."""


class IndexClosedError(NotInitializedError):
    """Raised when a handle is requested after the master was closed."""


class IndexIOError(SearchSubsystemError):
    """Raised when reading an index fails during a query or facet pass.

    The first underlying failure is kept on ``cause`` (and ``__cause__``).
    """

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class IndexValidationError(SearchSubsystemError, ValueError):
    """Raised when a request is rejected before any resource is touched."""


class InvalidIndexNameError(IndexValidationError):
    """Raised for index names that fail the name check."""


class InvalidQueryError(IndexValidationError):
    """Raised when a predicate cannot be parsed against an index schema."""


class ResultWindowError(IndexValidationError):
    """Raised when page * hits_per_page exceeds the configured result window."""


class HandleError(SearchSubsystemError, RuntimeError):
    """Raised on double release, foreign release or use after release."""
