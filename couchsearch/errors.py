"""Error kinds raised by the sync pipeline.

Only :class:`StartupFailure` is fatal. Every other error is caught at the
boundary of the event that caused it, logged with the package name and feed
sequence, and the pipeline moves on.
"""

from __future__ import annotations

import enum

# HTTP status code threshold for server errors (5xx)
_HTTP_SERVER_ERROR_THRESHOLD = 500


class CouchSearchError(RuntimeError):
    """Base class for couchsearch errors."""


class ConnectivityError(CouchSearchError):
    """Raised when the source feed or the search index cannot be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        """Initialise with a message and optional HTTP status code."""
        self.status_code = status_code
        super().__init__(message)

    @classmethod
    def unreachable(cls, target: str, cause: BaseException) -> ConnectivityError:
        """Return an error for a transport failure talking to ``target``."""
        return cls(f"could not connect to {target}: {cause}")

    @classmethod
    def http_error(cls, target: str, status_code: int) -> ConnectivityError:
        """Return an error for a non-2xx response from ``target``."""
        return cls(f"{target} returned HTTP {status_code}", status_code=status_code)


class FeedFormatError(CouchSearchError):
    """Raised when a change feed line cannot be decoded."""

    @classmethod
    def bad_line(cls, line: str, cause: BaseException) -> FeedFormatError:
        """Return an error for an undecodable feed line."""
        return cls(f"undecodable change feed line {line[:80]!r}: {cause}")


class CheckpointPersistError(CouchSearchError):
    """Raised when the checkpoint record cannot be written."""

    @classmethod
    def for_sequence(cls, sequence: int, cause: BaseException) -> CheckpointPersistError:
        """Return an error for a failed write of ``sequence``."""
        return cls(f"could not save latest sequence {sequence}: {cause}")


class EnrichmentError(CouchSearchError):
    """Raised when one download-count window cannot be fetched."""

    def __init__(self, message: str, *, name: str, period: str) -> None:
        """Initialise with the package name and download period."""
        self.name = name
        self.period = period
        super().__init__(message)

    @classmethod
    def api_error(cls, name: str, period: str, detail: object) -> EnrichmentError:
        """Return an error for an ``{"error": ...}`` payload or HTTP failure."""
        return cls(
            f"downloads {period} for {name} failed: {detail}", name=name, period=period
        )


class IndexWriteError(CouchSearchError):
    """Raised when an upsert or delete against the index fails."""

    def __init__(
        self, message: str, *, name: str, status_code: int | None = None
    ) -> None:
        """Initialise with the document identity and optional status code."""
        self.name = name
        self.status_code = status_code
        super().__init__(message)

    @classmethod
    def rejected(cls, name: str, status_code: int, detail: object) -> IndexWriteError:
        """Return an error for an index response carrying an error body."""
        return cls(
            f"index rejected {name} (HTTP {status_code}): {detail}",
            name=name,
            status_code=status_code,
        )

    @classmethod
    def transport(cls, name: str, cause: BaseException) -> IndexWriteError:
        """Return an error for a transport failure while writing ``name``."""
        return cls(f"could not write {name} to index: {cause}", name=name)


class StartupFailure(CouchSearchError):
    """Raised when the pipeline has no valid checkpoint baseline."""

    @classmethod
    def store_unreachable(cls, cause: BaseException) -> StartupFailure:
        """Return a failure for a checkpoint store unreachable at startup."""
        return cls(f"no checkpoint baseline, store unreachable: {cause}")


class ConfigError(ValueError):
    """Raised when environment or CLI configuration is invalid."""

    @classmethod
    def missing(cls, env_var: str) -> ConfigError:
        """Return an error for a required setting that was not supplied."""
        return cls(f"{env_var} is required")

    @classmethod
    def not_integer(cls, env_var: str, raw: str) -> ConfigError:
        """Return an error for a non-integer value."""
        return cls(f"{env_var} must be an integer, got: {raw!r}")

    @classmethod
    def out_of_range(cls, env_var: str, value: int, minimum: int) -> ConfigError:
        """Return an error for a value below ``minimum``."""
        return cls(f"{env_var} must be >= {minimum}, got: {value}")


class ErrorCategory(enum.StrEnum):
    """Categories used in structured failure logs."""

    TRANSIENT = "transient"
    CLIENT_ERROR = "client_error"
    CONNECTIVITY = "connectivity"
    CHECKPOINT = "checkpoint"
    ENRICHMENT = "enrichment"
    INDEX_WRITE = "index_write"
    SCHEMA_DRIFT = "schema_drift"
    STARTUP = "startup"
    UNKNOWN = "unknown"


_EXCEPTION_CATEGORY_MAP: tuple[tuple[type[BaseException], ErrorCategory], ...] = (
    (FeedFormatError, ErrorCategory.SCHEMA_DRIFT),
    (CheckpointPersistError, ErrorCategory.CHECKPOINT),
    (EnrichmentError, ErrorCategory.ENRICHMENT),
    (StartupFailure, ErrorCategory.STARTUP),
)


def _categorize_status(status_code: int | None) -> ErrorCategory | None:
    if status_code is None:
        return None
    if status_code >= _HTTP_SERVER_ERROR_THRESHOLD:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.CLIENT_ERROR


def categorize_error(exc: BaseException) -> ErrorCategory:
    """Categorize an exception for failure logs.

    Errors carrying an HTTP status are split into transient (5xx) and client
    errors; everything else is mapped by type.
    """
    if isinstance(exc, ConnectivityError):
        return _categorize_status(exc.status_code) or ErrorCategory.CONNECTIVITY

    if isinstance(exc, IndexWriteError):
        return _categorize_status(exc.status_code) or ErrorCategory.INDEX_WRITE

    for exc_type, category in _EXCEPTION_CATEGORY_MAP:
        if isinstance(exc, exc_type):
            return category

    return ErrorCategory.UNKNOWN
