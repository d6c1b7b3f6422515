"""Exception types raised by the M365 collector and sync pipeline."""

from typing import Optional

from common.config import ConfigError


class M365SyncError(Exception):
    """Base class for M365 sync failures."""


class AuthError(M365SyncError):
    """Client-credentials token exchange failed. Aborts the whole run."""


class FetchError(M365SyncError):
    """A Graph request for a single step failed. Aborts that step only."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class DegradedFetch(M365SyncError):
    """A report endpoint refused access (missing Reports.Read.All).

    Handled inside the client: the report fetchers turn it into an empty
    result instead of an error.
    """

    def __init__(self, endpoint: str, status_code: int):
        super().__init__(f"{endpoint} unavailable (HTTP {status_code})")
        self.endpoint = endpoint
        self.status_code = status_code


class PersistenceError(M365SyncError):
    """Writing a single record failed. Counted as not-synced, never fatal."""

    def __init__(self, entity: str, key: str, cause: Exception):
        super().__init__(f"Failed to persist {entity} {key}: {cause}")
        self.entity = entity
        self.key = key
        self.cause = cause


class SyncInProgressError(M365SyncError):
    """Another run holding one of the requested steps is still executing."""


class SyncAuthorizationError(M365SyncError):
    """Trigger secret missing or wrong."""


__all__ = [
    'ConfigError',
    'M365SyncError',
    'AuthError',
    'FetchError',
    'DegradedFetch',
    'PersistenceError',
    'SyncInProgressError',
    'SyncAuthorizationError',
]
