"""Error taxonomy for the sync subsystem.

HTTP status mapping lives in :mod:`calcalc.api.middleware`:

- ``NotConnectedError`` → 400
- ``AuthenticationRequiredError`` → 401
- ``SettingsNotFoundError`` → 404
- ``SyncInProgressError`` → 409
- ``ProviderError`` → 502
- ``PersistenceError`` → 503
"""

from __future__ import annotations


class SyncError(Exception):
    """Base error raised by sync components."""


class NotConnectedError(SyncError):
    """Raised when a sync is requested for a user without tokens or a default calendar."""

    def __init__(self, user_id: str, reason: str = "Google Calendar is not connected") -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"{reason} (user={user_id})")


class SettingsNotFoundError(SyncError):
    """Raised when a user has no stored sync settings."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"No sync settings stored for user {user_id}")


class SyncInProgressError(SyncError):
    """Raised when a sync is already running for the same user."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"A sync is already in progress for user {user_id}")


class AuthenticationRequiredError(SyncError):
    """Raised when a protected operation is called without a caller identity."""


class ProviderError(SyncError):
    """Raised when a Google API call fails.

    ``http_status`` is ``None`` for transport-level failures (DNS, timeouts,
    connection resets) where no response was received.
    """

    def __init__(self, *, http_status: int | None, message: str) -> None:
        self.http_status = http_status
        self.message = message
        status = http_status if http_status is not None else "transport"
        super().__init__(f"Google API request failed ({status}): {message}")


class PersistenceError(SyncError):
    """Raised when local storage fails; aborts the current transactional unit."""


class RowRejectedError(PersistenceError):
    """Raised when the database rejects a single row inside a savepoint.

    The surrounding transaction is still usable, so callers may record the
    failure against the offending item and continue.
    """
