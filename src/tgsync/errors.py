"""
Error taxonomy for authentication and sync.

Fatal kinds (``UnauthenticatedError``, ``SessionConnectionError``,
``StoreError``) propagate unchanged out of ``SyncEngine``.  Non-fatal kinds
(``RefreshError``, ``MediaError``, ``ChatUnavailableError``) are logged and
collected as warnings on the ``SyncResult``; they never abort a sync.
``PairingExpiredError`` is handled inside the pairing loop by requesting a fresh code.
"""

from __future__ import annotations


class TgSyncError(Exception):
    """Base class for every error raised by tgsync."""


class UnauthenticatedError(TgSyncError):
    """No valid session, and pairing was disallowed or declined."""


class PairingExpiredError(TgSyncError):
    """The pairing code was not scanned before it expired."""


class SessionConnectionError(TgSyncError, ConnectionError):
    """Transport or handshake failure while connecting the session client."""


class StoreError(TgSyncError):
    """Persistence failure while ingesting into the message store."""


class RefreshError(TgSyncError):
    """Contact or group refresh failed (non-fatal)."""


class MediaError(TgSyncError):
    """Background media download failed (non-fatal)."""


class LockError(TgSyncError):
    """Another process already holds the data-directory lock."""


class ChatUnavailableError(TgSyncError):
    """One chat's history could not be read (private, banned, flood-limited).

    Non-fatal: the chat is skipped and reported as a warning.
    """
