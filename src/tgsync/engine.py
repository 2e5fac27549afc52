"""
Sync engine: drives authentication and message-history synchronization.

One ``SyncEngine.sync()`` call runs one state machine::

    CONNECTING -> [UNAUTHENTICATED -> PAIRING] -> CONNECTED -> INGESTING
        -> (FOLLOWING | IDLE_TIMEOUT | DONE) -> CLOSED

Key behaviours:
    - Pairing only happens when ``allow_qr`` is set; otherwise an
      unauthenticated session fails fast with ``UnauthenticatedError``.
    - The QR callback runs synchronously on the engine's own flow, once per
      distinct pairing code.
    - Ingestion has a single consumer loop that owns the idle deadline.
      Backfill, contact/group refresh and media downloads run as supervised
      side tasks that are always cancelled and joined before returning.
    - Cancellation of the calling task is honoured at every await and always
      ends with the session client disconnected.
    - Nothing is retried; re-invoking ``sync`` is the caller's decision.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from telethon.errors import RPCError

from shared.audit import AuditLogger
from tgsync.errors import (
    ChatUnavailableError,
    PairingExpiredError,
    RefreshError,
    SessionConnectionError,
    UnauthenticatedError,
)
from tgsync.media import MediaDownloader
from tgsync.message_store import MessageStore
from tgsync.progress import IngestProgress
from tgsync.session_client import SessionClient
from tgsync.tasks import TaskSupervisor

logger = logging.getLogger("tgsync.engine")

_AUDIT_SERVICE = "engine"


class SyncMode(str, enum.Enum):
    BOOTSTRAP = "bootstrap"
    FOLLOW = "follow"
    ONCE = "once"


class SyncState(str, enum.Enum):
    NEW = "new"
    CONNECTING = "connecting"
    UNAUTHENTICATED = "unauthenticated"
    PAIRING = "pairing"
    CONNECTED = "connected"
    INGESTING = "ingesting"
    FOLLOWING = "following"
    IDLE_TIMEOUT = "idle_timeout"
    DONE = "done"
    CLOSED = "closed"


@dataclass(frozen=True)
class SyncOptions:
    """Options for one ``sync`` call.

    Attributes:
        mode: Bootstrap, follow, or once.
        allow_qr: Permit pairing a new device when unauthenticated.
        download_media: Fetch media in the background while ingesting.
        refresh_contacts: Refresh the contact list into the store.
        refresh_groups: Refresh group/channel metadata into the store.
        idle_exit: Seconds without new messages before a bootstrap/once sync
            ends.  ``None`` or ``0`` waits for backfill completion instead.
            Ignored in follow mode.
        on_qr_code: Called with each new pairing payload.
    """

    mode: SyncMode = SyncMode.BOOTSTRAP
    allow_qr: bool = False
    download_media: bool = False
    refresh_contacts: bool = False
    refresh_groups: bool = False
    idle_exit: Optional[float] = None
    on_qr_code: Optional[Callable[[str], None]] = None


@dataclass(frozen=True)
class SyncResult:
    messages_stored: int = 0
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class EngineSettings:
    """Tunables read from the ``[sync]`` config table."""

    batch_size: int = 100
    max_history_days: int = 365
    max_active_chats: int = 500
    once_grace_seconds: float = 2.0
    queue_size: int = 16
    media_dir: Path = field(default_factory=lambda: Path.home() / ".local" / "share" / "tgsync" / "media")
    media_queue_size: int = 256
    progress_log_every: int = 500

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "EngineSettings":
        sync_config = config.get("sync", {})
        defaults = cls()
        media_dir = sync_config.get("media_dir")
        return cls(
            batch_size=max(1, int(sync_config.get("batch_size", defaults.batch_size))),
            max_history_days=max(
                0, int(sync_config.get("max_history_days", defaults.max_history_days))
            ),
            max_active_chats=max(
                0, int(sync_config.get("max_active_chats", defaults.max_active_chats))
            ),
            once_grace_seconds=max(
                0.0,
                float(sync_config.get("once_grace_seconds", defaults.once_grace_seconds)),
            ),
            queue_size=max(1, int(sync_config.get("queue_size", defaults.queue_size))),
            media_dir=Path(media_dir).expanduser() if media_dir else defaults.media_dir,
            media_queue_size=max(
                1, int(sync_config.get("media_queue_size", defaults.media_queue_size))
            ),
            progress_log_every=max(
                0, int(sync_config.get("progress_log_every", defaults.progress_log_every))
            ),
        )


class _BackfillDone:
    """Queue marker: history backfill finished."""


@dataclass
class _BackfillFailed:
    error: BaseException


_BACKFILL_DONE = _BackfillDone()


class SyncEngine:
    """Authentication and sync orchestration over one session handle.

    Args:
        client: The session client.  The engine connects and disconnects it
            but never shares it across concurrent calls.
        store: Message store; required for ``sync`` only.
        audit: Optional audit logger.
        settings: Ingestion tunables.
    """

    def __init__(
        self,
        client: SessionClient,
        store: Optional[MessageStore] = None,
        audit: Optional[AuditLogger] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self._client = client
        self._store = store
        self._audit = audit
        self._settings = settings or EngineSettings()
        self._running = False
        self.state = SyncState.NEW

    def _set_state(self, state: SyncState) -> None:
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    async def _audit_log(self, action: str, details: Dict[str, Any], success: bool = True) -> None:
        if self._audit is not None:
            await self._audit.log(_AUDIT_SERVICE, action, details, success=success)

    # ------------------------------------------------------------------
    # Status / teardown helpers
    # ------------------------------------------------------------------

    async def is_authed(self) -> bool:
        """Report whether the session holds valid credentials.  Never pairs."""
        if not self._client.has_credentials():
            return False
        try:
            await self._client.connect()
            return await self._client.is_authed()
        finally:
            await self._client.disconnect()

    async def ensure_authed(self) -> None:
        """Raise ``UnauthenticatedError`` unless the session is authenticated."""
        if not await self.is_authed():
            raise UnauthenticatedError("not authenticated; run `tgsync auth` first")

    async def logout(self) -> None:
        """Invalidate the session server-side and clear local credentials.

        A failure during invalidation propagates as-is; the session may then
        be in an indeterminate state.
        """
        await self.ensure_authed()
        try:
            await self._client.connect()
            await self._client.logout()
        except BaseException:
            await self._audit_log("logout", {}, success=False)
            raise
        finally:
            await self._client.disconnect()
        logger.info("Logged out.")
        await self._audit_log("logout", {})

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, options: SyncOptions) -> SyncResult:
        """Authenticate (pairing if allowed), then ingest per ``options.mode``.

        Raises:
            UnauthenticatedError: No valid session and pairing not allowed.
            SessionConnectionError: Transport or handshake failure.
            StoreError: Persistence failure during ingestion.
            asyncio.CancelledError: The calling task was cancelled.
        """
        if self._store is None:
            raise ValueError("sync requires a message store")
        if self._running:
            raise RuntimeError("a sync is already running on this engine")

        self._running = True
        warnings: List[str] = []
        try:
            if not options.allow_qr and not self._client.has_credentials():
                self._set_state(SyncState.UNAUTHENTICATED)
                raise UnauthenticatedError("no stored session and pairing is disabled")

            self._set_state(SyncState.CONNECTING)
            await self._client.connect()

            if not await self._client.is_authed():
                self._set_state(SyncState.UNAUTHENTICATED)
                if not options.allow_qr:
                    raise UnauthenticatedError("session is not authenticated and pairing is disabled")
                self._set_state(SyncState.PAIRING)
                await self._pair(options.on_qr_code)

            self._set_state(SyncState.CONNECTED)
            stored = await self._ingest(options, warnings)
        except BaseException as exc:
            if not isinstance(exc, asyncio.CancelledError):
                await self._audit_log(
                    "sync_failed",
                    {"mode": options.mode.value, "error": type(exc).__name__},
                    success=False,
                )
            raise
        finally:
            try:
                await self._client.disconnect()
            finally:
                self._set_state(SyncState.CLOSED)
                self._running = False

        await self._audit_log(
            "sync_complete",
            {
                "mode": options.mode.value,
                "messages_stored": stored,
                "warnings": len(warnings),
            },
        )
        return SyncResult(messages_stored=stored, warnings=tuple(warnings))

    async def _pair(self, on_qr_code: Optional[Callable[[str], None]]) -> None:
        code = await self._client.start_pairing()
        shown: Optional[str] = None
        issued = 0
        while True:
            payload = code.payload
            if not payload:
                raise UnauthenticatedError("session client returned an empty pairing code")
            if payload != shown:
                issued += 1
                shown = payload
                if on_qr_code is not None:
                    on_qr_code(payload)
                await self._audit_log("pairing_code_issued", {"code_number": issued})
            try:
                await code.wait()
                break
            except PairingExpiredError:
                logger.info("Pairing code expired; requesting a new one.")
                await code.renew()
        logger.info("Pairing complete after %d code(s).", issued)
        await self._audit_log("authenticated", {"codes_issued": issued})

    def _idle_window(self, options: SyncOptions) -> Optional[float]:
        if options.mode is SyncMode.FOLLOW:
            return None
        idle = options.idle_exit or 0.0
        if options.mode is SyncMode.ONCE:
            grace = self._settings.once_grace_seconds
            return min(idle, grace) if idle > 0 else grace
        return idle if idle > 0 else None

    async def _ingest(self, options: SyncOptions, warnings: List[str]) -> int:
        self._set_state(SyncState.INGESTING)
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self._settings.queue_size)
        progress = IngestProgress(options.mode.value, self._settings.progress_log_every)

        def _warn(name: str, exc: BaseException) -> None:
            warnings.append(f"{name}: {exc}")

        media: Optional[MediaDownloader] = None
        if options.download_media:
            media = MediaDownloader(
                self._client,
                self._settings.media_dir,
                queue_size=self._settings.media_queue_size,
                on_error=lambda exc: _warn("media", exc),
            )

        async def _on_live(record: Dict[str, Any]) -> None:
            await queue.put([record])

        async with TaskSupervisor() as tasks:
            if options.refresh_contacts:
                tasks.spawn(self._refresh_contacts(), name="refresh-contacts", on_error=_warn)
            if options.refresh_groups:
                tasks.spawn(self._refresh_groups(), name="refresh-groups", on_error=_warn)
            if media is not None:
                tasks.spawn(media.run(), name="media")

            self._client.subscribe(_on_live)
            try:
                tasks.spawn(self._backfill(queue, progress, _warn), name="backfill")
                stored, reason = await self._consume(
                    queue, options.mode, self._idle_window(options), progress, media
                )
            finally:
                self._client.unsubscribe()

        progress.log_complete(reason)
        if media is not None:
            logger.info("Media downloads: %s", media.stats)
        return stored

    async def _consume(
        self,
        queue: asyncio.Queue[Any],
        mode: SyncMode,
        idle: Optional[float],
        progress: IngestProgress,
        media: Optional[MediaDownloader],
    ) -> tuple[int, str]:
        """Store batches until done; the only owner of the idle deadline.

        The idle window is armed by the first queue item, so slow dialog
        listing or flood waits before the first batch do not count as idle.
        """
        assert self._store is not None
        loop = asyncio.get_running_loop()
        deadline: Optional[float] = None
        stored = 0

        while True:
            timeout = None if deadline is None else max(0.0, deadline - loop.time())
            try:
                item = await asyncio.wait_for(queue.get(), timeout)
            except asyncio.TimeoutError:
                self._set_state(SyncState.IDLE_TIMEOUT)
                logger.info("No new messages for %.1fs; finishing.", idle)
                self._set_state(SyncState.DONE)
                return stored, "idle"

            if idle and deadline is None:
                deadline = loop.time() + idle

            if item is _BACKFILL_DONE:
                logger.info("History backfill complete.")
                if mode is SyncMode.FOLLOW:
                    self._set_state(SyncState.FOLLOWING)
                elif not idle:
                    self._set_state(SyncState.DONE)
                    return stored, "backfill complete"
                continue
            if isinstance(item, _BackfillFailed):
                raise item.error

            new_records = await self._store.store_messages_batch(item)
            stored += len(new_records)
            progress.update(len(item), len(new_records))
            if media is not None:
                for record in new_records:
                    media.enqueue(record)
            if idle:
                deadline = loop.time() + idle

    async def _backfill(
        self,
        queue: asyncio.Queue[Any],
        progress: IngestProgress,
        warn: Callable[[str, BaseException], None],
    ) -> None:
        """Produce history batches, then the done marker (or the failure).

        A chat whose history cannot be read is skipped with a warning.
        """
        assert self._store is not None
        try:
            dialogs = await self._client.list_dialogs()
            dialogs = self._select_dialogs(dialogs)
            cursors = await self._store.get_last_synced_ids([d["chat_id"] for d in dialogs])

            since: Optional[datetime] = None
            if self._settings.max_history_days > 0:
                since = datetime.now(timezone.utc) - timedelta(
                    days=self._settings.max_history_days
                )

            for idx, dialog in enumerate(dialogs, start=1):
                chat_id = dialog["chat_id"]
                logger.debug("Backfilling chat %d/%d: %s", idx, len(dialogs), dialog["title"])
                try:
                    async for batch in self._client.iter_history(
                        chat_id,
                        min_id=cursors.get(chat_id),
                        since=since,
                        batch_size=self._settings.batch_size,
                    ):
                        await queue.put(batch)
                except (ChatUnavailableError, RPCError) as exc:
                    logger.warning("Skipping chat %s (%s): %s", chat_id, dialog["title"], exc)
                    warn(f"backfill chat {chat_id}", exc)
                    continue
                progress.chat_done()
        except asyncio.CancelledError:
            raise
        except OSError as exc:
            await queue.put(
                _BackfillFailed(SessionConnectionError(f"history fetch failed: {exc}"))
            )
            return
        except Exception as exc:
            await queue.put(_BackfillFailed(exc))
            return
        await queue.put(_BACKFILL_DONE)

    def _select_dialogs(self, dialogs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Keep recently active chats, freshest first, capped in number."""
        max_days = self._settings.max_history_days
        if max_days > 0:
            cutoff = datetime.now(timezone.utc) - timedelta(days=max_days)
            dialogs = [
                d for d in dialogs
                if not isinstance(d.get("date"), datetime) or _as_utc(d["date"]) >= cutoff
            ]

        def _sort_key(dialog: Dict[str, Any]) -> datetime:
            dt = dialog.get("date")
            if not isinstance(dt, datetime):
                return datetime.min.replace(tzinfo=timezone.utc)
            return _as_utc(dt)

        dialogs = sorted(dialogs, key=_sort_key, reverse=True)
        cap = self._settings.max_active_chats
        if cap > 0 and len(dialogs) > cap:
            logger.info("Capping backfill to %d freshest of %d chats", cap, len(dialogs))
            dialogs = dialogs[:cap]
        return dialogs

    async def _refresh_contacts(self) -> None:
        assert self._store is not None
        try:
            contacts = await self._client.fetch_contacts()
            count = await self._store.upsert_contacts(contacts)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise RefreshError(f"contact refresh failed: {exc}") from exc
        logger.info("Refreshed %d contacts.", count)

    async def _refresh_groups(self) -> None:
        assert self._store is not None
        try:
            groups = await self._client.fetch_groups()
            count = await self._store.upsert_groups(groups)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise RefreshError(f"group refresh failed: {exc}") from exc
        logger.info("Refreshed %d groups.", count)


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt
