"""
Session client: the handle the sync engine drives to reach Telegram.

``SessionClient`` is the interface the engine depends on; it keeps the
engine testable with a fake.  ``TelethonSessionClient`` implements it on top
of Telethon's ``TelegramClient`` with a ``StringSession`` that is kept
Fernet-encrypted on disk (see :mod:`shared.secrets`).

Lifecycle::

    client = TelethonSessionClient(api_id, api_hash, session_path, key)
    await client.connect()            # transport only, never pairs
    if not await client.is_authed():
        code = await client.start_pairing()
        ...                           # show code.payload, await code.wait()
    ...
    await client.disconnect()

Pairing uses Telethon's QR login: each code is a ``tg://login?token=...``
URL that expires after ~30 seconds and is renewed with ``recreate()``.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from telethon import TelegramClient as TelethonClient
from telethon import events
from telethon.errors import RPCError, SessionPasswordNeededError
from telethon.sessions import StringSession
from telethon.tl.functions.contacts import GetContactsRequest

from shared.secrets import clear_session_file, load_session_string, save_session_string
from tgsync.errors import (
    ChatUnavailableError,
    PairingExpiredError,
    SessionConnectionError,
    UnauthenticatedError,
)

logger = logging.getLogger("tgsync.session_client")

MessageCallback = Callable[[Dict[str, Any]], Awaitable[None]]


def _chat_type(dialog: Any) -> str:
    """Classify a Telethon dialog into ``group``, ``channel``, or ``user``."""
    if bool(getattr(dialog, "is_group", False)):
        return "group"
    if bool(getattr(dialog, "is_channel", False)):
        return "channel"
    return "user"


def message_to_record(msg: Any, chat_id: int, include_raw: bool = False) -> Dict[str, Any]:
    """Convert a Telethon ``Message`` into a store record."""
    msg_date = msg.date
    if msg_date and msg_date.tzinfo is None:
        msg_date = msg_date.replace(tzinfo=timezone.utc)

    sender_id = getattr(msg, "sender_id", None)
    sender_name = None
    # Cached sender data avoids an entity lookup per message.
    sender = getattr(msg, "_sender", None) or getattr(msg, "sender", None)
    if sender:
        sender_id = sender_id or getattr(sender, "id", None)
        first = getattr(sender, "first_name", "") or ""
        last = getattr(sender, "last_name", "") or ""
        sender_name = (
            f"{first} {last}".strip()
            or getattr(sender, "title", None)
            or str(sender_id)
        )
    elif sender_id is not None:
        sender_name = str(sender_id)

    raw_reply = getattr(msg, "reply_to_msg_id", None)
    raw = None
    if include_raw:
        try:
            raw = msg.to_dict() if hasattr(msg, "to_dict") else {}
        except (TypeError, ValueError, AttributeError):
            logger.debug("to_dict() failed for message_id=%s", msg.id, exc_info=True)
            raw = {}

    return {
        "message_id": msg.id,
        "chat_id": chat_id,
        "sender_id": sender_id,
        "sender_name": sender_name,
        "reply_to_msg_id": raw_reply if isinstance(raw_reply, int) else None,
        "timestamp": msg_date,
        "text": getattr(msg, "text", None) or getattr(msg, "message", None),
        "has_media": getattr(msg, "media", None) is not None,
        "raw_json": raw,
    }


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class PairingCode(ABC):
    """A scannable pairing code issued by the session client."""

    @property
    @abstractmethod
    def payload(self) -> str:
        """Opaque, non-empty string to render as a QR code."""
        ...

    @abstractmethod
    async def wait(self) -> None:
        """Suspend until the code is scanned.

        Raises:
            PairingExpiredError: If the code expired before being scanned.
            UnauthenticatedError: If the pairing was declined.
        """
        ...

    @abstractmethod
    async def renew(self) -> None:
        """Replace an expired code with a fresh one (new ``payload``)."""
        ...


class SessionClient(ABC):
    """Interface between the sync engine and the messaging service."""

    @abstractmethod
    def has_credentials(self) -> bool:
        """Whether local credential state exists (no network)."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Open the transport without pairing.

        Raises:
            SessionConnectionError: On network or handshake failure.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...

    @abstractmethod
    async def is_authed(self) -> bool:
        """Whether the connected session holds valid credentials."""
        ...

    @abstractmethod
    async def start_pairing(self) -> PairingCode:
        ...

    @abstractmethod
    async def logout(self) -> None:
        """Invalidate the session server-side and clear local credentials.

        Local credentials are kept when the server does not confirm.
        """
        ...

    @abstractmethod
    async def list_dialogs(self) -> List[Dict[str, Any]]:
        """Return ``{chat_id, title, chat_type, date, participant_count}`` dicts."""
        ...

    @abstractmethod
    def iter_history(
        self,
        chat_id: int,
        *,
        min_id: Optional[int] = None,
        since: Optional[datetime] = None,
        batch_size: int = 100,
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield batches of message records for one chat.

        Raises:
            ChatUnavailableError: If this chat's history cannot be read.
        """
        ...

    @abstractmethod
    def subscribe(self, callback: MessageCallback) -> None:
        """Deliver each new live message record to *callback*."""
        ...

    @abstractmethod
    def unsubscribe(self) -> None:
        ...

    @abstractmethod
    async def fetch_contacts(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def fetch_groups(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def download_media(
        self, chat_id: int, message_id: int, dest_dir: Path
    ) -> Optional[Path]:
        """Download the media of one message; ``None`` if it has none."""
        ...


# ---------------------------------------------------------------------------
# Telethon implementation
# ---------------------------------------------------------------------------


class TelethonPairingCode(PairingCode):
    """Pairing code backed by Telethon's ``QRLogin``."""

    def __init__(
        self,
        qr_login: Any,
        on_scanned: Callable[[], Awaitable[None]],
        on_password: Callable[[], Awaitable[None]],
    ) -> None:
        self._qr = qr_login
        self._on_scanned = on_scanned
        self._on_password = on_password

    @property
    def payload(self) -> str:
        return self._qr.url

    async def wait(self) -> None:
        try:
            await self._qr.wait()
        except asyncio.TimeoutError as exc:
            raise PairingExpiredError("pairing code expired before it was scanned") from exc
        except SessionPasswordNeededError:
            await self._on_password()
        except RPCError as exc:
            raise UnauthenticatedError(f"pairing was rejected: {exc}") from exc
        await self._on_scanned()

    async def renew(self) -> None:
        try:
            await self._qr.recreate()
        except RPCError as exc:
            raise SessionConnectionError(f"could not renew pairing code: {exc}") from exc


class TelethonSessionClient(SessionClient):
    """``SessionClient`` on Telethon with an encrypted ``StringSession``.

    Args:
        api_id: Telegram API id.
        api_hash: Telegram API hash.
        session_path: Location of the Fernet-encrypted session file.
        session_key: Fernet key for the session file.
        device_model: Name shown in the account's linked devices list.
        two_factor_password: Cloud password, used only if the account
            requires one after the QR code is scanned.
        include_raw: Store ``Message.to_dict()`` alongside each record.
    """

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        session_path: Path,
        session_key: str,
        *,
        device_model: str = "tgsync",
        two_factor_password: Optional[str] = None,
        include_raw: bool = False,
    ) -> None:
        self._api_id = api_id
        self._api_hash = api_hash
        self._session_path = session_path
        self._session_key = session_key
        self._device_model = device_model
        self._two_factor_password = two_factor_password
        self._include_raw = include_raw
        self._client: Optional[TelethonClient] = None
        self._handler: Optional[Callable[[Any], Awaitable[None]]] = None

    def _require_client(self) -> TelethonClient:
        if self._client is None:
            session = load_session_string(self._session_path, self._session_key)
            self._client = TelethonClient(
                StringSession(session or ""),
                self._api_id,
                self._api_hash,
                device_model=self._device_model,
            )
        return self._client

    def has_credentials(self) -> bool:
        return self._session_path.exists()

    async def connect(self) -> None:
        client = self._require_client()
        try:
            await client.connect()
        except (OSError, asyncio.TimeoutError, RPCError) as exc:
            raise SessionConnectionError(f"could not connect to Telegram: {exc}") from exc
        if not client.is_connected():
            raise SessionConnectionError("could not connect to Telegram")
        logger.info("Session client connected.")

    async def disconnect(self) -> None:
        if self._client is None:
            return
        self.unsubscribe()
        await self._client.disconnect()
        logger.info("Session client disconnected.")

    async def is_authed(self) -> bool:
        if not self.has_credentials():
            return False
        return bool(await self._require_client().is_user_authorized())

    async def _persist_session(self) -> None:
        client = self._require_client()
        save_session_string(self._session_path, self._session_key, client.session.save())

    async def _sign_in_with_password(self) -> None:
        if not self._two_factor_password:
            raise UnauthenticatedError(
                "account requires a two-step verification password "
                "(set the 'two-factor-password' secret)"
            )
        try:
            await self._require_client().sign_in(password=self._two_factor_password)
        except RPCError as exc:
            raise UnauthenticatedError(
                f"two-step verification password was rejected: {exc}"
            ) from exc

    async def start_pairing(self) -> PairingCode:
        try:
            qr_login = await self._require_client().qr_login()
        except RPCError as exc:
            raise SessionConnectionError(f"could not start pairing: {exc}") from exc
        return TelethonPairingCode(
            qr_login,
            on_scanned=self._persist_session,
            on_password=self._sign_in_with_password,
        )

    async def logout(self) -> None:
        client = self._require_client()
        # log_out() reports server-side rejection by returning False.
        if not await client.log_out():
            raise SessionConnectionError(
                "Telegram did not confirm the logout; local session kept"
            )
        clear_session_file(self._session_path)
        self._client = None
        logger.info("Session invalidated and local credentials cleared.")

    async def list_dialogs(self) -> List[Dict[str, Any]]:
        try:
            dialogs = await self._require_client().get_dialogs()
        except RPCError as exc:
            raise SessionConnectionError(f"could not list dialogs: {exc}") from exc
        results: List[Dict[str, Any]] = []
        for dialog in dialogs:
            entity = getattr(dialog, "entity", None)
            results.append(
                {
                    "chat_id": int(dialog.id),
                    "title": getattr(dialog, "title", None)
                    or getattr(dialog, "name", None)
                    or f"Chat {dialog.id}",
                    "chat_type": _chat_type(dialog),
                    "date": getattr(dialog, "date", None),
                    "participant_count": getattr(entity, "participants_count", None),
                }
            )
        return results

    async def iter_history(
        self,
        chat_id: int,
        *,
        min_id: Optional[int] = None,
        since: Optional[datetime] = None,
        batch_size: int = 100,
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        client = self._require_client()
        if min_id:
            iterator = client.iter_messages(chat_id, min_id=min_id, reverse=True)
        else:
            iterator = client.iter_messages(chat_id)

        batch: List[Dict[str, Any]] = []
        try:
            async for msg in iterator:
                record = message_to_record(msg, chat_id, include_raw=self._include_raw)
                # Newest-first on initial sync, so the cutoff ends the chat.
                if not min_id and since and record["timestamp"] and record["timestamp"] < since:
                    break
                batch.append(record)
                if len(batch) >= batch_size:
                    yield batch
                    batch = []
        except RPCError as exc:
            raise ChatUnavailableError(f"history of chat {chat_id} unavailable: {exc}") from exc
        if batch:
            yield batch

    def subscribe(self, callback: MessageCallback) -> None:
        client = self._require_client()
        self.unsubscribe()

        async def _on_new_message(event: Any) -> None:
            await callback(
                message_to_record(event.message, int(event.chat_id), include_raw=self._include_raw)
            )

        client.add_event_handler(_on_new_message, events.NewMessage())
        self._handler = _on_new_message

    def unsubscribe(self) -> None:
        if self._handler is not None and self._client is not None:
            self._client.remove_event_handler(self._handler)
        self._handler = None

    async def fetch_contacts(self) -> List[Dict[str, Any]]:
        result = await self._require_client()(GetContactsRequest(hash=0))
        contacts: List[Dict[str, Any]] = []
        for user in getattr(result, "users", []) or []:
            first = getattr(user, "first_name", "") or ""
            last = getattr(user, "last_name", "") or ""
            contacts.append(
                {
                    "user_id": int(user.id),
                    "username": getattr(user, "username", None),
                    "display_name": f"{first} {last}".strip() or None,
                    "phone": getattr(user, "phone", None),
                }
            )
        return contacts

    async def fetch_groups(self) -> List[Dict[str, Any]]:
        return [d for d in await self.list_dialogs() if d["chat_type"] != "user"]

    async def download_media(
        self, chat_id: int, message_id: int, dest_dir: Path
    ) -> Optional[Path]:
        client = self._require_client()
        msg = await client.get_messages(chat_id, ids=message_id)
        if msg is None or getattr(msg, "media", None) is None:
            return None
        dest_dir.mkdir(parents=True, exist_ok=True)
        path = await client.download_media(msg, file=str(dest_dir / f"{chat_id}_{message_id}"))
        return Path(path) if path else None
