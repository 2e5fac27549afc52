"""
Unit tests for the Telethon-backed session client: message conversion,
pairing-code expiry mapping, connection error mapping and history batching.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from telethon.errors import (
    ChannelPrivateError,
    PasswordHashInvalidError,
    RPCError,
    SessionPasswordNeededError,
)

from shared.secrets import generate_encryption_key, save_session_string
from tgsync.errors import (
    ChatUnavailableError,
    PairingExpiredError,
    SessionConnectionError,
    UnauthenticatedError,
)
from tgsync.session_client import (
    TelethonPairingCode,
    TelethonSessionClient,
    _chat_type,
    message_to_record,
)


def _message(msg_id, date=None, text="hi", sender=None, media=None, reply_to=None):
    return SimpleNamespace(
        id=msg_id,
        date=date or datetime.now(timezone.utc),
        text=text,
        message=text,
        sender_id=getattr(sender, "id", None),
        _sender=sender,
        media=media,
        reply_to_msg_id=reply_to,
    )


def _client(tmp_path, **kwargs):
    return TelethonSessionClient(
        api_id=1,
        api_hash="hash",
        session_path=tmp_path / "session.enc",
        session_key=kwargs.pop("session_key", generate_encryption_key()),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------


class TestMessageToRecord:
    def test_basic_fields(self):
        sender = SimpleNamespace(id=100, first_name="Alice", last_name="Smith")
        record = message_to_record(_message(5, sender=sender, reply_to=4), chat_id=1)

        assert record["message_id"] == 5
        assert record["chat_id"] == 1
        assert record["sender_id"] == 100
        assert record["sender_name"] == "Alice Smith"
        assert record["reply_to_msg_id"] == 4
        assert record["has_media"] is False
        assert record["raw_json"] is None

    def test_naive_date_becomes_utc(self):
        record = message_to_record(_message(1, date=datetime(2024, 5, 1, 12, 0)), chat_id=1)
        assert record["timestamp"].tzinfo is timezone.utc

    def test_channel_sender_uses_title(self):
        sender = SimpleNamespace(id=-100, title="News")
        record = message_to_record(_message(1, sender=sender), chat_id=-100)
        assert record["sender_name"] == "News"

    def test_media_flag(self):
        record = message_to_record(_message(1, media=object()), chat_id=1)
        assert record["has_media"] is True

    def test_include_raw(self):
        msg = _message(1)
        msg.to_dict = lambda: {"_": "Message", "id": 1}
        record = message_to_record(msg, chat_id=1, include_raw=True)
        assert record["raw_json"] == {"_": "Message", "id": 1}


class TestChatType:
    def test_group(self):
        assert _chat_type(SimpleNamespace(is_group=True, is_channel=True)) == "group"

    def test_channel(self):
        assert _chat_type(SimpleNamespace(is_group=False, is_channel=True)) == "channel"

    def test_user(self):
        assert _chat_type(SimpleNamespace()) == "user"


# ---------------------------------------------------------------------------
# Pairing code
# ---------------------------------------------------------------------------


class TestTelethonPairingCode:
    @pytest.mark.asyncio
    async def test_timeout_maps_to_expired(self):
        qr = MagicMock(url="tg://login?token=a")
        qr.wait = AsyncMock(side_effect=asyncio.TimeoutError)
        on_scanned = AsyncMock()
        code = TelethonPairingCode(qr, on_scanned=on_scanned, on_password=AsyncMock())

        assert code.payload == "tg://login?token=a"
        with pytest.raises(PairingExpiredError):
            await code.wait()
        on_scanned.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_scan_persists_session(self):
        qr = MagicMock(url="tg://login?token=a")
        qr.wait = AsyncMock()
        on_scanned = AsyncMock()
        code = TelethonPairingCode(qr, on_scanned=on_scanned, on_password=AsyncMock())

        await code.wait()

        on_scanned.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_password_required(self):
        """2FA accounts sign in with the password, then persist the session."""
        qr = MagicMock(url="tg://login?token=a")
        qr.wait = AsyncMock(side_effect=SessionPasswordNeededError(request=None))
        on_password = AsyncMock()
        on_scanned = AsyncMock()
        code = TelethonPairingCode(qr, on_scanned=on_scanned, on_password=on_password)

        await code.wait()

        on_password.assert_awaited_once()
        on_scanned.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_renew_recreates(self):
        qr = MagicMock(url="tg://login?token=a")
        qr.recreate = AsyncMock()
        code = TelethonPairingCode(qr, on_scanned=AsyncMock(), on_password=AsyncMock())
        await code.renew()
        qr.recreate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejected_scan_is_unauthenticated(self):
        qr = MagicMock(url="tg://login?token=a")
        qr.wait = AsyncMock(
            side_effect=RPCError(request=None, message="AUTH_TOKEN_INVALID", code=400)
        )
        on_scanned = AsyncMock()
        code = TelethonPairingCode(qr, on_scanned=on_scanned, on_password=AsyncMock())

        with pytest.raises(UnauthenticatedError, match="AUTH_TOKEN_INVALID"):
            await code.wait()
        on_scanned.assert_not_awaited()


# ---------------------------------------------------------------------------
# Session client
# ---------------------------------------------------------------------------


class TestTelethonSessionClient:
    @pytest.mark.asyncio
    async def test_connect_error_mapped(self, tmp_path):
        telethon_client = MagicMock()
        telethon_client.connect = AsyncMock(side_effect=OSError("unreachable"))
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            client = _client(tmp_path)
            with pytest.raises(SessionConnectionError, match="unreachable"):
                await client.connect()

    @pytest.mark.asyncio
    async def test_no_session_file_is_not_authed(self, tmp_path):
        telethon_client = MagicMock()
        telethon_client.is_user_authorized = AsyncMock(return_value=True)
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            client = _client(tmp_path)
            assert client.has_credentials() is False
            assert await client.is_authed() is False
        telethon_client.is_user_authorized.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_logout_clears_session_file(self, tmp_path):
        key = generate_encryption_key()
        save_session_string(tmp_path / "session.enc", key, "")
        telethon_client = MagicMock()
        telethon_client.log_out = AsyncMock(return_value=True)
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            client = _client(tmp_path, session_key=key)
            assert client.has_credentials()
            await client.logout()

        telethon_client.log_out.assert_awaited_once()
        assert not client.has_credentials()

    @pytest.mark.asyncio
    async def test_unconfirmed_logout_keeps_session_file(self, tmp_path):
        """A logout Telegram does not confirm leaves local credentials in place."""
        key = generate_encryption_key()
        save_session_string(tmp_path / "session.enc", key, "")
        telethon_client = MagicMock()
        telethon_client.log_out = AsyncMock(return_value=False)
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            client = _client(tmp_path, session_key=key)
            with pytest.raises(SessionConnectionError, match="did not confirm"):
                await client.logout()

        assert (tmp_path / "session.enc").exists()
        assert client.has_credentials()

    @pytest.mark.asyncio
    async def test_wrong_password_is_unauthenticated(self, tmp_path):
        telethon_client = MagicMock()
        telethon_client.sign_in = AsyncMock(side_effect=PasswordHashInvalidError(request=None))
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            client = _client(tmp_path, two_factor_password="pw")
            with pytest.raises(UnauthenticatedError, match="password was rejected"):
                await client._sign_in_with_password()
        telethon_client.sign_in.assert_awaited_once_with(password="pw")

    @pytest.mark.asyncio
    async def test_qr_login_error_is_connection_error(self, tmp_path):
        telethon_client = MagicMock()
        telethon_client.qr_login = AsyncMock(
            side_effect=RPCError(request=None, message="API_ID_INVALID", code=400)
        )
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            with pytest.raises(SessionConnectionError, match="could not start pairing"):
                await _client(tmp_path).start_pairing()

    @pytest.mark.asyncio
    async def test_dialog_listing_error_is_connection_error(self, tmp_path):
        telethon_client = MagicMock()
        telethon_client.get_dialogs = AsyncMock(
            side_effect=RPCError(request=None, message="AUTH_KEY_UNREGISTERED", code=401)
        )
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            with pytest.raises(SessionConnectionError, match="could not list dialogs"):
                await _client(tmp_path).list_dialogs()

    @pytest.mark.asyncio
    async def test_private_chat_history_is_chat_unavailable(self, tmp_path):
        async def _iter_messages(*args, **kwargs):
            yield _message(1)
            raise ChannelPrivateError(request=None)

        telethon_client = MagicMock()
        telethon_client.iter_messages = MagicMock(side_effect=_iter_messages)
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            client = _client(tmp_path)
            with pytest.raises(ChatUnavailableError, match="chat -1001"):
                async for _ in client.iter_history(-1001, batch_size=1):
                    pass

    @pytest.mark.asyncio
    async def test_password_without_secret_is_unauthenticated(self, tmp_path):
        with patch("tgsync.session_client.TelethonClient", return_value=MagicMock()):
            client = _client(tmp_path)
            with pytest.raises(UnauthenticatedError, match="two-factor-password"):
                await client._sign_in_with_password()

    @pytest.mark.asyncio
    async def test_iter_history_batches_and_stops_at_cutoff(self, tmp_path):
        """Initial history is newest-first and stops at the since cutoff."""
        now = datetime.now(timezone.utc)
        messages = [_message(i, date=now - timedelta(days=10 - i)) for i in range(10, 0, -1)]

        async def _iter_messages(*args, **kwargs):
            for msg in messages:
                yield msg

        telethon_client = MagicMock()
        telethon_client.iter_messages = MagicMock(side_effect=_iter_messages)
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            client = _client(tmp_path)
            batches = [
                batch
                async for batch in client.iter_history(
                    1, since=now - timedelta(days=4, hours=12), batch_size=2
                )
            ]

        ids = [[r["message_id"] for r in batch] for batch in batches]
        assert ids == [[10, 9], [8, 7], [6]]

    @pytest.mark.asyncio
    async def test_iter_history_resumes_from_cursor(self, tmp_path):
        async def _iter_messages(*args, **kwargs):
            yield _message(43)

        telethon_client = MagicMock()
        telethon_client.iter_messages = MagicMock(side_effect=_iter_messages)
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            client = _client(tmp_path)
            batches = [batch async for batch in client.iter_history(1, min_id=42)]

        telethon_client.iter_messages.assert_called_once_with(1, min_id=42, reverse=True)
        assert batches[0][0]["message_id"] == 43

    @pytest.mark.asyncio
    async def test_fetch_contacts(self, tmp_path):
        users = [SimpleNamespace(id=7, username="bob", first_name="Bob", last_name=None, phone="123")]
        telethon_client = AsyncMock(return_value=SimpleNamespace(users=users))
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            contacts = await _client(tmp_path).fetch_contacts()

        assert contacts == [
            {"user_id": 7, "username": "bob", "display_name": "Bob", "phone": "123"}
        ]

    @pytest.mark.asyncio
    async def test_fetch_groups_excludes_users(self, tmp_path):
        dialogs = [
            SimpleNamespace(id=1, title="Alice", is_group=False, is_channel=False, date=None, entity=None),
            SimpleNamespace(id=-2, title="Team", is_group=True, is_channel=False, date=None,
                            entity=SimpleNamespace(participants_count=4)),
        ]
        telethon_client = MagicMock()
        telethon_client.get_dialogs = AsyncMock(return_value=dialogs)
        with patch("tgsync.session_client.TelethonClient", return_value=telethon_client):
            groups = await _client(tmp_path).fetch_groups()

        assert [g["chat_id"] for g in groups] == [-2]
        assert groups[0]["participant_count"] == 4
