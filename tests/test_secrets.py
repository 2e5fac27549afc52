"""
Unit tests for keychain lookup and the encrypted session file.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest
from cryptography.fernet import InvalidToken

from shared.secrets import (
    clear_session_file,
    generate_encryption_key,
    get_optional_secret,
    get_secret,
    load_session_string,
    save_session_string,
)


class TestGetSecret:
    def test_keychain_value_wins(self, monkeypatch):
        monkeypatch.setenv("TGSYNC_API_HASH", "from-env")
        result = MagicMock(stdout="from-keychain\n")
        with patch("shared.secrets.subprocess.run", return_value=result) as run:
            assert get_secret("api-hash") == "from-keychain"
        assert run.call_args.args[0] == [
            "secret-tool", "lookup", "service", "tgsync", "key", "api-hash",
        ]

    def test_env_fallback_without_secret_tool(self, monkeypatch):
        """Falls back to TGSYNC_<KEY> when secret-tool is missing."""
        monkeypatch.setenv("TGSYNC_SESSION_ENCRYPTION_KEY", "k")
        with patch("shared.secrets.subprocess.run", side_effect=FileNotFoundError):
            assert get_secret("session-encryption-key") == "k"

    def test_env_fallback_on_timeout(self, monkeypatch):
        monkeypatch.setenv("TGSYNC_API_ID", "12345")
        with patch(
            "shared.secrets.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="secret-tool", timeout=10),
        ):
            assert get_secret("api-id") == "12345"

    def test_missing_everywhere(self, monkeypatch):
        monkeypatch.delenv("TGSYNC_API_ID", raising=False)
        with patch("shared.secrets.subprocess.run", return_value=MagicMock(stdout="")):
            with pytest.raises(RuntimeError, match="TGSYNC_API_ID"):
                get_secret("api-id")

    def test_optional_secret_returns_none(self, monkeypatch):
        monkeypatch.delenv("TGSYNC_TWO_FACTOR_PASSWORD", raising=False)
        with patch("shared.secrets.subprocess.run", side_effect=FileNotFoundError):
            assert get_optional_secret("two-factor-password") is None


class TestSessionFile:
    def test_save_and_load(self, tmp_path):
        key = generate_encryption_key()
        path = tmp_path / "nested" / "session.enc"

        save_session_string(path, key, "1AbCdEf")

        assert path.exists()
        assert b"1AbCdEf" not in path.read_bytes()
        assert path.stat().st_mode & 0o777 == 0o600
        assert load_session_string(path, key) == "1AbCdEf"

    def test_load_missing_returns_none(self, tmp_path):
        assert load_session_string(tmp_path / "absent.enc", generate_encryption_key()) is None

    def test_wrong_key_raises(self, tmp_path):
        path = tmp_path / "session.enc"
        save_session_string(path, generate_encryption_key(), "secret")
        with pytest.raises(InvalidToken):
            load_session_string(path, generate_encryption_key())

    def test_clear(self, tmp_path):
        path = tmp_path / "session.enc"
        save_session_string(path, generate_encryption_key(), "secret")
        assert clear_session_file(path) is True
        assert not path.exists()
        assert clear_session_file(path) is False
