"""
Secrets and keychain integration: retrieves credentials from the
system keychain and manages the encrypted session file.

Credentials are **never** stored in config files or source code.  They live
in the system keychain (``secret-tool`` / ``libsecret``) and are retrieved at
runtime, with an environment-variable fallback for development.

The Telethon session is kept as a ``StringSession`` string, encrypted at
rest with Fernet.  Deleting the file is how local credential state is
cleared on logout.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("shared.secrets")


# ---------------------------------------------------------------------------
# System keychain
# ---------------------------------------------------------------------------


def get_secret(key_name: str, service: str = "tgsync") -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool`` (libsecret) under the hood::

        secret-tool lookup service tgsync key <key_name>

    Falls back to environment variables (``TGSYNC_<KEY_NAME>``) if
    ``secret-tool`` is not available or has no entry.

    Args:
        key_name: The key identifier (e.g. ``"api-id"``, ``"api-hash"``,
                  ``"session-encryption-key"``).
        service: The service label in the keychain.

    Returns:
        The secret value as a string.

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.debug("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")
    except OSError:
        logger.warning(
            "secret-tool failed; falling back to environment variable",
            exc_info=True,
        )

    env_key = f"TGSYNC_{key_name.upper().replace('-', '_')}"
    env_val = os.environ.get(env_key)
    if env_val:
        logger.debug("Using env var for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


def get_optional_secret(key_name: str, service: str = "tgsync") -> str | None:
    """Like :func:`get_secret`, but returns ``None`` when the secret is unset."""
    try:
        return get_secret(key_name, service=service)
    except RuntimeError:
        return None


# ---------------------------------------------------------------------------
# Session file encryption (Fernet)
# ---------------------------------------------------------------------------


def save_session_string(path: Path, key: str, session: str) -> None:
    """Encrypt a Telethon ``StringSession`` string and write it to *path*.

    The file is written with mode ``0600``; parent directories are created
    as needed.

    Raises:
        ValueError: If the key is not a valid Fernet key.
    """
    f = Fernet(key.encode())
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_bytes(f.encrypt(session.encode()))
    tmp_path.chmod(0o600)
    tmp_path.replace(path)
    logger.info("Session credentials saved: %s", path)


def load_session_string(path: Path, key: str) -> str | None:
    """Decrypt the session file and return the ``StringSession`` string.

    The plaintext is only held in memory.

    Returns:
        The session string, or ``None`` if no session file exists.

    Raises:
        cryptography.fernet.InvalidToken: If the key is wrong or the
            file has been tampered with.
    """
    if not path.exists():
        return None
    f = Fernet(key.encode())
    try:
        plaintext = f.decrypt(path.read_bytes())
    except InvalidToken:
        logger.error("Session file could not be decrypted: %s", path)
        raise
    logger.debug("Session file decrypted in memory: %s", path)
    return plaintext.decode()


def clear_session_file(path: Path) -> bool:
    """Delete the encrypted session file.

    Returns:
        ``True`` if a file was removed, ``False`` if none existed.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.info("Session credentials removed: %s", path)
    return True


def generate_encryption_key() -> str:
    """Generate a new Fernet encryption key.

    Returns:
        A base64-encoded 32-byte key suitable for Fernet.

    This should be called once during initial setup and the resulting
    key stored in the system keychain.
    """
    return Fernet.generate_key().decode()
