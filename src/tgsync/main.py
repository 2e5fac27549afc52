"""
tgsync command line: ``auth``, ``auth status`` and ``auth logout``.

Key behaviours:
    - Loads configuration from ``$TGSYNC_CONFIG`` or
      ``~/.config/tgsync/settings.toml`` (missing file = defaults).
    - Secrets (API id/hash, session key) come from the keychain via
      ``shared.secrets``.
    - SIGINT / SIGTERM cancel the running command; the engine still
      disconnects before the process exits with status 130.
    - ``--json`` selects the JSON output contract on stdout; otherwise
      human text.  Logs always go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import re
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TextIO

import asyncpg
import qrcode
import toml
from cryptography.fernet import InvalidToken
from telethon.errors import RPCError

from shared.audit import AuditLogger
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import get_optional_secret, get_secret
from tgsync.engine import EngineSettings, SyncEngine, SyncMode, SyncOptions
from tgsync.errors import StoreError, TgSyncError
from tgsync.lock import DataDirLock
from tgsync.message_store import MessageStore
from tgsync.session_client import TelethonSessionClient

logger = logging.getLogger("tgsync.main")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("TGSYNC_CONFIG", "~/.config/tgsync/settings.toml")
).expanduser()
_DEFAULT_DATA_DIR = Path("~/.local/share/tgsync")
_DEFAULT_IDLE_EXIT = 30.0
_DEFAULT_TIMEOUT = 60.0
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load settings from a TOML file.

    A missing file yields an empty config (all defaults).

    Raises:
        ValueError: If a known section is not a table.
    """
    if not path.exists():
        logger.debug("No config file at %s; using defaults", path)
        return {}
    config = toml.load(path)
    for section in ("telegram", "database", "sync", "audit"):
        if section in config and not isinstance(config[section], dict):
            raise ValueError(f"Config section [{section}] must be a table")
    return config


def data_dir_from_config(config: Dict[str, Any]) -> Path:
    return Path(config.get("telegram", {}).get("data_dir", _DEFAULT_DATA_DIR)).expanduser()


def parse_duration(value: str) -> float:
    """Parse ``"30"``, ``"30s"``, ``"500ms"``, ``"2m"`` or ``"1h"`` into seconds."""
    match = _DURATION_RE.match(value)
    if not match:
        raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit or "s"]


def setup_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if not debug:
        logging.getLogger("telethon").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def write_json(stream: TextIO, payload: Dict[str, Any]) -> None:
    stream.write(json.dumps(payload) + "\n")
    stream.flush()


def report_error(message: str, as_json: bool, out: TextIO, err: TextIO) -> None:
    if as_json:
        write_json(out, {"error": message})
    else:
        err.write(f"Error: {message}\n")
        err.flush()


def render_qr_terminal(payload: str, stream: TextIO) -> None:
    """Draw *payload* as an ASCII-art QR code on *stream*."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(payload)
    qr.make(fit=True)
    qr.print_ascii(out=stream, invert=True)


def make_qr_callback(qr_format: str, out: TextIO, err: TextIO) -> Callable[[str], None]:
    """Build the pairing-code display hook for ``--qr-format``."""

    def _show(payload: str) -> None:
        if qr_format == "text":
            out.write(payload + "\n")
            out.flush()
            return
        err.write("\nScan this QR code with Telegram (Settings > Devices > Link Desktop Device):\n")
        render_qr_terminal(payload, err)
        err.write("\n")
        err.flush()

    return _show


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class App:
    """Everything one command needs; closed by the caller."""

    engine: SyncEngine
    pool: Optional[asyncpg.Pool] = None
    audit: Optional[AuditLogger] = None

    async def close(self) -> None:
        if self.audit is not None:
            try:
                await self.audit.close()
            except OSError:
                logger.exception("Failed to flush/close audit logger")
        if self.pool is not None:
            try:
                await self.pool.close()
            except (asyncpg.PostgresError, OSError):
                logger.exception("Failed to close database pool")


async def _open_store(config: Dict[str, Any]) -> asyncpg.Pool:
    db_config = dict(config.get("database", {}))
    if "password" not in db_config:
        db_config["password"] = get_optional_secret("db-password")
    try:
        pool = await get_connection_pool(db_config)
    except (asyncpg.PostgresError, OSError) as exc:
        raise StoreError(f"could not connect to the database: {exc}") from exc
    try:
        if not await health_check(pool):
            raise StoreError("database is not responding")
        await init_database(pool)
    except (asyncpg.PostgresError, OSError) as exc:
        await pool.close()
        raise StoreError(f"could not initialise the database schema: {exc}") from exc
    except StoreError:
        await pool.close()
        raise
    return pool


async def open_app(config: Dict[str, Any], with_store: bool) -> App:
    """Build the session client, store and engine from config and secrets."""
    telegram_config = config.get("telegram", {})
    data_dir = data_dir_from_config(config)
    session_path = Path(
        telegram_config.get("session_path", data_dir / "session.enc")
    ).expanduser()

    client = TelethonSessionClient(
        api_id=int(get_secret("api-id")),
        api_hash=get_secret("api-hash"),
        session_path=session_path,
        session_key=get_secret("session-encryption-key"),
        device_model=telegram_config.get("device_model", "tgsync"),
        two_factor_password=get_optional_secret("two-factor-password"),
        include_raw=bool(config.get("sync", {}).get("store_raw_json", False)),
    )

    pool = await _open_store(config) if with_store else None
    audit_path = config.get("audit", {}).get("log_path")
    audit = AuditLogger(
        pool,
        log_path=Path(audit_path).expanduser() if audit_path else data_dir / "audit.log",
    )
    engine = SyncEngine(
        client,
        store=MessageStore(pool) if pool is not None else None,
        audit=audit,
        settings=EngineSettings.from_config(config),
    )
    return App(engine=engine, pool=pool, audit=audit)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def cmd_auth(app: App, args: argparse.Namespace, out: TextIO, err: TextIO) -> int:
    err.write("Starting authentication…\n")
    err.flush()
    result = await app.engine.sync(
        SyncOptions(
            mode=SyncMode.FOLLOW if args.follow else SyncMode.BOOTSTRAP,
            allow_qr=True,
            download_media=args.download_media,
            refresh_contacts=True,
            refresh_groups=True,
            idle_exit=args.idle_exit,
            on_qr_code=make_qr_callback(args.qr_format, out, err),
        )
    )

    if args.json:
        write_json(out, {"authenticated": True, "messages_stored": result.messages_stored})
        return EXIT_OK

    for warning in result.warnings:
        err.write(f"Warning: {warning}\n")
    out.write(f"Authenticated. Messages stored: {result.messages_stored}\n")
    return EXIT_OK


async def cmd_status(app: App, args: argparse.Namespace, out: TextIO, err: TextIO) -> int:
    async with asyncio.timeout(args.timeout):
        authed = await app.engine.is_authed()

    if args.json:
        write_json(out, {"authenticated": authed})
    elif authed:
        out.write("Authenticated.\n")
    else:
        out.write("Not authenticated. Run `tgsync auth`.\n")
    return EXIT_OK


async def cmd_logout(app: App, args: argparse.Namespace, out: TextIO, err: TextIO) -> int:
    async with asyncio.timeout(args.timeout):
        await app.engine.logout()

    if args.json:
        write_json(out, {"logged_out": True})
    else:
        out.write("Logged out.\n")
    return EXIT_OK


_COMMANDS = {
    "sync": (cmd_auth, True),
    "status": (cmd_status, False),
    "logout": (cmd_logout, False),
}


async def dispatch(
    args: argparse.Namespace,
    config: Dict[str, Any],
    out: TextIO,
    err: TextIO,
) -> int:
    """Run one command under the data-directory lock and map errors to exit codes."""
    command, with_store = _COMMANDS[args.auth_command or "sync"]
    try:
        with DataDirLock(data_dir_from_config(config)):
            app = await open_app(config, with_store=with_store)
            try:
                return await command(app, args, out, err)
            finally:
                await app.close()
    except TimeoutError:
        report_error(f"timed out after {args.timeout:g}s", args.json, out, err)
    except TgSyncError as exc:
        report_error(str(exc), args.json, out, err)
    except RPCError as exc:
        logger.debug("Telegram rejected the request", exc_info=True)
        report_error(f"Telegram error: {exc}", args.json, out, err)
    except InvalidToken:
        report_error(
            "session file could not be decrypted (wrong session-encryption-key?)",
            args.json,
            out,
            err,
        )
    except (RuntimeError, ValueError, OSError) as exc:
        logger.debug("Command failed", exc_info=True)
        report_error(str(exc), args.json, out, err)
    return EXIT_ERROR


async def _main_async(args: argparse.Namespace, config: Dict[str, Any], out: TextIO, err: TextIO) -> int:
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    assert task is not None

    def _handle_signal(sig: signal.Signals) -> None:
        logger.info("Received signal %s, shutting down...", sig.name)
        task.cancel()

    installed: List[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle_signal, sig)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s unavailable", sig.name)
    try:
        return await dispatch(args, config, out, err)
    except asyncio.CancelledError:
        logger.info("Interrupted; session closed.")
        return EXIT_INTERRUPTED
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tgsync",
        description="Link a Telegram account and sync its message history.",
    )
    parser.add_argument("--json", action="store_true", help="emit JSON on stdout")
    parser.add_argument(
        "--config", type=Path, default=_DEFAULT_CONFIG_PATH, help="path to settings.toml"
    )
    parser.add_argument(
        "--timeout",
        type=parse_duration,
        default=_DEFAULT_TIMEOUT,
        help="timeout for status/logout (default: 60s)",
    )
    parser.add_argument("--debug", action="store_true", help="verbose logging")
    commands = parser.add_subparsers(dest="command", required=True)

    auth = commands.add_parser("auth", help="authenticate (QR) and bootstrap sync")
    auth.add_argument("--follow", action="store_true", help="keep syncing after auth")
    auth.add_argument(
        "--idle-exit",
        type=parse_duration,
        default=_DEFAULT_IDLE_EXIT,
        help="exit after being idle this long (bootstrap mode; default: 30s)",
    )
    auth.add_argument(
        "--download-media",
        action="store_true",
        help="download media in the background during sync",
    )
    auth.add_argument(
        "--qr-format",
        choices=("terminal", "text"),
        default="terminal",
        help="QR output: terminal (ASCII art on stderr) or text (raw payload on stdout)",
    )
    auth_commands = auth.add_subparsers(dest="auth_command")
    auth_commands.add_parser("status", help="show authentication status")
    auth_commands.add_parser("logout", help="log out and invalidate the session")
    return parser


def main(
    argv: Optional[List[str]] = None,
    out: TextIO = sys.stdout,
    err: TextIO = sys.stderr,
) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.debug)
    try:
        config = load_config(args.config)
    except (OSError, ValueError, toml.TomlDecodeError) as exc:
        report_error(f"invalid config {args.config}: {exc}", args.json, out, err)
        return EXIT_ERROR
    return asyncio.run(_main_async(args, config, out, err))


def run() -> None:
    """Console-script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
