"""
tgsync package: links a Telegram account via QR pairing (MTProto/Telethon),
bootstraps or follows its message history, and stores it in PostgreSQL.

All session access goes through a ``SessionClient`` handle owned by the
caller; ``SyncEngine`` only drives it.  The CLI entry point is
``tgsync.main:run``.
"""
