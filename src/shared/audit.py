"""
Audit trail for tgsync: pairing codes issued, authentication, sync results
and logout.

Events are appended to a JSON Lines file and, when the run has a database,
to the ``audit_log`` table.  A single writer task drains the queue so the
sync path never blocks on audit I/O; write failures are logged only.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path.home() / ".local" / "state" / "tgsync" / "audit.log"
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)

# Queued by close(); the writer flushes what precedes it and exits.
_STOP = object()


@dataclass(frozen=True)
class AuditEvent:
    service: str
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    success: bool = True
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def as_json_line(self) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp,
                "service": self.service,
                "action": self.action,
                "details": self.details,
                "success": self.success,
            },
            default=str,
        ) + "\n"

    def as_row(self) -> Tuple[str, str, str, bool]:
        """Parameters for ``_INSERT_AUDIT_SQL``."""
        return (
            self.service,
            self.action,
            json.dumps(self.details, default=str),
            self.success,
        )


class AuditLogger:
    """Queue audit events for a background writer.

    Args:
        pool: ``asyncpg`` pool, or ``None`` when the command runs without a
              database (``auth status``, ``auth logout``).
        log_path: JSON Lines file the events are appended to.
        queue_size: Pending events before ``log`` waits for the writer.
        flush_batch_size: Most events written per flush.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool] = None,
        log_path: Path = _DEFAULT_LOG_PATH,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._log_path = Path(log_path)
        self._pending: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(1, queue_size))
        self._batch_limit = max(1, flush_batch_size)
        self._writer: Optional[asyncio.Task[None]] = None
        self._closed = False

    async def log(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Record one event.

        ``details`` must be JSON-serialisable and must never carry pairing
        payloads or session strings.  Events logged after ``close`` are
        dropped.
        """
        if self._closed:
            logger.debug("Audit logger closed; dropping %s/%s", service, action)
            return
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(
                self._run_writer(), name="tgsync-audit-writer"
            )
        await self._pending.put(AuditEvent(service, action, dict(details or {}), success))

    async def close(self) -> None:
        """Flush pending events and stop the writer.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._writer is None:
            return
        await self._pending.put(_STOP)
        await self._writer

    async def _run_writer(self) -> None:
        while True:
            batch, stop = await self._next_batch()
            if batch:
                await self._flush(batch)
            if stop:
                return

    async def _next_batch(self) -> Tuple[List[AuditEvent], bool]:
        """Wait for one item, then take whatever else is already queued."""
        item = await self._pending.get()
        if item is _STOP:
            return [], True
        batch = [item]
        while len(batch) < self._batch_limit and not self._pending.empty():
            item = self._pending.get_nowait()
            if item is _STOP:
                return batch, True
            batch.append(item)
        return batch, False

    async def _flush(self, batch: List[AuditEvent]) -> None:
        self._append_file(batch)
        if self._pool is not None:
            await self._insert_rows(batch)

    def _append_file(self, batch: List[AuditEvent]) -> None:
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.writelines(event.as_json_line() for event in batch)
        except OSError:
            logger.exception("Could not append to audit file %s", self._log_path)

    async def _insert_rows(self, batch: List[AuditEvent]) -> None:
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    _INSERT_AUDIT_SQL, [event.as_row() for event in batch]
                )
        except (asyncpg.PostgresError, OSError):
            logger.exception("Could not insert %d audit rows", len(batch))
