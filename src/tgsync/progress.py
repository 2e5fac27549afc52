"""
Ingestion progress tracking for log output.

``IngestProgress`` counts batches received and rows stored during one sync
and emits periodic human-readable lines with message rates.
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("tgsync.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        if secs:
            return f"{minutes}m {secs}s"
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    if mins:
        return f"{hours}h {mins}m"
    return f"{hours}h"


class IngestProgress:
    """Tracks messages received and stored during one sync.

    Args:
        mode: Sync mode label used in log lines.
        log_every: Emit a progress line each time this many more rows
            have been received (``0`` disables periodic lines).
    """

    def __init__(self, mode: str, log_every: int = 500) -> None:
        self.mode = mode
        self.log_every = max(0, log_every)
        self.received = 0
        self.stored = 0
        self.batches = 0
        self.chats_completed = 0
        self._next_log_at = self.log_every
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Messages received per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.received / elapsed

    def update(self, batch_received: int, batch_stored: int) -> None:
        """Update counters after a batch is written."""
        self.batches += 1
        self.received += batch_received
        self.stored += batch_stored
        if self.log_every and self.received >= self._next_log_at:
            self.log_progress()
            while self._next_log_at <= self.received:
                self._next_log_at += self.log_every

    def chat_done(self) -> None:
        self.chats_completed += 1

    def log_progress(self) -> None:
        logger.info(
            "  [%s] %d received, %d new | %d chats backfilled | %.1f msg/s",
            self.mode,
            self.received,
            self.stored,
            self.chats_completed,
            self.rate,
        )

    def log_complete(self, reason: str) -> None:
        logger.info(
            "Sync %s finished (%s): %d new of %d received in %s",
            self.mode,
            reason,
            self.stored,
            self.received,
            _format_duration(self.elapsed_seconds),
        )
