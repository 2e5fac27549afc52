"""
Background media downloads during ingestion.

The ingestion path hands every stored message that carries media to
``MediaDownloader.enqueue``, which never blocks: when the queue is full the
request is dropped and counted as skipped.  A single worker task (spawned
under the engine's ``TaskSupervisor``) drains the queue.  Download failures
are counted, logged and reported as ``MediaError`` warnings; they never
reach the ingestion path or ``messages_stored``.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from tgsync.errors import MediaError
from tgsync.session_client import SessionClient

logger = logging.getLogger("tgsync.media")


class MediaDownloader:
    """Queue-fed media fetch worker.

    Args:
        client: Connected session client used for downloads.
        dest_dir: Directory media files are written to.
        queue_size: Max pending downloads before new requests are skipped.
        on_error: Called with a ``MediaError`` for each failed download.
    """

    def __init__(
        self,
        client: SessionClient,
        dest_dir: Path,
        queue_size: int = 256,
        on_error: Optional[Callable[[MediaError], None]] = None,
    ) -> None:
        self._client = client
        self._dest_dir = dest_dir
        self._queue: asyncio.Queue[tuple[int, int]] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._on_error = on_error
        self._queued = 0
        self._downloaded = 0
        self._skipped = 0
        self._failed = 0

    def enqueue(self, record: Dict[str, Any]) -> bool:
        """Queue the media of *record* for download without waiting.

        Returns:
            ``True`` if queued, ``False`` if the record has no media or the
            queue is full.
        """
        if not record.get("has_media"):
            return False
        try:
            self._queue.put_nowait((int(record["chat_id"]), int(record["message_id"])))
        except asyncio.QueueFull:
            self._skipped += 1
            logger.debug(
                "Media queue full; skipping chat_id=%s message_id=%s",
                record["chat_id"],
                record["message_id"],
            )
            return False
        self._queued += 1
        return True

    async def _download_one(self, chat_id: int, message_id: int) -> None:
        try:
            path = await self._client.download_media(chat_id, message_id, self._dest_dir)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._failed += 1
            error = MediaError(
                f"media download failed for chat_id={chat_id} message_id={message_id}: {exc}"
            )
            logger.warning("%s", error, exc_info=True)
            if self._on_error is not None:
                self._on_error(error)
            return
        if path is not None:
            self._downloaded += 1
            logger.debug("Downloaded media to %s", path)

    async def run(self) -> None:
        """Drain the queue until cancelled."""
        while True:
            chat_id, message_id = await self._queue.get()
            try:
                await self._download_one(chat_id, message_id)
            finally:
                self._queue.task_done()

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "queued": self._queued,
            "downloaded": self._downloaded,
            "skipped": self._skipped,
            "failed": self._failed,
            "pending": self._queue.qsize(),
        }
