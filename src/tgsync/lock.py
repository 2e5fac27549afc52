"""
Exclusive data-directory lock.

A session and its store are single-owner resources: only one tgsync process
may drive them at a time.  ``DataDirLock`` takes a non-blocking ``flock`` on
``<data_dir>/tgsync.lock`` and records the holder's PID in the file.
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import Any, Optional

from tgsync.errors import LockError

logger = logging.getLogger("tgsync.lock")

_LOCK_FILENAME = "tgsync.lock"


class DataDirLock:
    """Non-blocking exclusive lock on a data directory.

    Usage::

        with DataDirLock(data_dir):
            ...
    """

    def __init__(self, data_dir: Path) -> None:
        self.path = data_dir / _LOCK_FILENAME
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            LockError: If another process holds it.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = ""
            try:
                holder = os.read(fd, 32).decode(errors="replace").strip()
            finally:
                os.close(fd)
            raise LockError(
                f"{self.path.parent} is in use by another tgsync process"
                + (f" (pid {holder})" if holder else "")
            ) from None
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug("Acquired lock %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Released lock %s", self.path)

    def __enter__(self) -> "DataDirLock":
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()
