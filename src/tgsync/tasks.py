"""
Cancellable task group for the ingestion phase.

``TaskSupervisor`` spawns independent units of work (backfill, contact and
group refresh, media downloads) and guarantees that every one of them is
cancelled and joined when the ``async with`` block exits, whatever caused
the exit.  Unlike ``asyncio.TaskGroup``, an exception raised in the block
body propagates unchanged (not wrapped in an ``ExceptionGroup``), and a
failing task never cancels its siblings: task failures are isolated and
handed to the task's ``on_error`` callback.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional

logger = logging.getLogger("tgsync.tasks")

ErrorCallback = Callable[[str, BaseException], None]


class TaskSupervisor:
    """Structured owner of background tasks.

    Usage::

        async with TaskSupervisor() as tasks:
            tasks.spawn(refresh(), name="refresh-contacts", on_error=warn)
            await consume()
        # every spawned task is finished here
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    async def __aenter__(self) -> "TaskSupervisor":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    @property
    def active(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str,
        on_error: Optional[ErrorCallback] = None,
    ) -> asyncio.Task[Any]:
        """Start *coro* as a supervised task.

        Exceptions other than cancellation are logged and passed to
        *on_error*; they never escape the supervisor.
        """
        if self._closed:
            coro.close()
            raise RuntimeError("TaskSupervisor is closed")

        async def _guarded() -> Any:
            try:
                return await coro
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Task %s failed: %s", name, exc, exc_info=True)
                if on_error is not None:
                    on_error(name, exc)
                return None

        task = asyncio.create_task(_guarded(), name=f"tgsync-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        """Cancel every unfinished task and wait for all of them."""
        self._closed = True
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            logger.debug("Cancelling %d supervised task(s)", len(pending))
            # Pending tasks still run to completion if the caller is
            # cancelled again during the join.
            await asyncio.shield(asyncio.gather(*pending, return_exceptions=True))
        self._tasks.clear()
