from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class MeetingDelay:
    """Deferred one-shot actions around meeting transitions.

    Each `schedule` call runs its action once after `delay` seconds. Pending actions belong to
    the session that scheduled them: `cancel_all` is called when that session is torn down, and
    actions are expected to re-check that their session is still live before acting.
    """

    def __init__(self, *, delay: float) -> None:
        self.delay = delay
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, action: Callable[[], None], *, name: str) -> asyncio.Task[None] | None:
        if self._closed:
            logger.debug("Dropping %s: meeting delay already closed", name)
            return None

        task = asyncio.get_running_loop().create_task(self._run(action, name), name=f"meeting-delay:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, action: Callable[[], None], name: str) -> None:
        await asyncio.sleep(self.delay)
        try:
            action()
        except Exception:
            logger.exception("Deferred action %s failed", name)

    def cancel_all(self) -> int:
        """Cancel everything still pending and refuse further scheduling."""

        self._closed = True
        cancelled = 0
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.info("Dropped %d pending meeting action(s) on session teardown", cancelled)
        return cancelled
