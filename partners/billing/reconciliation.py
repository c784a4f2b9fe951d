"""One-shot deferred status checks for attempts whose webhooks stall."""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

ReconcileCallback = Callable[[uuid.UUID], Awaitable[object]]


class ReconciliationTimer:
    """Holds at most one pending check per attempt id.

    ``arm`` replaces any existing check for the attempt (re-armed, never
    stacked). ``disarm`` cancels it. A check that has already started its
    poll is allowed to finish; its result is a no-op against an attempt that
    has meanwhile gone terminal.
    """

    def __init__(self, delay_seconds: float = 120.0):
        self.delay_seconds = delay_seconds
        self._tasks: dict[uuid.UUID, asyncio.Task] = {}
        self._running: set[uuid.UUID] = set()

    def arm(
        self,
        attempt_id: uuid.UUID,
        callback: ReconcileCallback,
        delay: float | None = None,
    ) -> None:
        self.disarm(attempt_id)
        wait = self.delay_seconds if delay is None else delay
        task = asyncio.create_task(
            self._fire(attempt_id, callback, wait), name=f"reconcile-{attempt_id}"
        )
        self._tasks[attempt_id] = task
        logger.info("Armed reconciliation check for attempt %s in %.1fs", attempt_id, wait)

    def disarm(self, attempt_id: uuid.UUID) -> bool:
        task = self._tasks.pop(attempt_id, None)
        if task is None or task.done():
            return False
        if attempt_id in self._running:
            # Already polling; let it land as a no-op.
            return False
        task.cancel()
        logger.info("Disarmed reconciliation check for attempt %s", attempt_id)
        return True

    def pending(self, attempt_id: uuid.UUID) -> bool:
        task = self._tasks.get(attempt_id)
        return task is not None and not task.done()

    async def _fire(self, attempt_id: uuid.UUID, callback: ReconcileCallback, wait: float) -> None:
        await asyncio.sleep(wait)
        current = self._tasks.get(attempt_id)
        if current is not asyncio.current_task():
            return
        self._running.add(attempt_id)
        try:
            logger.info("Reconciliation check firing for attempt %s", attempt_id)
            await callback(attempt_id)
        except Exception:
            logger.exception("Reconciliation check failed for attempt %s", attempt_id)
        finally:
            self._running.discard(attempt_id)
            if self._tasks.get(attempt_id) is asyncio.current_task():
                del self._tasks[attempt_id]

    async def shutdown(self) -> None:
        """Cancel every pending check (application shutdown)."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
