"""Process-local wait timers.

One pending timer per execution id. Timers are not durable: the deadline
they serve is persisted in the execution context and startup recovery
re-arms them. Scheduling a timer for an id that already has one replaces
it.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerRegistry:
    """Pending timers keyed by execution id, owned by one engine."""

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(self, execution_id: str, delay_seconds: float, callback: TimerCallback) -> None:
        """Run ``callback`` after ``delay_seconds`` unless cancelled first."""
        self.cancel(execution_id)
        delay = max(0.0, float(delay_seconds))
        task = asyncio.get_running_loop().create_task(
            self._fire(execution_id, delay, callback),
            name=f"timer:{execution_id}",
        )
        self._tasks[execution_id] = task
        logger.debug("Timer scheduled", execution_id=execution_id, delay=delay)

    async def _fire(self, execution_id: str, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        current = asyncio.current_task()
        if self._tasks.get(execution_id) is current:
            del self._tasks[execution_id]
        try:
            await callback()
        except Exception as e:
            logger.error("Timer callback failed", execution_id=execution_id, error=str(e))

    def cancel(self, execution_id: str) -> bool:
        """Cancel a pending timer. Returns True if one was pending."""
        task = self._tasks.pop(execution_id, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def cancel_all(self) -> int:
        count = 0
        for execution_id in list(self._tasks):
            if self.cancel(execution_id):
                count += 1
        return count

    def has_timer(self, execution_id: str) -> bool:
        return execution_id in self._tasks

    def pending(self) -> list[str]:
        return list(self._tasks)

    def task_for(self, execution_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(execution_id)
