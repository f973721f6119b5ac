"""
Keyed, cancellable delayed callbacks for session and agent timers.
"""
import asyncio
import inspect
from typing import Awaitable, Callable, Dict, Hashable, Optional, Set, Union

from loguru import logger

TimerCallback = Callable[[], Union[None, Awaitable[None]]]


class TimeoutManager:
    """
    Holds at most one pending timer per key.

    Scheduling under an existing key replaces the old timer. A timer's entry
    is removed before its callback runs, so a callback may freely cancel or
    reschedule its own key.
    Fired timers stay referenced in `_running` until their callback returns.
    """

    def __init__(self):
        self._timers: Dict[Hashable, asyncio.Task] = {}
        self._running: Set[asyncio.Task] = set()

    def schedule(self, key: Hashable, delay: float, callback: TimerCallback):
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.create_task(self._run(key, delay, callback))

    def cancel(self, key: Hashable) -> bool:
        task = self._timers.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def is_active(self, key: Hashable) -> bool:
        return key in self._timers

    def cancel_all(self):
        for key in list(self._timers):
            self.cancel(key)

    def __len__(self) -> int:
        return len(self._timers)

    async def _run(self, key: Hashable, delay: float, callback: TimerCallback):
        await asyncio.sleep(delay)
        current: Optional[asyncio.Task] = asyncio.current_task()
        if self._timers.get(key) is not current:
            return
        del self._timers[key]
        self._running.add(current)
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Timer {} callback failed", key)
        finally:
            self._running.discard(current)
