"""View-state building blocks.

This module provides:
1. ``StateHolder``: an observable holder of an immutable state model
2. ``JobScope``: named background slots where a new launch cancels the previous one
3. ``ValidationError``: raised for invalid input before any remote call
"""

import asyncio
import functools
import logging
from typing import Any, AsyncIterator, Callable, Coroutine, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

S = TypeVar('S', bound=BaseModel)

class ValidationError(Exception):
    """Raised when user input is rejected before reaching a repository."""
    pass

class StateHolder(Generic[S]):
    """Holds the current value of a state model and notifies watchers of changes."""

    def __init__(self, initial: S):
        self._value = initial
        self._changed = asyncio.Event()
        self._watchers: List[asyncio.Queue] = []

    @property
    def value(self) -> S:
        return self._value

    def set(self, value: S) -> None:
        if value == self._value:
            return
        self._value = value
        for queue in self._watchers:
            queue.put_nowait(value)
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def update(self, **changes: Any) -> S:
        """Replace some fields of the current state."""
        self.set(self._value.model_copy(update=changes))
        return self._value

    async def watch(self) -> AsyncIterator[S]:
        """Yield the current state, then every new state."""
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.append(queue)
        try:
            yield self._value
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(queue)

    async def wait_for(self, predicate: Callable[[S], bool], timeout: Optional[float] = None) -> S:
        """Wait until the state satisfies ``predicate`` and return it.

        Raises:
            asyncio.TimeoutError: If the state does not get there in time
        """
        async def wait() -> S:
            while not predicate(self._value):
                await self._changed.wait()
            return self._value

        return await asyncio.wait_for(wait(), timeout)

class JobScope:
    """Named background tasks; launching into a slot cancels its previous task."""

    def __init__(self, name: str):
        self.name = name
        self._tasks: Dict[str, asyncio.Task] = {}

    def launch(self, slot: str, coro: Coroutine) -> asyncio.Task:
        self.cancel(slot)
        task = asyncio.create_task(coro, name=f"{self.name}:{slot}")
        self._tasks[slot] = task
        task.add_done_callback(functools.partial(self._finished, slot))
        logger.debug(f"Launched {self.name}:{slot}")
        return task

    def _finished(self, slot: str, task: asyncio.Task) -> None:
        if self._tasks.get(slot) is task:
            del self._tasks[slot]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Job {self.name}:{slot} crashed: {task.exception()}")

    def cancel(self, slot: str) -> None:
        task = self._tasks.pop(slot, None)
        if task is not None:
            task.cancel()
            logger.debug(f"Cancelled {self.name}:{slot}")

    def is_active(self, slot: str) -> bool:
        return slot in self._tasks

    def slots(self, prefix: str = '') -> List[str]:
        return [slot for slot in self._tasks if slot.startswith(prefix)]

    async def close(self) -> None:
        """Cancel every slot and wait for the tasks to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

__all__ = ['StateHolder', 'JobScope', 'ValidationError']
