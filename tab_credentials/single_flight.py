"""
Coalesce concurrent calls of the same async operation into one execution.
The slot for a key is cleared as soon as the operation settles, so the next call starts fresh.
"""
import asyncio
from typing import Any, Awaitable, Callable


class SingleFlight:
    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task] = {}

    def pending(self, key: str) -> asyncio.Task | None:
        return self._pending.get(key)

    def start(self, key: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Return the in-flight task for key, creating it from factory() if there is none."""
        task = self._pending.get(key)
        if task is not None:
            return task
        # factory() may raise before anything is pending; nothing to clean up then
        awaitable = factory()
        task = asyncio.ensure_future(self._settle(key, awaitable))
        self._pending[key] = task
        return task

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        # shield: a cancelled caller must not cancel the shared operation
        return await asyncio.shield(self.start(key, factory))

    async def _settle(self, key: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        finally:
            self._pending.pop(key, None)
