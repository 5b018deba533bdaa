import asyncio
import logging
from typing import Final

log: Final = logging.getLogger(__name__)


class WorkQueue:
    """Keys waiting to be synced.

    A key is handed to at most one worker at a time; adding it while it is being
    processed queues it again once the worker is done.
    """

    def __init__(self, base_delay: float = 0.5, max_delay: float = 300.0) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._queue: Final[asyncio.Queue[str]] = asyncio.Queue()
        self._dirty: Final[set[str]] = set()
        self._processing: Final[set[str]] = set()
        self._failures: Final[dict[str, int]] = {}
        self._timers: Final[set[asyncio.TimerHandle]] = set()

    def __len__(self) -> int:
        return self._queue.qsize()

    def add(self, key: str) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return

        def fire() -> None:
            self._timers.discard(handle)
            self.add(key)

        handle = asyncio.get_running_loop().call_later(delay, fire)
        self._timers.add(handle)

    def add_rate_limited(self, key: str) -> float:
        failures: Final = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay: Final = min(self.base_delay * 2**failures, self.max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> str:
        key: Final = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    def shutdown(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
