import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class RequestCoalescer:
    """Registry of in-flight computations keyed by query signature.

    Callers asking for a signature that is already running await the same task
    instead of starting a second one. A settled task stays registered for
    `grace_seconds` to absorb near-simultaneous duplicates.
    """

    def __init__(self, grace_seconds: float = 0.1) -> None:
        self._pending: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._grace = grace_seconds

    def in_flight(self) -> int:
        return len(self._pending)

    def is_pending(self, signature: str) -> bool:
        return signature in self._pending

    async def run(self, signature: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        async with self._lock:
            task = self._pending.get(signature)
            if task is None:
                task = asyncio.ensure_future(factory())
                self._pending[signature] = task
                task.add_done_callback(lambda t: self._schedule_removal(signature, t))
            else:
                logger.debug("Joining in-flight computation %s", signature[:12])
        # Shielded: one caller being cancelled must not cancel the shared work
        return await asyncio.shield(task)

    def _schedule_removal(self, signature: str, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Coalesced computation %s failed: %s", signature[:12], task.exception())
        loop = asyncio.get_running_loop()
        if self._grace > 0:
            loop.call_later(self._grace, self._remove, signature, task)
        else:
            self._remove(signature, task)

    def _remove(self, signature: str, task: asyncio.Task) -> None:
        if self._pending.get(signature) is task:
            del self._pending[signature]
