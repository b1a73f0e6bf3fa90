"""Bounded asyncio worker pool feeding classified messages to the engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from opsroute.core.engine import RoutingEngine
from opsroute.core.errors import RoutingError, UnresolvedMessage
from opsroute.core.models import ClassifiedMessage

LOGGER = logging.getLogger(__name__)


@dataclass
class PoolStats:
    routed: int = 0
    unrouted: int = 0
    failed: int = 0
    crashed: int = 0


class RoutingWorkerPool:
    """Each message is an independent task; ``workers`` bounds the concurrency."""

    def __init__(self, engine: RoutingEngine, workers: int = 4, queue_size: int = 0) -> None:
        self._engine = engine
        self._workers = max(workers, 1)
        self._queue: "asyncio.Queue[ClassifiedMessage]" = asyncio.Queue(maxsize=queue_size)
        self._tasks: List[asyncio.Task] = []
        self.stats = PoolStats()

    def start(self) -> None:
        if self._tasks:
            return
        loop = asyncio.get_running_loop()
        self._tasks = [loop.create_task(self._worker(index)) for index in range(self._workers)]
        LOGGER.info("Started %s routing workers", self._workers)

    async def submit(self, message: ClassifiedMessage) -> None:
        await self._queue.put(message)

    async def join(self) -> None:
        """Wait until every submitted message has been handled."""

        await self._queue.join()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _worker(self, index: int) -> None:
        while True:
            message: Optional[ClassifiedMessage] = await self._queue.get()
            try:
                await self._engine.route(message)
                self.stats.routed += 1
            except UnresolvedMessage as exc:
                # Already surfaced as an operator event; re-evaluating yields the same result.
                self.stats.unrouted += 1
                LOGGER.info("Worker %s: %s", index, exc)
            except RoutingError as exc:
                self.stats.failed += 1
                LOGGER.warning("Worker %s: message %s not delivered: %s", index, message.id, exc)
            except Exception:
                self.stats.crashed += 1
                LOGGER.exception("Error while routing message %s", message.id)
            finally:
                self._queue.task_done()
