"""Clock and timer implementation backed by the running asyncio loop."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

from opsroute.core.ports import TimerHandle


class AsyncioScheduler:
    """SchedulerPort for production use.

    Callbacks run on the event loop thread, which is what makes the
    acknowledgment/timeout race resolvable without extra locking.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(delay_seconds, 0.0), callback)
