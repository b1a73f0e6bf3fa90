"""Channel Registry: deliverable WhatsApp groups plus a liveness cache."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from opsroute.core.errors import ConfigInvalid
from opsroute.core.keywords import normalize_text
from opsroute.core.models import Channel
from opsroute.core.ports import LivenessPort

LOGGER = logging.getLogger(__name__)


class ChannelSnapshot:
    """Immutable, versioned view of the configured channels."""

    def __init__(self, version: int, channels: Sequence[Channel]) -> None:
        self.version = version
        self.channels: Tuple[Channel, ...] = tuple(sorted(channels, key=lambda c: c.id))
        self._by_id: Dict[int, Channel] = {c.id: c for c in self.channels}
        self._by_name: Dict[str, Channel] = {normalize_text(c.name): c for c in self.channels}

    @property
    def ids(self) -> FrozenSet[int]:
        return frozenset(self._by_id)

    def get(self, channel_id: int) -> Optional[Channel]:
        return self._by_id.get(channel_id)

    def find_by_name(self, name: str) -> Optional[Channel]:
        return self._by_name.get(normalize_text(name))


def validate_channels(batch: Sequence[Channel]) -> List[str]:
    """Return every problem found in a channel batch (empty when valid)."""

    problems: List[str] = []
    seen_ids: set[int] = set()
    seen_names: set[str] = set()
    for channel in batch:
        label = f"channel {channel.id} ({channel.name!r})"
        if not isinstance(channel.id, int) or channel.id <= 0:
            problems.append(f"{label}: id must be a positive integer")
        elif channel.id in seen_ids:
            problems.append(f"{label}: duplicate id")
        seen_ids.add(channel.id)
        name_key = normalize_text(channel.name or "")
        if not name_key:
            problems.append(f"{label}: name is required")
        elif name_key in seen_names:
            problems.append(f"{label}: duplicate name")
        seen_names.add(name_key)
        if not (channel.group_id or "").strip():
            problems.append(f"{label}: group_id is required")
    return problems


class ChannelRegistry:
    """Configured channels and a bounded liveness cache.

    Liveness is owned by the transport collaborator. The registry only caches
    its answers for ``ttl_seconds`` so membership changes show up promptly
    without probing on every message.
    """

    def __init__(
        self,
        channels: Iterable[Channel] = (),
        liveness: Optional[LivenessPort] = None,
        ttl_seconds: float = 45.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.RLock()
        self._snapshot = ChannelSnapshot(0, ())
        self._liveness = liveness
        self._ttl = ttl_seconds
        self._monotonic = monotonic
        self._cache: Dict[int, Tuple[float, bool]] = {}
        batch = list(channels)
        if batch:
            self.replace_all(batch)

    def snapshot(self) -> ChannelSnapshot:
        return self._snapshot

    def load_all(self) -> List[Channel]:
        return list(self._snapshot.channels)

    def get(self, channel_id: int) -> Optional[Channel]:
        return self._snapshot.get(channel_id)

    def prepare(self, batch: Sequence[Channel]) -> ChannelSnapshot:
        problems = validate_channels(batch)
        if problems:
            raise ConfigInvalid(problems)
        return ChannelSnapshot(self._snapshot.version + 1, batch)

    def publish(self, snapshot: ChannelSnapshot) -> FrozenSet[int]:
        with self._lock:
            removed = self._snapshot.ids - snapshot.ids
            self._snapshot = snapshot
            # Group ids may have changed, so cached answers are stale.
            self._cache.clear()
        return removed

    def replace_all(self, batch: Sequence[Channel]) -> FrozenSet[int]:
        with self._lock:
            removed = self.publish(self.prepare(batch))
        if removed:
            LOGGER.warning("Channel replacement removed ids %s", sorted(removed))
        LOGGER.info("Loaded %s channels", len(batch))
        return removed

    def invalidate(self, channel_id: Optional[int] = None) -> None:
        """Drop cached liveness for one channel, or for all of them."""

        if channel_id is None:
            self._cache.clear()
        else:
            self._cache.pop(channel_id, None)

    async def is_delivery_ready(self, channel_id: int) -> bool:
        """Return whether the delivery agent can currently post to the channel."""

        channel = self.get(channel_id)
        if channel is None:
            return False
        if self._liveness is None:
            return True

        now = self._monotonic()
        cached = self._cache.get(channel_id)
        if cached is not None and now - cached[0] < self._ttl:
            return cached[1]

        try:
            ready = bool(await self._liveness.is_delivery_ready(channel))
        except Exception:
            # Probe failures are not cached so the next dispatch asks again.
            LOGGER.warning("Liveness probe failed for channel %s", channel.name, exc_info=True)
            self._cache.pop(channel_id, None)
            return False

        self._cache[channel_id] = (now, ready)
        if not ready:
            LOGGER.info("Channel %s is not delivery-ready", channel.name)
        return ready
