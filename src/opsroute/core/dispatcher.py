"""Dispatcher: turns a resolved rule into a delivery with retry and serialization."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from opsroute.core.audit import DispatchLog
from opsroute.core.categories import CategoryRegistry
from opsroute.core.channels import ChannelRegistry
from opsroute.core.config import DispatchConfig
from opsroute.core.errors import ChannelUnavailable, DeliveryFailed, DeliveryTransientFailure
from opsroute.core.events import OperatorEventBus
from opsroute.core.keywords import delivery_key
from opsroute.core.models import (
    Channel,
    ClassifiedMessage,
    DispatchRecord,
    DispatchState,
    Notification,
    RoutingRule,
)
from opsroute.core.ports import DeliveryPort

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_record_id(message_id: str, channel_id: int, escalation_level: int) -> str:
    return f"{message_id}:{channel_id}:{escalation_level}"


class Dispatcher:
    """Delivers one message to the channel of one rule.

    Deliveries to the same channel are serialized with a per-channel lock;
    different channels proceed in parallel, bounded by ``max_in_flight``.
    """

    def __init__(
        self,
        categories: CategoryRegistry,
        channels: ChannelRegistry,
        delivery: DeliveryPort,
        log: Optional[DispatchLog] = None,
        events: Optional[OperatorEventBus] = None,
        config: DispatchConfig = DispatchConfig(),
        now: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._categories = categories
        self._channels = channels
        self._delivery = delivery
        self._log = log or DispatchLog()
        self._events = events or OperatorEventBus()
        self._config = config
        self._now = now
        self._sleep = sleep
        self._channel_locks: Dict[int, asyncio.Lock] = {}
        self._in_flight = asyncio.Semaphore(max(config.max_in_flight, 1))
        # Recent successful deliveries by idempotency key, oldest first.
        self._delivered: "OrderedDict[str, DispatchRecord]" = OrderedDict()

    @property
    def log(self) -> DispatchLog:
        return self._log

    def _lock_for(self, channel_id: int) -> asyncio.Lock:
        lock = self._channel_locks.get(channel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._channel_locks[channel_id] = lock
        return lock

    async def _target_channel(self, message: ClassifiedMessage, rule: RoutingRule) -> Channel:
        """Return the rule's channel, or the fallback channel, if delivery-ready.

        Unavailable channels fail fast: they are not retried.
        """

        if await self._channels.is_delivery_ready(rule.channel_id):
            channel = self._channels.get(rule.channel_id)
            if channel is not None:
                return channel

        self._events.channel_unavailable(message, rule, rule.channel_id)
        fallback_id = self._config.fallback_channel_id
        if fallback_id is not None and fallback_id != rule.channel_id:
            if await self._channels.is_delivery_ready(fallback_id):
                fallback = self._channels.get(fallback_id)
                if fallback is not None:
                    LOGGER.warning(
                        "Message %s diverted from channel %s to fallback %s",
                        message.id,
                        rule.channel_id,
                        fallback.name,
                    )
                    return fallback
        raise ChannelUnavailable(rule.channel_id, rule.id)

    def build_notification(
        self,
        message: ClassifiedMessage,
        rule: RoutingRule,
        channel: Channel,
        escalation_level: int,
    ) -> Notification:
        category = self._categories.get(rule.category_id)
        # Excerpt is clipped to keep group notifications readable.
        excerpt = message.text[: self._config.excerpt_chars].strip()
        return Notification(
            idempotency_key=delivery_key(message.id, channel.id, escalation_level),
            message_id=message.id,
            category_name=category.name if category else (message.detected_category_name or ""),
            department=category.department if category else "",
            ai_category=message.ai_category,
            severity=message.severity,
            excerpt=excerpt,
            rule_name=rule.name,
            channel_name=channel.name,
            priority=rule.priority,
            escalation_level=escalation_level,
            received_at=message.received_at,
            sender=message.sender,
            matched_keywords=message.matched_keywords,
        )

    async def dispatch(
        self,
        message: ClassifiedMessage,
        rule: RoutingRule,
        escalation_level: int = 0,
    ) -> DispatchRecord:
        """Deliver ``message`` according to ``rule`` and return a ``routed`` record.

        Raises ``ChannelUnavailable`` without any delivery attempt when the
        channel is not ready, and ``DeliveryFailed`` once retries are exhausted.
        """

        channel = await self._target_channel(message, rule)
        notification = self.build_notification(message, rule, channel, escalation_level)

        retry = self._config.retry
        attempt = 0
        async with self._in_flight:
            async with self._lock_for(channel.id):
                # Checked under the channel lock so concurrent duplicates see the first delivery.
                existing = self._already_delivered(notification.idempotency_key)
                if existing is not None:
                    LOGGER.info("Message %s already delivered to %s, skipping", message.id, channel.name)
                    return existing

                while True:
                    attempt += 1
                    try:
                        await self._delivery.deliver_notification(channel, notification)
                        break
                    except DeliveryTransientFailure as exc:
                        if attempt >= retry.max_attempts:
                            raise self._fail(message, rule, channel, escalation_level, attempt, str(exc)) from exc
                        delay = retry.delay_for(attempt)
                        LOGGER.warning(
                            "Delivery attempt %s to %s failed (%s); retrying in %.2fs",
                            attempt,
                            channel.name,
                            exc,
                            delay,
                        )
                        await self._sleep(delay)
                    except Exception as exc:
                        raise self._fail(message, rule, channel, escalation_level, attempt, repr(exc)) from exc

                record = DispatchRecord(
                    record_id=build_record_id(message.id, channel.id, escalation_level),
                    message_id=message.id,
                    rule_id=rule.id,
                    channel_id=channel.id,
                    dispatched_at=self._now(),
                    state=DispatchState.ROUTED,
                    escalation_level=escalation_level,
                    attempts=attempt,
                )
                self._remember(notification.idempotency_key, record)
                self._log.save(record)

        LOGGER.info(
            "Message %s routed to %s via rule %s (level %s, attempts %s)",
            message.id,
            channel.name,
            rule.name,
            escalation_level,
            attempt,
        )
        return record

    def _already_delivered(self, key: str) -> Optional[DispatchRecord]:
        record = self._delivered.get(key)
        if record is None:
            return None
        self._delivered.move_to_end(key)
        # Prefer the latest state when the log still has it.
        return self._log.get(record.record_id) or record

    def _remember(self, key: str, record: DispatchRecord) -> None:
        self._delivered[key] = record
        self._delivered.move_to_end(key)
        while len(self._delivered) > max(self._config.idempotency_cache, 1):
            self._delivered.popitem(last=False)

    def delivered_keys(self) -> int:
        return len(self._delivered)

    def _fail(
        self,
        message: ClassifiedMessage,
        rule: RoutingRule,
        channel: Channel,
        escalation_level: int,
        attempts: int,
        reason: str,
    ) -> DeliveryFailed:
        now = self._now()
        record = DispatchRecord(
            record_id=build_record_id(message.id, channel.id, escalation_level),
            message_id=message.id,
            rule_id=rule.id,
            channel_id=channel.id,
            dispatched_at=now,
            state=DispatchState.FAILED,
            escalation_level=escalation_level,
            resolved_at=now,
            attempts=attempts,
            detail=reason,
        )
        self._log.save(record)
        self._events.delivery_failed(record, f"{channel.name}: {reason} after {attempts} attempt(s)")
        return DeliveryFailed(record, reason)
