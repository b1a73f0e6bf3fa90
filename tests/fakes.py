from __future__ import annotations

import asyncio
import heapq
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from opsroute.core.config import DispatchConfig, EngineConfig, EscalationConfig
from opsroute.core.engine import RoutingEngine
from opsroute.core.models import (
    Category,
    Channel,
    ClassifiedMessage,
    DispatchRecord,
    Keyword,
    Notification,
    OperatorEvent,
    RoutingRule,
)

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeDelivery:
    """Records deliveries; can fail, block or report channels as not ready."""

    def __init__(self) -> None:
        self.sent: List[tuple[Channel, Notification]] = []
        self.failures: Dict[int, List[Exception]] = {}
        self.not_ready: set[int] = set()
        self.probes: List[int] = []
        self.gate: Optional[asyncio.Event] = None
        self.active: Dict[int, int] = {}
        self.max_active: Dict[int, int] = {}

    async def deliver_notification(self, channel: Channel, notification: Notification) -> None:
        self.active[channel.id] = self.active.get(channel.id, 0) + 1
        self.max_active[channel.id] = max(self.max_active.get(channel.id, 0), self.active[channel.id])
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            pending = self.failures.get(channel.id)
            if pending:
                raise pending.pop(0)
            self.sent.append((channel, notification))
        finally:
            self.active[channel.id] -= 1

    async def is_delivery_ready(self, channel: Channel) -> bool:
        self.probes.append(channel.id)
        return channel.id not in self.not_ready

    def sent_to(self) -> List[str]:
        return [channel.name for channel, _ in self.sent]


class _Timer:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Fake clock: callbacks only fire when the test advances time."""

    def __init__(self, start: datetime = T0) -> None:
        self._now = start
        self._queue: list = []
        self._seq = 0

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> _Timer:
        timer = _Timer()
        self._seq += 1
        heapq.heappush(self._queue, (self._now + timedelta(seconds=delay_seconds), self._seq, callback, timer))
        return timer

    def pending(self) -> int:
        return sum(1 for _, _, _, timer in self._queue if not timer.cancelled)

    def advance(self, seconds: float) -> None:
        target = self._now + timedelta(seconds=seconds)
        while self._queue and self._queue[0][0] <= target:
            due, _, callback, timer = heapq.heappop(self._queue)
            self._now = due
            if not timer.cancelled:
                callback()
        self._now = target

    def advance_minutes(self, minutes: float) -> None:
        self.advance(minutes * 60)


class FakeSink:
    def __init__(self) -> None:
        self.events: List[OperatorEvent] = []
        self.records: List[DispatchRecord] = []

    def save_operator_event(self, event: OperatorEvent) -> None:
        self.events.append(event)

    def save_dispatch_record(self, record: DispatchRecord) -> None:
        self.records.append(record)


class FakeStore:
    def __init__(self) -> None:
        self.configuration: tuple = ([], [], [])
        self.saved_rules: List[RoutingRule] = []
        self.deleted_rules: List[int] = []
        self.fail_on_save = False

    def load_configuration(self):
        return self.configuration

    def save_configuration(self, categories, channels, rules) -> None:
        if self.fail_on_save:
            raise RuntimeError("disk full")
        self.configuration = (list(categories), list(channels), list(rules))

    def save_rule(self, rule: RoutingRule) -> None:
        self.saved_rules.append(rule)

    def delete_rule(self, rule_id: int) -> None:
        self.deleted_rules.append(rule_id)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


TRAINER_ABSENCE = Category(
    id=1,
    name="Trainer Absence",
    department="STAFF_MANAGEMENT",
    keywords=(Keyword("trainer absent"), Keyword("no trainer"), Keyword("ट्रेनर नहीं है", "hi")),
    priority_weight=1,
)
AC_NOT_WORKING = Category(
    id=2,
    name="AC Not Working",
    department="FACILITY_MANAGEMENT",
    keywords=(Keyword("ac not working"), Keyword("too hot"), Keyword("ac kharab", "hinglish")),
    priority_weight=2,
)

COMMAND_CENTER = Channel(id=1, name="WTF Command Center", group_id="cc@g.us", department="OPERATIONS")
CMS_AND_HR = Channel(id=2, name="CMs and HR", group_id="hr@g.us", department="STAFF_MANAGEMENT")
FACILITY = Channel(id=3, name="WTF Facility Management", group_id="fm@g.us", department="FACILITY_MANAGEMENT")

CATEGORIES = (TRAINER_ABSENCE, AC_NOT_WORKING)
CHANNELS = (COMMAND_CENTER, CMS_AND_HR, FACILITY)


def rule(
    rule_id: int,
    category_id: int = 1,
    channel_id: int = 1,
    priority: int = 1,
    ai: Sequence[str] = (),
    severities: Sequence[str] = (),
    active: bool = True,
    timeout: int = 0,
    name: Optional[str] = None,
) -> RoutingRule:
    return RoutingRule(
        id=rule_id,
        name=name or f"rule-{rule_id}",
        category_id=category_id,
        channel_id=channel_id,
        accepted_ai_categories=frozenset(ai),
        accepted_severities=frozenset(severities),
        priority=priority,
        is_active=active,
        escalation_enabled=timeout > 0,
        escalation_timeout_minutes=timeout,
    )


def message(
    message_id: str = "m1",
    category: Optional[str] = "Trainer Absence",
    ai_category: str = "ESCALATION",
    severity: str = "high",
    text: str = "Trainer absent again at the 7am slot",
) -> ClassifiedMessage:
    return ClassifiedMessage(
        id=message_id,
        text=text,
        detected_category_name=category,
        ai_category=ai_category,
        severity=severity,
        received_at=T0,
        sender="+91 98xxxx",
    )


def build_engine(
    rules: Sequence[RoutingRule],
    categories: Sequence[Category] = CATEGORIES,
    channels: Sequence[Channel] = CHANNELS,
    delivery: Optional[FakeDelivery] = None,
    scheduler: Optional[ManualScheduler] = None,
    config: Optional[EngineConfig] = None,
    sink: Optional[FakeSink] = None,
    sleep: Optional[RecordingSleep] = None,
) -> tuple[RoutingEngine, FakeDelivery, ManualScheduler, FakeSink]:
    delivery = delivery or FakeDelivery()
    scheduler = scheduler or ManualScheduler()
    sink = sink or FakeSink()
    engine = RoutingEngine.create(
        delivery=delivery,
        liveness=delivery,
        scheduler=scheduler,
        audit_sinks=[sink],
        event_sinks=[sink],
        config=config or EngineConfig(dispatch=DispatchConfig(), escalation=EscalationConfig()),
        sleep=sleep or RecordingSleep(),
    )
    engine.guard.reseed(categories, channels, rules)
    return engine, delivery, scheduler, sink
