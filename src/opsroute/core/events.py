"""Operator-facing event surface.

Unrouted messages, unavailable channels, failed deliveries, abandoned
escalations and rejected configuration are real issues reaching no one, so
they are always logged and forwarded to every registered sink.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Iterable, List, Optional

from opsroute.core.models import ClassifiedMessage, DispatchRecord, OperatorEvent, RoutingRule
from opsroute.core.ports import EventSinkPort

LOGGER = logging.getLogger(__name__)

UNROUTED = "unrouted"
CHANNEL_UNAVAILABLE = "channel_unavailable"
DELIVERY_FAILED = "delivery_failed"
ESCALATION_ABANDONED = "escalation_abandoned"
CONFIG_REJECTED = "config_rejected"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperatorEventBus:
    """Logs operator events and fans them out to sinks.

    The most recent events are kept in memory for the CLI and tests.
    """

    def __init__(
        self,
        sinks: Iterable[EventSinkPort] = (),
        history: int = 500,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._sinks: List[EventSinkPort] = list(sinks)
        self._recent: Deque[OperatorEvent] = deque(maxlen=history)
        self._now = now

    def add_sink(self, sink: EventSinkPort) -> None:
        self._sinks.append(sink)

    def recent(self, kind: Optional[str] = None) -> List[OperatorEvent]:
        return [event for event in self._recent if kind is None or event.kind == kind]

    def emit(self, event: OperatorEvent) -> None:
        level = logging.ERROR if event.kind == ESCALATION_ABANDONED else logging.WARNING
        LOGGER.log(level, "Operator event %s: %s", event.kind, event.detail)
        self._recent.append(event)
        for sink in self._sinks:
            try:
                sink.save_operator_event(event)
            except Exception:
                # A broken sink must not hide the event from the others.
                LOGGER.exception("Failed to store operator event %s", event.kind)

    def unrouted(self, message: ClassifiedMessage, reason: str) -> OperatorEvent:
        event = OperatorEvent(
            kind=UNROUTED,
            created_at=self._now(),
            detail=f"{message.detected_category_name or '<no category>'} / {message.ai_category} / "
            f"{message.severity}: {reason}",
            message_id=message.id,
        )
        self.emit(event)
        return event

    def channel_unavailable(self, message: ClassifiedMessage, rule: RoutingRule, channel_id: int) -> OperatorEvent:
        event = OperatorEvent(
            kind=CHANNEL_UNAVAILABLE,
            created_at=self._now(),
            detail=f"Rule '{rule.name}' targets channel {channel_id}, which is not delivery-ready",
            message_id=message.id,
            rule_id=rule.id,
            channel_id=channel_id,
        )
        self.emit(event)
        return event

    def delivery_failed(self, record: DispatchRecord, reason: str) -> OperatorEvent:
        event = OperatorEvent(
            kind=DELIVERY_FAILED,
            created_at=self._now(),
            detail=reason,
            message_id=record.message_id,
            rule_id=record.rule_id,
            channel_id=record.channel_id,
            record_id=record.record_id,
        )
        self.emit(event)
        return event

    def escalation_abandoned(self, record: DispatchRecord, reason: str) -> OperatorEvent:
        event = OperatorEvent(
            kind=ESCALATION_ABANDONED,
            created_at=self._now(),
            detail=f"Level {record.escalation_level}: {reason}",
            message_id=record.message_id,
            rule_id=record.rule_id,
            channel_id=record.channel_id,
            record_id=record.record_id,
        )
        self.emit(event)
        return event

    def config_rejected(self, problems: Iterable[str]) -> OperatorEvent:
        event = OperatorEvent(
            kind=CONFIG_REJECTED,
            created_at=self._now(),
            detail="; ".join(problems),
        )
        self.emit(event)
        return event
