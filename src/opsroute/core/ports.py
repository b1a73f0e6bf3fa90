"""Ports (interfaces) used by the routing engine.

Ports define the minimal contracts for storage, delivery and transport
adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Protocol, Sequence, Tuple

from opsroute.core.models import (
    Category,
    Channel,
    DispatchRecord,
    Notification,
    OperatorEvent,
    RoutingRule,
)


class DeliveryPort(Protocol):
    """Pushes a notification to a WhatsApp group.

    Implementations should be idempotent per ``notification.idempotency_key``
    and raise ``DeliveryTransientFailure`` for errors worth retrying.
    """

    async def deliver_notification(self, channel: Channel, notification: Notification) -> None:
        ...


class LivenessPort(Protocol):
    """Reports whether the delivery agent can currently post to a channel."""

    async def is_delivery_ready(self, channel: Channel) -> bool:
        ...


class ConfigStorePort(Protocol):
    """Persistent CRUD surface for categories, channels and rules."""

    def load_configuration(self) -> Tuple[Sequence[Category], Sequence[Channel], Sequence[RoutingRule]]:
        ...

    def save_configuration(
        self,
        categories: Sequence[Category],
        channels: Sequence[Channel],
        rules: Sequence[RoutingRule],
    ) -> None:
        ...

    def save_rule(self, rule: RoutingRule) -> None:
        ...

    def delete_rule(self, rule_id: int) -> None:
        ...


class AuditPort(Protocol):
    """Append/upsert sink for the dispatch audit trail."""

    def save_dispatch_record(self, record: DispatchRecord) -> None:
        ...


class EventSinkPort(Protocol):
    """Receives operator-facing events."""

    def save_operator_event(self, event: OperatorEvent) -> None:
        ...


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class SchedulerPort(Protocol):
    """Clock and deferred callbacks used for escalation timers."""

    def now(self) -> datetime:
        ...

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        ...

