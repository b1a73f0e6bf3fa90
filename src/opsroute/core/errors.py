"""Error taxonomy for the routing engine."""

from __future__ import annotations

from typing import Iterable, List, Optional

from opsroute.core.models import ClassifiedMessage, DispatchRecord


class RoutingError(Exception):
    """Base class for all routing engine errors."""


class ConfigInvalid(RoutingError):
    """A category, channel or rule batch failed validation at write time."""

    def __init__(self, problems: Iterable[str]) -> None:
        self.problems: List[str] = list(problems)
        super().__init__("; ".join(self.problems) or "invalid configuration")


class UnresolvedMessage(RoutingError):
    """No active rule matched the message."""

    def __init__(self, message: ClassifiedMessage, reason: str) -> None:
        self.message = message
        self.reason = reason
        super().__init__(f"Message {message.id} is unrouted: {reason}")


class ChannelUnavailable(RoutingError):
    """The destination channel is unknown or not delivery-ready."""

    def __init__(self, channel_id: int, rule_id: Optional[int] = None) -> None:
        self.channel_id = channel_id
        self.rule_id = rule_id
        super().__init__(f"Channel {channel_id} is not delivery-ready")


class DeliveryTransientFailure(RoutingError):
    """Raised by delivery adapters for network or remote errors worth retrying."""


class DeliveryFailed(RoutingError):
    """Delivery gave up; the record was stored in the ``failed`` state."""

    def __init__(self, record: DispatchRecord, reason: str) -> None:
        self.record = record
        self.reason = reason
        super().__init__(f"Delivery of {record.message_id} to channel {record.channel_id} failed: {reason}")


class EscalationExhausted(RoutingError):
    """Escalation cap reached or no more urgent rule could take the message."""

    def __init__(self, record: DispatchRecord, reason: str) -> None:
        self.record = record
        self.reason = reason
        super().__init__(f"Escalation for {record.message_id} abandoned: {reason}")
