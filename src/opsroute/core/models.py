"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional, Tuple

AI_CATEGORIES: FrozenSet[str] = frozenset({"INSTRUCTION", "ESCALATION", "COMPLAINT", "URGENT", "CASUAL"})

# Ordered from least to most severe.
SEVERITIES: Tuple[str, ...] = ("low", "medium", "high", "critical")

KEYWORD_LANGUAGES: FrozenSet[str] = frozenset({"en", "hi", "hinglish"})


class DispatchState(str, Enum):
    """Lifecycle states of a dispatch record."""

    ROUTED = "routed"
    ACKNOWLEDGED = "acknowledged"
    TIMED_OUT = "timed_out"
    ESCALATED = "escalated"
    ABANDONED = "abandoned"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({DispatchState.ACKNOWLEDGED, DispatchState.ABANDONED, DispatchState.FAILED})


@dataclass(frozen=True)
class Keyword:
    """A single category keyword tagged with its language."""

    text: str
    language: str = "en"


@dataclass(frozen=True)
class Category:
    """Canonical issue category (e.g. "Trainer Absence")."""

    id: int
    name: str
    department: str
    keywords: Tuple[Keyword, ...] = ()
    priority_weight: int = 3
    escalation_threshold: int = 1
    is_active: bool = True
    description: str = ""


@dataclass(frozen=True)
class Channel:
    """A WhatsApp group that can receive dispatched notifications."""

    id: int
    name: str
    group_id: str
    department: str = ""


@dataclass(frozen=True)
class RoutingRule:
    """Maps a category to a channel under AI-category/severity conditions.

    Empty ``accepted_ai_categories`` or ``accepted_severities`` accept every
    value.
    """

    id: int
    name: str
    category_id: int
    channel_id: int
    accepted_ai_categories: FrozenSet[str] = frozenset()
    accepted_severities: FrozenSet[str] = frozenset()
    priority: int = 1
    is_active: bool = True
    escalation_enabled: bool = False
    escalation_timeout_minutes: int = 0
    description: str = ""


@dataclass(frozen=True)
class ClassifiedMessage:
    """Inbound message as handed over by the classification service."""

    id: str
    text: str
    detected_category_name: Optional[str]
    ai_category: str
    severity: str
    received_at: datetime
    matched_keywords: Tuple[str, ...] = ()
    sender: Optional[str] = None


@dataclass(frozen=True)
class Notification:
    """Delivery payload handed to the delivery collaborator."""

    idempotency_key: str
    message_id: str
    category_name: str
    department: str
    ai_category: str
    severity: str
    excerpt: str
    rule_name: str
    channel_name: str
    priority: int
    escalation_level: int
    received_at: datetime
    sender: Optional[str] = None
    matched_keywords: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DispatchRecord:
    """Audit/state entity for one delivery of a message to one channel."""

    record_id: str
    message_id: str
    rule_id: int
    channel_id: int
    dispatched_at: datetime
    state: DispatchState = DispatchState.ROUTED
    escalation_level: int = 0
    escalated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    attempts: int = 1
    detail: str = ""


@dataclass(frozen=True)
class OperatorEvent:
    """Operator-facing event: unrouted messages, unavailable channels, abandoned escalations."""

    kind: str
    created_at: datetime
    detail: str
    message_id: Optional[str] = None
    rule_id: Optional[int] = None
    channel_id: Optional[int] = None
    record_id: Optional[str] = None
