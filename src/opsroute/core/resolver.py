"""Rule resolution logic (core domain).

Everything here is pure: the same message against the same snapshots always
yields the same ordered rule list.
"""

from __future__ import annotations

import logging
from typing import AbstractSet, Iterable, List, Optional

from opsroute.core.categories import CategorySnapshot
from opsroute.core.models import Category, ClassifiedMessage, RoutingRule

LOGGER = logging.getLogger(__name__)


def _sort_key(rule: RoutingRule) -> tuple[int, int]:
    return rule.priority, rule.id


def rule_accepts(rule: RoutingRule, ai_category: str, severity: str) -> bool:
    """Check the AI-category and severity conditions; an empty set accepts all."""

    if rule.accepted_ai_categories and ai_category not in rule.accepted_ai_categories:
        return False
    if rule.accepted_severities and severity not in rule.accepted_severities:
        return False
    return True


def _channel_known(rule: RoutingRule, channel_ids: Optional[AbstractSet[int]]) -> bool:
    if channel_ids is None or rule.channel_id in channel_ids:
        return True
    LOGGER.warning("Skipping rule %s (%s): channel %s is not loaded", rule.id, rule.name, rule.channel_id)
    return False


def find_category(message: ClassifiedMessage, categories: CategorySnapshot) -> Optional[Category]:
    """Return the active category named by the message, if any."""

    category = categories.find_by_name(message.detected_category_name)
    if category is None or not category.is_active:
        return None
    return category


def resolve(
    message: ClassifiedMessage,
    rules: Iterable[RoutingRule],
    categories: CategorySnapshot,
    channel_ids: Optional[AbstractSet[int]] = None,
) -> List[RoutingRule]:
    """Return the matching rules, most urgent first.

    Matching logic:
    - Only active rules for the message's detected category are considered.
    - The rule must accept the message's AI category and severity.
    - Rules pointing at channels that are not loaded are skipped with a warning.
    - Order is priority ascending, then rule id ascending.

    An empty list means the message is unrouted.
    """

    category = find_category(message, categories)
    if category is None:
        return []

    matches = [
        rule
        for rule in rules
        if rule.is_active
        and rule.category_id == category.id
        and rule_accepts(rule, message.ai_category, message.severity)
        and _channel_known(rule, channel_ids)
    ]
    return sorted(matches, key=_sort_key)


def escalation_candidates(
    current: RoutingRule,
    rules: Iterable[RoutingRule],
    channel_ids: Optional[AbstractSet[int]] = None,
) -> List[RoutingRule]:
    """Return active rules of the same category at more urgent tiers.

    The nearest tier comes first (highest priority value below the current
    one), ties by id. AI-category and severity filters are not re-applied:
    escalation tiers exist to take over what the current tier ignored.
    """

    candidates = [
        rule
        for rule in rules
        if rule.is_active
        and rule.id != current.id
        and rule.category_id == current.category_id
        and rule.priority < current.priority
        and _channel_known(rule, channel_ids)
    ]
    return sorted(candidates, key=lambda rule: (-rule.priority, rule.id))


def unrouted_reason(message: ClassifiedMessage, categories: CategorySnapshot) -> str:
    """Human-readable reason for an empty resolution."""

    if not message.detected_category_name:
        return "no detected category"
    category = categories.find_by_name(message.detected_category_name)
    if category is None:
        return f"unknown category {message.detected_category_name!r}"
    if not category.is_active:
        return f"category {category.name!r} is inactive"
    return f"no active rule accepts {message.ai_category}/{message.severity} for {category.name!r}"
