"""Builds categories, channels and routing rules from the config.json seed.

The seed refers to categories and channels by name so operators can edit it
by hand; ids are assigned here when the file omits them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from opsroute.core.errors import ConfigInvalid
from opsroute.core.keywords import build_keywords, normalize_text
from opsroute.core.models import Category, Channel, RoutingRule

WILDCARD = "*"


@dataclass(frozen=True)
class Seed:
    categories: Tuple[Category, ...]
    channels: Tuple[Channel, ...]
    rules: Tuple[RoutingRule, ...]


def _accepted(value: Any, label: str, field_name: str, problems: List[str], upper: bool) -> FrozenSet[str]:
    """Parse an accepted-values condition: "*" (or missing) means any value."""

    if value is None or value == WILDCARD:
        return frozenset()
    if isinstance(value, str):
        value = [value]
    if not value:
        # An empty list reads as "nothing accepted"; force the explicit form.
        problems.append(f"{label}: {field_name} is empty, use \"*\" to accept any value")
        return frozenset()
    return frozenset(str(item).upper() if upper else str(item).lower() for item in value)


def _default_escalation(priority: int) -> Tuple[bool, int]:
    """Escalate the two most urgent tiers; tier 1 after 30 minutes, others after 60."""

    if isinstance(priority, int) and priority <= 2:
        return True, 30 if priority <= 1 else 60
    return False, 0


def _parse_categories(raw: List[Dict[str, Any]]) -> List[Category]:
    categories = []
    for index, entry in enumerate(raw, start=1):
        categories.append(
            Category(
                id=int(entry.get("id", index)),
                name=str(entry.get("name", "")).strip(),
                department=str(entry.get("department", "")).strip(),
                keywords=build_keywords(entry.get("keywords", [])),
                priority_weight=int(entry.get("priority_weight", 3)),
                escalation_threshold=int(entry.get("escalation_threshold", 1)),
                is_active=bool(entry.get("is_active", True)),
                description=str(entry.get("description", "")),
            )
        )
    return categories


def _parse_channels(raw: List[Dict[str, Any]]) -> List[Channel]:
    return [
        Channel(
            id=int(entry.get("id", index)),
            name=str(entry.get("name", "")).strip(),
            group_id=str(entry.get("group_id", "")).strip(),
            department=str(entry.get("department", "")).strip(),
        )
        for index, entry in enumerate(raw, start=1)
    ]


def _lookup(index: Dict[str, int], name: Optional[str]) -> Optional[int]:
    if not name:
        return None
    return index.get(normalize_text(name))


def _parse_rules(
    raw: List[Dict[str, Any]],
    categories: List[Category],
    channels: List[Channel],
    problems: List[str],
) -> List[RoutingRule]:
    category_ids = {normalize_text(c.name): c.id for c in categories}
    channel_ids = {normalize_text(c.name): c.id for c in channels}
    explicit_ids = {int(entry["id"]) for entry in raw if "id" in entry}
    next_id = 1
    rules: List[RoutingRule] = []

    for position, entry in enumerate(raw, start=1):
        name = str(entry.get("name", "")).strip()
        label = f"rule #{position} ({name!r})"

        category_names = entry.get("categories")
        if category_names is None:
            category_names = [entry.get("category")]
        if "id" in entry and len(category_names) > 1:
            problems.append(f"{label}: an explicit id cannot cover several categories")
            continue

        channel_id = _lookup(channel_ids, entry.get("channel"))
        if channel_id is None:
            problems.append(f"{label}: unknown channel {entry.get('channel')!r}")
            continue

        ai_categories = _accepted(entry.get("ai_categories"), label, "ai_categories", problems, upper=True)
        severities = _accepted(entry.get("severities"), label, "severities", problems, upper=False)
        priority = entry.get("priority", 1)
        default_enabled, default_timeout = _default_escalation(priority)
        escalation_enabled = bool(entry.get("escalation_enabled", default_enabled))
        timeout = entry.get("escalation_timeout_minutes", default_timeout if escalation_enabled else 0)

        for category_name in category_names:
            category_id = _lookup(category_ids, category_name)
            if category_id is None:
                problems.append(f"{label}: unknown category {category_name!r}")
                continue
            if "id" in entry:
                rule_id = int(entry["id"])
            else:
                while next_id in explicit_ids:
                    next_id += 1
                rule_id = next_id
                next_id += 1
            rule_name = name if len(category_names) == 1 else f"{name}: {category_name}"
            rules.append(
                RoutingRule(
                    id=rule_id,
                    name=rule_name,
                    category_id=category_id,
                    channel_id=channel_id,
                    accepted_ai_categories=ai_categories,
                    accepted_severities=severities,
                    priority=priority,
                    is_active=bool(entry.get("is_active", True)),
                    escalation_enabled=escalation_enabled,
                    escalation_timeout_minutes=timeout,
                    description=str(entry.get("description", "")),
                )
            )
    return rules


def parse_seed(raw: Dict[str, Any]) -> Seed:
    """Parse the ``categories``, ``channels`` and ``rules`` sections.

    Name references and condition syntax are checked here; the registries
    run the full validation when the seed is installed.
    """

    problems: List[str] = []
    categories = _parse_categories(raw.get("categories", []))
    channels = _parse_channels(raw.get("channels", []))
    rules = _parse_rules(raw.get("rules", []), categories, channels, problems)
    if problems:
        raise ConfigInvalid(problems)
    return Seed(tuple(categories), tuple(channels), tuple(rules))
