"""Routing Rule Table with write-time validation and snapshot publishing."""

from __future__ import annotations

import logging
import threading
from typing import AbstractSet, Dict, Iterable, List, Optional, Sequence, Tuple

from opsroute.core.categories import CategoryRegistry
from opsroute.core.channels import ChannelRegistry
from opsroute.core.errors import ConfigInvalid
from opsroute.core.models import AI_CATEGORIES, SEVERITIES, RoutingRule
from opsroute.core.ports import ConfigStorePort

LOGGER = logging.getLogger(__name__)


class RuleSnapshot:
    """Immutable, versioned view of the rule table.

    In-flight resolutions keep using the snapshot they started with.
    """

    def __init__(self, version: int, rules: Sequence[RoutingRule]) -> None:
        self.version = version
        self.rules: Tuple[RoutingRule, ...] = tuple(sorted(rules, key=lambda r: r.id))
        self.active: Tuple[RoutingRule, ...] = tuple(r for r in self.rules if r.is_active)
        self._by_id: Dict[int, RoutingRule] = {r.id: r for r in self.rules}

    def get(self, rule_id: int) -> Optional[RoutingRule]:
        return self._by_id.get(rule_id)


def validate_rule(rule: RoutingRule, category_ids: AbstractSet[int], channel_ids: AbstractSet[int]) -> List[str]:
    """Return the problems of a single rule against the given entity ids."""

    label = f"rule {rule.id} ({rule.name!r})"
    problems: List[str] = []
    if not isinstance(rule.id, int) or rule.id <= 0:
        problems.append(f"{label}: id must be a positive integer")
    if not (rule.name or "").strip():
        problems.append(f"{label}: name is required")
    if rule.category_id not in category_ids:
        problems.append(f"{label}: unknown category_id {rule.category_id}")
    if rule.channel_id not in channel_ids:
        problems.append(f"{label}: unknown channel_id {rule.channel_id}")
    if isinstance(rule.priority, bool) or not isinstance(rule.priority, int) or rule.priority < 1:
        problems.append(f"{label}: priority must be a positive integer")
    unknown_severities = set(rule.accepted_severities) - set(SEVERITIES)
    if unknown_severities:
        problems.append(f"{label}: unknown severities {sorted(unknown_severities)}")
    unknown_ai = set(rule.accepted_ai_categories) - AI_CATEGORIES
    if unknown_ai:
        problems.append(f"{label}: unknown AI categories {sorted(unknown_ai)}")
    if rule.escalation_enabled and (
        not isinstance(rule.escalation_timeout_minutes, int) or rule.escalation_timeout_minutes <= 0
    ):
        problems.append(f"{label}: escalation_timeout_minutes must be > 0 when escalation is enabled")
    return problems


def validate_rules(
    batch: Sequence[RoutingRule],
    category_ids: AbstractSet[int],
    channel_ids: AbstractSet[int],
) -> List[str]:
    problems: List[str] = []
    seen: set[int] = set()
    for rule in batch:
        if rule.id in seen:
            problems.append(f"rule {rule.id} ({rule.name!r}): duplicate id")
        seen.add(rule.id)
        problems.extend(validate_rule(rule, category_ids, channel_ids))
    return problems


class RoutingRuleTable:
    """CRUD surface over routing rules.

    Writers take an exclusive lock and publish a new snapshot; readers grab
    whatever snapshot is current and never block.
    """

    def __init__(
        self,
        categories: CategoryRegistry,
        channels: ChannelRegistry,
        rules: Iterable[RoutingRule] = (),
        store: Optional[ConfigStorePort] = None,
    ) -> None:
        self._categories = categories
        self._channels = channels
        self._store = store
        self._lock = threading.RLock()
        self._snapshot = RuleSnapshot(0, ())
        batch = list(rules)
        if batch:
            self.replace_all(batch)

    @property
    def writer_lock(self) -> threading.RLock:
        """Lock held by every writer of the table, bulk reseeds included."""

        return self._lock

    def snapshot(self) -> RuleSnapshot:
        return self._snapshot

    def load_active(self) -> List[RoutingRule]:
        return list(self._snapshot.active)

    def load_all(self) -> List[RoutingRule]:
        return list(self._snapshot.rules)

    def get(self, rule_id: int) -> Optional[RoutingRule]:
        return self._snapshot.get(rule_id)

    def referencing(
        self,
        category_ids: AbstractSet[int] = frozenset(),
        channel_ids: AbstractSet[int] = frozenset(),
    ) -> List[RoutingRule]:
        """Rules pointing at any of the given categories or channels."""

        return [
            rule
            for rule in self._snapshot.rules
            if rule.category_id in category_ids or rule.channel_id in channel_ids
        ]

    def prepare(
        self,
        batch: Sequence[RoutingRule],
        category_ids: Optional[AbstractSet[int]] = None,
        channel_ids: Optional[AbstractSet[int]] = None,
    ) -> RuleSnapshot:
        """Validate a batch against the given (or currently published) entities."""

        if category_ids is None:
            category_ids = self._categories.snapshot().ids
        if channel_ids is None:
            channel_ids = self._channels.snapshot().ids
        problems = validate_rules(batch, category_ids, channel_ids)
        if problems:
            raise ConfigInvalid(problems)
        return RuleSnapshot(self._snapshot.version + 1, batch)

    def publish(self, snapshot: RuleSnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot

    def replace_all(self, batch: Sequence[RoutingRule]) -> None:
        """Atomically replace the whole table: all rules are installed or none."""

        with self._lock:
            self.publish(self.prepare(batch))
        LOGGER.info("%s routing rules are loaded (%s active)", len(batch), len(self._snapshot.active))

    def upsert(self, rule: RoutingRule) -> None:
        """Insert or replace a single rule by id."""

        with self._lock:
            problems = validate_rule(rule, self._categories.snapshot().ids, self._channels.snapshot().ids)
            if problems:
                raise ConfigInvalid(problems)
            if self._store is not None:
                self._store.save_rule(rule)
            rules = [existing for existing in self._snapshot.rules if existing.id != rule.id]
            rules.append(rule)
            self._snapshot = RuleSnapshot(self._snapshot.version + 1, rules)
        LOGGER.info("Rule %s (%s) saved", rule.id, rule.name)

    def delete(self, rule_id: int) -> bool:
        """Delete a rule; returns False when no such rule exists."""

        with self._lock:
            if self._snapshot.get(rule_id) is None:
                return False
            if self._store is not None:
                self._store.delete_rule(rule_id)
            rules = [existing for existing in self._snapshot.rules if existing.id != rule_id]
            self._snapshot = RuleSnapshot(self._snapshot.version + 1, rules)
        LOGGER.info("Rule %s deleted", rule_id)
        return True
