"""Consistency Guard: atomic configuration replacement with cascading deletes.

Dependent rules are dropped before the categories or channels they point to,
and a batch of new rules may only reference entities from the batch being
installed. Everything is validated before anything is written, the store
commits in one transaction, and only then are the new snapshots published.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Sequence, Tuple

from opsroute.core.categories import CategoryRegistry
from opsroute.core.channels import ChannelRegistry
from opsroute.core.errors import ConfigInvalid
from opsroute.core.events import OperatorEventBus
from opsroute.core.models import Category, Channel, RoutingRule
from opsroute.core.ports import ConfigStorePort
from opsroute.core.rule_table import RoutingRuleTable

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReseedReport:
    """Outcome of a committed configuration change."""

    categories: int
    channels: int
    rules: int
    removed_category_ids: FrozenSet[int] = frozenset()
    removed_channel_ids: FrozenSet[int] = frozenset()
    cascaded_rule_ids: Tuple[int, ...] = ()


class ConsistencyGuard:
    """Single entry point for bulk configuration writes."""

    def __init__(
        self,
        categories: CategoryRegistry,
        channels: ChannelRegistry,
        rules: RoutingRuleTable,
        store: Optional[ConfigStorePort] = None,
        events: Optional[OperatorEventBus] = None,
    ) -> None:
        self._categories = categories
        self._channels = channels
        self._rules = rules
        self._store = store
        self._events = events or OperatorEventBus()
        # Shared with single-rule writers: no upsert between prepare and publish.
        self._lock = rules.writer_lock

    def _commit(
        self,
        categories: Sequence[Category],
        channels: Sequence[Channel],
        rules: Sequence[RoutingRule],
        cascaded: Tuple[int, ...] = (),
        persist: bool = True,
    ) -> ReseedReport:
        with self._lock:
            try:
                category_snapshot = self._categories.prepare(categories)
                channel_snapshot = self._channels.prepare(channels)
                rule_snapshot = self._rules.prepare(rules, category_snapshot.ids, channel_snapshot.ids)
            except ConfigInvalid as exc:
                self._events.config_rejected(exc.problems)
                raise

            if persist and self._store is not None:
                self._store.save_configuration(categories, channels, rules)

            removed_categories = self._categories.publish(category_snapshot)
            removed_channels = self._channels.publish(channel_snapshot)
            self._rules.publish(rule_snapshot)

        report = ReseedReport(
            categories=len(categories),
            channels=len(channels),
            rules=len(rules),
            removed_category_ids=removed_categories,
            removed_channel_ids=removed_channels,
            cascaded_rule_ids=cascaded,
        )
        LOGGER.info(
            "Configuration committed: %s categories, %s channels, %s rules (%s cascaded)",
            report.categories,
            report.channels,
            report.rules,
            len(cascaded),
        )
        return report

    def reseed(
        self,
        categories: Sequence[Category],
        channels: Sequence[Channel],
        rules: Sequence[RoutingRule],
    ) -> ReseedReport:
        """Replace the whole configuration; rules may only reference the new batches."""

        return self._commit(list(categories), list(channels), list(rules))

    def _cascade(
        self,
        category_ids: FrozenSet[int] = frozenset(),
        channel_ids: FrozenSet[int] = frozenset(),
    ) -> Tuple[List[RoutingRule], Tuple[int, ...]]:
        doomed = self._rules.referencing(category_ids, channel_ids)
        doomed_ids = tuple(sorted(rule.id for rule in doomed))
        if doomed_ids:
            LOGGER.warning("Cascading delete of rules %s", list(doomed_ids))
        survivors = [rule for rule in self._rules.load_all() if rule.id not in doomed_ids]
        return survivors, doomed_ids

    def replace_categories(self, batch: Sequence[Category]) -> ReseedReport:
        """Replace categories, deleting rules that reference dropped ones first."""

        with self._lock:
            removed = self._categories.snapshot().ids - {category.id for category in batch}
            survivors, cascaded = self._cascade(category_ids=frozenset(removed))
            return self._commit(list(batch), self._channels.load_all(), survivors, cascaded)

    def replace_channels(self, batch: Sequence[Channel]) -> ReseedReport:
        """Replace channels, deleting rules that reference dropped ones first."""

        with self._lock:
            removed = self._channels.snapshot().ids - {channel.id for channel in batch}
            survivors, cascaded = self._cascade(channel_ids=frozenset(removed))
            return self._commit(self._categories.load_all(), list(batch), survivors, cascaded)

    def delete_category(self, category_id: int) -> ReseedReport:
        with self._lock:
            if self._categories.get(category_id) is None:
                raise ConfigInvalid([f"unknown category {category_id}"])
            batch = [c for c in self._categories.load_all() if c.id != category_id]
            return self.replace_categories(batch)

    def delete_channel(self, channel_id: int) -> ReseedReport:
        with self._lock:
            if self._channels.get(channel_id) is None:
                raise ConfigInvalid([f"unknown channel {channel_id}"])
            batch = [c for c in self._channels.load_all() if c.id != channel_id]
            return self.replace_channels(batch)

    def load_from_store(self) -> ReseedReport:
        """Publish whatever the store holds, validated like any other reseed."""

        if self._store is None:
            raise RuntimeError("No configuration store configured")
        categories, channels, rules = self._store.load_configuration()
        return self._commit(list(categories), list(channels), list(rules), persist=False)
