from __future__ import annotations

from dataclasses import replace

import pytest

from fakes import CATEGORIES, CHANNELS, FakeStore, rule
from opsroute.core.categories import CategoryRegistry
from opsroute.core.channels import ChannelRegistry
from opsroute.core.errors import ConfigInvalid
from opsroute.core.rule_table import RoutingRuleTable


def _table(store=None) -> RoutingRuleTable:
    return RoutingRuleTable(CategoryRegistry(CATEGORIES), ChannelRegistry(CHANNELS), store=store)


def test_upsert_rejects_dangling_references() -> None:
    table = _table()

    with pytest.raises(ConfigInvalid) as excinfo:
        table.upsert(rule(1, category_id=42, channel_id=99))

    problems = " | ".join(excinfo.value.problems)
    assert "unknown category_id 42" in problems
    assert "unknown channel_id 99" in problems
    assert table.load_all() == []


def test_upsert_rejects_bad_conditions_and_priority() -> None:
    table = _table()

    with pytest.raises(ConfigInvalid) as excinfo:
        table.upsert(rule(1, priority=0, ai=["PANIC"], severities=["severe"]))

    problems = " | ".join(excinfo.value.problems)
    assert "priority must be a positive integer" in problems
    assert "unknown AI categories ['PANIC']" in problems
    assert "unknown severities ['severe']" in problems


def test_escalation_requires_positive_timeout() -> None:
    table = _table()
    bad = replace(rule(1), escalation_enabled=True, escalation_timeout_minutes=0)

    with pytest.raises(ConfigInvalid):
        table.upsert(bad)


def test_upsert_and_delete_publish_new_snapshots_and_persist() -> None:
    store = FakeStore()
    table = _table(store)
    first = table.snapshot()

    table.upsert(rule(1))
    table.upsert(rule(2, active=False))
    in_flight = table.snapshot()
    table.upsert(rule(1, priority=3))

    assert [r.id for r in table.load_all()] == [1, 2]
    assert [r.id for r in table.load_active()] == [1]
    assert table.get(1).priority == 3
    assert in_flight.get(1).priority == 1
    assert first.rules == ()
    assert [r.id for r in store.saved_rules] == [1, 2, 1]

    assert table.delete(2) is True
    assert table.delete(2) is False
    assert store.deleted_rules == [2]


def test_replace_all_is_all_or_nothing() -> None:
    table = _table()
    table.replace_all([rule(1), rule(2)])

    with pytest.raises(ConfigInvalid) as excinfo:
        table.replace_all([rule(3), rule(3), rule(4, channel_id=77)])

    assert any("duplicate id" in problem for problem in excinfo.value.problems)
    assert [r.id for r in table.load_all()] == [1, 2]


def test_referencing_finds_rules_by_category_or_channel() -> None:
    table = _table()
    table.replace_all([rule(1, category_id=1, channel_id=1), rule(2, category_id=2, channel_id=3)])

    assert [r.id for r in table.referencing(category_ids={2})] == [2]
    assert [r.id for r in table.referencing(channel_ids={1})] == [1]
    assert table.referencing() == []
