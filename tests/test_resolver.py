from __future__ import annotations

import random

from fakes import CATEGORIES, message, rule
from opsroute.core.categories import CategorySnapshot
from opsroute.core.resolver import escalation_candidates, resolve, rule_accepts, unrouted_reason

SNAPSHOT = CategorySnapshot(1, CATEGORIES)


def test_resolve_orders_by_priority_then_id() -> None:
    rules = [rule(5, priority=2), rule(3, priority=1), rule(4, priority=1), rule(9, category_id=2)]

    matched = resolve(message(), rules, SNAPSHOT)

    assert [r.id for r in matched] == [3, 4, 5]


def test_resolve_is_deterministic_regardless_of_input_order() -> None:
    rules = [rule(i, priority=i % 3 + 1) for i in range(1, 12)]
    expected = resolve(message(), rules, SNAPSHOT)

    for seed in range(5):
        shuffled = list(rules)
        random.Random(seed).shuffle(shuffled)
        assert resolve(message(), shuffled, SNAPSHOT) == expected


def test_empty_condition_sets_accept_any_value() -> None:
    wildcard = rule(1)
    strict = rule(2, ai=["URGENT"], severities=["critical"])

    assert rule_accepts(wildcard, "CASUAL", "low")
    assert not rule_accepts(strict, "URGENT", "high")
    assert not rule_accepts(strict, "COMPLAINT", "critical")
    assert rule_accepts(strict, "URGENT", "critical")


def test_resolve_filters_on_ai_category_and_severity() -> None:
    rules = [
        rule(1, ai=["COMPLAINT"], severities=["medium", "high"]),
        rule(2, ai=["ESCALATION"], severities=["high"], priority=2),
    ]

    assert [r.id for r in resolve(message(ai_category="ESCALATION"), rules, SNAPSHOT)] == [2]
    assert [r.id for r in resolve(message(ai_category="COMPLAINT", severity="medium"), rules, SNAPSHOT)] == [1]
    assert resolve(message(ai_category="CASUAL", severity="low"), rules, SNAPSHOT) == []


def test_resolve_skips_inactive_rules_and_unknown_channels() -> None:
    rules = [rule(1, active=False), rule(2, channel_id=99), rule(3, priority=4)]

    matched = resolve(message(), rules, SNAPSHOT, channel_ids=frozenset({1, 2, 3}))

    assert [r.id for r in matched] == [3]


def test_resolve_matches_category_name_case_insensitively() -> None:
    assert [r.id for r in resolve(message(category="TRAINER ABSENCE"), [rule(1)], SNAPSHOT)] == [1]
    assert resolve(message(category="Unknown"), [rule(1)], SNAPSHOT) == []
    assert resolve(message(category=None), [rule(1)], SNAPSHOT) == []


def test_escalation_candidates_are_more_urgent_nearest_first() -> None:
    current = rule(10, priority=4)
    rules = [
        current,
        rule(1, priority=1),
        rule(2, priority=3),
        rule(3, priority=3),
        rule(4, priority=5),
        rule(5, priority=2, category_id=2),
        rule(6, priority=2, active=False),
    ]

    assert [r.id for r in escalation_candidates(current, rules)] == [2, 3, 1]


def test_unrouted_reason_explains_empty_resolution() -> None:
    assert unrouted_reason(message(category=None), SNAPSHOT) == "no detected category"
    assert "unknown category" in unrouted_reason(message(category="Gym Closed"), SNAPSHOT)
    assert "no active rule accepts ESCALATION/high" in unrouted_reason(message(), SNAPSHOT)
