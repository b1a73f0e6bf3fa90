"""Routing statistics: engine-wide counters plus per-rule success rates."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Tuple


@dataclass
class RuleStats:
    rule_id: int
    total_routed: int = 0
    successful_routes: int = 0

    @property
    def success_rate(self) -> float:
        return self.successful_routes / self.total_routed if self.total_routed else 0.0


@dataclass(frozen=True)
class RoutingStatistics:
    """Point-in-time copy of the counters."""

    total_routed: int
    successful_routes: int
    failed_routes: int
    unrouted: int
    escalations: int
    average_routing_ms: float
    rules: Tuple[RuleStats, ...] = ()

    @property
    def success_rate(self) -> float:
        return self.successful_routes / self.total_routed if self.total_routed else 0.0


@dataclass
class RoutingStats:
    """Mutable counters updated by the engine and the escalation state machine.

    ``total_routed`` counts messages that resolved to at least one rule; a
    message is successful when any of its targets received it. Per-rule
    counters count every dispatch attempt through the rule, escalations
    included.
    """

    total_routed: int = 0
    successful_routes: int = 0
    failed_routes: int = 0
    unrouted: int = 0
    escalations: int = 0
    average_routing_ms: float = 0.0
    _rules: Dict[int, RuleStats] = field(default_factory=dict, repr=False)

    def record_unrouted(self) -> None:
        self.unrouted += 1

    def record_route(self, success: bool, elapsed_seconds: float) -> None:
        self.total_routed += 1
        if success:
            self.successful_routes += 1
        else:
            self.failed_routes += 1
        elapsed_ms = elapsed_seconds * 1000.0
        # Running mean over every resolved message.
        self.average_routing_ms += (elapsed_ms - self.average_routing_ms) / self.total_routed

    def record_rule(self, rule_id: int, success: bool) -> None:
        stats = self._rules.setdefault(rule_id, RuleStats(rule_id))
        stats.total_routed += 1
        if success:
            stats.successful_routes += 1

    def record_escalation(self) -> None:
        self.escalations += 1

    def for_rule(self, rule_id: int) -> RuleStats:
        stats = self._rules.get(rule_id)
        if stats is None:
            return RuleStats(rule_id)
        return RuleStats(stats.rule_id, stats.total_routed, stats.successful_routes)

    def snapshot(self) -> RoutingStatistics:
        return RoutingStatistics(
            total_routed=self.total_routed,
            successful_routes=self.successful_routes,
            failed_routes=self.failed_routes,
            unrouted=self.unrouted,
            escalations=self.escalations,
            average_routing_ms=self.average_routing_ms,
            rules=tuple(self.for_rule(rule_id) for rule_id in sorted(self._rules)),
        )

    def reset(self) -> None:
        self.total_routed = self.successful_routes = self.failed_routes = 0
        self.unrouted = self.escalations = 0
        self.average_routing_ms = 0.0
        self._rules.clear()
