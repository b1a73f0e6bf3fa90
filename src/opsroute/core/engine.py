"""Routing engine: the public entry point tying registries, resolver,
dispatcher and escalation together.

This module is integration-agnostic. It only relies on ports for storage,
delivery and transport liveness, so other frontends or adapters plug in
without changes here.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Awaitable, Callable, Iterable, List, Optional

from opsroute.core.audit import DispatchLog
from opsroute.core.categories import CategoryRegistry, CategorySnapshot
from opsroute.core.channels import ChannelRegistry
from opsroute.core.config import EngineConfig
from opsroute.core.consistency import ConsistencyGuard
from opsroute.core.dispatcher import Dispatcher
from opsroute.core.errors import RoutingError, UnresolvedMessage
from opsroute.core.escalation import EscalationStateMachine
from opsroute.core.events import OperatorEventBus
from opsroute.core.models import ClassifiedMessage, DispatchRecord, RoutingRule
from opsroute.core.ports import (
    AuditPort,
    ConfigStorePort,
    DeliveryPort,
    EventSinkPort,
    LivenessPort,
    SchedulerPort,
)
from opsroute.core.resolver import resolve, unrouted_reason
from opsroute.core.rule_table import RoutingRuleTable
from opsroute.core.scheduling import AsyncioScheduler
from opsroute.core.stats import RoutingStats

LOGGER = logging.getLogger(__name__)


class RoutingEngine:
    """Routes classified messages and tracks their acknowledgment."""

    def __init__(
        self,
        categories: CategoryRegistry,
        channels: ChannelRegistry,
        rules: RoutingRuleTable,
        guard: ConsistencyGuard,
        dispatcher: Dispatcher,
        escalations: EscalationStateMachine,
        events: OperatorEventBus,
        config: EngineConfig = EngineConfig(),
        stats: Optional[RoutingStats] = None,
    ) -> None:
        self.categories = categories
        self.channels = channels
        self.rules = rules
        self.guard = guard
        self.dispatcher = dispatcher
        self.escalations = escalations
        self.events = events
        self._config = config
        self.stats = stats or RoutingStats()

    @classmethod
    def create(
        cls,
        delivery: DeliveryPort,
        liveness: Optional[LivenessPort] = None,
        scheduler: Optional[SchedulerPort] = None,
        store: Optional[ConfigStorePort] = None,
        audit_sinks: Iterable[AuditPort] = (),
        event_sinks: Iterable[EventSinkPort] = (),
        config: EngineConfig = EngineConfig(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "RoutingEngine":
        """Wire an engine from its collaborators, with empty configuration."""

        scheduler = scheduler or AsyncioScheduler()
        stats = RoutingStats()
        events = OperatorEventBus(event_sinks, now=scheduler.now)
        log = DispatchLog(audit_sinks, retain=config.history_size)
        categories = CategoryRegistry()
        channels = ChannelRegistry(liveness=liveness, ttl_seconds=config.liveness.ttl_seconds)
        rules = RoutingRuleTable(categories, channels, store=store)
        guard = ConsistencyGuard(categories, channels, rules, store=store, events=events)
        dispatcher = Dispatcher(
            categories,
            channels,
            delivery,
            log=log,
            events=events,
            config=config.dispatch,
            now=scheduler.now,
            sleep=sleep,
        )
        escalations = EscalationStateMachine(
            dispatcher,
            rules,
            channels,
            scheduler,
            log,
            events=events,
            config=config.escalation,
            stats=stats,
        )
        return cls(categories, channels, rules, guard, dispatcher, escalations, events, config, stats)

    @property
    def config(self) -> EngineConfig:
        return self._config

    def _with_category(self, message: ClassifiedMessage, categories: CategorySnapshot) -> ClassifiedMessage:
        """Fill in a missing detected category from keyword hits."""

        if message.detected_category_name:
            return message
        detected = categories.detect(message.text)
        if detected is None:
            return message
        category, hits = detected
        LOGGER.info("Message %s has no category; keywords point to %s", message.id, category.name)
        return replace(
            message,
            detected_category_name=category.name,
            matched_keywords=message.matched_keywords or tuple(hits),
        )

    def resolve(self, message: ClassifiedMessage) -> List[RoutingRule]:
        """Dry-run resolution against the current snapshots."""

        categories = self.categories.snapshot()
        message = self._with_category(message, categories)
        return resolve(message, self.rules.snapshot().active, categories, self.channels.snapshot().ids)

    def _targets(self, matched: List[RoutingRule]) -> List[RoutingRule]:
        if not self._config.fan_out:
            return matched[:1]
        seen: set[int] = set()
        targets: List[RoutingRule] = []
        for rule in matched:
            if rule.channel_id in seen:
                continue
            seen.add(rule.channel_id)
            targets.append(rule)
        return targets

    async def _dispatch_and_track(self, message: ClassifiedMessage, rule: RoutingRule) -> DispatchRecord:
        record = await self.dispatcher.dispatch(message, rule)
        self.escalations.track(message, rule, record)
        return record

    async def route(self, message: ClassifiedMessage) -> List[DispatchRecord]:
        """Resolve and dispatch one message.

        Snapshots are taken once at the start, so configuration changes made
        while the message is in flight only affect later messages.

        Raises ``UnresolvedMessage`` when no rule matches, or the dispatch
        error when no target could be reached.
        """

        started = time.monotonic()
        categories = self.categories.snapshot()
        rules = self.rules.snapshot()
        channel_ids = self.channels.snapshot().ids

        message = self._with_category(message, categories)
        matched = resolve(message, rules.active, categories, channel_ids)
        if not matched:
            reason = unrouted_reason(message, categories)
            self.stats.record_unrouted()
            self.events.unrouted(message, reason)
            raise UnresolvedMessage(message, reason)

        targets = self._targets(matched)
        results = await asyncio.gather(
            *(self._dispatch_and_track(message, rule) for rule in targets),
            return_exceptions=True,
        )
        for rule, result in zip(targets, results):
            self.stats.record_rule(rule.id, isinstance(result, DispatchRecord))
        records = [result for result in results if isinstance(result, DispatchRecord)]
        errors = [result for result in results if isinstance(result, BaseException)]
        self.stats.record_route(bool(records), time.monotonic() - started)
        for error in errors:
            if not isinstance(error, RoutingError):
                raise error
        if not records:
            raise errors[0]
        for error in errors:
            LOGGER.warning("Partial fan-out failure for %s: %s", message.id, error)
        return records

    def acknowledge(self, message_id: str) -> bool:
        return self.escalations.acknowledge(message_id)

    def history(self, message_id: Optional[str] = None) -> List[DispatchRecord]:
        return self.dispatcher.log.history(message_id)

    async def wait_idle(self) -> None:
        await self.escalations.wait_idle()

    def close(self) -> None:
        self.escalations.close()
