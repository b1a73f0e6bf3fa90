"""Escalation state machine.

Per dispatched record::

    routed -> acknowledged
    routed -> timed_out -> escalated -> acknowledged | abandoned

Timer callbacks and acknowledgments both run on the event loop thread and
check the current state before transitioning, so whichever arrives first
wins. An acknowledgment seen while an escalation is still pending (state
``timed_out``) also wins: the pending escalation is dropped before it
dispatches anything.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Set

from opsroute.core.audit import DispatchLog
from opsroute.core.channels import ChannelRegistry
from opsroute.core.config import EscalationConfig
from opsroute.core.dispatcher import Dispatcher
from opsroute.core.errors import ChannelUnavailable, DeliveryFailed, EscalationExhausted
from opsroute.core.events import OperatorEventBus
from opsroute.core.models import ClassifiedMessage, DispatchRecord, DispatchState, RoutingRule
from opsroute.core.ports import SchedulerPort, TimerHandle
from opsroute.core.resolver import escalation_candidates
from opsroute.core.rule_table import RoutingRuleTable
from opsroute.core.stats import RoutingStats

LOGGER = logging.getLogger(__name__)

_ALLOWED = {
    DispatchState.ROUTED: {DispatchState.ACKNOWLEDGED, DispatchState.TIMED_OUT},
    DispatchState.TIMED_OUT: {DispatchState.ESCALATED, DispatchState.ACKNOWLEDGED, DispatchState.ABANDONED},
    DispatchState.ESCALATED: {DispatchState.ACKNOWLEDGED, DispatchState.ABANDONED},
}


@dataclass
class _Chain:
    """One escalation chain: the current record plus the ones it escalated from."""

    key: str
    message: ClassifiedMessage
    rule: RoutingRule
    record: DispatchRecord
    timeout_minutes: int
    timer: Optional[TimerHandle] = None
    escalated: List[DispatchRecord] = field(default_factory=list)
    acknowledged: bool = False
    finished: bool = False


class EscalationStateMachine:
    """Tracks acknowledgment of dispatched records and escalates on timeout."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        rules: RoutingRuleTable,
        channels: ChannelRegistry,
        scheduler: SchedulerPort,
        log: DispatchLog,
        events: Optional[OperatorEventBus] = None,
        config: EscalationConfig = EscalationConfig(),
        stats: Optional[RoutingStats] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._rules = rules
        self._channels = channels
        self._scheduler = scheduler
        self._log = log
        self._events = events or OperatorEventBus()
        self._config = config
        self._stats = stats or RoutingStats()
        self._chains: Dict[str, _Chain] = {}
        self._by_message: Dict[str, List[str]] = {}
        # Chains without a timer, oldest first; they only wait for an ack.
        self._passive: "OrderedDict[str, None]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()

    # -- bookkeeping -------------------------------------------------------

    def _transition(self, record: DispatchRecord, state: DispatchState, **changes) -> DispatchRecord:
        if state not in _ALLOWED.get(record.state, set()):
            raise ValueError(f"Illegal transition {record.state.value} -> {state.value} for {record.record_id}")
        updated = replace(record, state=state, **changes)
        self._log.save(updated)
        LOGGER.info("Record %s: %s -> %s", record.record_id, record.state.value, state.value)
        return updated

    def _arm(self, chain: _Chain) -> None:
        if chain.timeout_minutes <= 0:
            return
        record_id = chain.record.record_id
        chain.timer = self._scheduler.call_later(
            chain.timeout_minutes * 60.0,
            lambda: self._on_timeout(chain.key, record_id),
        )

    def _finish(self, chain: _Chain) -> None:
        chain.finished = True
        if chain.timer is not None:
            chain.timer.cancel()
            chain.timer = None
        self._chains.pop(chain.key, None)
        self._passive.pop(chain.key, None)
        keys = self._by_message.get(chain.message.id, [])
        if chain.key in keys:
            keys.remove(chain.key)
        if not keys:
            self._by_message.pop(chain.message.id, None)

    # -- public API --------------------------------------------------------

    def track(self, message: ClassifiedMessage, rule: RoutingRule, record: DispatchRecord) -> None:
        """Start tracking a freshly routed record, arming a timer if the rule escalates."""

        if record.state is not DispatchState.ROUTED:
            return
        chain = _Chain(
            key=record.record_id,
            message=message,
            rule=rule,
            record=record,
            timeout_minutes=rule.escalation_timeout_minutes if rule.escalation_enabled else 0,
        )
        self._chains[chain.key] = chain
        self._by_message.setdefault(message.id, []).append(chain.key)
        if chain.timeout_minutes > 0:
            self._arm(chain)
            return
        self._passive[chain.key] = None
        while len(self._passive) > max(self._config.max_passive_chains, 0):
            oldest = self._chains.get(next(iter(self._passive)))
            if oldest is None:
                self._passive.popitem(last=False)
                continue
            LOGGER.debug("Record %s is no longer tracked for acknowledgment", oldest.record.record_id)
            self._finish(oldest)

    def acknowledge(self, message_id: str) -> bool:
        """Apply an external acknowledgment; a second ack is a no-op returning False."""

        keys = list(self._by_message.get(message_id, []))
        if not keys:
            return False
        now = self._scheduler.now()
        applied = False
        for key in keys:
            chain = self._chains.get(key)
            if chain is None or chain.finished or chain.acknowledged:
                continue
            if chain.record.state not in (DispatchState.ROUTED, DispatchState.TIMED_OUT):
                continue
            chain.acknowledged = True
            chain.record = self._transition(chain.record, DispatchState.ACKNOWLEDGED, resolved_at=now)
            for earlier in chain.escalated:
                self._transition(earlier, DispatchState.ACKNOWLEDGED, resolved_at=now)
            self._finish(chain)
            applied = True
        if applied:
            LOGGER.info("Message %s acknowledged", message_id)
        return applied

    def current(self, message_id: str) -> List[DispatchRecord]:
        """Current record of every open chain for the message."""

        return [self._chains[key].record for key in self._by_message.get(message_id, []) if key in self._chains]

    def open_chains(self) -> int:
        return len(self._chains)

    async def wait_idle(self) -> None:
        """Wait until no escalation dispatch is in flight."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Cancel every pending timer; chains stay in their current state."""

        for chain in self._chains.values():
            if chain.timer is not None:
                chain.timer.cancel()
                chain.timer = None

    # -- timeout path ------------------------------------------------------

    def _on_timeout(self, key: str, record_id: str) -> None:
        chain = self._chains.get(key)
        if chain is None or chain.finished or chain.acknowledged:
            return
        if chain.record.record_id != record_id or chain.record.state is not DispatchState.ROUTED:
            return
        chain.timer = None
        chain.record = self._transition(chain.record, DispatchState.TIMED_OUT)
        LOGGER.warning(
            "Message %s not acknowledged within %s minute(s) on channel %s",
            chain.message.id,
            chain.timeout_minutes,
            chain.record.channel_id,
        )

        if chain.record.escalation_level >= self._config.max_levels:
            self._abandon(chain, f"escalation cap of {self._config.max_levels} level(s) reached")
            return

        task = asyncio.get_running_loop().create_task(self._run_escalation(chain))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_escalation(self, chain: _Chain) -> None:
        try:
            await self._escalate(chain)
        except EscalationExhausted as exc:
            self._abandon(chain, exc.reason)
        except Exception:
            LOGGER.exception("Escalation of message %s crashed", chain.message.id)
            if not chain.finished and not chain.acknowledged:
                self._abandon(chain, "internal error during escalation")

    async def _escalate(self, chain: _Chain) -> None:
        candidates = escalation_candidates(
            chain.rule,
            self._rules.snapshot().active,
            self._channels.snapshot().ids,
        )
        if not candidates:
            raise EscalationExhausted(chain.record, f"no rule more urgent than priority {chain.rule.priority}")

        level = chain.record.escalation_level + 1
        for candidate in candidates:
            if chain.acknowledged or chain.finished:
                return
            try:
                new_record = await self._dispatcher.dispatch(chain.message, candidate, escalation_level=level)
            except (ChannelUnavailable, DeliveryFailed) as exc:
                self._stats.record_rule(candidate.id, False)
                LOGGER.warning("Escalation of %s via rule %s failed: %s", chain.message.id, candidate.name, exc)
                continue

            self._stats.record_rule(candidate.id, True)
            now = self._scheduler.now()
            if chain.acknowledged or chain.finished:
                # Ack landed while the escalation was being delivered.
                latest = self._log.get(new_record.record_id) or new_record
                if latest.state is DispatchState.ROUTED:
                    self._transition(latest, DispatchState.ACKNOWLEDGED, resolved_at=now)
                return
            owner = self._owner_of(chain.message.id, new_record.record_id)
            if owner is not None and owner is not chain:
                self._merge(chain, owner, now)
                return
            if new_record.state is not DispatchState.ROUTED:
                raise EscalationExhausted(
                    chain.record, f"record {new_record.record_id} is already {new_record.state.value}"
                )
            chain.escalated.append(self._transition(chain.record, DispatchState.ESCALATED, escalated_at=now))
            chain.record = new_record
            self._stats.record_escalation()
            chain.rule = candidate
            if candidate.escalation_enabled:
                chain.timeout_minutes = candidate.escalation_timeout_minutes
            LOGGER.warning(
                "Message %s escalated to level %s via rule %s",
                chain.message.id,
                level,
                candidate.name,
            )
            self._arm(chain)
            return

        raise EscalationExhausted(chain.record, "every more urgent channel was unavailable")

    def _owner_of(self, message_id: str, record_id: str) -> Optional[_Chain]:
        for key in self._by_message.get(message_id, []):
            chain = self._chains.get(key)
            if chain is not None and chain.record.record_id == record_id:
                return chain
        return None

    def _merge(self, chain: _Chain, owner: _Chain, now: datetime) -> None:
        """Fold ``chain`` into ``owner`` once both escalated to the same record.

        Fan-out chains of one message can converge on the same more urgent
        channel; only one of them keeps the timer and reports abandonment.
        """

        owner.escalated.append(self._transition(chain.record, DispatchState.ESCALATED, escalated_at=now))
        self._stats.record_escalation()
        owner.escalated.extend(chain.escalated)
        LOGGER.info(
            "Message %s: chain %s merged into %s at record %s",
            chain.message.id,
            chain.key,
            owner.key,
            owner.record.record_id,
        )
        self._finish(chain)

    def _abandon(self, chain: _Chain, reason: str) -> None:
        if chain.finished:
            return
        now = self._scheduler.now()
        chain.record = self._transition(chain.record, DispatchState.ABANDONED, resolved_at=now, detail=reason)
        for earlier in chain.escalated:
            self._transition(earlier, DispatchState.ABANDONED, resolved_at=now, detail=reason)
        self._finish(chain)
        self._events.escalation_abandoned(chain.record, reason)
