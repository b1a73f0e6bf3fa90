from __future__ import annotations

import asyncio

from fakes import build_engine, message, rule
from opsroute.core.config import EngineConfig, EscalationConfig
from opsroute.core.events import CHANNEL_UNAVAILABLE, ESCALATION_ABANDONED
from opsroute.core.models import DispatchState

# HR takes low-severity complaints first; the Command Center only accepts
# escalations directly but is the next tier up when HR stays silent.
HR_FIRST = rule(1, channel_id=2, priority=3, timeout=30, name="HR first response")
COMMAND_CENTER = rule(2, channel_id=1, priority=1, ai=["ESCALATION"], name="Command Center")


def _complaint():
    return message(ai_category="COMPLAINT", severity="low")


def _states(engine) -> dict[str, str]:
    return {record.record_id: record.state.value for record in engine.history("m1")}


def test_unacknowledged_message_escalates_to_more_urgent_tier() -> None:
    engine, delivery, scheduler, sink = build_engine([HR_FIRST, COMMAND_CENTER])

    async def scenario() -> None:
        await engine.route(_complaint())
        scheduler.advance_minutes(29)
        await engine.wait_idle()
        assert delivery.sent_to() == ["CMs and HR"]

        scheduler.advance_minutes(1)
        await engine.wait_idle()

    asyncio.run(scenario())

    assert delivery.sent_to() == ["CMs and HR", "WTF Command Center"]
    assert delivery.sent[1][1].escalation_level == 1
    assert _states(engine) == {"m1:2:0": "escalated", "m1:1:1": "routed"}
    assert _trail(sink, "m1:2:0") == ["routed", "timed_out", "escalated"]
    assert engine.stats.escalations == 1
    assert engine.stats.for_rule(2).successful_routes == 1
    escalated = [r for r in engine.history("m1") if r.state is DispatchState.ESCALATED][0]
    assert escalated.escalated_at == scheduler.now()


def test_acknowledgment_before_timeout_cancels_escalation() -> None:
    engine, delivery, scheduler, _ = build_engine([HR_FIRST, COMMAND_CENTER])

    async def scenario() -> None:
        await engine.route(_complaint())
        scheduler.advance_minutes(10)
        assert engine.acknowledge("m1") is True
        scheduler.advance_minutes(60)
        await engine.wait_idle()

    asyncio.run(scenario())

    assert delivery.sent_to() == ["CMs and HR"]
    assert _states(engine) == {"m1:2:0": "acknowledged"}
    assert scheduler.pending() == 0
    assert engine.acknowledge("m1") is False
    assert engine.escalations.open_chains() == 0


def test_acknowledgment_after_timeout_but_before_escalation_wins() -> None:
    engine, delivery, scheduler, _ = build_engine([HR_FIRST, COMMAND_CENTER])

    async def scenario() -> None:
        await engine.route(_complaint())
        scheduler.advance_minutes(30)
        # The escalation task is scheduled but has not run yet.
        assert engine.acknowledge("m1") is True
        await engine.wait_idle()

    asyncio.run(scenario())

    assert delivery.sent_to() == ["CMs and HR"]
    assert _states(engine) == {"m1:2:0": "acknowledged"}


def test_acknowledgment_during_escalation_delivery_resolves_both_records() -> None:
    engine, delivery, scheduler, _ = build_engine([HR_FIRST, COMMAND_CENTER])

    async def scenario() -> None:
        await engine.route(_complaint())
        delivery.gate = asyncio.Event()
        scheduler.advance_minutes(30)
        for _ in range(5):
            await asyncio.sleep(0)
        assert delivery.active.get(1) == 1
        assert engine.acknowledge("m1") is True
        delivery.gate.set()
        await engine.wait_idle()

    asyncio.run(scenario())

    assert _states(engine) == {"m1:2:0": "acknowledged", "m1:1:1": "acknowledged"}
    assert scheduler.pending() == 0


def test_acknowledging_escalated_message_resolves_whole_chain() -> None:
    engine, _, scheduler, _ = build_engine([HR_FIRST, COMMAND_CENTER])

    async def scenario() -> None:
        await engine.route(_complaint())
        scheduler.advance_minutes(30)
        await engine.wait_idle()
        assert engine.acknowledge("m1") is True

    asyncio.run(scenario())

    assert _states(engine) == {"m1:2:0": "acknowledged", "m1:1:1": "acknowledged"}


def test_top_tier_timeout_abandons_and_alerts_operator() -> None:
    engine, delivery, scheduler, sink = build_engine([HR_FIRST, COMMAND_CENTER])

    async def scenario() -> None:
        await engine.route(_complaint())
        scheduler.advance_minutes(30)
        await engine.wait_idle()
        # The Command Center rule does not escalate, so the chain keeps 30 minutes.
        scheduler.advance_minutes(30)
        await engine.wait_idle()

    asyncio.run(scenario())

    assert _states(engine) == {"m1:2:0": "abandoned", "m1:1:1": "abandoned"}
    assert [event.kind for event in sink.events] == [ESCALATION_ABANDONED]
    assert "no rule more urgent" in sink.events[0].detail
    assert engine.acknowledge("m1") is False


def test_escalation_stops_at_level_cap() -> None:
    rules = [
        rule(1, channel_id=2, priority=3, timeout=10),
        rule(2, channel_id=3, priority=2, timeout=10, ai=["URGENT"]),
        rule(3, channel_id=1, priority=1, ai=["URGENT"]),
    ]
    config = EngineConfig(escalation=EscalationConfig(max_levels=1))
    engine, delivery, scheduler, sink = build_engine(rules, config=config)

    async def scenario() -> None:
        await engine.route(_complaint())
        scheduler.advance_minutes(10)
        await engine.wait_idle()
        scheduler.advance_minutes(10)
        await engine.wait_idle()

    asyncio.run(scenario())

    assert delivery.sent_to() == ["CMs and HR", "WTF Facility Management"]
    assert _states(engine) == {"m1:2:0": "abandoned", "m1:3:1": "abandoned"}
    assert "escalation cap" in sink.events[-1].detail


def test_unavailable_escalation_channel_abandons_chain() -> None:
    engine, delivery, scheduler, sink = build_engine([HR_FIRST, COMMAND_CENTER])
    delivery.not_ready.add(1)

    async def scenario() -> None:
        await engine.route(_complaint())
        scheduler.advance_minutes(30)
        await engine.wait_idle()

    asyncio.run(scenario())

    assert delivery.sent_to() == ["CMs and HR"]
    assert [event.kind for event in sink.events] == [CHANNEL_UNAVAILABLE, ESCALATION_ABANDONED]
    assert _states(engine) == {"m1:2:0": "abandoned"}


def test_rule_without_escalation_never_arms_timer() -> None:
    engine, _, scheduler, _ = build_engine([rule(1, channel_id=2)])

    async def scenario() -> None:
        await engine.route(_complaint())

    asyncio.run(scenario())

    assert scheduler.pending() == 0
    assert engine.escalations.open_chains() == 1
    assert engine.acknowledge("m1") is True


def _trail(sink, record_id: str) -> list[str]:
    return [record.state.value for record in sink.records if record.record_id == record_id]


def test_one_minute_timeout_passes_through_timed_out_before_escalating() -> None:
    hr_fast = rule(1, channel_id=2, priority=3, timeout=1, name="HR fast response")
    engine, delivery, scheduler, sink = build_engine([hr_fast, COMMAND_CENTER])

    async def scenario() -> None:
        await engine.route(_complaint())
        scheduler.advance(59)
        await engine.wait_idle()
        assert _trail(sink, "m1:2:0") == ["routed"]
        scheduler.advance(1)
        await engine.wait_idle()

    asyncio.run(scenario())

    assert _trail(sink, "m1:2:0") == ["routed", "timed_out", "escalated"]
    assert _trail(sink, "m1:1:1") == ["routed"]
    assert delivery.sent_to() == ["CMs and HR", "WTF Command Center"]


def test_fan_out_chains_reaching_same_tier_alert_once() -> None:
    rules = [
        rule(1, channel_id=2, priority=3, timeout=10, ai=["COMPLAINT"]),
        rule(2, channel_id=3, priority=3, timeout=10, ai=["COMPLAINT"]),
        rule(3, channel_id=1, priority=1, ai=["ESCALATION"]),
    ]
    engine, delivery, scheduler, sink = build_engine(rules, config=EngineConfig(fan_out=True))

    async def scenario() -> None:
        await engine.route(_complaint())
        scheduler.advance_minutes(10)
        await engine.wait_idle()
        assert engine.escalations.open_chains() == 1
        scheduler.advance_minutes(10)
        await engine.wait_idle()

    asyncio.run(scenario())

    assert delivery.sent_to().count("WTF Command Center") == 1
    assert [(event.kind, event.record_id) for event in sink.events] == [(ESCALATION_ABANDONED, "m1:1:1")]
    assert _states(engine) == {"m1:2:0": "abandoned", "m1:3:0": "abandoned", "m1:1:1": "abandoned"}
    assert engine.escalations.open_chains() == 0


def test_non_escalating_records_are_tracked_up_to_a_bound() -> None:
    config = EngineConfig(escalation=EscalationConfig(max_passive_chains=3))
    engine, _, scheduler, _ = build_engine([rule(1, channel_id=2)], config=config)

    async def scenario() -> None:
        for index in range(5):
            await engine.route(message(f"m{index}", ai_category="COMPLAINT", severity="low"))

    asyncio.run(scenario())

    assert engine.escalations.open_chains() == 3
    assert scheduler.pending() == 0
    assert engine.acknowledge("m0") is False
    assert engine.acknowledge("m4") is True
