from __future__ import annotations

import asyncio

import pytest

from fakes import RecordingSleep, build_engine, message, rule
from opsroute.core.config import DispatchConfig, EngineConfig, RetryPolicy
from opsroute.core.errors import ChannelUnavailable, DeliveryFailed, DeliveryTransientFailure
from opsroute.core.events import CHANNEL_UNAVAILABLE, DELIVERY_FAILED
from opsroute.core.models import DispatchState


def test_unready_channel_fails_fast_without_delivery_attempt() -> None:
    engine, delivery, _, sink = build_engine([rule(1, channel_id=2)])
    delivery.not_ready.add(2)

    with pytest.raises(ChannelUnavailable) as excinfo:
        asyncio.run(engine.dispatcher.dispatch(message(), rule(1, channel_id=2)))

    assert excinfo.value.channel_id == 2
    assert delivery.sent == []
    assert delivery.active == {}
    assert [event.kind for event in sink.events] == [CHANNEL_UNAVAILABLE]
    assert sink.events[0].rule_id == 1


def test_transient_failures_are_retried_with_backoff() -> None:
    sleep = RecordingSleep()
    engine, delivery, _, _ = build_engine([rule(1)], sleep=sleep)
    delivery.failures[1] = [DeliveryTransientFailure("502"), DeliveryTransientFailure("timeout")]

    record = asyncio.run(engine.dispatcher.dispatch(message(), rule(1)))

    assert record.state is DispatchState.ROUTED
    assert record.attempts == 3
    assert sleep.delays == [0.5, 1.0]
    assert delivery.sent_to() == ["WTF Command Center"]


def test_exhausted_retries_store_failed_record_and_emit_event() -> None:
    sleep = RecordingSleep()
    config = EngineConfig(dispatch=DispatchConfig(retry=RetryPolicy(max_attempts=2, base_delay_ms=100)))
    engine, delivery, _, sink = build_engine([rule(1)], config=config, sleep=sleep)
    delivery.failures[1] = [DeliveryTransientFailure("503")] * 3

    with pytest.raises(DeliveryFailed) as excinfo:
        asyncio.run(engine.dispatcher.dispatch(message(), rule(1)))

    failed = excinfo.value.record
    assert failed.state is DispatchState.FAILED
    assert failed.attempts == 2
    assert failed.resolved_at is not None
    assert sleep.delays == [0.1]
    assert engine.history("m1") == [failed]
    assert [event.kind for event in sink.events] == [DELIVERY_FAILED]


def test_non_transient_error_is_not_retried() -> None:
    sleep = RecordingSleep()
    engine, delivery, _, _ = build_engine([rule(1)], sleep=sleep)
    delivery.failures[1] = [RuntimeError("Bridge error 400: bad group")]

    with pytest.raises(DeliveryFailed) as excinfo:
        asyncio.run(engine.dispatcher.dispatch(message(), rule(1)))

    assert excinfo.value.record.attempts == 1
    assert sleep.delays == []
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_fallback_channel_takes_over_when_target_is_down() -> None:
    config = EngineConfig(dispatch=DispatchConfig(fallback_channel_id=1))
    engine, delivery, _, sink = build_engine([rule(1, channel_id=3)], config=config)
    delivery.not_ready.add(3)

    record = asyncio.run(engine.dispatcher.dispatch(message(), rule(1, channel_id=3)))

    assert record.channel_id == 1
    assert delivery.sent_to() == ["WTF Command Center"]
    assert [event.kind for event in sink.events] == [CHANNEL_UNAVAILABLE]


def test_same_delivery_is_never_sent_twice() -> None:
    engine, delivery, _, _ = build_engine([rule(1)])

    async def scenario():
        first = await engine.dispatcher.dispatch(message(), rule(1))
        second = await engine.dispatcher.dispatch(message(), rule(1))
        return first, second

    first, second = asyncio.run(scenario())

    assert first == second
    assert len(delivery.sent) == 1


def test_concurrent_duplicate_dispatch_delivers_once() -> None:
    engine, delivery, _, _ = build_engine([rule(1)])

    async def scenario():
        delivery.gate = asyncio.Event()
        tasks = [asyncio.create_task(engine.dispatcher.dispatch(message(), rule(1))) for _ in range(2)]
        for _ in range(10):
            await asyncio.sleep(0)
        delivery.gate.set()
        return await asyncio.gather(*tasks)

    first, second = asyncio.run(scenario())

    assert first.record_id == second.record_id == "m1:1:0"
    assert len(delivery.sent) == 1


def test_idempotency_cache_forgets_oldest_deliveries() -> None:
    config = EngineConfig(dispatch=DispatchConfig(idempotency_cache=2), history_size=2)
    engine, delivery, _, _ = build_engine([rule(1)], config=config)

    async def scenario() -> None:
        for message_id in ("a", "b", "c"):
            await engine.dispatcher.dispatch(message(message_id), rule(1))

    asyncio.run(scenario())

    assert engine.dispatcher.delivered_keys() == 2
    assert [record.message_id for record in engine.history()] == ["b", "c"]


def test_deliveries_to_one_channel_are_serialized() -> None:
    engine, delivery, _, _ = build_engine([rule(1, channel_id=1), rule(2, channel_id=2)])

    async def scenario() -> None:
        delivery.gate = asyncio.Event()
        tasks = [
            asyncio.create_task(engine.dispatcher.dispatch(message("a"), rule(1, channel_id=1))),
            asyncio.create_task(engine.dispatcher.dispatch(message("b"), rule(1, channel_id=1))),
            asyncio.create_task(engine.dispatcher.dispatch(message("c"), rule(2, channel_id=2))),
        ]
        for _ in range(10):
            await asyncio.sleep(0)
        # Both channels busy at once, but never two deliveries on the same one.
        assert delivery.active == {1: 1, 2: 1}
        delivery.gate.set()
        await asyncio.gather(*tasks)

    asyncio.run(scenario())

    assert delivery.max_active == {1: 1, 2: 1}
    assert sorted(n.message_id for _, n in delivery.sent) == ["a", "b", "c"]


def test_notification_carries_category_and_clipped_excerpt() -> None:
    config = EngineConfig(dispatch=DispatchConfig(excerpt_chars=10))
    engine, delivery, _, _ = build_engine([rule(1)], config=config)

    asyncio.run(engine.dispatcher.dispatch(message(text="Trainer absent again at 7am"), rule(1)))

    _, notification = delivery.sent[0]
    assert notification.excerpt == "Trainer ab"
    assert notification.category_name == "Trainer Absence"
    assert notification.department == "STAFF_MANAGEMENT"
    assert notification.channel_name == "WTF Command Center"
    assert notification.escalation_level == 0
