from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import USER_ID, FakeProvider, FakeUsageSource, make_subscription
from paygate.engine import EntitlementEngine
from paygate.models import CounterType, Tier
from paygate.notifications import NotificationKind
from paygate.settings import EngineSettings
from paygate.store import InMemoryKeyValueStore


def test_engine_requires_user_id(plans):
    with pytest.raises(ValueError):
        EntitlementEngine("  ", FakeProvider(), FakeUsageSource(), plans=plans, settings=EngineSettings())


def test_engine_without_redis_uses_memory_store(plans):
    engine = EntitlementEngine(USER_ID, FakeProvider(), FakeUsageSource(), plans=plans, settings=EngineSettings())

    assert isinstance(engine.kv_store, InMemoryKeyValueStore)
    assert len(engine.triggers) == 4


@pytest.mark.asyncio
async def test_free_user_hits_weekly_limit_and_sees_paywall(engine, provider, usage_source):
    provider.subscription = make_subscription(tier=Tier.FREE)
    usage_source.counts[CounterType.WORKOUTS] = 3

    limit = await engine.check_limit(CounterType.WORKOUTS)
    assert (limit.within_limit, limit.used, limit.limit) == (False, 3, 3)

    fired = await engine.on_event("feature_limit_reached", {"feature": "unlimited_workouts"})
    assert fired == "weekly_workout_limit"


@pytest.mark.asyncio
async def test_paid_user_is_unlimited(engine, provider, usage_source):
    provider.subscription = make_subscription(tier=Tier.PREMIUM)
    usage_source.counts[CounterType.WORKOUTS] = 30

    limit = await engine.check_limit(CounterType.WORKOUTS)

    assert limit.within_limit is True
    assert limit.is_unlimited
    assert usage_source.calls == []


@pytest.mark.asyncio
async def test_usage_falls_back_to_free_limits_when_lookup_fails(engine, provider, usage_source):
    provider.error = ConnectionError("down")
    usage_source.counts[CounterType.AI_CHATS] = 1

    limit = await engine.check_limit(CounterType.AI_CHATS)

    assert limit.within_limit is True
    assert limit.limit == 3


@pytest.mark.asyncio
async def test_notify_usage_sends_through_notifier(engine, provider, usage_source, notifier):
    provider.subscription = make_subscription(tier=Tier.FREE)
    usage_source.counts[CounterType.AI_CHATS] = 3

    await engine.notify_usage(CounterType.AI_CHATS)

    assert notifier.kinds() == [NotificationKind.USAGE_LIMIT_REACHED]


@pytest.mark.asyncio
async def test_trial_helpers_without_subscription(engine, provider):
    assert await engine.is_in_trial() is False
    assert await engine.trial_days_remaining() == 0

    provider.error = ConnectionError("down")
    await engine.clear_cache()
    assert await engine.is_in_trial() is False


@pytest.mark.asyncio
async def test_check_multiple_and_current_tier(engine, provider):
    provider.subscription = make_subscription(tier=Tier.ELITE)

    results = await engine.check_multiple(["form_analysis", "export_data"])

    assert all(d.has_access for d in results.values())
    assert await engine.current_tier() == Tier.ELITE


@pytest.mark.asyncio
async def test_context_manager_subscribes_and_unsubscribes(plans, clock):
    unsubscribe = AsyncMock()
    provider = MagicMock()
    provider.get_subscription_status = AsyncMock(return_value=make_subscription(tier=Tier.PREMIUM))
    provider.subscribe_to_changes = MagicMock(return_value=unsubscribe)

    async with EntitlementEngine(
        USER_ID,
        provider,
        FakeUsageSource(),
        kv_store=InMemoryKeyValueStore(),
        settings=EngineSettings(),
        plans=plans,
        clock=clock,
    ) as engine:
        assert engine.listener.running is True
        assert engine.usage.tier == Tier.PREMIUM

    provider.subscribe_to_changes.assert_called_once_with(USER_ID, engine.listener.submit)
    unsubscribe.assert_awaited_once()
    assert engine.listener.running is False
