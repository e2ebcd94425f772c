from __future__ import annotations

import asyncio
import logging

import pytest

from conftest import USER_ID, make_subscription
from paygate.analytics import PAYWALL_IMPRESSION, PAYWALL_UPGRADE_CLICKED
from paygate.engine import EntitlementEngine
from paygate.ledger import FEATURE_SCOPE
from paygate.models import Tier, TriggerType
from paygate.settings import EngineSettings
from paygate.store import InMemoryKeyValueStore


@pytest.mark.asyncio
async def test_paywall_shows_for_locked_feature_then_cools_down(engine, provider, clock):
    provider.subscription = make_subscription(tier=Tier.FREE)

    assert await engine.should_show_paywall("export_data") is True
    await engine.record_paywall_shown("export_data")
    assert await engine.should_show_paywall("export_data") is False

    clock.advance(hours=23)
    assert await engine.should_show_paywall("export_data") is False
    clock.advance(hours=1)
    assert await engine.should_show_paywall("export_data") is True


@pytest.mark.asyncio
async def test_paywall_capped_after_max_impressions(engine, provider, clock):
    provider.subscription = make_subscription(tier=Tier.FREE)

    for _ in range(5):
        assert await engine.should_show_paywall("meal_planning") is True
        await engine.record_paywall_shown("meal_planning")
        clock.advance(hours=25)

    assert await engine.should_show_paywall("meal_planning") is False
    assert (await engine.ledger.get_feature("meal_planning")).impression_count == 5


@pytest.mark.asyncio
async def test_no_paywall_for_entitled_or_unmapped_features(engine, provider):
    provider.subscription = make_subscription(tier=Tier.PREMIUM)

    assert await engine.should_show_paywall("export_data") is False
    assert await engine.should_show_paywall("brand_new_feature") is False


@pytest.mark.asyncio
async def test_no_paywall_mid_workout(engine, provider):
    provider.subscription = make_subscription(tier=Tier.FREE)

    await engine.set_active_workout(True)
    assert await engine.should_show_paywall("export_data") is False

    await engine.set_active_workout(False)
    assert await engine.should_show_paywall("export_data") is True


@pytest.mark.asyncio
async def test_no_paywall_when_subscription_lookup_fails(engine, provider):
    provider.error = ConnectionError("down")

    assert await engine.should_show_paywall("export_data") is False


@pytest.mark.asyncio
async def test_impression_and_click_analytics(engine, provider, analytics_sink):
    provider.subscription = make_subscription(tier=Tier.FREE)

    await engine.record_paywall_shown("form_analysis", TriggerType.FEATURE_LIMIT)
    await engine.track_upgrade_clicked("form_analysis", TriggerType.FEATURE_LIMIT)
    await engine.analytics.flush()

    assert analytics_sink.named(PAYWALL_IMPRESSION) == [{"feature": "form_analysis", "triggerType": "feature_limit"}]
    assert analytics_sink.named(PAYWALL_UPGRADE_CLICKED) == [
        {"feature": "form_analysis", "triggerType": "feature_limit"}
    ]


class _RejectingWrites(InMemoryKeyValueStore):
    async def set(self, key, value):
        raise ConnectionError("store unavailable")


def _engine_on(kv, provider, usage_source, plans, clock, analytics_sink=None):
    return EntitlementEngine(
        USER_ID,
        provider,
        usage_source,
        kv_store=kv,
        analytics_sink=analytics_sink,
        settings=EngineSettings(),
        plans=plans,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_failed_impression_write_is_reported_not_raised(provider, usage_source, plans, clock, analytics_sink, caplog):
    provider.subscription = make_subscription(tier=Tier.FREE)
    engine = _engine_on(_RejectingWrites(), provider, usage_source, plans, clock, analytics_sink)

    with caplog.at_level(logging.WARNING, logger="paygate.paywall"):
        record = await engine.record_paywall_shown("export_data")
        flagged = await engine.set_active_workout(True)

    assert record is None
    assert flagged is False
    assert "Paywall impression not recorded" in caplog.text
    assert "Active workout flag write failed" in caplog.text
    await engine.analytics.flush()
    assert analytics_sink.named(PAYWALL_IMPRESSION) == []


@pytest.mark.asyncio
async def test_unreadable_impression_record_is_reported_not_raised(engine, kv, provider):
    provider.subscription = make_subscription(tier=Tier.FREE)
    await kv.set(engine.ledger._key(FEATURE_SCOPE, "export_data"), b"not json")

    assert await engine.record_paywall_shown("export_data") is None
    assert await engine.should_show_paywall("export_data") is False


@pytest.mark.asyncio
async def test_successful_writes_report_success(engine, provider):
    provider.subscription = make_subscription(tier=Tier.FREE)

    assert await engine.set_active_workout(True) is True
    record = await engine.record_paywall_shown("export_data")

    assert record is not None
    assert record.impression_count == 1


@pytest.mark.asyncio
async def test_hanging_analytics_sink_does_not_block_engine(provider, usage_source, kv, plans, clock):
    release = asyncio.Event()

    class HangingSink:
        async def track(self, event_name, properties):
            await release.wait()

    provider.subscription = make_subscription(tier=Tier.FREE)
    engine = _engine_on(kv, provider, usage_source, plans, clock, HangingSink())

    await asyncio.wait_for(engine.check_access("export_data"), timeout=1)
    fired = await asyncio.wait_for(engine.on_event("feature_limit_reached", {"feature": "unlimited_workouts"}), timeout=1)
    await asyncio.wait_for(engine.record_paywall_shown("export_data"), timeout=1)

    assert fired == "weekly_workout_limit"
    await engine.analytics.flush(timeout=0.01)
    assert engine.analytics.pending == 0
