from __future__ import annotations

import math
from datetime import datetime, timezone

import pytest

from conftest import USER_ID
from paygate.matrix import FreeTierLimits
from paygate.models import CounterType, Tier
from paygate.notifications import NotificationDispatcher, NotificationKind
from paygate.usage import USAGE_ERROR_REASON, UsageLimitTracker, window_start


def _tracker(usage_source, kv, clock, notifier=None, tier=Tier.FREE):
    return UsageLimitTracker(
        USER_ID,
        usage_source,
        FreeTierLimits(workouts_per_week=3, ai_chats_per_day=3),
        kv,
        notifier=NotificationDispatcher(notifier) if notifier else None,
        clock=clock,
        tier=tier,
    )


def test_weekly_window_starts_sunday_midnight_utc():
    wednesday = datetime(2024, 1, 10, 15, 30, tzinfo=timezone.utc)
    sunday = datetime(2024, 1, 7, 0, 0, tzinfo=timezone.utc)

    assert window_start(CounterType.WORKOUTS, wednesday) == sunday
    assert window_start(CounterType.WORKOUTS, sunday) == sunday
    assert window_start(CounterType.WORKOUTS, datetime(2024, 1, 6, 23, 59, tzinfo=timezone.utc)) == datetime(
        2023, 12, 31, tzinfo=timezone.utc
    )


def test_daily_window_starts_midnight_utc():
    now = datetime(2024, 1, 10, 23, 59, tzinfo=timezone.utc)

    assert window_start(CounterType.AI_CHATS, now) == datetime(2024, 1, 10, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_free_user_at_weekly_limit(usage_source, kv, clock):
    usage_source.counts[CounterType.WORKOUTS] = 3
    tracker = _tracker(usage_source, kv, clock)

    result = await tracker.check_limit(CounterType.WORKOUTS)

    assert result.within_limit is False
    assert result.used == 3
    assert result.limit == 3
    _, counter_type, start = usage_source.calls[-1]
    assert counter_type == CounterType.WORKOUTS
    assert start == datetime(2024, 1, 7, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_free_user_under_limit(usage_source, kv, clock):
    usage_source.counts[CounterType.AI_CHATS] = 2
    tracker = _tracker(usage_source, kv, clock)

    result = await tracker.check_limit(CounterType.AI_CHATS)

    assert result.within_limit is True
    assert result.used == 2


@pytest.mark.asyncio
async def test_paid_tier_is_unlimited_without_querying(usage_source, kv, clock):
    tracker = _tracker(usage_source, kv, clock, tier=Tier.PREMIUM)

    result = await tracker.check_limit(CounterType.WORKOUTS)

    assert result.within_limit is True
    assert result.used == 0
    assert math.isinf(result.limit)
    assert result.is_unlimited
    assert usage_source.calls == []


@pytest.mark.asyncio
async def test_usage_lookup_failure_fails_closed(usage_source, kv, clock):
    usage_source.error = ConnectionError("db down")
    tracker = _tracker(usage_source, kv, clock)

    result = await tracker.check_limit(CounterType.WORKOUTS)

    assert result.within_limit is False
    assert result.reason == USAGE_ERROR_REASON


@pytest.mark.asyncio
async def test_update_tier_switches_between_limited_and_unlimited(usage_source, kv, clock):
    usage_source.counts[CounterType.WORKOUTS] = 5
    tracker = _tracker(usage_source, kv, clock, tier=Tier.ELITE)
    assert (await tracker.check_limit(CounterType.WORKOUTS)).within_limit is True

    tracker.update_tier(Tier.FREE)

    assert (await tracker.check_limit(CounterType.WORKOUTS)).within_limit is False


@pytest.mark.asyncio
async def test_approaching_workout_limit_notified_once_per_week(usage_source, kv, clock, notifier):
    tracker = _tracker(usage_source, kv, clock, notifier=notifier)

    usage_source.counts[CounterType.WORKOUTS] = 1
    assert await tracker.notify_usage(CounterType.WORKOUTS) is None

    usage_source.counts[CounterType.WORKOUTS] = 2
    sent = await tracker.notify_usage(CounterType.WORKOUTS)
    assert sent.kind == NotificationKind.USAGE_APPROACHING_LIMIT

    usage_source.counts[CounterType.WORKOUTS] = 3
    assert await tracker.notify_usage(CounterType.WORKOUTS) is None
    assert notifier.kinds() == [NotificationKind.USAGE_APPROACHING_LIMIT]

    # next Sunday opens a new window
    clock.advance(days=4)
    usage_source.counts[CounterType.WORKOUTS] = 2
    assert await tracker.notify_usage(CounterType.WORKOUTS) is not None


@pytest.mark.asyncio
async def test_ai_chat_limit_reached_notice(usage_source, kv, clock, notifier):
    tracker = _tracker(usage_source, kv, clock, notifier=notifier)

    usage_source.counts[CounterType.AI_CHATS] = 2
    assert await tracker.notify_usage(CounterType.AI_CHATS) is None

    usage_source.counts[CounterType.AI_CHATS] = 3
    sent = await tracker.notify_usage(CounterType.AI_CHATS)

    assert sent.kind == NotificationKind.USAGE_LIMIT_REACHED
    assert sent.data == {"counter_type": "aiChats", "used": 3, "limit": 3}


@pytest.mark.asyncio
async def test_no_usage_notice_for_paid_users(usage_source, kv, clock, notifier):
    usage_source.counts[CounterType.AI_CHATS] = 10
    tracker = _tracker(usage_source, kv, clock, notifier=notifier, tier=Tier.PREMIUM)

    assert await tracker.notify_usage(CounterType.AI_CHATS) is None
    assert notifier.sent == []
