from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from paygate.analytics import RecordingAnalyticsSink
from paygate.engine import EntitlementEngine
from paygate.loader import load_plans
from paygate.models import CounterType, Subscription, SubscriptionStatus, Tier
from paygate.notifications import RecordingNotifier
from paygate.settings import EngineSettings
from paygate.store import InMemoryKeyValueStore

USER_ID = "user-1"

# Wednesday; the usage week started Sunday 2024-01-07
START = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeProvider:
    def __init__(self, subscription: Optional[Subscription] = None):
        self.subscription = subscription
        self.calls = 0
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.callbacks: List[Callable[[Any], None]] = []

    async def get_subscription_status(self, user_id: str) -> Optional[Subscription]:
        self.calls += 1
        # the row is read before the (simulated) network delay
        subscription, error = self.subscription, self.error
        if self.delay:
            await asyncio.sleep(self.delay)
        if error is not None:
            raise error
        return subscription

    def subscribe_to_changes(self, user_id: str, callback):
        self.callbacks.append(callback)
        return lambda: self.callbacks.remove(callback)

    def push(self, raw: Any) -> None:
        for callback in list(self.callbacks):
            callback(raw)


class FakeUsageSource:
    def __init__(self):
        self.counts: Dict[CounterType, int] = {}
        self.error: Optional[Exception] = None
        self.calls: List[tuple] = []

    async def count_events(self, user_id: str, counter_type: CounterType, window_start: datetime) -> int:
        self.calls.append((user_id, counter_type, window_start))
        if self.error is not None:
            raise self.error
        return self.counts.get(counter_type, 0)


def make_subscription(
    tier: Tier = Tier.PREMIUM,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    **kwargs,
) -> Subscription:
    return Subscription(user_id=kwargs.pop("user_id", USER_ID), tier=tier, status=status, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def usage_source():
    return FakeUsageSource()


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def plans():
    return load_plans()


@pytest.fixture
def analytics_sink():
    return RecordingAnalyticsSink()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine(provider, usage_source, kv, plans, analytics_sink, notifier, clock):
    return EntitlementEngine(
        USER_ID,
        provider,
        usage_source,
        kv_store=kv,
        analytics_sink=analytics_sink,
        notifier=notifier,
        settings=EngineSettings(),
        plans=plans,
        clock=clock,
    )
