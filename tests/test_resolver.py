from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import START, make_subscription
from paygate.matrix import EntitlementMatrix
from paygate.models import ReasonCode, SubscriptionStatus, Tier
from paygate.resolver import (
    EntitlementResolver,
    denial_reason,
    effective_tier,
    required_tier,
    trial_days_remaining,
)


@pytest.fixture
def resolver(plans):
    return EntitlementResolver(plans.matrix)


def test_free_user_denied_premium_feature_with_upsell_tier(resolver):
    decision = resolver.resolve(
        "unlimited_workouts",
        make_subscription(tier=Tier.FREE, status=SubscriptionStatus.ACTIVE),
        now=START,
    )

    assert decision.has_access is False
    assert decision.required_tier == Tier.PREMIUM
    assert decision.reason == ReasonCode.UPGRADE_FROM_FREE


def test_trialing_premium_user_has_premium_feature(resolver):
    decision = resolver.resolve(
        "meal_planning",
        make_subscription(tier=Tier.PREMIUM, status=SubscriptionStatus.TRIALING),
        now=START,
    )

    assert decision.has_access is True
    assert decision.reason is None


def test_premium_user_denied_elite_feature_as_elite_only(resolver):
    decision = resolver.resolve("form_analysis", make_subscription(tier=Tier.PREMIUM), now=START)

    assert decision.has_access is False
    assert decision.required_tier == Tier.ELITE
    assert decision.reason == ReasonCode.ELITE_ONLY


def test_unmapped_feature_is_open_to_everyone(resolver):
    decision = resolver.resolve("brand_new_feature", None, now=START)

    assert decision.has_access is True
    assert decision.required_tier is None
    assert decision.reason is None


def test_feature_keys_are_stripped(resolver):
    decision = resolver.resolve("  form_analysis ", make_subscription(tier=Tier.ELITE), now=START)

    assert decision.feature_key == "form_analysis"
    assert decision.has_access is True


def test_feature_with_no_tiers_is_not_available():
    resolver = EntitlementResolver(EntitlementMatrix(features={"retired_feature": []}))

    decision = resolver.resolve_for_tier("retired_feature", Tier.ELITE, now=START)

    assert decision.has_access is False
    assert decision.reason == ReasonCode.NOT_AVAILABLE


def test_required_tier_is_lowest_unlocking_tier():
    assert required_tier(frozenset({Tier.ELITE, Tier.PREMIUM})) == Tier.PREMIUM
    assert required_tier(frozenset({Tier.ELITE})) == Tier.ELITE
    assert required_tier(frozenset({Tier.FREE})) is None


def test_denial_reason_for_elite_user_missing_a_feature():
    assert denial_reason(Tier.ELITE, Tier.PREMIUM) == ReasonCode.SUBSCRIPTION_REQUIRED


@pytest.mark.parametrize(
    "status,expected",
    [
        (SubscriptionStatus.ACTIVE, Tier.PREMIUM),
        (SubscriptionStatus.TRIALING, Tier.PREMIUM),
        (SubscriptionStatus.PAUSED, Tier.FREE),
        (SubscriptionStatus.INCOMPLETE, Tier.FREE),
        (SubscriptionStatus.UNPAID, Tier.FREE),
        (SubscriptionStatus.CANCELED, Tier.FREE),
    ],
)
def test_effective_tier_by_status(status, expected):
    subscription = make_subscription(tier=Tier.PREMIUM, status=status)

    assert effective_tier(subscription, now=START) == expected


def test_no_subscription_is_free():
    assert effective_tier(None, now=START) == Tier.FREE


def test_scheduled_cancellation_keeps_tier_until_period_end():
    subscription = make_subscription(
        tier=Tier.ELITE,
        status=SubscriptionStatus.CANCELED,
        cancel_at_period_end=True,
        current_period_end=START + timedelta(days=5),
    )

    assert effective_tier(subscription, now=START) == Tier.ELITE
    assert effective_tier(subscription, now=START + timedelta(days=5)) == Tier.FREE


def test_period_end_in_the_past_downgrades_active_subscription():
    subscription = make_subscription(current_period_end=START - timedelta(seconds=1))

    assert effective_tier(subscription, now=START) == Tier.FREE


def test_past_due_keeps_tier_only_inside_grace_period():
    subscription = make_subscription(status=SubscriptionStatus.PAST_DUE)
    grace_end = START + timedelta(days=3)

    assert effective_tier(subscription, now=START, grace_period_ends_at=grace_end) == Tier.PREMIUM
    assert effective_tier(subscription, now=grace_end, grace_period_ends_at=grace_end) == Tier.FREE
    assert effective_tier(subscription, now=START) == Tier.FREE


def test_trial_days_remaining_rounds_up():
    subscription = make_subscription(
        status=SubscriptionStatus.TRIALING,
        trial_end=START + timedelta(days=2, hours=1),
    )

    assert trial_days_remaining(subscription, START) == 3
    assert trial_days_remaining(subscription, START + timedelta(days=4)) == 0
    assert trial_days_remaining(make_subscription(), START) == 0
