"""
Entitlement resolution: subscription -> effective tier -> feature decision.

Pure over its inputs; callers own I/O, caching and failure handling.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import FrozenSet, Optional

from .matrix import EntitlementMatrix
from .models import (
    ENTITLED_STATUSES,
    FeatureAccessDecision,
    ReasonCode,
    Subscription,
    SubscriptionStatus,
    Tier,
    utcnow,
)

_PAID_TIERS = (Tier.PREMIUM, Tier.ELITE)


def effective_tier(
    subscription: Optional[Subscription],
    *,
    now: Optional[datetime] = None,
    grace_period_ends_at: Optional[datetime] = None,
) -> Tier:
    """
    Tier actually honored for entitlement purposes.

    Only active/trialing subscriptions keep their tier, with two carve-outs:
    a scheduled cancellation keeps the tier until the period ends, and a
    past_due subscription keeps it while its grace period is running. Once
    current_period_end has passed the user is Free regardless of status.
    """
    if subscription is None:
        return Tier.FREE

    compare_at = now or utcnow()
    period_end = subscription.current_period_end
    if period_end is not None and period_end <= compare_at:
        return Tier.FREE

    status = subscription.status
    if status in ENTITLED_STATUSES:
        return subscription.tier

    if status == SubscriptionStatus.CANCELED and subscription.cancel_at_period_end and period_end is not None:
        return subscription.tier

    if status == SubscriptionStatus.PAST_DUE and grace_period_ends_at is not None and compare_at < grace_period_ends_at:
        return subscription.tier

    return Tier.FREE


def is_in_trial(subscription: Optional[Subscription], now: datetime) -> bool:
    if subscription is None or subscription.status != SubscriptionStatus.TRIALING:
        return False
    return subscription.trial_end is None or subscription.trial_end > now


def trial_days_remaining(subscription: Optional[Subscription], now: datetime) -> int:
    """Whole days left in the trial, rounded up; 0 when not trialing."""
    if not is_in_trial(subscription, now) or subscription.trial_end is None:
        return 0
    return max(0, math.ceil((subscription.trial_end - now).total_seconds() / 86400))


def required_tier(allowed_tiers: FrozenSet[Tier]) -> Optional[Tier]:
    """Lowest paid tier unlocking a feature (Premium < Elite), used for upsell copy."""
    for tier in _PAID_TIERS:
        if tier in allowed_tiers:
            return tier
    return None


def denial_reason(tier: Tier, needed: Optional[Tier]) -> ReasonCode:
    if needed is None:
        return ReasonCode.NOT_AVAILABLE
    if tier == Tier.FREE:
        return ReasonCode.UPGRADE_FROM_FREE
    if tier == Tier.PREMIUM and needed == Tier.ELITE:
        return ReasonCode.ELITE_ONLY
    return ReasonCode.SUBSCRIPTION_REQUIRED


class EntitlementResolver:
    """Resolves feature access against the entitlement matrix."""

    def __init__(self, matrix: EntitlementMatrix) -> None:
        self.matrix = matrix

    def resolve(
        self,
        feature_key: str,
        subscription: Optional[Subscription],
        *,
        now: Optional[datetime] = None,
        grace_period_ends_at: Optional[datetime] = None,
    ) -> FeatureAccessDecision:
        resolved_at = now or utcnow()
        normalized_key = str(feature_key).strip()
        tier = effective_tier(subscription, now=resolved_at, grace_period_ends_at=grace_period_ends_at)
        return self.resolve_for_tier(normalized_key, tier, now=resolved_at)

    def resolve_for_tier(
        self,
        feature_key: str,
        tier: Tier,
        *,
        now: Optional[datetime] = None,
    ) -> FeatureAccessDecision:
        resolved_at = now or utcnow()
        allowed = self.matrix.allowed_tiers(feature_key)

        # unmapped features are open to everyone
        if allowed is None:
            return FeatureAccessDecision(feature_key=feature_key, has_access=True, resolved_at=resolved_at)

        needed = required_tier(allowed)
        has_access = tier in allowed
        return FeatureAccessDecision(
            feature_key=feature_key,
            has_access=has_access,
            resolved_at=resolved_at,
            required_tier=needed,
            reason=None if has_access else denial_reason(tier, needed),
        )
