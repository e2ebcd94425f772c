from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    """Subscription tiers, declared in ascending order."""

    FREE = "Free"
    PREMIUM = "Premium"
    ELITE = "Elite"

    @property
    def level(self) -> int:
        return _TIER_LEVELS[self]


_TIER_LEVELS = {Tier.FREE: 0, Tier.PREMIUM: 1, Tier.ELITE: 2}


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


ENTITLED_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
)


class ReasonCode(str, Enum):
    """Machine-readable denial reasons; callers map these to upsell copy."""

    UPGRADE_FROM_FREE = "upgrade_from_free"
    ELITE_ONLY = "elite_only"
    SUBSCRIPTION_REQUIRED = "subscription_required"
    NOT_AVAILABLE = "feature_not_available"
    ERROR = "error checking access"


class CounterType(str, Enum):
    WORKOUTS = "workouts"
    AI_CHATS = "aiChats"


class TriggerType(str, Enum):
    VALUE_MOMENT = "value_moment"
    FEATURE_LIMIT = "feature_limit"
    SOFT_PAYWALL = "soft_paywall"
    CONTEXTUAL = "contextual"


@dataclass(frozen=True)
class Subscription:
    """Last-known subscription record for a user."""

    user_id: str
    tier: Tier
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    def __post_init__(self) -> None:
        user_id = str(self.user_id).strip()
        if not user_id:
            raise ValueError("user_id is required")
        for name in ("current_period_end", "trial_end"):
            value = getattr(self, name)
            if value is not None and value.tzinfo is None:
                raise ValueError(f"{name} must be timezone-aware")
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "tier", Tier(self.tier))
        object.__setattr__(self, "status", SubscriptionStatus(self.status))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tier": self.tier.value,
            "status": self.status.value,
            "current_period_end": _iso(self.current_period_end),
            "trial_end": _iso(self.trial_end),
            "cancel_at_period_end": self.cancel_at_period_end,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Subscription":
        return cls(
            user_id=raw["user_id"],
            tier=Tier(raw["tier"]),
            status=SubscriptionStatus(raw["status"]),
            current_period_end=_parse_iso(raw.get("current_period_end")),
            trial_end=_parse_iso(raw.get("trial_end")),
            cancel_at_period_end=bool(raw.get("cancel_at_period_end", False)),
        )


@dataclass(frozen=True)
class FeatureAccessDecision:
    """Resolution for a single feature key."""

    feature_key: str
    has_access: bool
    resolved_at: datetime
    required_tier: Optional[Tier] = None
    reason: Optional[ReasonCode] = None

    @property
    def is_degraded(self) -> bool:
        return self.reason == ReasonCode.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature_key": self.feature_key,
            "has_access": self.has_access,
            "resolved_at": self.resolved_at.isoformat(),
            "required_tier": self.required_tier.value if self.required_tier else None,
            "reason": self.reason.value if self.reason else None,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FeatureAccessDecision":
        required_tier = raw.get("required_tier")
        reason = raw.get("reason")
        return cls(
            feature_key=raw["feature_key"],
            has_access=bool(raw["has_access"]),
            resolved_at=datetime.fromisoformat(raw["resolved_at"]),
            required_tier=Tier(required_tier) if required_tier else None,
            reason=ReasonCode(reason) if reason else None,
        )


def degraded_decision(feature_key: str, now: Optional[datetime] = None) -> FeatureAccessDecision:
    """Fail-closed decision used when the subscription cannot be looked up."""
    return FeatureAccessDecision(
        feature_key=feature_key,
        has_access=False,
        resolved_at=now or utcnow(),
        reason=ReasonCode.ERROR,
    )


@dataclass(frozen=True)
class UsageCounter:
    user_id: str
    counter_type: CounterType
    window_start: datetime
    count: int
    limit: Union[int, float]


@dataclass(frozen=True)
class UsageLimitResult:
    within_limit: bool
    used: int
    limit: Union[int, float]
    reason: Optional[str] = None

    @property
    def is_unlimited(self) -> bool:
        return math.isinf(self.limit)


@dataclass(frozen=True)
class MatchCondition:
    """Event match for a trigger: event name, payload minimums, optional feature."""

    event: str
    thresholds: Mapping[str, int] = field(default_factory=dict)
    feature_key: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "thresholds", MappingProxyType(dict(self.thresholds)))

    def matches(self, event_name: str, payload: Mapping[str, Any]) -> bool:
        if event_name != self.event:
            return False
        if self.feature_key:
            # a feature-bound trigger only answers events naming that feature
            requested_feature = payload.get("feature")
            if not isinstance(requested_feature, str) or requested_feature.strip() != self.feature_key:
                return False
        for key, minimum in self.thresholds.items():
            value = payload.get(key)
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                return False
            if value < minimum:
                return False
        return True


@dataclass(frozen=True)
class TriggerDefinition:
    id: str
    trigger_type: TriggerType
    match_condition: MatchCondition
    cooldown_hours: float
    max_impressions: int
    priority: int


@dataclass(frozen=True)
class ImpressionRecord:
    """Per-trigger (or per-feature) impression history. Counts never decrease."""

    key: str
    impression_count: int = 0
    last_shown_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "impression_count": self.impression_count,
            "last_shown_at": _iso(self.last_shown_at),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ImpressionRecord":
        return cls(
            key=raw["key"],
            impression_count=int(raw.get("impression_count", 0)),
            last_shown_at=_parse_iso(raw.get("last_shown_at")),
        )

    def hours_since_shown(self, now: datetime) -> Optional[float]:
        if self.last_shown_at is None:
            return None
        return (now - self.last_shown_at).total_seconds() / 3600


@dataclass(frozen=True)
class SubscriptionChangeEvent:
    """Authoritative subscription update pushed by the provider."""

    current: Subscription
    previous: Optional[Subscription] = None
    event_id: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
