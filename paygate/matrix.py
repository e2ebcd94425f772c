from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, Iterator, Mapping, Optional

from .models import CounterType, Tier


@dataclass(frozen=True)
class EntitlementMatrix:
    """Static feature key -> tiers that unlock it."""

    features: Mapping[str, FrozenSet[Tier]]

    def __post_init__(self) -> None:
        normalized = {
            str(key).strip(): frozenset(Tier(t) for t in tiers)
            for key, tiers in self.features.items()
        }
        object.__setattr__(self, "features", MappingProxyType(normalized))

    def allowed_tiers(self, feature_key: str) -> Optional[FrozenSet[Tier]]:
        """Tiers unlocking the feature, or None when the key is not mapped."""
        return self.features.get(str(feature_key).strip())

    def __contains__(self, feature_key: object) -> bool:
        return isinstance(feature_key, str) and feature_key.strip() in self.features

    def __iter__(self) -> Iterator[str]:
        return iter(self.features)

    def __len__(self) -> int:
        return len(self.features)


@dataclass(frozen=True)
class FreeTierLimits:
    """Quotas applied to Free-tier users."""

    workouts_per_week: int = 3
    ai_chats_per_day: int = 3

    def __post_init__(self) -> None:
        if self.workouts_per_week < 0 or self.ai_chats_per_day < 0:
            raise ValueError("free tier limits must not be negative")

    def limit_for(self, counter_type: CounterType) -> int:
        if counter_type == CounterType.WORKOUTS:
            return self.workouts_per_week
        return self.ai_chats_per_day
