"""
Ad-hoc (UI-embedded) paywall checks, independent of the trigger catalogue.

A feature paywall may show only when the feature is not entitled, the user
is not mid-workout, it has been shown fewer than max_impressions times, and
the cooldown since it was last shown has elapsed. Shares the impression
ledger with trigger evaluation.
"""

import logging
from typing import Optional

from .analytics import PAYWALL_IMPRESSION, PAYWALL_UPGRADE_CLICKED, AnalyticsEmitter
from .cache import AccessCache
from .ledger import ImpressionLedger, cooldown_active, impression_capped
from .models import ImpressionRecord, TriggerType, utcnow
from .settings import DEFAULT_PAYWALL_COOLDOWN_HOURS, DEFAULT_PAYWALL_MAX_IMPRESSIONS
from .store import Clock, KeyValueStore

logger = logging.getLogger(__name__)


def _active_workout_key(user_id: str) -> str:
    return f"active_workout:{user_id}"


class PaywallGate:
    def __init__(
        self,
        access: AccessCache,
        ledger: ImpressionLedger,
        kv_store: KeyValueStore,
        *,
        analytics: Optional[AnalyticsEmitter] = None,
        cooldown_hours: float = DEFAULT_PAYWALL_COOLDOWN_HOURS,
        max_impressions: int = DEFAULT_PAYWALL_MAX_IMPRESSIONS,
        clock: Clock = utcnow,
    ) -> None:
        self._access = access
        self._ledger = ledger
        self._kv = kv_store
        self.analytics = analytics or AnalyticsEmitter(user_id=ledger.user_id)
        self.cooldown_hours = cooldown_hours
        self.max_impressions = max_impressions
        self._clock = clock

    @property
    def user_id(self) -> str:
        return self._ledger.user_id

    async def set_active_workout(self, active: bool) -> bool:
        """Set or clear the mid-workout flag. Returns False when the store rejected the write."""
        key = _active_workout_key(self.user_id)
        try:
            if active:
                await self._kv.set(key, self._clock().isoformat().encode("utf-8"))
            else:
                await self._kv.remove(key)
        except Exception as e:
            logger.warning(
                "Active workout flag write failed",
                extra={"user_id": self.user_id, "active": active, "error": str(e)},
            )
            return False
        return True

    async def is_mid_workout(self) -> bool:
        return bool(await self._kv.get(_active_workout_key(self.user_id)))

    async def should_show(self, feature_key: str) -> bool:
        decision = await self._access.check_access(feature_key)
        if decision.has_access or decision.is_degraded:
            return False

        try:
            if await self.is_mid_workout():
                return False
            record = await self._ledger.get_feature(decision.feature_key)
        except Exception as e:
            logger.warning(
                "Paywall state unavailable, not showing",
                extra={"user_id": self.user_id, "feature_key": feature_key, "error": str(e)},
            )
            return False

        if impression_capped(record, self.max_impressions):
            return False
        return not cooldown_active(record, self.cooldown_hours, self._clock())

    async def record_shown(
        self,
        feature_key: str,
        trigger_type: TriggerType = TriggerType.SOFT_PAYWALL,
    ) -> Optional[ImpressionRecord]:
        try:
            record = await self._ledger.record_feature(str(feature_key).strip())
        except Exception as e:
            logger.warning(
                "Paywall impression not recorded",
                extra={"user_id": self.user_id, "feature_key": feature_key, "error": str(e)},
            )
            return None
        self.analytics.emit(
            PAYWALL_IMPRESSION,
            {"feature": feature_key, "triggerType": TriggerType(trigger_type).value},
        )
        return record

    async def track_upgrade_clicked(
        self,
        feature_key: Optional[str],
        trigger_type: TriggerType = TriggerType.SOFT_PAYWALL,
    ) -> None:
        self.analytics.emit(
            PAYWALL_UPGRADE_CLICKED,
            {"feature": feature_key, "triggerType": TriggerType(trigger_type).value},
        )
