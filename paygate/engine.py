"""
Per-user entitlement and paywall engine.

Wires the subscription store, access cache, usage tracker, trigger
evaluator, ad-hoc paywall gate and change listener for one user. Every
public operation is safe to call concurrently and never raises for a
backend failure: access fails closed, paywalls stay hidden.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from .analytics import AnalyticsEmitter, AnalyticsSink
from .cache import AccessCache
from .errors import SubscriptionLookupError
from .ledger import ImpressionLedger
from .listener import ChangeListener
from .loader import PlansConfig, load_plans
from .markers import MarkerStore
from .models import (
    CounterType,
    FeatureAccessDecision,
    ImpressionRecord,
    Subscription,
    Tier,
    TriggerType,
    UsageLimitResult,
    utcnow,
)
from .notifications import Notification, NotificationDispatcher, Notifier
from .paywall import PaywallGate
from .resolver import EntitlementResolver, is_in_trial, trial_days_remaining
from .schemas import parse_change_event
from .settings import EngineSettings, load_settings
from .store import Clock, KeyValueStore, SubscriptionProvider, SubscriptionStore, build_kv_store
from .triggers import TriggerEvaluator, TriggerRegistry
from .usage import UsageEventSource, UsageLimitTracker

logger = logging.getLogger(__name__)

ANALYTICS_FLUSH_TIMEOUT_SECONDS = 5


class EntitlementEngine:
    def __init__(
        self,
        user_id: str,
        provider: SubscriptionProvider,
        usage_source: UsageEventSource,
        *,
        kv_store: Optional[KeyValueStore] = None,
        analytics_sink: Optional[AnalyticsSink] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[EngineSettings] = None,
        plans: Optional[PlansConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        user_id = str(user_id).strip()
        if not user_id:
            raise ValueError("user_id is required")

        self.user_id = user_id
        self.settings = settings or load_settings()
        self.plans = plans or load_plans(self.settings.plans_path)
        self._owns_kv = kv_store is None
        self.kv_store = kv_store or build_kv_store(self.settings.redis_url)
        self._provider = provider
        self._clock = clock
        self._unsubscribe: Optional[Callable[[], Any]] = None

        self.analytics = AnalyticsEmitter(analytics_sink, user_id=user_id)
        dispatcher = NotificationDispatcher(notifier)

        self.store = SubscriptionStore(user_id, provider, self.kv_store, clock=clock)
        self.cache = AccessCache(
            self.store,
            EntitlementResolver(self.plans.matrix),
            self.kv_store,
            ttl_seconds=self.settings.cache_ttl_seconds,
            analytics=self.analytics,
            clock=clock,
        )
        self.usage = UsageLimitTracker(
            user_id,
            usage_source,
            self.plans.free_tier,
            self.kv_store,
            notifier=dispatcher,
            clock=clock,
        )
        self.ledger = ImpressionLedger(user_id, self.kv_store, clock=clock)
        self.triggers = TriggerRegistry.from_config(self.plans.triggers, self.plans.matrix)
        self.evaluator = TriggerEvaluator(self.triggers, self.cache, self.ledger, analytics=self.analytics, clock=clock)
        self.paywall = PaywallGate(
            self.cache,
            self.ledger,
            self.kv_store,
            analytics=self.analytics,
            cooldown_hours=self.settings.paywall_cooldown_hours,
            max_impressions=self.settings.paywall_max_impressions,
            clock=clock,
        )
        self.listener = ChangeListener(
            self.store,
            self.cache,
            self.usage,
            self.kv_store,
            notifier=dispatcher,
            grace_period_days=self.settings.grace_period_days,
            history_size=self.settings.processed_event_history,
            clock=clock,
        )
        self.markers = MarkerStore(user_id, self.kv_store)

    async def __aenter__(self) -> "EntitlementEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self) -> None:
        """Restore the persisted cache, subscribe to pushes and start the listener."""
        restored = await self.cache.load()
        self.usage.update_tier(await self.cache.current_tier())
        self._unsubscribe = self._provider.subscribe_to_changes(self.user_id, self.listener.submit)
        self.listener.start()
        logger.info(
            "Entitlement engine started",
            extra={
                "user_id": self.user_id,
                "restored_decisions": restored,
                "trigger_count": len(self.triggers),
            },
        )

    async def stop(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            result = unsubscribe()
            if inspect.isawaitable(result):
                await result
        await self.listener.stop()
        await self.analytics.flush(timeout=ANALYTICS_FLUSH_TIMEOUT_SECONDS)
        if self._owns_kv and hasattr(self.kv_store, "close"):
            await self.kv_store.close()
        logger.info("Entitlement engine stopped", extra={"user_id": self.user_id})

    # Access

    async def check_access(self, feature_key: str) -> FeatureAccessDecision:
        return await self.cache.check_access(feature_key)

    async def check_multiple(self, feature_keys: Iterable[str]) -> Dict[str, FeatureAccessDecision]:
        return await self.cache.check_multiple(feature_keys)

    async def current_tier(self) -> Tier:
        return await self.cache.current_tier()

    async def clear_cache(self) -> None:
        await self.cache.clear()

    async def _subscription(self) -> Optional[Subscription]:
        try:
            snapshot = await self.cache.current_snapshot()
        except SubscriptionLookupError:
            return None
        return snapshot.subscription

    async def is_in_trial(self) -> bool:
        return is_in_trial(await self._subscription(), self._clock())

    async def trial_days_remaining(self) -> int:
        return trial_days_remaining(await self._subscription(), self._clock())

    # Usage

    async def _sync_usage_tier(self) -> None:
        self.usage.update_tier(await self.cache.current_tier())

    async def check_limit(self, counter_type: CounterType) -> UsageLimitResult:
        await self._sync_usage_tier()
        return await self.usage.check_limit(counter_type)

    async def notify_usage(self, counter_type: CounterType) -> Optional[Notification]:
        await self._sync_usage_tier()
        return await self.usage.notify_usage(counter_type)

    # Paywalls

    async def on_event(self, event_name: str, payload: Optional[Mapping[str, Any]] = None) -> Optional[str]:
        return await self.evaluator.on_event(event_name, payload)

    async def should_show_paywall(self, feature_key: str) -> bool:
        return await self.paywall.should_show(feature_key)

    async def record_paywall_shown(
        self,
        feature_key: str,
        trigger_type: TriggerType = TriggerType.SOFT_PAYWALL,
    ) -> Optional[ImpressionRecord]:
        """Record an impression; None when the ledger could not be written."""
        return await self.paywall.record_shown(feature_key, trigger_type)

    async def track_upgrade_clicked(
        self,
        feature_key: Optional[str] = None,
        trigger_type: TriggerType = TriggerType.SOFT_PAYWALL,
    ) -> None:
        await self.paywall.track_upgrade_clicked(feature_key, trigger_type)

    async def set_active_workout(self, active: bool) -> bool:
        return await self.paywall.set_active_workout(active)

    # Subscription changes

    async def handle_change(self, raw: Any) -> List[Notification]:
        """Process a pushed change inline (e.g. from a webhook handler)."""
        try:
            event = parse_change_event(raw)
        except ValidationError as e:
            logger.warning(
                "Dropping invalid subscription change",
                extra={"user_id": self.user_id, "error": str(e)},
            )
            return []
        return await self.listener.process(event)
