"""
Entitlement and paywall trigger engine.

This package provides:
- EntitlementEngine: per-user facade over every component below
- AccessCache / EntitlementResolver: tier-based feature access, fail-closed
- UsageLimitTracker: Free-tier weekly workout / daily AI chat quotas
- TriggerRegistry / TriggerEvaluator: event-driven paywall triggers
- PaywallGate: ad-hoc paywall checks with cooldown and impression caps
- ChangeListener: pushed subscription changes, notifications and markers

Configuration: paygate/config/plans.json, overridable via PAYGATE_PLANS_PATH.
"""

from paygate.analytics import AnalyticsEmitter, NullAnalyticsSink, RecordingAnalyticsSink
from paygate.cache import AccessCache
from paygate.engine import EntitlementEngine
from paygate.errors import (
    ConfigurationError,
    PaygateError,
    SubscriptionLookupError,
    UsageLookupError,
)
from paygate.ledger import ImpressionLedger
from paygate.listener import ChangeListener
from paygate.loader import PlanLoader, PlansConfig, load_plans
from paygate.matrix import EntitlementMatrix, FreeTierLimits
from paygate.models import (
    CounterType,
    FeatureAccessDecision,
    ImpressionRecord,
    ReasonCode,
    Subscription,
    SubscriptionChangeEvent,
    SubscriptionStatus,
    Tier,
    TriggerDefinition,
    TriggerType,
    UsageLimitResult,
)
from paygate.notifications import Notification, NotificationKind, RecordingNotifier
from paygate.paywall import PaywallGate
from paygate.resolver import EntitlementResolver, effective_tier
from paygate.settings import EngineSettings, load_settings
from paygate.store import (
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    SubscriptionStore,
    build_kv_store,
)
from paygate.triggers import TriggerEvaluator, TriggerRegistry
from paygate.usage import UsageLimitTracker

__all__ = [
    # Engine
    "EntitlementEngine",
    # Access
    "AccessCache",
    "EntitlementResolver",
    "effective_tier",
    # Usage
    "UsageLimitTracker",
    # Paywalls
    "ImpressionLedger",
    "PaywallGate",
    "TriggerEvaluator",
    "TriggerRegistry",
    # Subscription changes
    "ChangeListener",
    "Notification",
    "NotificationKind",
    "RecordingNotifier",
    # Analytics
    "AnalyticsEmitter",
    "NullAnalyticsSink",
    "RecordingAnalyticsSink",
    # Config
    "EngineSettings",
    "load_settings",
    "PlanLoader",
    "PlansConfig",
    "load_plans",
    "EntitlementMatrix",
    "FreeTierLimits",
    # Storage
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "SubscriptionStore",
    "build_kv_store",
    # Models
    "CounterType",
    "FeatureAccessDecision",
    "ImpressionRecord",
    "ReasonCode",
    "Subscription",
    "SubscriptionChangeEvent",
    "SubscriptionStatus",
    "Tier",
    "TriggerDefinition",
    "TriggerType",
    "UsageLimitResult",
    # Errors
    "PaygateError",
    "SubscriptionLookupError",
    "UsageLookupError",
    "ConfigurationError",
]
