"""
Access cache: memoized feature decisions over one subscription snapshot.

A snapshot is valid for ttl_seconds. Any refresh replaces the snapshot and
drops every cached decision, since the effective tier may have changed.
Each decision is stored with the effective tier it was resolved for and is
only served while the snapshot still yields that tier, so a period or grace
end inside the TTL window takes effect immediately.
Concurrent callers that find the snapshot stale share a single refresh.
A lightweight copy is persisted so a restart inside the TTL window does not
repeat the backend lookup.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Tuple

from .alerts import DenyAlertWindow, emit_lookup_failure
from .analytics import FEATURE_GATE_CHECK, AnalyticsEmitter
from .errors import SubscriptionLookupError
from .models import (
    FeatureAccessDecision,
    Subscription,
    SubscriptionStatus,
    Tier,
    degraded_decision,
    utcnow,
)
from .resolver import EntitlementResolver, effective_tier
from .store import Clock, KeyValueStore, SubscriptionSnapshot, SubscriptionStore

logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 2
DEFAULT_TTL_SECONDS = 300

CachedDecision = Tuple[Tier, FeatureAccessDecision]


def _key(user_id: str) -> str:
    return f"access_cache:v{CACHE_SCHEMA_VERSION}:{user_id}"


class AccessCache:
    def __init__(
        self,
        store: SubscriptionStore,
        resolver: EntitlementResolver,
        kv_store: KeyValueStore,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        analytics: Optional[AnalyticsEmitter] = None,
        deny_alerts: Optional[DenyAlertWindow] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._kv = kv_store
        self._ttl = timedelta(seconds=ttl_seconds)
        self.analytics = analytics or AnalyticsEmitter(user_id=store.user_id)
        self._deny_alerts = deny_alerts or DenyAlertWindow()
        self._clock = clock
        self._decisions: Dict[str, CachedDecision] = {}
        self._snapshot: Optional[SubscriptionSnapshot] = None
        self._generation = 0
        self._refresh_lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()

    @property
    def user_id(self) -> str:
        return self._store.user_id

    @property
    def last_subscription_fetch(self) -> Optional[datetime]:
        return self._snapshot.fetched_at if self._snapshot else None

    @property
    def snapshot(self) -> Optional[SubscriptionSnapshot]:
        """Current snapshot without refreshing (may be stale or None)."""
        return self._snapshot

    def cached_keys(self) -> frozenset:
        return frozenset(self._decisions)

    def _is_fresh(self, snapshot: Optional[SubscriptionSnapshot]) -> bool:
        return snapshot is not None and self._clock() - snapshot.fetched_at < self._ttl

    async def current_snapshot(self) -> SubscriptionSnapshot:
        """Return a fresh snapshot, coalescing concurrent refreshes into one fetch."""
        while True:
            snapshot = self._snapshot
            if self._is_fresh(snapshot):
                return snapshot

            async with self._refresh_lock:
                snapshot = self._snapshot
                if self._is_fresh(snapshot):
                    return snapshot

                generation = self._generation
                fresh = await self._store.refresh()
                # an invalidation landed mid-refresh; only a pushed record is newer than it
                if generation != self._generation and not fresh.pushed:
                    continue

                self._snapshot = fresh
                self._decisions.clear()
                return fresh

    async def current_tier(self) -> Tier:
        """Effective tier of the current snapshot; Free when the lookup fails."""
        try:
            snapshot = await self.current_snapshot()
        except SubscriptionLookupError as exc:
            emit_lookup_failure(self.user_id, exc.detail)
            return Tier.FREE
        return self._tier_for(snapshot)

    async def check_access(self, feature_key: str) -> FeatureAccessDecision:
        key = str(feature_key).strip()

        snapshot = self._snapshot
        if self._is_fresh(snapshot):
            cached = self._cached(key, snapshot)
            if cached is not None:
                return cached

        try:
            snapshot = await self.current_snapshot()
        except SubscriptionLookupError as exc:
            emit_lookup_failure(self.user_id, exc.detail)
            return degraded_decision(key, self._clock())

        decision = self._decision_for(key, snapshot)
        await self._persist()
        self._track(decision, snapshot)
        return decision

    async def check_multiple(self, feature_keys: Iterable[str]) -> Dict[str, FeatureAccessDecision]:
        """Resolve several features against one snapshot; never mixes pre- and post-refresh tiers."""
        keys = list(dict.fromkeys(str(k).strip() for k in feature_keys))
        try:
            snapshot = await self.current_snapshot()
        except SubscriptionLookupError as exc:
            emit_lookup_failure(self.user_id, exc.detail)
            now = self._clock()
            return {key: degraded_decision(key, now) for key in keys}

        results: Dict[str, FeatureAccessDecision] = {}
        computed = []
        for key in keys:
            cached = self._cached(key, snapshot)
            if cached is not None:
                results[key] = cached
                continue
            decision = self._decision_for(key, snapshot)
            results[key] = decision
            computed.append(decision)

        if computed:
            await self._persist()
            for decision in computed:
                self._track(decision, snapshot)
        return results

    async def invalidate(self) -> None:
        """Drop the snapshot and every decision; the next check re-resolves regardless of TTL."""
        self._snapshot = None
        self._decisions.clear()
        self._generation += 1
        await self._remove_persisted()

    async def clear(self) -> None:
        await self.invalidate()

    async def load(self) -> int:
        """Restore a persisted snapshot if still inside the TTL. Returns decisions restored."""
        try:
            raw = await self._kv.get(_key(self.user_id))
        except Exception as e:
            logger.warning("Access cache snapshot read failed: %s", e, extra={"user_id": self.user_id})
            return 0
        if not raw:
            return 0

        try:
            snapshot, decisions = _decode_snapshot(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable access cache snapshot: %s", e, extra={"user_id": self.user_id})
            return 0

        now = self._clock()
        if now - snapshot.fetched_at >= self._ttl or self._snapshot is not None:
            return 0

        self._snapshot = snapshot
        self._decisions = {
            key: entry for key, entry in decisions.items() if now - entry[1].resolved_at < self._ttl
        }
        self._store.restore(snapshot)
        return len(self._decisions)

    def _tier_for(self, snapshot: SubscriptionSnapshot) -> Tier:
        return effective_tier(
            snapshot.subscription,
            now=self._clock(),
            grace_period_ends_at=snapshot.grace_period_ends_at,
        )

    def _cached(self, key: str, snapshot: SubscriptionSnapshot) -> Optional[FeatureAccessDecision]:
        if snapshot is not self._snapshot:
            return None
        entry = self._decisions.get(key)
        if entry is None:
            return None
        tier, decision = entry
        # period or grace end may have moved the tier since this was resolved
        if tier != self._tier_for(snapshot):
            return None
        return decision

    def _decision_for(self, key: str, snapshot: SubscriptionSnapshot) -> FeatureAccessDecision:
        tier = self._tier_for(snapshot)
        decision = self._resolver.resolve_for_tier(key, tier, now=self._clock())
        if snapshot is self._snapshot:
            self._decisions[key] = (tier, decision)
        return decision

    def _track(self, decision: FeatureAccessDecision, snapshot: SubscriptionSnapshot) -> None:
        subscription = snapshot.subscription
        if not decision.has_access:
            self._deny_alerts.record(self.user_id, decision.feature_key)
        self.analytics.emit(
            FEATURE_GATE_CHECK,
            {
                "feature": decision.feature_key,
                "hasAccess": decision.has_access,
                "tier": self._tier_for(snapshot).value,
                "isTrialing": bool(subscription and subscription.status == SubscriptionStatus.TRIALING),
            },
        )

    async def _persist(self) -> None:
        async with self._persist_lock:
            snapshot = self._snapshot
            if snapshot is None:
                return
            payload = _encode_snapshot(snapshot, self._decisions)
            try:
                await self._kv.set(_key(self.user_id), json.dumps(payload).encode("utf-8"))
            except Exception as e:
                logger.warning("Access cache snapshot write failed: %s", e, extra={"user_id": self.user_id})

    async def _remove_persisted(self) -> None:
        async with self._persist_lock:
            try:
                await self._kv.remove(_key(self.user_id))
            except Exception as e:
                logger.warning("Access cache snapshot delete failed: %s", e, extra={"user_id": self.user_id})


def _encode_snapshot(snapshot: SubscriptionSnapshot, decisions: Dict[str, CachedDecision]) -> dict:
    return {
        "schema_version": CACHE_SCHEMA_VERSION,
        "fetched_at": snapshot.fetched_at.isoformat(),
        "grace_period_ends_at": (
            snapshot.grace_period_ends_at.isoformat() if snapshot.grace_period_ends_at else None
        ),
        "subscription": snapshot.subscription.to_dict() if snapshot.subscription else None,
        "decisions": {
            key: {**decision.to_dict(), "tier": tier.value} for key, (tier, decision) in decisions.items()
        },
    }


def _decode_snapshot(raw: dict) -> tuple[SubscriptionSnapshot, Dict[str, CachedDecision]]:
    if int(raw.get("schema_version", CACHE_SCHEMA_VERSION)) != CACHE_SCHEMA_VERSION:
        raise ValueError("Unsupported access cache schema version")

    grace = raw.get("grace_period_ends_at")
    subscription = raw.get("subscription")
    snapshot = SubscriptionSnapshot(
        subscription=Subscription.from_dict(subscription) if subscription else None,
        fetched_at=datetime.fromisoformat(raw["fetched_at"]),
        grace_period_ends_at=datetime.fromisoformat(grace) if grace else None,
    )
    decisions = {
        key: (Tier(value["tier"]), FeatureAccessDecision.from_dict(value))
        for key, value in raw.get("decisions", {}).items()
    }
    return snapshot, decisions
