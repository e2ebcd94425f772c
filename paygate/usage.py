"""
Free-tier usage limits.

Usage is never counted in memory: each check asks the UsageEventSource how
many events exist in the current window, so events created by other app
surfaces or backend jobs are always reflected.

Time zone policy: every window is computed in UTC. The weekly window starts
Sunday 00:00 UTC; the daily window starts 00:00 UTC.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from .alerts import emit_lookup_failure
from .errors import UsageLookupError
from .matrix import FreeTierLimits
from .models import CounterType, Tier, UsageCounter, UsageLimitResult, utcnow
from .notifications import Notification, NotificationKind, NotificationDispatcher
from .store import Clock, KeyValueStore

logger = logging.getLogger(__name__)

USAGE_ERROR_REASON = "error checking usage"

# Python weekday() of the first day of the usage week (Sunday)
WEEK_START_WEEKDAY = 6


class UsageEventSource(Protocol):
    async def count_events(self, user_id: str, counter_type: CounterType, window_start: datetime) -> int: ...


def window_start(counter_type: CounterType, now: datetime) -> datetime:
    """Start of the usage window containing now (UTC)."""
    now_utc = now.astimezone(timezone.utc)
    midnight = now_utc.replace(hour=0, minute=0, second=0, microsecond=0)
    if counter_type == CounterType.AI_CHATS:
        return midnight
    days_since_start = (midnight.weekday() - WEEK_START_WEEKDAY) % 7
    return midnight - timedelta(days=days_since_start)


def _notice_key(user_id: str, counter_type: CounterType, start: datetime) -> str:
    return f"usage_notice:{user_id}:{counter_type.value}:{start.date().isoformat()}"


class UsageLimitTracker:
    def __init__(
        self,
        user_id: str,
        source: UsageEventSource,
        limits: FreeTierLimits,
        kv_store: KeyValueStore,
        *,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Clock = utcnow,
        tier: Tier = Tier.FREE,
    ) -> None:
        self.user_id = user_id
        self._source = source
        self._limits = limits
        self._kv = kv_store
        self._notifier = notifier
        self._clock = clock
        self._tier = tier
        self._notice_lock = asyncio.Lock()

    @property
    def tier(self) -> Tier:
        return self._tier

    def update_tier(self, tier: Tier) -> None:
        if tier != self._tier:
            logger.info(
                "Usage tracker tier changed",
                extra={"user_id": self.user_id, "from_tier": self._tier.value, "to_tier": tier.value},
            )
        self._tier = tier

    async def counter(self, counter_type: CounterType) -> UsageCounter:
        """Current window's counter. Raises UsageLookupError when the source fails."""
        counter_type = CounterType(counter_type)
        start = window_start(counter_type, self._clock())
        try:
            count = await self._source.count_events(self.user_id, counter_type, start)
        except Exception as exc:
            raise UsageLookupError(self.user_id, counter_type.value, str(exc)) from exc
        return UsageCounter(
            user_id=self.user_id,
            counter_type=counter_type,
            window_start=start,
            count=int(count),
            limit=self._limits.limit_for(counter_type),
        )

    async def check_limit(self, counter_type: CounterType) -> UsageLimitResult:
        if self._tier != Tier.FREE:
            return UsageLimitResult(within_limit=True, used=0, limit=math.inf)

        try:
            counter = await self.counter(counter_type)
        except UsageLookupError as exc:
            emit_lookup_failure(self.user_id, exc.detail, source="usage")
            return UsageLimitResult(
                within_limit=False,
                used=0,
                limit=self._limits.limit_for(CounterType(counter_type)),
                reason=USAGE_ERROR_REASON,
            )

        return UsageLimitResult(
            within_limit=counter.count < counter.limit,
            used=counter.count,
            limit=counter.limit,
        )

    async def notify_usage(self, counter_type: CounterType) -> Optional[Notification]:
        """
        Called after a usage event. Sends an approaching/reached notice at most
        once per window for Free users.
        """
        counter_type = CounterType(counter_type)
        if self._tier != Tier.FREE or self._notifier is None:
            return None

        result = await self.check_limit(counter_type)
        if result.reason == USAGE_ERROR_REASON:
            return None

        if counter_type == CounterType.WORKOUTS:
            if result.used < result.limit - 1:
                return None
            notification = Notification(
                kind=NotificationKind.USAGE_APPROACHING_LIMIT,
                user_id=self.user_id,
                data={"counter_type": counter_type.value, "used": result.used, "limit": result.limit},
            )
        else:
            if result.used < result.limit:
                return None
            notification = Notification(
                kind=NotificationKind.USAGE_LIMIT_REACHED,
                user_id=self.user_id,
                data={"counter_type": counter_type.value, "used": result.used, "limit": result.limit},
            )

        marker = _notice_key(self.user_id, counter_type, window_start(counter_type, self._clock()))
        async with self._notice_lock:
            try:
                if await self._kv.get(marker):
                    return None
                await self._kv.set(marker, b"1")
            except Exception as e:
                logger.warning("Usage notice marker unavailable: %s", e, extra={"user_id": self.user_id})
                return None

        await self._notifier.send(notification)
        return notification
