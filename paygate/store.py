"""
Storage seams for the engine.

- KeyValueStore: durable bytes store (Redis, or in-memory for tests/dev)
- SubscriptionProvider: the billing backend's subscription lookup + push feed
- SubscriptionStore: last-known subscription for the current user
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

import redis.asyncio as aioredis

from .errors import SubscriptionLookupError
from .models import Subscription, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[bytes]: ...

    async def set(self, key: str, value: bytes) -> None: ...

    async def remove(self, key: str) -> None: ...


class SubscriptionProvider(Protocol):
    async def get_subscription_status(self, user_id: str) -> Optional[Subscription]: ...

    def subscribe_to_changes(self, user_id: str, callback: Callable[[Any], None]) -> Optional[Callable[[], None]]:
        """Register a push callback; may return an unsubscribe callable."""
        ...


class InMemoryKeyValueStore:
    """Process-local store used when no Redis URL is configured."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)


class RedisKeyValueStore:
    """Redis-backed key/value store with a lazily created async client."""

    def __init__(self, redis_url: str, key_prefix: str = "paygate:") -> None:
        if not redis_url:
            raise ValueError("redis_url is required")
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._redis: Optional[aioredis.Redis] = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self.redis_url, decode_responses=False)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[bytes]:
        raw = await self._client().get(self._key(key))
        if raw is None:
            return None
        return raw if isinstance(raw, bytes) else str(raw).encode("utf-8")

    async def set(self, key: str, value: bytes) -> None:
        await self._client().set(self._key(key), value)

    async def remove(self, key: str) -> None:
        await self._client().delete(self._key(key))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_kv_store(redis_url: Optional[str] = None) -> KeyValueStore:
    if redis_url:
        return RedisKeyValueStore(redis_url)
    logger.info("REDIS_URL not set, using in-memory key/value store")
    return InMemoryKeyValueStore()


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Subscription state captured at one refresh; decisions are computed against it."""

    subscription: Optional[Subscription]
    fetched_at: datetime
    grace_period_ends_at: Optional[datetime] = None
    pushed: bool = False


def _grace_key(user_id: str) -> str:
    return f"grace_period_end:{user_id}"


class SubscriptionStore:
    """
    Holds the last-known subscription for one user.

    Refreshed by pull (refresh) or push (apply). A pushed record is
    authoritative: the next refresh returns it instead of pulling, so a
    lagging backend read can never roll the user back to an older state.
    """

    def __init__(
        self,
        user_id: str,
        provider: SubscriptionProvider,
        kv_store: KeyValueStore,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.user_id = user_id
        self._provider = provider
        self._kv = kv_store
        self._clock = clock
        self._subscription: Optional[Subscription] = None
        self._grace_period_ends_at: Optional[datetime] = None
        self._pushed = False
        self._grace_lock = asyncio.Lock()

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    @property
    def grace_period_ends_at(self) -> Optional[datetime]:
        return self._grace_period_ends_at

    def snapshot(self, *, pushed: bool = False) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            subscription=self._subscription,
            fetched_at=self._clock(),
            grace_period_ends_at=self._grace_period_ends_at,
            pushed=pushed,
        )

    def restore(self, snapshot: SubscriptionSnapshot) -> None:
        """Seed state from a persisted snapshot without marking it as pushed."""
        self._subscription = snapshot.subscription
        self._grace_period_ends_at = snapshot.grace_period_ends_at

    def apply(self, current: Subscription) -> None:
        """Record an authoritative pushed update."""
        self._subscription = current
        self._pushed = True

    async def refresh(self) -> SubscriptionSnapshot:
        pushed = self._take_push()
        if pushed is not None:
            return pushed

        try:
            subscription = await self._provider.get_subscription_status(self.user_id)
        except Exception as exc:
            raise SubscriptionLookupError(self.user_id, str(exc), cause=exc) from exc
        grace_period_ends_at = await self._read_grace_period()

        # a push may have landed while the pull was in flight
        pushed = self._take_push()
        if pushed is not None:
            return pushed

        self._subscription = subscription
        self._grace_period_ends_at = grace_period_ends_at
        return self.snapshot()

    def _take_push(self) -> Optional[SubscriptionSnapshot]:
        if not self._pushed:
            return None
        self._pushed = False
        return self.snapshot(pushed=True)

    async def start_grace_period(self, ends_at: datetime) -> bool:
        """Start a grace period unless one is already running. Returns True if started."""
        async with self._grace_lock:
            running = self._grace_period_ends_at or await self._read_grace_period()
            if running is not None and running > self._clock():
                self._grace_period_ends_at = running
                return False
            self._grace_period_ends_at = ends_at
            try:
                await self._kv.set(_grace_key(self.user_id), ends_at.isoformat().encode("utf-8"))
            except Exception as e:
                logger.warning("Grace period marker write failed: %s", e, extra={"user_id": self.user_id})
            return True

    async def clear_grace_period(self) -> None:
        async with self._grace_lock:
            self._grace_period_ends_at = None
            try:
                await self._kv.remove(_grace_key(self.user_id))
            except Exception as e:
                logger.warning("Grace period marker delete failed: %s", e, extra={"user_id": self.user_id})

    async def _read_grace_period(self) -> Optional[datetime]:
        try:
            raw = await self._kv.get(_grace_key(self.user_id))
        except Exception as e:
            logger.warning("Grace period marker read failed: %s", e, extra={"user_id": self.user_id})
            return self._grace_period_ends_at
        return datetime.fromisoformat(raw.decode("utf-8")) if raw else None
