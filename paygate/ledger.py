"""
Durable impression history for paywall triggers and ad-hoc feature paywalls.

Each record is read-increment-written under a per-key lock, so concurrent
impressions of the same trigger never lose an update and counts never
decrease. An impression only counts once its write has committed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Optional

from .models import ImpressionRecord, utcnow
from .store import Clock, KeyValueStore

logger = logging.getLogger(__name__)

TRIGGER_SCOPE = "trigger"
FEATURE_SCOPE = "feature"


def cooldown_active(record: ImpressionRecord, cooldown_hours: float, now: datetime) -> bool:
    if record.last_shown_at is None:
        return False
    return now - record.last_shown_at < timedelta(hours=cooldown_hours)


def impression_capped(record: ImpressionRecord, max_impressions: int) -> bool:
    return record.impression_count >= max_impressions


class ImpressionLedger:
    def __init__(self, user_id: str, kv_store: KeyValueStore, *, clock: Clock = utcnow) -> None:
        self.user_id = user_id
        self._kv = kv_store
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _key(self, scope: str, name: str) -> str:
        return f"impressions:{scope}:{self.user_id}:{name}"

    async def get_trigger(self, trigger_id: str) -> ImpressionRecord:
        return await self._read(self._key(TRIGGER_SCOPE, trigger_id))

    async def get_feature(self, feature_key: str) -> ImpressionRecord:
        return await self._read(self._key(FEATURE_SCOPE, feature_key))

    async def record_trigger(self, trigger_id: str, now: Optional[datetime] = None) -> ImpressionRecord:
        key = self._key(TRIGGER_SCOPE, trigger_id)
        async with self._locks[key]:
            return await self._increment(key, now or self._clock())

    async def record_feature(self, feature_key: str, now: Optional[datetime] = None) -> ImpressionRecord:
        key = self._key(FEATURE_SCOPE, feature_key)
        async with self._locks[key]:
            return await self._increment(key, now or self._clock())

    async def try_claim_trigger(
        self,
        trigger_id: str,
        *,
        cooldown_hours: float,
        max_impressions: int,
        now: Optional[datetime] = None,
    ) -> Optional[ImpressionRecord]:
        """Atomically re-check eligibility and record an impression. None if no longer eligible."""
        key = self._key(TRIGGER_SCOPE, trigger_id)
        compare_at = now or self._clock()
        async with self._locks[key]:
            record = await self._read(key)
            if impression_capped(record, max_impressions) or cooldown_active(record, cooldown_hours, compare_at):
                return None
            return await self._write(record, compare_at)

    async def _increment(self, key: str, now: datetime) -> ImpressionRecord:
        record = await self._read(key)
        return await self._write(record, now)

    async def _write(self, record: ImpressionRecord, now: datetime) -> ImpressionRecord:
        last_shown = record.last_shown_at
        updated = ImpressionRecord(
            key=record.key,
            impression_count=record.impression_count + 1,
            last_shown_at=now if last_shown is None or now > last_shown else last_shown,
        )
        await self._kv.set(record.key, json.dumps(updated.to_dict()).encode("utf-8"))
        return updated

    async def _read(self, key: str) -> ImpressionRecord:
        raw = await self._kv.get(key)
        if not raw:
            return ImpressionRecord(key=key)
        try:
            return ImpressionRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            # an unreadable record must not reopen a capped paywall
            logger.warning("Unreadable impression record %s: %s", key, e, extra={"user_id": self.user_id})
            raise
