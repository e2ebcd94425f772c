"""
Subscription change listener.

Pushed changes are queued and consumed by one task, so two changes for the
same user are never processed concurrently. For every change the access
cache is invalidated and the usage tracker's tier recomputed; status
transitions additionally raise a user notification and write scheduling
markers. Redelivered events (same event id) are skipped.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, List, Optional

from pydantic import ValidationError

from .cache import AccessCache
from .markers import TRIAL_REMINDERS, WINBACK_CAMPAIGNS, MarkerStore
from .models import (
    ENTITLED_STATUSES,
    Subscription,
    SubscriptionChangeEvent,
    SubscriptionStatus,
    utcnow,
)
from .notifications import Notification, NotificationDispatcher, NotificationKind
from .resolver import effective_tier, trial_days_remaining
from .schemas import parse_change_event
from .settings import (
    DEFAULT_GRACE_PERIOD_DAYS,
    DEFAULT_PROCESSED_EVENT_HISTORY,
    TRIAL_REMINDER_DAYS,
    WINBACK_CAMPAIGNS as WINBACK_OFFERS,
)
from .store import Clock, KeyValueStore, SubscriptionStore
from .usage import UsageLimitTracker

logger = logging.getLogger(__name__)


def event_fingerprint(event: SubscriptionChangeEvent) -> str:
    """Stable id for pushes that arrive without one."""
    body = {
        "current": event.current.to_dict(),
        "previous": event.previous.to_dict() if event.previous else None,
    }
    return hashlib.sha256(json.dumps(body, sort_keys=True).encode("utf-8")).hexdigest()


def _same_state(previous: Optional[Subscription], current: Subscription) -> bool:
    return (
        previous is not None
        and previous.status == current.status
        and previous.tier == current.tier
        and previous.cancel_at_period_end == current.cancel_at_period_end
    )


class ChangeListener:
    def __init__(
        self,
        store: SubscriptionStore,
        cache: AccessCache,
        tracker: UsageLimitTracker,
        kv_store: KeyValueStore,
        *,
        notifier: Optional[NotificationDispatcher] = None,
        grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
        history_size: int = DEFAULT_PROCESSED_EVENT_HISTORY,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._tracker = tracker
        self._kv = kv_store
        self._markers = MarkerStore(store.user_id, kv_store)
        self._notifier = notifier or NotificationDispatcher()
        self._grace = timedelta(days=grace_period_days)
        self._history_size = history_size
        self._clock = clock
        self._queue: "asyncio.Queue[SubscriptionChangeEvent]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._process_lock = asyncio.Lock()
        self._processed: "OrderedDict[str, None]" = OrderedDict()
        self._history_loaded = False

    @property
    def user_id(self) -> str:
        return self._store.user_id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _history_key(self) -> str:
        return f"change_events:{self.user_id}"

    def submit(self, raw: Any) -> bool:
        """Queue a pushed change; safe to use directly as a provider callback."""
        try:
            event = parse_change_event(raw)
        except ValidationError as e:
            logger.warning(
                "Dropping invalid subscription change",
                extra={"user_id": self.user_id, "error": str(e)},
            )
            return False
        self._queue.put_nowait(event)
        return True

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"paygate-change-listener-{self.user_id}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def drain(self) -> None:
        """Wait until every queued change has been processed."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process(event)
            except Exception:
                logger.exception("Subscription change processing failed", extra={"user_id": self.user_id})
            finally:
                self._queue.task_done()

    async def process(self, event: SubscriptionChangeEvent) -> List[Notification]:
        """Apply one change. Returns the notifications raised (empty for duplicates)."""
        async with self._process_lock:
            event_id = event.event_id or event_fingerprint(event)
            await self._load_history()
            if event_id in self._processed:
                logger.info(
                    "Skipping duplicate subscription change",
                    extra={"user_id": self.user_id, "event_id": event_id},
                )
                return []

            if event.current.user_id != self.user_id:
                logger.warning(
                    "Ignoring subscription change for another user",
                    extra={"user_id": self.user_id, "event_user_id": event.current.user_id},
                )
                return []

            notifications = await self._apply(event, event_id)
            self._remember(event_id)
            await self._save_history()
            return notifications

    async def _apply(self, event: SubscriptionChangeEvent, event_id: str) -> List[Notification]:
        current, previous = event.current, event.previous
        now = self._clock()

        if current.status == SubscriptionStatus.PAST_DUE:
            await self._store.start_grace_period(now + self._grace)
        elif current.status in ENTITLED_STATUSES:
            await self._store.clear_grace_period()

        # apply + invalidate without yielding in between
        self._store.apply(current)
        await self._cache.invalidate()
        self._tracker.update_tier(
            effective_tier(current, now=now, grace_period_ends_at=self._store.grace_period_ends_at)
        )

        logger.info(
            "Subscription change applied",
            extra={
                "user_id": self.user_id,
                "event_id": event_id,
                "status": current.status.value,
                "tier": current.tier.value,
                "previous_status": previous.status.value if previous else None,
            },
        )

        notifications = await self._side_effects(current, previous, event_id, now)
        for notification in notifications:
            await self._notifier.send(notification)
        return notifications

    async def _side_effects(
        self,
        current: Subscription,
        previous: Optional[Subscription],
        event_id: str,
        now: datetime,
    ) -> List[Notification]:
        status = current.status

        def note(kind: NotificationKind, **data: Any) -> List[Notification]:
            return [Notification(kind=kind, user_id=self.user_id, data=data, event_id=event_id)]

        if status == SubscriptionStatus.ACTIVE:
            if previous is not None and current.tier.level > previous.tier.level:
                return note(NotificationKind.UPGRADED, from_tier=previous.tier.value, to_tier=current.tier.value)
            if previous is None or previous.status not in ENTITLED_STATUSES:
                return note(NotificationKind.ACTIVATED, tier=current.tier.value)
            return []

        if _same_state(previous, current):
            return []

        if status == SubscriptionStatus.TRIALING:
            await self._schedule_trial_reminders(current)
            return note(
                NotificationKind.TRIAL_STARTED,
                tier=current.tier.value,
                trial_days=trial_days_remaining(current, now),
            )

        if status == SubscriptionStatus.PAST_DUE:
            grace_end = self._store.grace_period_ends_at
            return note(
                NotificationKind.PAYMENT_FAILED,
                grace_period_ends_at=grace_end.isoformat() if grace_end else None,
            )

        if status == SubscriptionStatus.CANCELED:
            if current.cancel_at_period_end and current.current_period_end is not None:
                await self._schedule_winback(now)
                return note(NotificationKind.WILL_END, ends_on=current.current_period_end.date().isoformat())
            return note(NotificationKind.ENDED, tier=current.tier.value)

        if status == SubscriptionStatus.PAUSED:
            return note(NotificationKind.PAUSED, tier=current.tier.value)

        if status == SubscriptionStatus.INCOMPLETE:
            return note(NotificationKind.PAYMENT_REQUIRED, tier=current.tier.value)

        logger.info(
            "No notification for subscription status",
            extra={"user_id": self.user_id, "status": status.value},
        )
        return []

    async def _schedule_trial_reminders(self, subscription: Subscription) -> None:
        if subscription.trial_end is None:
            return
        reminders = [
            (subscription.trial_end - timedelta(days=days)).isoformat() for days in TRIAL_REMINDER_DAYS
        ]
        await self._markers.put(
            TRIAL_REMINDERS,
            {"reminders": reminders, "trial_end": subscription.trial_end.isoformat()},
        )

    async def _schedule_winback(self, now: datetime) -> None:
        campaigns = [
            {"send_at": (now + timedelta(days=days)).isoformat(), "discount_percent": discount}
            for days, discount in WINBACK_OFFERS
        ]
        await self._markers.put(WINBACK_CAMPAIGNS, campaigns)

    def _remember(self, event_id: str) -> None:
        self._processed[event_id] = None
        while len(self._processed) > self._history_size:
            self._processed.popitem(last=False)

    async def _load_history(self) -> None:
        if self._history_loaded:
            return
        self._history_loaded = True
        try:
            raw = await self._kv.get(self._history_key())
        except Exception as e:
            logger.warning("Processed change history unavailable: %s", e, extra={"user_id": self.user_id})
            return
        if raw:
            for event_id in json.loads(raw):
                self._remember(str(event_id))

    async def _save_history(self) -> None:
        try:
            await self._kv.set(self._history_key(), json.dumps(list(self._processed)).encode("utf-8"))
        except Exception as e:
            logger.warning("Processed change history write failed: %s", e, extra={"user_id": self.user_id})
