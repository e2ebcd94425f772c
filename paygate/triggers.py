"""
Paywall trigger catalogue and evaluation.

A domain event fires at most one trigger: candidates matching the event are
filtered by entitlement (a feature-limit trigger never fires for a feature
the user already has), cooldown and impression cap, then the highest
priority wins with ties going to the first registered trigger.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .analytics import PAYWALL_IMPRESSION, AnalyticsEmitter
from .cache import AccessCache
from .errors import ConfigurationError
from .ledger import ImpressionLedger, cooldown_active, impression_capped
from .matrix import EntitlementMatrix
from .models import MatchCondition, TriggerDefinition, TriggerType, utcnow
from .store import Clock

logger = logging.getLogger(__name__)

_RESERVED_CONDITION_KEYS = ("event", "feature")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def parse_trigger(raw: Any, matrix: EntitlementMatrix) -> TriggerDefinition:
    """Validate one raw trigger definition. Raises ConfigurationError."""
    if not isinstance(raw, dict):
        raise ConfigurationError("trigger definition must be an object")

    trigger_id = raw.get("id")
    if not isinstance(trigger_id, str) or not trigger_id.strip():
        raise ConfigurationError("trigger id is required", field="id")

    try:
        trigger_type = TriggerType(raw.get("type"))
    except ValueError as exc:
        raise ConfigurationError(f"unknown trigger type: {raw.get('type')!r}", field="type") from exc

    condition = raw.get("condition")
    if not isinstance(condition, dict):
        raise ConfigurationError("condition must be an object", field="condition")
    event = condition.get("event")
    if not isinstance(event, str) or not event.strip():
        raise ConfigurationError("condition.event is required", field="condition.event")

    feature_key = condition.get("feature")
    if feature_key is not None:
        if not isinstance(feature_key, str) or feature_key.strip() not in matrix:
            raise ConfigurationError(
                f"condition.feature {feature_key!r} is not in the entitlement matrix",
                field="condition.feature",
            )
        feature_key = feature_key.strip()
    elif trigger_type == TriggerType.FEATURE_LIMIT:
        raise ConfigurationError("feature_limit triggers require condition.feature", field="condition.feature")

    thresholds: Dict[str, int] = {}
    for key, value in condition.items():
        if key in _RESERVED_CONDITION_KEYS:
            continue
        if not _is_int(value) or value < 0:
            raise ConfigurationError(f"condition.{key} must be a non-negative integer", field=f"condition.{key}")
        thresholds[key] = value

    cooldown_hours = raw.get("cooldown_hours")
    if not isinstance(cooldown_hours, (int, float)) or isinstance(cooldown_hours, bool) or cooldown_hours < 0:
        raise ConfigurationError("cooldown_hours must be a non-negative number", field="cooldown_hours")

    max_impressions = raw.get("max_impressions")
    if not _is_int(max_impressions) or max_impressions < 1:
        raise ConfigurationError("max_impressions must be a positive integer", field="max_impressions")

    priority = raw.get("priority", 0)
    if not _is_int(priority):
        raise ConfigurationError("priority must be an integer", field="priority")

    return TriggerDefinition(
        id=trigger_id.strip(),
        trigger_type=trigger_type,
        match_condition=MatchCondition(event=event.strip(), thresholds=thresholds, feature_key=feature_key),
        cooldown_hours=float(cooldown_hours),
        max_impressions=max_impressions,
        priority=priority,
    )


class TriggerRegistry:
    """Static trigger catalogue; immutable once loaded."""

    def __init__(self, triggers: Iterable[TriggerDefinition] = ()) -> None:
        self._triggers: Tuple[TriggerDefinition, ...] = tuple(triggers)
        self.excluded: Dict[str, str] = {}

    @classmethod
    def from_config(cls, raw_triggers: Iterable[Any], matrix: EntitlementMatrix) -> "TriggerRegistry":
        accepted: List[TriggerDefinition] = []
        seen = set()
        excluded: Dict[str, str] = {}
        for index, raw in enumerate(raw_triggers):
            label = raw.get("id") if isinstance(raw, dict) and raw.get("id") else f"#{index}"
            try:
                trigger = parse_trigger(raw, matrix)
                if trigger.id in seen:
                    raise ConfigurationError(f"duplicate trigger id {trigger.id!r}", field="id")
            except ConfigurationError as exc:
                excluded[str(label)] = str(exc)
                logger.warning(
                    "Excluding invalid paywall trigger",
                    extra={"trigger_id": label, "error": str(exc), "field": exc.field},
                )
                continue
            seen.add(trigger.id)
            accepted.append(trigger)

        registry = cls(accepted)
        registry.excluded = excluded
        return registry

    def __iter__(self):
        return iter(self._triggers)

    def __len__(self) -> int:
        return len(self._triggers)

    def get(self, trigger_id: str) -> Optional[TriggerDefinition]:
        for trigger in self._triggers:
            if trigger.id == trigger_id:
                return trigger
        return None

    def candidates(self, event_name: str, payload: Mapping[str, Any]) -> List[TriggerDefinition]:
        """Triggers whose condition matches the event, in registration order."""
        return [t for t in self._triggers if t.match_condition.matches(event_name, payload)]


class TriggerEvaluator:
    def __init__(
        self,
        registry: TriggerRegistry,
        access: AccessCache,
        ledger: ImpressionLedger,
        *,
        analytics: Optional[AnalyticsEmitter] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._registry = registry
        self._access = access
        self._ledger = ledger
        self.analytics = analytics or AnalyticsEmitter(user_id=ledger.user_id)
        self._clock = clock

    async def on_event(self, event_name: str, payload: Optional[Mapping[str, Any]] = None) -> Optional[str]:
        """Return the id of the single trigger fired for this event, or None."""
        payload = dict(payload or {})
        matched = self._registry.candidates(event_name, payload)
        if not matched:
            return None

        now = self._clock()
        feature_keys = [t.match_condition.feature_key for t in matched if t.match_condition.feature_key]
        decisions = await self._access.check_multiple(feature_keys) if feature_keys else {}

        eligible: List[TriggerDefinition] = []
        for trigger in matched:
            feature_key = trigger.match_condition.feature_key
            if feature_key:
                decision = decisions[feature_key]
                if decision.has_access or decision.is_degraded:
                    continue
            try:
                record = await self._ledger.get_trigger(trigger.id)
            except Exception as e:
                logger.warning(
                    "Impression lookup failed, skipping trigger",
                    extra={"user_id": self._ledger.user_id, "trigger_id": trigger.id, "error": str(e)},
                )
                continue
            if impression_capped(record, trigger.max_impressions):
                continue
            if cooldown_active(record, trigger.cooldown_hours, now):
                continue
            eligible.append(trigger)

        # sorted() is stable: equal priorities keep registration order
        for trigger in sorted(eligible, key=lambda t: t.priority, reverse=True):
            try:
                claimed = await self._ledger.try_claim_trigger(
                    trigger.id,
                    cooldown_hours=trigger.cooldown_hours,
                    max_impressions=trigger.max_impressions,
                    now=now,
                )
            except Exception as e:
                logger.warning(
                    "Impression write failed, trigger not fired",
                    extra={"user_id": self._ledger.user_id, "trigger_id": trigger.id, "error": str(e)},
                )
                continue
            if claimed is None:
                continue

            logger.info(
                "Paywall trigger fired",
                extra={
                    "user_id": self._ledger.user_id,
                    "trigger_id": trigger.id,
                    "event_name": event_name,
                    "impression_count": claimed.impression_count,
                },
            )
            self.analytics.emit(
                PAYWALL_IMPRESSION,
                {
                    "triggerId": trigger.id,
                    "featureKey": trigger.match_condition.feature_key,
                    "eventName": event_name,
                },
            )
            return trigger.id

        return None
