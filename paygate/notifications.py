"""
User-facing subscription notifications.

The engine decides *which* notification to raise; rendering and delivery
belong to the Notifier collaborator. Delivery failures are logged only.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    ACTIVATED = "activated"
    UPGRADED = "upgraded"
    TRIAL_STARTED = "trial_started"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REQUIRED = "payment_required"
    WILL_END = "will_end"
    ENDED = "ended"
    PAUSED = "paused"
    USAGE_APPROACHING_LIMIT = "usage_approaching_limit"
    USAGE_LIMIT_REACHED = "usage_limit_reached"


class NotificationLevel(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"


_LEVELS = {
    NotificationKind.ACTIVATED: NotificationLevel.SUCCESS,
    NotificationKind.UPGRADED: NotificationLevel.SUCCESS,
    NotificationKind.TRIAL_STARTED: NotificationLevel.SUCCESS,
    NotificationKind.PAYMENT_FAILED: NotificationLevel.WARNING,
    NotificationKind.PAYMENT_REQUIRED: NotificationLevel.WARNING,
}


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    user_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None

    @property
    def level(self) -> NotificationLevel:
        return _LEVELS.get(self.kind, NotificationLevel.INFO)


class Notifier(Protocol):
    async def notify(self, notification: Notification) -> None: ...


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Notification] = []

    async def notify(self, notification: Notification) -> None:
        self.sent.append(notification)

    def kinds(self) -> List[NotificationKind]:
        return [n.kind for n in self.sent]


class NotificationDispatcher:
    def __init__(self, notifier: Optional[Notifier] = None) -> None:
        self._notifier = notifier

    async def send(self, notification: Notification) -> bool:
        if self._notifier is None:
            logger.debug("No notifier configured", extra={"kind": notification.kind.value})
            return False
        try:
            await self._notifier.notify(notification)
        except Exception as e:
            logger.warning(
                "Notification delivery failed",
                extra={
                    "user_id": notification.user_id,
                    "kind": notification.kind.value,
                    "error": str(e),
                },
            )
            return False
        return True
