"""
Alerts for subscription lookup failures and repeated deny events.
"""

import logging
import time
from collections import defaultdict
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DENY_THRESHOLD_PER_MIN = 10


def emit_lookup_failure(user_id: str, error_message: str, *, source: str = "subscription") -> None:
    """Log a fail-closed lookup failure for support follow-up."""
    logger.error(
        "Entitlement lookup failure, failing closed",
        extra={"user_id": user_id, "source": source, "error": error_message},
    )


class DenyAlertWindow:
    """Sliding one-minute window of deny events per user."""

    def __init__(self, threshold: int = DENY_THRESHOLD_PER_MIN, window_seconds: float = 60) -> None:
        self.threshold = threshold
        self.window_seconds = window_seconds
        self._denies: Dict[str, List[float]] = defaultdict(list)

    def record(self, user_id: str, feature_key: str, *, now: Optional[float] = None) -> int:
        """Record a deny event; alert if over threshold per window. Returns the current count."""
        now = time.time() if now is None else now
        cutoff = now - self.window_seconds
        self._denies[user_id] = [t for t in self._denies[user_id] if t > cutoff] + [now]
        count = len(self._denies[user_id])
        if count >= self.threshold:
            emit_deny_alert(user_id, feature_key, count)
        return count


def emit_deny_alert(user_id: str, feature_key: str, count: int) -> None:
    """Alert on repeated deny events (>N/min); usually a client retry loop."""
    logger.warning(
        "Repeated entitlement deny events",
        extra={"user_id": user_id, "feature_key": feature_key, "count_per_min": count},
    )
