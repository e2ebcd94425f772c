"""
Engine configuration.

Values come from environment variables with fixed types and defaults:
- PAYGATE_CACHE_TTL_SECONDS:        Access cache TTL (default: "300")
- PAYGATE_GRACE_PERIOD_DAYS:        Grace after a failed payment (default: "3")
- PAYGATE_PAYWALL_COOLDOWN_HOURS:   Ad-hoc paywall cooldown per feature (default: "24")
- PAYGATE_PAYWALL_MAX_IMPRESSIONS:  Ad-hoc paywall ceiling per feature (default: "5")
- PAYGATE_PROCESSED_EVENT_HISTORY:  Change-event ids kept for de-duplication (default: "256")
- PAYGATE_PLANS_PATH:               Plan/trigger config (default: packaged plans.json)
- REDIS_URL:                        Durable key/value store; unset uses in-memory
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_PLANS_PATH = Path(__file__).parent / "config" / "plans.json"

DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_GRACE_PERIOD_DAYS = 3
DEFAULT_PAYWALL_COOLDOWN_HOURS = 24
DEFAULT_PAYWALL_MAX_IMPRESSIONS = 5
DEFAULT_PROCESSED_EVENT_HISTORY = 256

# Trial reminder offsets (days before trial end)
TRIAL_REMINDER_DAYS = (3, 1)

# Win-back offers after a scheduled cancellation: (days after, discount percent)
WINBACK_CAMPAIGNS = ((3, 20), (7, 30), (30, 50))


@dataclass(frozen=True)
class EngineSettings:
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    paywall_cooldown_hours: int = DEFAULT_PAYWALL_COOLDOWN_HOURS
    paywall_max_impressions: int = DEFAULT_PAYWALL_MAX_IMPRESSIONS
    processed_event_history: int = DEFAULT_PROCESSED_EVENT_HISTORY
    plans_path: Path = DEFAULT_PLANS_PATH
    redis_url: Optional[str] = None

    def __post_init__(self) -> None:
        if self.cache_ttl_seconds <= 0:
            raise ValueError("cache_ttl_seconds must be positive")
        if self.grace_period_days < 0:
            raise ValueError("grace_period_days must not be negative")
        if self.paywall_max_impressions < 1:
            raise ValueError("paywall_max_impressions must be at least 1")


def load_settings() -> EngineSettings:
    """Build settings from the environment."""
    plans_path = os.getenv("PAYGATE_PLANS_PATH")
    return EngineSettings(
        cache_ttl_seconds=int(os.getenv("PAYGATE_CACHE_TTL_SECONDS", str(DEFAULT_CACHE_TTL_SECONDS))),
        grace_period_days=int(os.getenv("PAYGATE_GRACE_PERIOD_DAYS", str(DEFAULT_GRACE_PERIOD_DAYS))),
        paywall_cooldown_hours=int(
            os.getenv("PAYGATE_PAYWALL_COOLDOWN_HOURS", str(DEFAULT_PAYWALL_COOLDOWN_HOURS))
        ),
        paywall_max_impressions=int(
            os.getenv("PAYGATE_PAYWALL_MAX_IMPRESSIONS", str(DEFAULT_PAYWALL_MAX_IMPRESSIONS))
        ),
        processed_event_history=int(
            os.getenv("PAYGATE_PROCESSED_EVENT_HISTORY", str(DEFAULT_PROCESSED_EVENT_HISTORY))
        ),
        plans_path=Path(plans_path) if plans_path else DEFAULT_PLANS_PATH,
        redis_url=os.getenv("REDIS_URL") or None,
    )
