from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from paygate.engine import EntitlementEngine

logger = logging.getLogger(__name__)


@dataclass
class ReconcileStats:
    started_at: str
    completed_at: Optional[str] = None
    engines_checked: int = 0
    boundary_invalidations: int = 0
    errors: int = 0


def _boundary_passed(engine: EntitlementEngine, now: datetime) -> bool:
    snapshot = engine.cache.snapshot
    if snapshot is None:
        return False
    boundaries = [snapshot.grace_period_ends_at]
    if snapshot.subscription is not None:
        boundaries.append(snapshot.subscription.current_period_end)
    return any(snapshot.fetched_at < b <= now for b in boundaries if b is not None)


async def run_entitlement_reconcile_cycle(
    engines: Iterable[EntitlementEngine],
    now: Optional[datetime] = None,
) -> ReconcileStats:
    """Background drift reconciliation job.

    Responsibilities:
    - invalidate users whose grace period or paid period ended after their
      snapshot was taken
    - let the next check recompute lazily
    """
    stats = ReconcileStats(started_at=datetime.now(timezone.utc).isoformat())

    for engine in engines:
        stats.engines_checked += 1
        try:
            if not _boundary_passed(engine, now or datetime.now(timezone.utc)):
                continue
            await engine.clear_cache()
            engine.usage.update_tier(await engine.current_tier())
            stats.boundary_invalidations += 1
        except Exception:
            logger.exception("Entitlement reconcile failed", extra={"user_id": engine.user_id})
            stats.errors += 1

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info(
        "Entitlement reconcile cycle complete",
        extra={
            "engines_checked": stats.engines_checked,
            "boundary_invalidations": stats.boundary_invalidations,
            "errors": stats.errors,
        },
    )
    return stats


async def run_forever(engines: Iterable[EntitlementEngine], interval_seconds: int = 60) -> None:
    engines = list(engines)
    while True:
        await run_entitlement_reconcile_cycle(engines)
        await asyncio.sleep(interval_seconds)
