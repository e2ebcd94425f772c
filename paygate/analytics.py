"""
Best-effort analytics emission.

Events are delivered from detached tasks, so a slow or failing sink never
delays or influences an entitlement or trigger decision. Failures are
logged and swallowed.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

logger = logging.getLogger(__name__)

FEATURE_GATE_CHECK = "feature_gate_check"
PAYWALL_IMPRESSION = "paywall_impression"
PAYWALL_UPGRADE_CLICKED = "paywall_upgrade_clicked"


class AnalyticsSink(Protocol):
    async def track(self, event_name: str, properties: Dict[str, Any]) -> None: ...


class NullAnalyticsSink:
    async def track(self, event_name: str, properties: Dict[str, Any]) -> None:
        return None


class RecordingAnalyticsSink:
    """Keeps events in memory; handy for local development and tests."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def track(self, event_name: str, properties: Dict[str, Any]) -> None:
        self.events.append((event_name, dict(properties)))

    def named(self, event_name: str) -> List[Dict[str, Any]]:
        return [props for name, props in self.events if name == event_name]


class AnalyticsEmitter:
    def __init__(self, sink: Optional[AnalyticsSink] = None, *, user_id: Optional[str] = None) -> None:
        self._sink = sink or NullAnalyticsSink()
        self._user_id = user_id
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def emit(self, event_name: str, properties: Dict[str, Any]) -> None:
        """Schedule delivery and return immediately."""
        task = asyncio.create_task(self._deliver(event_name, dict(properties)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries; anything still running after timeout is cancelled."""
        if not self._pending:
            return
        _, not_done = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning(
                "Cancelled stalled analytics deliveries",
                extra={"user_id": self._user_id, "count": len(not_done)},
            )
            await asyncio.gather(*not_done, return_exceptions=True)

    async def _deliver(self, event_name: str, properties: Dict[str, Any]) -> None:
        try:
            await self._sink.track(event_name, properties)
        except Exception as e:
            logger.warning(
                "Analytics delivery failed",
                extra={"user_id": self._user_id, "event_name": event_name, "error": str(e)},
            )
