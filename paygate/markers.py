"""
Scheduling markers (trial reminders, win-back offers).

Markers only record *when* something should happen; delivery belongs to
whoever reads them.
"""

import json
import logging
from typing import Any, Optional

from .store import KeyValueStore

logger = logging.getLogger(__name__)

TRIAL_REMINDERS = "trial_reminders"
WINBACK_CAMPAIGNS = "winback_campaigns"


class MarkerStore:
    def __init__(self, user_id: str, kv_store: KeyValueStore) -> None:
        self.user_id = user_id
        self._kv = kv_store

    def _key(self, name: str) -> str:
        return f"markers:{self.user_id}:{name}"

    async def put(self, name: str, payload: Any) -> bool:
        try:
            await self._kv.set(self._key(name), json.dumps(payload).encode("utf-8"))
        except Exception as e:
            logger.warning("Marker write failed: %s", e, extra={"user_id": self.user_id, "marker": name})
            return False
        return True

    async def get(self, name: str) -> Optional[Any]:
        raw = await self._kv.get(self._key(name))
        return json.loads(raw) if raw else None

    async def remove(self, name: str) -> None:
        try:
            await self._kv.remove(self._key(name))
        except Exception as e:
            logger.warning("Marker delete failed: %s", e, extra={"user_id": self.user_id, "marker": name})
