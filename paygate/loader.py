from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .errors import ConfigurationError
from .matrix import EntitlementMatrix, FreeTierLimits
from .models import Tier
from .settings import DEFAULT_PLANS_PATH

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlansConfig:
    """Parsed plan mapping loaded from plans.json."""

    matrix: EntitlementMatrix
    free_tier: FreeTierLimits
    triggers: Sequence[Mapping[str, Any]] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "triggers", tuple(self.triggers))


class PlanLoader:
    """Loads the feature matrix, Free-tier quotas and trigger catalogue with reload support."""

    def __init__(self, config_path: Union[str, Path] = DEFAULT_PLANS_PATH) -> None:
        self._config_path = Path(config_path)
        self._lock = RLock()
        self._config: PlansConfig
        self.reload()

    @property
    def config(self) -> PlansConfig:
        with self._lock:
            return self._config

    def reload(self) -> None:
        """Reload config from disk (for safe process restart workflows)."""
        raw = self._read_config_file()
        parsed = parse_plans_config(raw)
        with self._lock:
            self._config = parsed
        logger.info(
            "Loaded plan config",
            extra={
                "path": str(self._config_path),
                "feature_count": len(parsed.matrix),
                "trigger_count": len(parsed.triggers),
            },
        )

    def _read_config_file(self) -> dict:
        try:
            with self._config_path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"unable to read {self._config_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError("plans.json must contain a top-level object")
        return raw


def load_plans(config_path: Optional[Union[str, Path]] = None) -> PlansConfig:
    return PlanLoader(config_path or DEFAULT_PLANS_PATH).config


def parse_plans_config(raw: Mapping[str, Any]) -> PlansConfig:
    features_raw = raw.get("features")
    if not isinstance(features_raw, dict):
        raise ConfigurationError("plans.json must include an object field named 'features'", field="features")

    features: Dict[str, List[Tier]] = {}
    for feature_key, tiers in features_raw.items():
        if not isinstance(feature_key, str) or not feature_key.strip():
            raise ConfigurationError(f"invalid feature key: {feature_key!r}", field="features")
        if not isinstance(tiers, list):
            raise ConfigurationError(f"feature '{feature_key}' tiers must be a list", field="features")
        parsed_tiers: List[Tier] = []
        for tier in tiers:
            try:
                parsed_tiers.append(Tier(tier))
            except ValueError as exc:
                raise ConfigurationError(
                    f"feature '{feature_key}' has unknown tier: {tier!r}", field="features"
                ) from exc
        features[feature_key.strip()] = parsed_tiers

    free_raw = raw.get("free_tier", {})
    if not isinstance(free_raw, dict):
        raise ConfigurationError("free_tier must be an object", field="free_tier")
    limits: Dict[str, int] = {}
    for limit_key in ("workouts_per_week", "ai_chats_per_day"):
        if limit_key not in free_raw:
            continue
        value = free_raw[limit_key]
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ConfigurationError(
                f"free_tier.{limit_key} must be a non-negative integer", field=f"free_tier.{limit_key}"
            )
        limits[limit_key] = value

    triggers_raw = raw.get("triggers", [])
    if not isinstance(triggers_raw, list):
        raise ConfigurationError("triggers must be a list", field="triggers")

    return PlansConfig(
        matrix=EntitlementMatrix(features=features),
        free_tier=FreeTierLimits(**limits),
        triggers=triggers_raw,
    )
