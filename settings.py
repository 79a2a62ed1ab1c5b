"""Validated engine settings, overridable through SUNSEAT_* environment variables."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "SUNSEAT_"


class EngineSettings(BaseModel):
    timezone: str = "Europe/Stockholm"
    precompute_tolerance_minutes: int = Field(default=5, ge=0, le=60)
    timeline_resolution_minutes: int = Field(default=10, ge=1, le=24 * 60)
    max_timeline_hours: int = Field(default=48, ge=1, le=7 * 24)
    slot_start_hour: int = Field(default=8, ge=0, le=23)
    slot_end_hour: int = Field(default=20, ge=0, le=23)
    slot_interval_minutes: int = Field(default=10, ge=1, le=120)
    batch_size: int = Field(default=10, ge=1, le=1000)
    retention_days: int = Field(default=3, ge=1, le=30)
    max_retries: int = Field(default=3, ge=0, le=10)
    computation_version: str = "1.0"
    building_search_radius_m: float = Field(default=200.0, gt=0, le=1000.0)
    backfill_realtime: bool = False
    database_url: str = "sqlite:///precomputed.db"


def load_settings(env: Mapping[str, str] | None = None) -> EngineSettings:
    """Build settings from defaults plus any SUNSEAT_<FIELD> overrides."""
    env = os.environ if env is None else env
    overrides: dict[str, str] = {}
    for name in EngineSettings.model_fields:
        raw = env.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            overrides[name] = raw
    if overrides:
        logger.debug("Settings overridden from environment: %s", sorted(overrides))
    return EngineSettings(**overrides)
