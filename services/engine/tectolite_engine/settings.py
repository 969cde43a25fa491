from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    boundary_velocity_threshold: float = 0.05
    min_overlap_area_deg2: float = 0.2
    max_boundary_rings: int = 5
    flowline_step_myr: float = 5.0
    enable_boundaries: bool = True
    history_limit: int = 50
    log_level: str = "info"
    log_format: str = "console"


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    overrides: dict[str, object] = {}
    env_threshold = os.environ.get("TECTOLITE_BOUNDARY_VELOCITY_THRESHOLD")
    if env_threshold:
        overrides["boundary_velocity_threshold"] = float(env_threshold)
    env_area = os.environ.get("TECTOLITE_MIN_OVERLAP_AREA_DEG2")
    if env_area:
        overrides["min_overlap_area_deg2"] = float(env_area)
    env_rings = os.environ.get("TECTOLITE_MAX_BOUNDARY_RINGS")
    if env_rings:
        overrides["max_boundary_rings"] = int(env_rings)
    env_step = os.environ.get("TECTOLITE_FLOWLINE_STEP_MYR")
    if env_step:
        overrides["flowline_step_myr"] = float(env_step)
    env_boundaries = os.environ.get("TECTOLITE_ENABLE_BOUNDARIES")
    if env_boundaries:
        overrides["enable_boundaries"] = _env_flag(env_boundaries)
    env_history = os.environ.get("TECTOLITE_HISTORY_LIMIT")
    if env_history:
        overrides["history_limit"] = int(env_history)
    env_level = os.environ.get("TECTOLITE_LOG_LEVEL")
    if env_level:
        overrides["log_level"] = env_level.lower()
    env_format = os.environ.get("TECTOLITE_LOG_FORMAT")
    if env_format:
        overrides["log_format"] = env_format.lower()
    return Settings(**overrides)  # type: ignore[arg-type]
