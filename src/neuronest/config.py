"""Centralised application settings loaded from environment / .env file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_DEFAULT_DB_URL = f"sqlite+aiosqlite:///{_PROJECT_ROOT / 'data' / 'neuronest.db'}"


# ── Nested sections ───────────────────────────────────────────


class LinkSettings(BaseModel):
    """Sensor-node connection and polling behaviour."""

    default_address: str = "192.168.1.100"
    default_port: int = 80
    polling_interval_ms: int = Field(2000, ge=50)
    connection_timeout_ms: int = Field(5000, ge=50)
    request_timeout_ms: int = Field(3000, ge=50)
    max_consecutive_failures: int = Field(5, ge=1)
    probe_paths: list[str] = ["/api/sensors", "/api/device-info", "/api/health", "/"]
    sensors_path: str = "/api/sensors"
    device_info_path: str = "/api/device-info"
    ping_path: str = "/api/ping"


class ConditionerSettings(BaseModel):
    """Per-reading smoothing and contact / motion detection constants."""

    ir_threshold: float = 50_000  # MAX30102 finger-on level
    smoothing_window: int = Field(6, ge=1)
    hr_max_jump: float = 25.0
    hr_valid_min: float = 40.0
    hr_valid_max: float = 200.0
    hr_display_min: float = 60.0
    hr_display_max: float = 100.0
    accel_rest_gravity: float = 1.0  # g
    accel_motion_threshold: float = 0.15  # g away from rest
    accel_jerk_threshold: float = 0.12  # g between ticks
    gyro_motion_threshold: float = 30.0  # deg/s
    default_temperature: float = 36.5  # °C


class FeatureNorm(BaseModel):
    mean: float
    std: float


class LadderTier(BaseModel):
    """One rung of a threshold ladder: crossing ``threshold`` awards ``weight``."""

    threshold: float
    weight: float


class ClassifierSettings(BaseModel):
    """Rule-classifier thresholds, weights and smoothing.

    Defaults are calibrated against WESAD baseline distributions so that
    only extreme values register as stress.
    """

    smoothing_window: int = Field(5, ge=1)

    hr_norm: FeatureNorm = FeatureNorm(mean=75.0, std=15.0)
    temperature_norm: FeatureNorm = FeatureNorm(mean=36.5, std=0.5)
    eda_norm: FeatureNorm = FeatureNorm(mean=2.0, std=1.5)

    hr_elevated: LadderTier = LadderTier(threshold=120.0, weight=0.10)
    hr_high: LadderTier = LadderTier(threshold=140.0, weight=0.28)
    hr_critical: LadderTier = LadderTier(threshold=160.0, weight=0.40)
    eda_elevated: LadderTier = LadderTier(threshold=8.0, weight=0.08)
    eda_high: LadderTier = LadderTier(threshold=12.0, weight=0.24)
    eda_critical: LadderTier = LadderTier(threshold=18.0, weight=0.40)
    temp_elevated: LadderTier = LadderTier(threshold=38.0, weight=0.06)
    temp_high: LadderTier = LadderTier(threshold=38.8, weight=0.20)

    deviation_weights: tuple[float, float, float] = (0.4, 0.2, 0.4)  # hr, temp, eda
    outlier_bonus: float = 0.08
    outlier_deviation_low: float = 3.5
    outlier_deviation_high: float = 5.0

    meltdown_score: float = 0.72
    stressed_score: float = 0.50
    min_confidence: float = 0.40
    max_confidence: float = 0.98

    hr_valid_min: float = 40.0
    hr_valid_max: float = 200.0


class RetentionSettings(BaseModel):
    """Ring-buffer capacities of the history store."""

    max_readings: int = Field(1000, ge=1)
    max_predictions: int = Field(500, ge=1)
    max_episodes: int = Field(200, ge=1)


class SyntheticSettings(BaseModel):
    """Generated-not-real input used when no hardware is attached."""

    interval_ms: int = Field(2000, ge=10)
    seed: int | None = None
    stress_probability: float = Field(0.1, ge=0.0, le=1.0)
    device_id: str = "synthetic-device"
    device_name: str = "Synthetic NeuroNest Wearable"


# ── Root settings ─────────────────────────────────────────────


class Settings(BaseSettings):
    """All runtime configuration for the telemetry core.

    Values are read from ``NEURONEST_*`` environment variables first, then
    from a *.env* file at the project root.  Nested sections use ``__`` as
    delimiter, e.g. ``NEURONEST_LINK__POLLING_INTERVAL_MS=1000``.
    """

    model_config = SettingsConfigDict(
        env_prefix="NEURONEST_",
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ── Sensor pipeline ───────────────────────────────────────
    link: LinkSettings = LinkSettings()
    conditioner: ConditionerSettings = ConditionerSettings()
    classifier: ClassifierSettings = ClassifierSettings()
    synthetic: SyntheticSettings = SyntheticSettings()

    # ── History ───────────────────────────────────────────────
    database_url: str = _DEFAULT_DB_URL
    retention: RetentionSettings = RetentionSettings()
    history_timezone: str = "UTC"

    # ── API server ────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "*"  # comma-separated, or "*"

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` instance."""
    return Settings()
