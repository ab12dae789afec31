"""Pydantic models for the classification and history subsystem.

These models represent:
- Discrete mind states and their threshold indicators
- Classification results (smoothed, with the unsmoothed result attached)
- Stress episodes derived from persisted results
- Per-day aggregates used for trend reporting
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field

from neuronest.models import ConditionedReading, utcnow


# ── Enums ─────────────────────────────────────────────────────


class MindState(str, Enum):
    """Affective / arousal state surfaced to caregivers."""

    CALM = "Calm"
    STRESSED = "Stressed"
    MELTDOWN = "Meltdown"
    AMUSEMENT = "Amusement"
    UNKNOWN = "Unknown"

    @property
    def is_episode(self) -> bool:
        return self in (MindState.STRESSED, MindState.MELTDOWN)


class SeverityLabel(str, Enum):
    """Day-level label derived from the share of non-calm results."""

    ALL_CALM = "All Calm"
    MOSTLY_CALM = "Mostly Calm"
    MODERATE = "Moderate"
    ELEVATED = "Elevated"
    NO_DATA = "No Data"


# ── Classification ────────────────────────────────────────────


class Indicators(BaseModel):
    """Which rungs of each threshold ladder a reading reached."""

    hr_elevated: bool = False
    hr_high: bool = False
    hr_critical: bool = False
    eda_elevated: bool = False
    eda_high: bool = False
    eda_critical: bool = False
    temp_elevated: bool = False
    temp_high: bool = False


class Deviations(BaseModel):
    """Z-scores against fixed population parameters."""

    heart_rate: float = 0.0
    temperature: float = 0.0
    eda: float = 0.0


class ClassificationResult(BaseModel):
    """Output of a classifier for one conditioned reading.

    ``state`` / ``confidence`` are the temporally smoothed values once the
    smoothing window holds two or more results; the per-reading values are
    kept on ``raw``.
    """

    id: str | None = None
    state: MindState = MindState.UNKNOWN
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    stress_score: float = 0.0
    indicators: Indicators = Field(default_factory=Indicators)
    deviations: Deviations = Field(default_factory=Deviations)
    smoothed: bool = False
    window_size: int = 0
    calm_score: int | None = None
    error: str | None = None
    reading: ConditionedReading | None = None
    synthetic: bool = False
    timestamp: datetime = Field(default_factory=utcnow)
    raw: ClassificationResult | None = None

    @classmethod
    def unknown(cls, error: str | None = None, **kwargs) -> ClassificationResult:
        return cls(state=MindState.UNKNOWN, confidence=0.0, error=error, **kwargs)


class StressEpisode(BaseModel):
    """A Stressed / Meltdown result, referenced from the prediction log."""

    id: str
    prediction_id: str
    state: MindState
    confidence: float
    stress_score: float
    synthetic: bool = False
    timestamp: datetime


# ── Aggregates ────────────────────────────────────────────────


class DaySummary(BaseModel):
    """Calendar-day aggregate of classification results."""

    day: date
    day_name: str
    date_label: str
    total_readings: int
    calm_count: int
    average_confidence: float
    severity_label: SeverityLabel
    is_today: bool = False
    synthetic: bool = False


class DailyEpisodeCount(BaseModel):
    day: date
    day_name: str
    count: int


ClassificationResult.model_rebuild()
