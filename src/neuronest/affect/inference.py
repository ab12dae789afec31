"""Mind-state inference — deterministic rule engine with temporal smoothing.

This module maps a :class:`ConditionedReading` to a
:class:`ClassificationResult`.  Two backends share one interface
(:class:`BaseClassifier`):

- :class:`RuleClassifier`: threshold ladders calibrated against WESAD
  baseline distributions.  The production path.
- :class:`ProbabilityModelClassifier`: wraps any ``predict_proba``-style
  callable over z-normalised features (e.g. an exported model).

Scoring (rule backend)
----------------------
=============  ==========================  ===========================
Feature        Tiers (elevated/high/crit)  Partial score
=============  ==========================  ===========================
Heart rate     120 / 140 / 160 bpm         0.10 / 0.28 / 0.40
EDA            8 / 12 / 18 µS              0.08 / 0.24 / 0.40
Temperature    38.0 / 38.8 °C              0.06 / 0.20
=============  ==========================  ===========================

Only the highest tier reached counts.  A weighted z-score above 3.5 / 5.0
adds 0.08 each.  Score ≥ 0.72 → Meltdown (needs HR *and* EDA at high or
critical) or Stressed; ≥ 0.50 → Stressed; otherwise Calm.

Both backends feed a rolling window; once it holds two results the
reported state is the window's mode and the confidence its mean.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Callable, Sequence

import structlog

from neuronest.affect.models import ClassificationResult, Deviations, Indicators, MindState
from neuronest.config import ClassifierSettings, LadderTier
from neuronest.errors import InvalidReadingError, NoContactError
from neuronest.models import ConditionedReading

logger = structlog.get_logger(__name__)


# ── Helpers ───────────────────────────────────────────────────


def _require_numeric(**values: Any) -> None:
    for name, value in values.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidReadingError(f"Invalid sensor data format: {name}={value!r}")


def _ladder_score(value: float, tiers: Sequence[LadderTier]) -> float:
    """Partial credit of the highest tier reached (tiers ordered high → low)."""
    for tier in tiers:
        if value >= tier.threshold:
            return tier.weight
    return 0.0


def calm_perturbation(heart_rate: float, eda: float) -> float:
    """Deterministic ±0.01 offset derived from the reading itself.

    Keeps Calm confidence from sitting on one flat constant.
    """
    return ((heart_rate * 7 + eda * 13) % 100) / 10_000


def calm_score(state: MindState, confidence: float) -> int:
    """Map a state and confidence to a 0-100 calm score."""
    if state == MindState.CALM:
        value = 70 + confidence * 30
    elif state == MindState.AMUSEMENT:
        value = 60 + confidence * 30
    elif state == MindState.STRESSED:
        value = 30 - confidence * 20
    elif state == MindState.MELTDOWN:
        value = 10 - confidence * 10
    else:
        return 50
    return int(math.floor(value + 0.5))


@dataclass(frozen=True, slots=True)
class StateInfo:
    description: str
    recommendation: str


_STATE_INFO: dict[MindState, StateInfo] = {
    MindState.CALM: StateInfo(
        "Child is currently calm and relaxed.",
        "Great! Continue current activities.",
    ),
    MindState.STRESSED: StateInfo(
        "Child is showing signs of stress.",
        "Consider calming activities or a break.",
    ),
    MindState.MELTDOWN: StateInfo(
        "High stress levels detected. Immediate attention needed.",
        "Move to a quiet space. Use calming techniques.",
    ),
    MindState.AMUSEMENT: StateInfo(
        "Child is happy and engaged.",
        "Positive state. Continue enjoyable activity.",
    ),
    MindState.UNKNOWN: StateInfo(
        "Unable to determine current state.",
        "Check sensor connection.",
    ),
}


def state_info(state: MindState) -> StateInfo:
    """Caregiver-facing description and recommendation for a state."""
    return _STATE_INFO.get(state, _STATE_INFO[MindState.UNKNOWN])


# ── Base classifier ───────────────────────────────────────────


class BaseClassifier(ABC):
    """Contract shared by every classification backend.

    Subclasses implement :meth:`evaluate`, which scores a single reading and
    may raise :class:`NoContactError` or :class:`InvalidReadingError`.
    :meth:`predict` wraps it with contact gating and temporal smoothing.
    """

    backend: str = "base"

    def __init__(self, settings: ClassifierSettings | None = None) -> None:
        self.settings = settings or ClassifierSettings()
        self._window: deque[ClassificationResult] = deque(maxlen=self.settings.smoothing_window)

    @abstractmethod
    def evaluate(self, reading: ConditionedReading) -> ClassificationResult:
        """Score one reading without smoothing."""

    def predict(self, reading: ConditionedReading) -> ClassificationResult:
        """Return the temporally smoothed result for ``reading``.

        Never raises: missing contact and malformed input come back as
        ``Unknown`` with confidence 0 and are kept out of the window.
        """
        if not reading.finger_present:
            self._window.clear()
            return ClassificationResult.unknown(NoContactError.user_message, reading=reading)

        try:
            result = self.evaluate(reading)
        except NoContactError as exc:
            self._window.clear()
            return ClassificationResult.unknown(exc.user_message, reading=reading)
        except InvalidReadingError as exc:
            logger.warning("classifier.invalid_reading", backend=self.backend, error=str(exc))
            return ClassificationResult.unknown(exc.user_message, reading=reading)

        self._window.append(result)
        return self._smooth(result)

    def reset(self) -> None:
        self._window.clear()

    def update_settings(self, settings: ClassifierSettings) -> None:
        if settings.smoothing_window != self.settings.smoothing_window:
            self._window = deque(self._window, maxlen=settings.smoothing_window)
        self.settings = settings

    def info(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "window_size": len(self._window),
            "smoothing_window": self.settings.smoothing_window,
        }

    @property
    def window(self) -> list[ClassificationResult]:
        return list(self._window)

    # ── Smoothing ─────────────────────────────────────────────

    def _smooth(self, current: ClassificationResult) -> ClassificationResult:
        size = len(self._window)
        if size < 2:
            return current.model_copy(update={"window_size": size, "raw": current})

        counts = Counter(r.state for r in self._window)
        top = max(counts.values())
        if counts[current.state] == top:
            state = current.state
        else:
            state = next(s for s, c in counts.items() if c == top)

        avg_confidence = sum(r.confidence for r in self._window) / size
        return current.model_copy(
            update={
                "state": state,
                "confidence": avg_confidence,
                "smoothed": True,
                "window_size": size,
                "raw": current,
            }
        )

    # ── Shared feature handling ───────────────────────────────

    def _features(self, reading: ConditionedReading) -> tuple[float, float, float]:
        heart_rate, temperature, eda = reading.heart_rate, reading.temperature, reading.eda
        _require_numeric(heart_rate=heart_rate, temperature=temperature, eda=eda)
        if temperature <= 0:
            temperature = self.settings.temperature_norm.mean
        if not (self.settings.hr_valid_min <= heart_rate <= self.settings.hr_valid_max):
            raise NoContactError()
        return heart_rate, temperature, eda

    def deviations(self, heart_rate: float, temperature: float, eda: float) -> Deviations:
        s = self.settings
        return Deviations(
            heart_rate=(heart_rate - s.hr_norm.mean) / s.hr_norm.std,
            temperature=(temperature - s.temperature_norm.mean) / s.temperature_norm.std,
            eda=(eda - s.eda_norm.mean) / s.eda_norm.std,
        )


# ── Rule backend ──────────────────────────────────────────────


class RuleClassifier(BaseClassifier):
    """Threshold-ladder classifier; deterministic for identical input."""

    backend = "rule-based"

    def evaluate(self, reading: ConditionedReading) -> ClassificationResult:
        heart_rate, temperature, eda = self._features(reading)
        return self.score(heart_rate, temperature, eda).model_copy(update={"reading": reading})

    def score(self, heart_rate: float, temperature: float, eda: float) -> ClassificationResult:
        """Score raw feature values.

        Raises :class:`InvalidReadingError` for non-numeric input and
        :class:`NoContactError` for a heart rate outside the valid band.
        """
        _require_numeric(heart_rate=heart_rate, temperature=temperature, eda=eda)
        s = self.settings
        if not (s.hr_valid_min <= heart_rate <= s.hr_valid_max):
            raise NoContactError()

        deviations = self.deviations(heart_rate, temperature, eda)
        indicators = Indicators(
            hr_elevated=heart_rate >= s.hr_elevated.threshold,
            hr_high=heart_rate >= s.hr_high.threshold,
            hr_critical=heart_rate >= s.hr_critical.threshold,
            temp_elevated=temperature >= s.temp_elevated.threshold,
            temp_high=temperature >= s.temp_high.threshold,
            eda_elevated=eda >= s.eda_elevated.threshold,
            eda_high=eda >= s.eda_high.threshold,
            eda_critical=eda >= s.eda_critical.threshold,
        )

        stress = (
            _ladder_score(heart_rate, (s.hr_critical, s.hr_high, s.hr_elevated))
            + _ladder_score(eda, (s.eda_critical, s.eda_high, s.eda_elevated))
            + _ladder_score(temperature, (s.temp_high, s.temp_elevated))
        )

        w_hr, w_temp, w_eda = s.deviation_weights
        combined = (
            deviations.heart_rate * w_hr
            + deviations.eda * w_eda
            + deviations.temperature * w_temp
        )
        if combined > s.outlier_deviation_low:
            stress += s.outlier_bonus
        if combined > s.outlier_deviation_high:
            stress += s.outlier_bonus

        hr_strong = indicators.hr_high or indicators.hr_critical
        eda_strong = indicators.eda_high or indicators.eda_critical

        if stress >= s.meltdown_score:
            if hr_strong and eda_strong:
                state = MindState.MELTDOWN
                confidence = min(0.95, 0.78 + stress * 0.15)
            else:
                state = MindState.STRESSED
                confidence = 0.68 + stress * 0.12
        elif stress >= s.stressed_score:
            state = MindState.STRESSED
            confidence = 0.58 + stress * 0.25
        else:
            state = MindState.CALM
            margin = s.stressed_score - stress
            confidence = 0.82 + margin * 0.30 + calm_perturbation(heart_rate, eda)

        confidence = min(s.max_confidence, max(s.min_confidence, confidence))

        return ClassificationResult(
            state=state,
            confidence=confidence,
            stress_score=stress,
            indicators=indicators,
            deviations=deviations,
        )


# ── Model backend ─────────────────────────────────────────────

# WESAD label order used by exported models.
WESAD_BASELINE = 0
WESAD_STRESS = 1
WESAD_AMUSEMENT = 2
WESAD_MEDITATION = 3


class ProbabilityModelClassifier(BaseClassifier):
    """Adapter for a learned model exposing class probabilities.

    ``predict_proba`` receives ``[hr_z, temp_z, eda_z]`` and returns one
    probability per WESAD class.
    """

    backend = "model"

    def __init__(
        self,
        predict_proba: Callable[[list[float]], Sequence[float]],
        settings: ClassifierSettings | None = None,
    ) -> None:
        super().__init__(settings)
        self._predict_proba = predict_proba

    def evaluate(self, reading: ConditionedReading) -> ClassificationResult:
        heart_rate, temperature, eda = self._features(reading)
        deviations = self.deviations(heart_rate, temperature, eda)
        probabilities = [
            float(p)
            for p in self._predict_proba(
                [deviations.heart_rate, deviations.temperature, deviations.eda]
            )
        ]
        if not probabilities:
            raise InvalidReadingError("Model returned no class probabilities.")

        class_index = max(range(len(probabilities)), key=probabilities.__getitem__)
        confidence = min(1.0, max(0.0, probabilities[class_index]))
        state = self.map_class_to_state(class_index, confidence, heart_rate, eda)
        return ClassificationResult(
            state=state,
            confidence=confidence,
            stress_score=probabilities[WESAD_STRESS] if len(probabilities) > WESAD_STRESS else 0.0,
            deviations=deviations,
            reading=reading,
        )

    @staticmethod
    def map_class_to_state(
        class_index: int, confidence: float, heart_rate: float, eda: float
    ) -> MindState:
        if class_index in (WESAD_BASELINE, WESAD_MEDITATION):
            return MindState.CALM
        if class_index == WESAD_AMUSEMENT:
            return MindState.AMUSEMENT
        if class_index == WESAD_STRESS:
            if confidence > 0.85 and heart_rate > 110 and eda > 6:
                return MindState.MELTDOWN
            return MindState.STRESSED
        return MindState.UNKNOWN
