"""Signal conditioning — turn one raw sensor payload into a classifiable reading.

The wearable sends a reading every couple of seconds.  Optical heart-rate
and skin-conductance sensors are noisy and glitch whenever the finger
shifts, so each field goes through a small, bounded filter:

=================  ===============================================
Field              Strategy
=================  ===============================================
Finger contact     explicit flag → IR intensity → HR in valid band
Heart rate         spike rejection + linearly weighted moving avg
EDA                rolling mean of positive finite values
Motion             explicit flag → accelerometer → gyroscope
Temperature        body-average default when missing, NaN or ≤ 0
=================  ===============================================

The HR buffer, EDA buffer and previous acceleration magnitude are the only
state kept between calls; :meth:`SignalConditioner.reset` clears them when
the link drops.
"""

from __future__ import annotations

import math
from collections import deque

import structlog

from neuronest.config import ConditionerSettings
from neuronest.models import ConditionedReading, RawReading, utcnow

logger = structlog.get_logger(__name__)


def weighted_moving_average(values: list[float]) -> float:
    """Average with weight ``i + 1`` for the *i*-th oldest value."""
    if not values:
        return 0.0
    weight_sum = 0
    value_sum = 0.0
    for i, v in enumerate(values):
        weight_sum += i + 1
        value_sum += v * (i + 1)
    return value_sum / weight_sum


def _round_half_up(value: float) -> float:
    return float(math.floor(value + 0.5))


def _finite(value: float | None) -> float | None:
    """``None`` for absent, NaN or infinite sensor values."""
    if value is None or not math.isfinite(value):
        return None
    return value


class SignalConditioner:
    """Stateful per-link filter producing :class:`ConditionedReading` objects."""

    def __init__(self, settings: ConditionerSettings | None = None) -> None:
        self.settings = settings or ConditionerSettings()
        window = self.settings.smoothing_window
        self._hr_buffer: deque[float] = deque(maxlen=window)
        self._eda_buffer: deque[float] = deque(maxlen=window)
        self._prev_accel_mag: float | None = None

    # ── Public API ────────────────────────────────────────────

    def condition(self, raw: RawReading) -> ConditionedReading:
        finger = self.detect_finger(raw)
        heart_rate = self._smooth_heart_rate(_finite(raw.heart_rate), finger)
        reading = ConditionedReading(
            heart_rate=heart_rate,
            finger_present=finger,
            temperature=self._normalize_temperature(raw.temperature),
            eda=self._smooth_eda(_finite(raw.eda)),
            motion_detected=self.detect_motion(raw),
            timestamp=utcnow(),
            source_timestamp=raw.source_timestamp,
        )
        logger.debug(
            "conditioner.reading",
            raw_hr=raw.heart_rate,
            hr=reading.heart_rate,
            finger=finger,
            eda=reading.eda,
            motion=reading.motion_detected,
            hr_buffer=list(self._hr_buffer),
        )
        return reading

    def reset(self) -> None:
        self._hr_buffer.clear()
        self._eda_buffer.clear()
        self._prev_accel_mag = None

    def update_settings(self, settings: ConditionerSettings) -> None:
        """Swap thresholds; a new window size restarts the buffers."""
        if settings.smoothing_window != self.settings.smoothing_window:
            self._hr_buffer = deque(self._hr_buffer, maxlen=settings.smoothing_window)
            self._eda_buffer = deque(self._eda_buffer, maxlen=settings.smoothing_window)
        self.settings = settings

    @property
    def hr_buffer(self) -> list[float]:
        return list(self._hr_buffer)

    @property
    def eda_buffer(self) -> list[float]:
        return list(self._eda_buffer)

    # ── Detection ─────────────────────────────────────────────

    def detect_finger(self, raw: RawReading) -> bool:
        """Exactly one strategy per reading, in priority order."""
        s = self.settings
        if raw.finger_detected is not None:
            return raw.finger_detected
        if raw.ir_value is not None:
            return raw.ir_value > s.ir_threshold
        hr = raw.heart_rate or 0.0
        return s.hr_valid_min <= hr <= s.hr_valid_max

    def detect_motion(self, raw: RawReading) -> bool:
        s = self.settings
        if raw.motion is not None:
            return raw.motion

        if raw.accel is not None:
            magnitude = raw.accel.magnitude
            deviation = abs(magnitude - s.accel_rest_gravity)
            jerk = 0.0
            if self._prev_accel_mag is not None:
                jerk = abs(magnitude - self._prev_accel_mag)
            self._prev_accel_mag = magnitude
            return deviation > s.accel_motion_threshold or jerk > s.accel_jerk_threshold

        if raw.gyro is not None:
            return raw.gyro.magnitude > s.gyro_motion_threshold

        return False

    # ── Smoothing ─────────────────────────────────────────────

    def _smooth_heart_rate(self, raw_hr: float | None, finger: bool) -> float:
        s = self.settings
        if not finger:
            self._hr_buffer.clear()
            return 0.0

        # Contact flagged without an HR value leaves the buffer untouched.
        if raw_hr is not None:
            self._push_heart_rate(raw_hr)

        smoothed = weighted_moving_average(list(self._hr_buffer))
        return _round_half_up(max(s.hr_display_min, min(s.hr_display_max, smoothed)))

    def _push_heart_rate(self, raw_hr: float) -> None:
        if len(self._hr_buffer) >= 2:
            mean = sum(self._hr_buffer) / len(self._hr_buffer)
            if abs(raw_hr - mean) > self.settings.hr_max_jump:
                logger.debug("conditioner.hr_spike_rejected", raw=raw_hr, mean=round(mean, 1))
                return
        self._hr_buffer.append(raw_hr)

    def _smooth_eda(self, raw_eda: float | None) -> float:
        if raw_eda is None:
            return 0.0
        if raw_eda <= 0:
            return raw_eda
        self._eda_buffer.append(raw_eda)
        return round(sum(self._eda_buffer) / len(self._eda_buffer), 2)

    def _normalize_temperature(self, temperature: float | None) -> float:
        temperature = _finite(temperature)
        if temperature is None or temperature <= 0:
            return self.settings.default_temperature
        return temperature
