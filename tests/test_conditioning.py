"""Tests for raw payload parsing and signal conditioning."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from neuronest.affect.conditioning import SignalConditioner, weighted_moving_average
from neuronest.affect.inference import RuleClassifier
from neuronest.affect.models import MindState
from neuronest.errors import InvalidReadingError
from neuronest.models import RawReading


def raw(**payload) -> RawReading:
    return RawReading.from_payload(payload)


# ── Payload parsing ──────────────────────────────────────────


class TestRawReading:
    def test_key_aliases(self):
        r = raw(hr=80, temp=36.7, gsr=3.1, finger=True, rawIR=70000, ts="2026-10-18T08:00:00+00:00")
        assert r.heart_rate == 80
        assert r.temperature == 36.7
        assert r.eda == 3.1
        assert r.finger_detected is True
        assert r.ir_value == 70000
        assert r.source_timestamp is not None

    def test_vector_axes_default_to_zero(self):
        r = raw(heartRate=70, ax=0.1)
        assert r.accel is not None
        assert (r.accel.x, r.accel.y, r.accel.z) == (0.1, 0.0, 0.0)
        assert r.gyro is None

    def test_absent_fields_stay_none(self):
        r = raw(heartRate=70)
        assert r.temperature is None
        assert r.eda is None
        assert r.finger_detected is None

    def test_non_object_payload_rejected(self):
        with pytest.raises(InvalidReadingError):
            RawReading.from_payload([1, 2, 3])

    def test_non_numeric_value_rejected(self):
        with pytest.raises(InvalidReadingError):
            raw(heartRate="fast")


# ── Finger contact ───────────────────────────────────────────


class TestFingerDetection:
    def test_explicit_flag_wins(self):
        c = SignalConditioner()
        assert c.detect_finger(raw(fingerDetected=False, irValue=90_000, heartRate=80)) is False

    def test_ir_threshold(self):
        c = SignalConditioner()
        assert c.detect_finger(raw(irValue=60_000, heartRate=0)) is True
        assert c.detect_finger(raw(irValue=1_000, heartRate=80)) is False

    def test_heart_rate_band_fallback(self):
        c = SignalConditioner()
        assert c.detect_finger(raw(heartRate=75)) is True
        assert c.detect_finger(raw(heartRate=30)) is False
        assert c.detect_finger(raw()) is False


# ── Heart rate ───────────────────────────────────────────────


class TestHeartRateSmoothing:
    def test_weighted_moving_average(self):
        assert weighted_moving_average([]) == 0.0
        assert weighted_moving_average([70, 72]) == pytest.approx(214 / 3)

    def test_spike_rejected_once_buffer_has_two_values(self):
        c = SignalConditioner()
        assert c.condition(raw(heartRate=70, fingerDetected=True)).heart_rate == 70
        assert c.condition(raw(heartRate=72, fingerDetected=True)).heart_rate == 71
        spike = c.condition(raw(heartRate=150, fingerDetected=True))
        assert spike.heart_rate == 71
        assert c.hr_buffer == [70, 72]
        assert c.condition(raw(heartRate=74, fingerDetected=True)).heart_rate == 73

    def test_second_value_is_never_rejected(self):
        c = SignalConditioner()
        c.condition(raw(heartRate=70, fingerDetected=True))
        c.condition(raw(heartRate=99, fingerDetected=True))
        assert c.hr_buffer == [70, 99]

    def test_display_clamp(self):
        low = SignalConditioner().condition(raw(heartRate=50, fingerDetected=True))
        high = SignalConditioner().condition(raw(heartRate=130, fingerDetected=True))
        assert low.heart_rate == 60
        assert high.heart_rate == 100

    def test_contact_loss_zeroes_and_clears(self):
        c = SignalConditioner()
        c.condition(raw(heartRate=70, fingerDetected=True))
        reading = c.condition(raw(heartRate=70, fingerDetected=False))
        assert reading.finger_present is False
        assert reading.heart_rate == 0
        assert c.hr_buffer == []

    def test_missing_heart_rate_with_contact_keeps_buffer(self):
        c = SignalConditioner()
        c.condition(raw(heartRate=74, fingerDetected=True))
        c.condition(raw(fingerDetected=True))
        c.condition(raw(heartRate=float("nan"), fingerDetected=True))
        assert c.hr_buffer == [74]
        assert c.condition(raw(heartRate=75, fingerDetected=True)).heart_rate == 75
        assert c.hr_buffer == [74, 75]

    def test_buffer_is_bounded(self):
        c = SignalConditioner()
        for hr in (70, 71, 72, 73, 74, 75, 76, 77):
            c.condition(raw(heartRate=hr, fingerDetected=True))
        assert c.hr_buffer == [72, 73, 74, 75, 76, 77]


# ── EDA, temperature ─────────────────────────────────────────


class TestOtherChannels:
    def test_eda_rolling_mean(self):
        c = SignalConditioner()
        assert c.condition(raw(heartRate=70, eda=2.0)).eda == 2.0
        assert c.condition(raw(heartRate=70, eda=4.0)).eda == 3.0
        assert c.condition(raw(heartRate=70, eda=3.333)).eda == pytest.approx(3.11)

    def test_non_positive_eda_passes_through(self):
        c = SignalConditioner()
        c.condition(raw(heartRate=70, eda=2.0))
        assert c.condition(raw(heartRate=70, eda=0)).eda == 0
        assert c.eda_buffer == [2.0]

    @pytest.mark.parametrize("payload", [{}, {"temperature": 0}, {"temperature": -3}])
    def test_missing_temperature_defaults(self, payload):
        assert SignalConditioner().condition(raw(heartRate=70, **payload)).temperature == 36.5

    @pytest.mark.parametrize("value", [float("nan"), float("inf")])
    def test_non_finite_temperature_defaults(self, value):
        reading = SignalConditioner().condition(raw(heartRate=72, fingerDetected=True, temperature=value))
        assert reading.temperature == 36.5
        assert RuleClassifier().predict(reading).state != MindState.UNKNOWN

    def test_nan_eda_is_not_buffered(self):
        c = SignalConditioner()
        c.condition(raw(heartRate=72, fingerDetected=True, eda=2.0))
        assert c.condition(raw(heartRate=72, fingerDetected=True, eda=float("nan"))).eda == 0.0
        assert c.eda_buffer == [2.0]
        assert c.condition(raw(heartRate=72, fingerDetected=True, eda=4.0)).eda == 3.0

    def test_temperature_kept(self):
        assert SignalConditioner().condition(raw(heartRate=70, temperature=37.1)).temperature == 37.1

    def test_conditioned_reading_is_frozen(self):
        reading = SignalConditioner().condition(raw(heartRate=70))
        with pytest.raises(ValidationError):
            reading.heart_rate = 90


# ── Motion ───────────────────────────────────────────────────


class TestMotion:
    def test_explicit_flag(self):
        c = SignalConditioner()
        assert c.detect_motion(raw(motion=True, accelX=0, accelY=0, accelZ=1)) is True
        assert c.detect_motion(raw(motionDetected=False, accelX=0, accelY=0, accelZ=2)) is False

    def test_deviation_from_rest(self):
        c = SignalConditioner()
        assert c.detect_motion(raw(accelX=0, accelY=0, accelZ=1.0)) is False
        assert c.detect_motion(raw(accelX=0, accelY=0, accelZ=1.3)) is True

    def test_jerk_between_ticks(self):
        c = SignalConditioner()
        assert c.detect_motion(raw(accelX=0, accelY=0, accelZ=1.1)) is False
        assert c.detect_motion(raw(accelX=0, accelY=0, accelZ=0.95)) is True

    def test_gyro_only_without_accelerometer(self):
        assert SignalConditioner().detect_motion(raw(gx=40)) is True
        assert SignalConditioner().detect_motion(raw(gx=10)) is False
        assert SignalConditioner().detect_motion(raw(accelX=0, accelY=0, accelZ=1, gx=40)) is False

    def test_reset_forgets_previous_magnitude(self):
        c = SignalConditioner()
        c.detect_motion(raw(accelX=0, accelY=0, accelZ=1.1))
        c.reset()
        assert c.detect_motion(raw(accelX=0, accelY=0, accelZ=0.95)) is False
