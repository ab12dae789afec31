"""Tests for the rule-based and model-backed mind-state classifiers."""

from __future__ import annotations

import pytest

from neuronest.affect.inference import (
    ProbabilityModelClassifier,
    RuleClassifier,
    calm_perturbation,
    calm_score,
    state_info,
)
from neuronest.affect.models import MindState
from neuronest.config import ClassifierSettings
from neuronest.errors import InvalidReadingError, NoContactError
from neuronest.models import ConditionedReading


def reading(hr: float, temp: float = 36.5, eda: float = 2.0, finger: bool = True) -> ConditionedReading:
    return ConditionedReading(heart_rate=hr, finger_present=finger, temperature=temp, eda=eda)


# ── Rule scoring ─────────────────────────────────────────────


class TestRuleScoring:
    def test_calm_reading(self, classifier: RuleClassifier, calm_reading):
        result = classifier.evaluate(calm_reading)
        assert result.state == MindState.CALM
        assert result.stress_score == 0
        assert 0.82 <= result.confidence <= 0.98

    def test_meltdown_reading(self, classifier: RuleClassifier, meltdown_reading):
        result = classifier.evaluate(meltdown_reading)
        assert result.state == MindState.MELTDOWN
        assert result.confidence >= 0.90
        assert result.confidence == pytest.approx(0.924)
        assert result.indicators.hr_critical and result.indicators.eda_critical

    def test_stressed_mid_band(self, classifier: RuleClassifier):
        result = classifier.score(145, 36.5, 12.5)
        assert result.stress_score == pytest.approx(0.60)
        assert result.state == MindState.STRESSED
        assert result.confidence == pytest.approx(0.73)

    def test_high_score_without_strong_eda_is_stressed(self, classifier: RuleClassifier):
        result = classifier.score(165, 38.9, 9.0)
        assert result.stress_score >= 0.72
        assert result.state == MindState.STRESSED
        assert result.confidence == pytest.approx(0.68 + result.stress_score * 0.12)

    def test_only_highest_tier_counts(self, classifier: RuleClassifier):
        assert classifier.score(141, 36.5, 2.0).stress_score == pytest.approx(0.28)

    def test_deviations(self, classifier: RuleClassifier):
        result = classifier.score(90, 37.0, 5.0)
        assert result.deviations.heart_rate == pytest.approx(1.0)
        assert result.deviations.temperature == pytest.approx(1.0)
        assert result.deviations.eda == pytest.approx(2.0)

    def test_deterministic(self, classifier: RuleClassifier):
        first = classifier.score(101, 36.8, 4.2)
        second = classifier.score(101, 36.8, 4.2)
        assert first.model_dump(exclude={"timestamp"}) == second.model_dump(exclude={"timestamp"})

    def test_calm_perturbation_is_small(self):
        assert calm_perturbation(72, 2.0) == pytest.approx(0.003)
        assert 0 <= calm_perturbation(99.9, 7.7) < 0.01

    def test_confidence_always_clamped(self, classifier: RuleClassifier):
        for hr in range(40, 201, 10):
            for eda in (0.0, 5.0, 9.0, 13.0, 19.0, 30.0):
                for temp in (35.0, 36.5, 38.2, 39.5):
                    c = classifier.score(hr, temp, eda).confidence
                    assert 0.40 <= c <= 0.98

    def test_score_monotonic_in_heart_rate(self, classifier: RuleClassifier):
        for eda in (1.0, 9.0, 13.0, 19.0):
            scores = [classifier.score(hr, 36.5, eda).stress_score for hr in range(40, 201, 5)]
            assert scores == sorted(scores)

    def test_score_monotonic_in_eda(self, classifier: RuleClassifier):
        for hr in (70, 110, 130, 150):
            for temp in (36.5, 37.8):
                scores = [classifier.score(hr, temp, eda / 2).stress_score for eda in range(0, 61)]
                assert scores == sorted(scores)

    def test_score_monotonic_in_temperature(self, classifier: RuleClassifier):
        for hr in (70, 130, 150):
            for eda in (2.0, 13.0, 19.0):
                scores = [
                    classifier.score(hr, 34.0 + step / 10, eda).stress_score for step in range(0, 61)
                ]
                assert scores == sorted(scores)

    def test_meltdown_requires_strong_hr_and_eda(self, classifier: RuleClassifier):
        for hr in range(40, 201, 5):
            for eda in (0.5, 8.0, 12.0, 18.0, 25.0):
                for temp in (36.5, 38.0, 39.0):
                    result = classifier.score(hr, temp, eda)
                    if result.state == MindState.MELTDOWN:
                        ind = result.indicators
                        assert ind.hr_high or ind.hr_critical
                        assert ind.eda_high or ind.eda_critical

    def test_out_of_band_heart_rate(self, classifier: RuleClassifier):
        with pytest.raises(NoContactError):
            classifier.score(30, 36.5, 2.0)
        with pytest.raises(NoContactError):
            classifier.score(210, 36.5, 2.0)

    def test_non_numeric_input(self, classifier: RuleClassifier):
        with pytest.raises(InvalidReadingError):
            classifier.score("fast", 36.5, 2.0)  # type: ignore[arg-type]
        with pytest.raises(InvalidReadingError):
            classifier.score(float("nan"), 36.5, 2.0)

    def test_missing_temperature_uses_norm(self, classifier: RuleClassifier):
        result = classifier.evaluate(reading(72, temp=0, eda=2.0))
        assert result.deviations.temperature == 0


# ── predict(): gating and smoothing ──────────────────────────


class TestPredict:
    def test_no_finger_is_unknown(self, classifier: RuleClassifier):
        result = classifier.predict(reading(0, finger=False))
        assert result.state == MindState.UNKNOWN
        assert result.confidence == 0
        assert result.error

    def test_no_contact_clears_window(self, classifier: RuleClassifier, calm_reading):
        classifier.predict(calm_reading)
        classifier.predict(calm_reading)
        result = classifier.predict(reading(30))
        assert result.state == MindState.UNKNOWN
        assert classifier.window == []

    def test_invalid_input_leaves_window_alone(self, classifier: RuleClassifier, calm_reading):
        classifier.predict(calm_reading)
        result = classifier.predict(reading(float("nan")))
        assert result.state == MindState.UNKNOWN
        assert result.confidence == 0
        assert len(classifier.window) == 1

    def test_first_result_not_smoothed(self, classifier: RuleClassifier, calm_reading):
        result = classifier.predict(calm_reading)
        assert result.smoothed is False
        assert result.window_size == 1
        assert result.raw is not None and result.raw.state == MindState.CALM

    def test_majority_vote(self, classifier: RuleClassifier, calm_reading, meltdown_reading):
        first = classifier.predict(calm_reading)
        classifier.predict(calm_reading)
        result = classifier.predict(meltdown_reading)
        assert result.state == MindState.CALM
        assert result.smoothed is True
        assert result.window_size == 3
        assert result.raw.state == MindState.MELTDOWN
        expected = (first.confidence * 2 + result.raw.confidence) / 3
        assert result.confidence == pytest.approx(expected)

    def test_tie_keeps_current_state(self, classifier: RuleClassifier, calm_reading, meltdown_reading):
        classifier.predict(calm_reading)
        result = classifier.predict(meltdown_reading)
        assert result.state == MindState.MELTDOWN
        assert result.smoothed is True

    def test_window_bounded(self, calm_reading):
        clf = RuleClassifier(ClassifierSettings(smoothing_window=3))
        for _ in range(6):
            clf.predict(calm_reading)
        assert len(clf.window) == 3
        clf.update_settings(ClassifierSettings(smoothing_window=2))
        assert len(clf.window) == 2

    def test_reset_and_info(self, classifier: RuleClassifier, calm_reading):
        classifier.predict(calm_reading)
        assert classifier.info()["window_size"] == 1
        classifier.reset()
        assert classifier.info() == {"backend": "rule-based", "window_size": 0, "smoothing_window": 5}


# ── Calm score & state text ──────────────────────────────────


class TestCalmScore:
    @pytest.mark.parametrize(
        ("state", "confidence", "expected"),
        [
            (MindState.CALM, 1.0, 100),
            (MindState.CALM, 0.5, 85),
            (MindState.AMUSEMENT, 0.5, 75),
            (MindState.STRESSED, 0.75, 15),
            (MindState.MELTDOWN, 1.0, 0),
            (MindState.UNKNOWN, 0.9, 50),
        ],
    )
    def test_mapping(self, state, confidence, expected):
        assert calm_score(state, confidence) == expected

    def test_state_info(self):
        assert "calm" in state_info(MindState.CALM).description.lower()
        assert state_info(MindState.UNKNOWN).recommendation == "Check sensor connection."


# ── Model backend ────────────────────────────────────────────


class TestProbabilityModel:
    def test_features_are_z_scores(self):
        seen: list[list[float]] = []

        def proba(features):
            seen.append(features)
            return [0.9, 0.05, 0.03, 0.02]

        result = ProbabilityModelClassifier(proba).evaluate(reading(90, temp=37.0, eda=5.0))
        assert seen == [[pytest.approx(1.0), pytest.approx(1.0), pytest.approx(2.0)]]
        assert result.state == MindState.CALM
        assert result.confidence == pytest.approx(0.9)

    @pytest.mark.parametrize(
        ("probabilities", "hr", "eda", "expected"),
        [
            ([0.1, 0.9, 0.0, 0.0], 72, 2.0, MindState.STRESSED),
            ([0.05, 0.9, 0.05, 0.0], 120, 7.0, MindState.MELTDOWN),
            ([0.0, 0.0, 1.0, 0.0], 72, 2.0, MindState.AMUSEMENT),
            ([0.1, 0.0, 0.0, 0.9], 72, 2.0, MindState.CALM),
        ],
    )
    def test_class_mapping(self, probabilities, hr, eda, expected):
        clf = ProbabilityModelClassifier(lambda _: probabilities)
        assert clf.evaluate(reading(hr, eda=eda)).state == expected

    def test_empty_output_is_unknown(self):
        clf = ProbabilityModelClassifier(lambda _: [])
        result = clf.predict(reading(72))
        assert result.state == MindState.UNKNOWN
        assert clf.window == []

    def test_shares_smoothing(self):
        clf = ProbabilityModelClassifier(lambda _: [0.8, 0.2, 0.0, 0.0])
        clf.predict(reading(72))
        result = clf.predict(reading(72))
        assert result.smoothed is True
        assert clf.info()["backend"] == "model"
