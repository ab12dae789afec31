"""Affect pipeline — signal conditioning and mind-state classification.

Architecture
------------
1. **Conditioning** (`conditioning.py`)
   - Finger-contact detection (flag / IR / HR band)
   - Spike-rejecting weighted HR smoothing, rolling EDA mean
   - Motion detection from flags, accelerometer or gyroscope

2. **Inference** (`inference.py`)
   - Threshold-ladder rule classifier with z-score outlier bonus
   - Pluggable probability-model backend behind the same interface
   - Majority-vote smoothing over a short rolling window
   - Calm score and caregiver-facing state descriptions

Limitations
-----------
Outputs are estimates from three coarse signals sampled every few
seconds, not a clinical assessment.
"""

from neuronest.affect.conditioning import SignalConditioner
from neuronest.affect.inference import (
    BaseClassifier,
    ProbabilityModelClassifier,
    RuleClassifier,
    calm_score,
    state_info,
)
from neuronest.affect.models import (
    ClassificationResult,
    DailyEpisodeCount,
    DaySummary,
    Deviations,
    Indicators,
    MindState,
    SeverityLabel,
    StressEpisode,
)

__all__ = [
    "BaseClassifier",
    "ClassificationResult",
    "DailyEpisodeCount",
    "DaySummary",
    "Deviations",
    "Indicators",
    "MindState",
    "ProbabilityModelClassifier",
    "RuleClassifier",
    "SeverityLabel",
    "SignalConditioner",
    "StressEpisode",
    "calm_score",
    "state_info",
]
