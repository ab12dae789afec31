"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from neuronest.affect.inference import RuleClassifier
from neuronest.config import RetentionSettings, Settings, SyntheticSettings
from neuronest.models import ConditionedReading
from neuronest.storage.history import HistoryStore
from neuronest.streaming.events import EventBus


def make_reading(
    heart_rate: float = 72.0,
    temperature: float = 36.6,
    eda: float = 2.0,
    *,
    finger_present: bool = True,
) -> ConditionedReading:
    return ConditionedReading(
        heart_rate=heart_rate,
        finger_present=finger_present,
        temperature=temperature,
        eda=eda,
    )


@pytest.fixture
def calm_reading() -> ConditionedReading:
    return make_reading(72.0, 36.6, 2.0)


@pytest.fixture
def meltdown_reading() -> ConditionedReading:
    return make_reading(165.0, 36.9, 19.0)


@pytest.fixture
def classifier() -> RuleClassifier:
    return RuleClassifier()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'neuronest.db'}"


@pytest.fixture
def settings(database_url: str) -> Settings:
    return Settings(
        database_url=database_url,
        synthetic=SyntheticSettings(seed=7, interval_ms=60_000, stress_probability=0.0),
    )


@pytest.fixture
async def store(database_url: str):
    history = HistoryStore(
        database_url,
        RetentionSettings(max_readings=5, max_predictions=4, max_episodes=3),
    )
    await history.init()
    yield history
    await history.close()
