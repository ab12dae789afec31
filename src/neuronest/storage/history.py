"""History store — bounded append logs and day/week aggregates.

Four logical collections, each capped independently:

- **readings**     conditioned sensor readings (default 1000)
- **predictions**  classification results (default 500)
- **episodes**     index of Stressed / Meltdown predictions (default 200)
- **device info**  last device metadata and last working endpoint

Appends trim the oldest rows first.  Evicting a prediction also evicts
its episode entry, so every episode always points at a stored prediction.
Writes go through one ``asyncio.Lock``; reads open their own session.
"""

from __future__ import annotations

import asyncio
import json
import random
import uuid
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Any, Sequence
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

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
from neuronest.config import RetentionSettings
from neuronest.models import ConditionedReading, DeviceInfo, StoredReading, utcnow
from neuronest.storage.database import (
    DeviceInfoRow,
    PredictionRow,
    ReadingRow,
    StressEpisodeRow,
    create_engine,
    from_db_time,
    init_db,
    to_db_time,
)

logger = structlog.get_logger(__name__)

_DEVICE_KEY = "device"
_ENDPOINT_KEY = "endpoint"

# Non-calm ratio upper edges (exclusive) for each severity bucket.
_SEVERITY_BANDS: tuple[tuple[float, SeverityLabel], ...] = (
    (0.15, SeverityLabel.ALL_CALM),
    (0.35, SeverityLabel.MOSTLY_CALM),
    (0.60, SeverityLabel.MODERATE),
)

# Display-only distribution used to backfill empty days.
_BACKFILL_STATES: tuple[tuple[float, MindState], ...] = (
    (0.70, MindState.CALM),
    (0.85, MindState.AMUSEMENT),
    (0.95, MindState.STRESSED),
    (1.01, MindState.MELTDOWN),
)


def _new_id() -> str:
    return str(uuid.uuid4())


def classify_severity(calm_count: int, total: int) -> SeverityLabel:
    """Label a day by its share of non-calm results."""
    if total <= 0:
        return SeverityLabel.NO_DATA
    non_calm_ratio = (total - calm_count) / total
    for upper, label in _SEVERITY_BANDS:
        if non_calm_ratio < upper:
            return label
    return SeverityLabel.ELEVATED


def synthetic_day(day: date) -> list[tuple[MindState, float]]:
    """Deterministic stand-in records for a day with no data (display only)."""
    rng = random.Random(day.toordinal())
    records: list[tuple[MindState, float]] = []
    for _ in range(30 + rng.randrange(120)):
        roll = rng.random()
        state = next(s for edge, s in _BACKFILL_STATES if roll < edge)
        records.append((state, 0.75 + rng.random() * 0.22))
    return records


class HistoryStore:
    """Bounded persistence for readings, predictions and stress episodes.

    Usage::

        store = HistoryStore("sqlite+aiosqlite:///data/neuronest.db")
        await store.init()
        saved = await store.append_prediction(result)
        week = await store.daily_summaries(7)
        await store.close()
    """

    def __init__(
        self,
        database_url: str | None = None,
        retention: RetentionSettings | None = None,
        *,
        timezone: str = "UTC",
        engine: AsyncEngine | None = None,
    ) -> None:
        if engine is None:
            if database_url is None:
                raise ValueError("HistoryStore needs a database_url or an engine.")
            engine = create_engine(database_url)
        self._engine = engine
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        self.retention = retention or RetentionSettings()
        self.timezone = ZoneInfo(timezone)
        self._write_lock = asyncio.Lock()

    async def init(self) -> None:
        await init_db(self._engine)
        logger.info("history_store.ready", retention=self.retention.model_dump())

    async def close(self) -> None:
        await self._engine.dispose()

    def _session(self) -> AsyncSession:
        return self._session_factory()

    # ── Write ─────────────────────────────────────────────────

    async def append_reading(
        self,
        reading: ConditionedReading,
        *,
        device_id: str | None = None,
        synthetic: bool = False,
    ) -> StoredReading:
        stored = StoredReading(id=_new_id(), reading=reading, device_id=device_id, synthetic=synthetic)
        async with self._write_lock, self._session() as session:
            session.add(
                ReadingRow(
                    id=stored.id,
                    heart_rate=reading.heart_rate,
                    finger_present=reading.finger_present,
                    temperature=reading.temperature,
                    eda=reading.eda,
                    motion_detected=reading.motion_detected,
                    device_id=device_id,
                    synthetic=synthetic,
                    timestamp=to_db_time(reading.timestamp),
                    source_timestamp=(
                        to_db_time(reading.source_timestamp) if reading.source_timestamp else None
                    ),
                )
            )
            await session.flush()
            await self._trim(session, ReadingRow, self.retention.max_readings)
            await session.commit()
        return stored

    async def append_prediction(self, result: ClassificationResult) -> ClassificationResult:
        """Persist a result; Stressed / Meltdown results also get an episode entry."""
        if result.id is None:
            result = result.model_copy(update={"id": _new_id()})

        async with self._write_lock, self._session() as session:
            row = PredictionRow(
                id=result.id,
                state=result.state.value,
                confidence=result.confidence,
                stress_score=result.stress_score,
                calm_score=result.calm_score,
                smoothed=result.smoothed,
                window_size=result.window_size,
                indicators_json=result.indicators.model_dump_json(),
                deviations_json=result.deviations.model_dump_json(),
                reading_json=result.reading.model_dump_json() if result.reading else None,
                raw_json=result.raw.model_dump_json(exclude={"reading", "raw"}) if result.raw else None,
                error=result.error,
                synthetic=result.synthetic,
                timestamp=to_db_time(result.timestamp),
            )
            session.add(row)
            await session.flush()

            if result.state.is_episode:
                session.add(
                    StressEpisodeRow(
                        id=_new_id(),
                        prediction_id=row.id,
                        prediction_seq=row.seq,
                        timestamp=row.timestamp,
                    )
                )
                await session.flush()

            cutoff = await self._trim(session, PredictionRow, self.retention.max_predictions)
            if cutoff is not None:
                await session.execute(
                    delete(StressEpisodeRow).where(StressEpisodeRow.prediction_seq < cutoff)
                )
            await self._trim(session, StressEpisodeRow, self.retention.max_episodes)
            await session.commit()

        if result.state.is_episode:
            logger.info("history_store.episode_recorded", state=result.state.value, prediction=result.id)
        return result

    @staticmethod
    async def _trim(session: AsyncSession, model: Any, capacity: int) -> int | None:
        """Delete rows older than the newest ``capacity``; return the oldest kept seq."""
        stmt = select(model.seq).order_by(model.seq.desc()).offset(capacity - 1).limit(1)
        cutoff = (await session.execute(stmt)).scalar()
        if cutoff is None:
            return None
        await session.execute(delete(model).where(model.seq < cutoff))
        return cutoff

    async def update_retention(self, retention: RetentionSettings) -> None:
        """Apply new caps, trimming immediately if they shrank."""
        self.retention = retention
        async with self._write_lock, self._session() as session:
            await self._trim(session, ReadingRow, retention.max_readings)
            cutoff = await self._trim(session, PredictionRow, retention.max_predictions)
            if cutoff is not None:
                await session.execute(
                    delete(StressEpisodeRow).where(StressEpisodeRow.prediction_seq < cutoff)
                )
            await self._trim(session, StressEpisodeRow, retention.max_episodes)
            await session.commit()

    # ── Device info & endpoint ────────────────────────────────

    async def _put(self, key: str, payload: dict[str, Any]) -> None:
        async with self._write_lock, self._session() as session:
            row = await session.get(DeviceInfoRow, key)
            now = to_db_time(utcnow())
            if row is None:
                session.add(DeviceInfoRow(key=key, payload_json=json.dumps(payload), updated_at=now))
            else:
                row.payload_json = json.dumps(payload)
                row.updated_at = now
            await session.commit()

    async def _get(self, key: str) -> dict[str, Any] | None:
        async with self._session() as session:
            row = await session.get(DeviceInfoRow, key)
            return json.loads(row.payload_json) if row else None

    async def save_device_info(self, info: DeviceInfo) -> None:
        await self._put(_DEVICE_KEY, info.model_dump(mode="json"))

    async def get_device_info(self) -> DeviceInfo | None:
        payload = await self._get(_DEVICE_KEY)
        return DeviceInfo.model_validate(payload) if payload is not None else None

    async def save_endpoint(self, address: str, port: int) -> None:
        await self._put(_ENDPOINT_KEY, {"address": address, "port": port})

    async def get_endpoint(self) -> tuple[str, int] | None:
        payload = await self._get(_ENDPOINT_KEY)
        if payload is None:
            return None
        return payload["address"], int(payload["port"])

    # ── Read ──────────────────────────────────────────────────

    @staticmethod
    def _to_result(row: PredictionRow) -> ClassificationResult:
        return ClassificationResult(
            id=row.id,
            state=MindState(row.state),
            confidence=row.confidence,
            stress_score=row.stress_score,
            calm_score=row.calm_score,
            smoothed=row.smoothed,
            window_size=row.window_size,
            indicators=Indicators.model_validate_json(row.indicators_json),
            deviations=Deviations.model_validate_json(row.deviations_json),
            reading=(
                ConditionedReading.model_validate_json(row.reading_json) if row.reading_json else None
            ),
            raw=ClassificationResult.model_validate_json(row.raw_json) if row.raw_json else None,
            error=row.error,
            synthetic=row.synthetic,
            timestamp=from_db_time(row.timestamp),
        )

    @staticmethod
    def _to_reading(row: ReadingRow) -> StoredReading:
        return StoredReading(
            id=row.id,
            reading=ConditionedReading(
                heart_rate=row.heart_rate,
                finger_present=row.finger_present,
                temperature=row.temperature,
                eda=row.eda,
                motion_detected=row.motion_detected,
                timestamp=from_db_time(row.timestamp),
                source_timestamp=from_db_time(row.source_timestamp),
            ),
            device_id=row.device_id,
            synthetic=row.synthetic,
        )

    async def get_readings(self) -> list[StoredReading]:
        async with self._session() as session:
            rows = (await session.execute(select(ReadingRow).order_by(ReadingRow.seq))).scalars().all()
        return [self._to_reading(r) for r in rows]

    async def get_predictions(self) -> list[ClassificationResult]:
        async with self._session() as session:
            rows = (
                await session.execute(select(PredictionRow).order_by(PredictionRow.seq))
            ).scalars().all()
        return [self._to_result(r) for r in rows]

    async def get_episodes(self) -> list[StressEpisode]:
        stmt = (
            select(StressEpisodeRow, PredictionRow)
            .join(PredictionRow, PredictionRow.id == StressEpisodeRow.prediction_id)
            .order_by(StressEpisodeRow.seq)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
        return [
            StressEpisode(
                id=episode.id,
                prediction_id=prediction.id,
                state=MindState(prediction.state),
                confidence=prediction.confidence,
                stress_score=prediction.stress_score,
                synthetic=prediction.synthetic,
                timestamp=from_db_time(episode.timestamp),
            )
            for episode, prediction in rows
        ]

    async def query_by_date_range(
        self,
        start: datetime,
        end: datetime,
        *,
        include_synthetic: bool = True,
    ) -> list[ClassificationResult]:
        """Predictions with ``start <= timestamp <= end`` in insertion order."""
        stmt = (
            select(PredictionRow)
            .where(
                PredictionRow.timestamp >= to_db_time(start),
                PredictionRow.timestamp <= to_db_time(end),
            )
            .order_by(PredictionRow.seq)
        )
        if not include_synthetic:
            stmt = stmt.where(PredictionRow.synthetic.is_(False))
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._to_result(r) for r in rows]

    async def query_readings_by_date_range(self, start: datetime, end: datetime) -> list[StoredReading]:
        stmt = (
            select(ReadingRow)
            .where(ReadingRow.timestamp >= to_db_time(start), ReadingRow.timestamp <= to_db_time(end))
            .order_by(ReadingRow.seq)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._to_reading(r) for r in rows]

    # ── Calendar helpers ──────────────────────────────────────

    def _local_today(self, now: datetime | None) -> date:
        return (now or utcnow()).astimezone(self.timezone).date()

    def _day_start(self, day: date) -> datetime:
        return datetime.combine(day, time.min, tzinfo=self.timezone)

    def _day_bounds(self, day: date) -> tuple[datetime, datetime]:
        return self._day_start(day), self._day_start(day + timedelta(days=1))

    def _last_days(self, days: int, now: datetime | None) -> list[date]:
        today = self._local_today(now)
        return [today - timedelta(days=i) for i in range(days - 1, -1, -1)]

    def _local_day(self, ts: datetime) -> date:
        return ts.astimezone(self.timezone).date()

    # ── Aggregates ────────────────────────────────────────────

    async def today_predictions(self, now: datetime | None = None) -> list[ClassificationResult]:
        start, end = self._day_bounds(self._local_today(now))
        return [r for r in await self.query_by_date_range(start, end) if r.timestamp < end]

    async def predictions_for_days(self, days: int, now: datetime | None = None) -> list[ClassificationResult]:
        """Everything since local midnight ``days`` days ago."""
        start = self._day_start(self._local_today(now) - timedelta(days=days))
        return await self.query_by_date_range(start, now or utcnow())

    async def daily_summaries(
        self,
        days: int = 7,
        *,
        backfill_synthetic: bool = False,
        include_synthetic: bool = True,
        now: datetime | None = None,
    ) -> list[DaySummary]:
        """One summary per calendar day, oldest first.

        With ``backfill_synthetic`` a day without records is filled from a
        generated distribution and flagged ``synthetic``; nothing generated
        here is ever written to storage.
        """
        calendar = self._last_days(days, now)
        if not calendar:
            return []
        start, _ = self._day_bounds(calendar[0])
        _, end = self._day_bounds(calendar[-1])

        buckets: dict[date, list[tuple[MindState, float]]] = defaultdict(list)
        for r in await self.query_by_date_range(start, end, include_synthetic=include_synthetic):
            buckets[self._local_day(r.timestamp)].append((r.state, r.confidence))

        today = calendar[-1]
        summaries: list[DaySummary] = []
        for day in calendar:
            records: Sequence[tuple[MindState, float]] = buckets.get(day, [])
            synthetic = False
            if not records and backfill_synthetic:
                records = synthetic_day(day)
                synthetic = True

            total = len(records)
            calm_count = sum(1 for state, _ in records if state == MindState.CALM)
            average = sum(conf for _, conf in records) / total if total else 0.0
            summaries.append(
                DaySummary(
                    day=day,
                    day_name=day.strftime("%A"),
                    date_label=f"{day.strftime('%b')} {day.day}",
                    total_readings=total,
                    calm_count=calm_count,
                    average_confidence=round(average, 4),
                    severity_label=classify_severity(calm_count, total),
                    is_today=day == today,
                    synthetic=synthetic,
                )
            )
        return summaries

    async def weekly_episode_counts(
        self, days: int = 7, *, now: datetime | None = None
    ) -> list[DailyEpisodeCount]:
        """Stress episodes per calendar day, oldest first."""
        calendar = self._last_days(days, now)
        counts: dict[date, int] = defaultdict(int)
        for episode in await self.get_episodes():
            counts[self._local_day(episode.timestamp)] += 1
        return [
            DailyEpisodeCount(day=day, day_name=day.strftime("%a"), count=counts.get(day, 0))
            for day in calendar
        ]

    # ── Maintenance ───────────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        async with self._session() as session:
            readings = (await session.execute(select(func.count()).select_from(ReadingRow))).scalar() or 0
            predictions = (
                await session.execute(select(func.count()).select_from(PredictionRow))
            ).scalar() or 0
            episodes = (
                await session.execute(select(func.count()).select_from(StressEpisodeRow))
            ).scalar() or 0
            oldest, newest = (
                await session.execute(select(func.min(ReadingRow.timestamp), func.max(ReadingRow.timestamp)))
            ).one()
        return {
            "total_readings": readings,
            "total_predictions": predictions,
            "total_stress_episodes": episodes,
            "oldest_reading": from_db_time(oldest),
            "newest_reading": from_db_time(newest),
        }

    async def clear_all(self) -> None:
        async with self._write_lock, self._session() as session:
            for model in (StressEpisodeRow, PredictionRow, ReadingRow, DeviceInfoRow):
                await session.execute(delete(model))
            await session.commit()
        logger.info("history_store.cleared")
