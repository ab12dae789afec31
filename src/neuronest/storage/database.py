"""SQLAlchemy async engine factory and ORM table definitions."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ── Base ──────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


# ── ORM tables ────────────────────────────────────────────────
# ``seq`` is the insertion order used for ring-buffer trimming; ``id`` is
# the identifier handed out to callers.


class ReadingRow(Base):
    """Persisted conditioned sensor reading."""

    __tablename__ = "sensor_readings"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    heart_rate: Mapped[float] = mapped_column(Float)
    finger_present: Mapped[bool] = mapped_column(Boolean)
    temperature: Mapped[float] = mapped_column(Float)
    eda: Mapped[float] = mapped_column(Float)
    motion_detected: Mapped[bool] = mapped_column(Boolean, default=False)
    device_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    synthetic: Mapped[bool] = mapped_column(Boolean, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    source_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class PredictionRow(Base):
    """Persisted classification result."""

    __tablename__ = "predictions"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    state: Mapped[str] = mapped_column(String(16), index=True)
    confidence: Mapped[float] = mapped_column(Float)
    stress_score: Mapped[float] = mapped_column(Float, default=0.0)
    calm_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    smoothed: Mapped[bool] = mapped_column(Boolean, default=False)
    window_size: Mapped[int] = mapped_column(Integer, default=0)
    indicators_json: Mapped[str] = mapped_column(Text, default="{}")
    deviations_json: Mapped[str] = mapped_column(Text, default="{}")
    reading_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    synthetic: Mapped[bool] = mapped_column(Boolean, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)


class StressEpisodeRow(Base):
    """Index entry pointing at a Stressed / Meltdown prediction."""

    __tablename__ = "stress_episodes"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, index=True)
    prediction_id: Mapped[str] = mapped_column(String(36), index=True)
    prediction_seq: Mapped[int] = mapped_column(Integer, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)


class DeviceInfoRow(Base):
    """Small key/value records: last device metadata and last endpoint."""

    __tablename__ = "device_info"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    updated_at: Mapped[datetime] = mapped_column(DateTime)


# ── Timestamps ────────────────────────────────────────────────
# SQLite drops tz info, so rows hold naive UTC.


def to_db_time(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def from_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ── Engine ────────────────────────────────────────────────────


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async engine, making sure a SQLite file's directory exists."""
    if database_url.startswith("sqlite") and "///" in database_url:
        # URL format: sqlite+aiosqlite:///path/to/db
        db_path = database_url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(database_url, echo=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (idempotent)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
