"""Shared Pydantic models used across the pipeline."""

from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from neuronest.errors import InvalidReadingError


def utcnow() -> datetime:
    return datetime.now(UTC)


# ── Enums ─────────────────────────────────────────────────────


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# ── Sensor payloads ───────────────────────────────────────────


class Vector3(BaseModel):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @property
    def magnitude(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)


# (x key aliases, y key aliases, z key aliases); presence is decided by x.
_ACCEL_KEYS = (("accelX", "ax", "accX"), ("accelY", "ay", "accY"), ("accelZ", "az", "accZ"))
_GYRO_KEYS = (("gyroX", "gx"), ("gyroY", "gy"), ("gyroZ", "gz"))


def _first_present(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _extract_vector(data: dict[str, Any], keys: tuple[tuple[str, ...], ...]) -> dict[str, Any] | None:
    if _first_present(data, keys[0]) is None:
        return None
    x, y, z = (_first_present(data, k) for k in keys)
    return {"x": x, "y": y if y is not None else 0.0, "z": z if z is not None else 0.0}


class RawReading(BaseModel):
    """One loosely-typed payload from ``GET /api/sensors``.

    Firmware revisions disagree on key names, so every field accepts a set
    of aliases.  Absent fields stay ``None``; the conditioner decides how to
    fill them in.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    heart_rate: float | None = Field(
        None, validation_alias=AliasChoices("heartRate", "hr", "heart_rate")
    )
    temperature: float | None = Field(None, validation_alias=AliasChoices("temperature", "temp"))
    eda: float | None = Field(None, validation_alias=AliasChoices("eda", "gsr"))
    finger_detected: bool | None = Field(
        None, validation_alias=AliasChoices("fingerDetected", "finger", "finger_detected")
    )
    ir_value: float | None = Field(
        None, validation_alias=AliasChoices("irValue", "rawIR", "ir", "ir_value")
    )
    motion: bool | None = Field(
        None, validation_alias=AliasChoices("motion", "motionDetected", "motion_detected")
    )
    accel: Vector3 | None = None
    gyro: Vector3 | None = None
    source_timestamp: datetime | None = Field(
        None, validation_alias=AliasChoices("timestamp", "ts", "source_timestamp")
    )

    @model_validator(mode="before")
    @classmethod
    def _collect_vectors(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "accel" not in data:
            data["accel"] = _extract_vector(data, _ACCEL_KEYS)
        if "gyro" not in data:
            data["gyro"] = _extract_vector(data, _GYRO_KEYS)
        return data

    @classmethod
    def from_payload(cls, payload: Any) -> RawReading:
        """Validate a decoded JSON payload, raising :class:`InvalidReadingError`."""
        if not isinstance(payload, dict):
            raise InvalidReadingError(
                f"Expected a JSON object from the sensor, got {type(payload).__name__}."
            )
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in exc.errors())
            raise InvalidReadingError(f"Invalid sensor data format ({fields}).") from exc


class ConditionedReading(BaseModel):
    """A smoothed, classification-ready reading.  Immutable once built."""

    model_config = ConfigDict(frozen=True)

    heart_rate: float
    finger_present: bool
    temperature: float
    eda: float
    motion_detected: bool = False
    timestamp: datetime = Field(default_factory=utcnow)
    source_timestamp: datetime | None = None


class StoredReading(BaseModel):
    """A conditioned reading as kept in the history store."""

    id: str
    reading: ConditionedReading
    device_id: str | None = None
    synthetic: bool = False


# ── Device link ───────────────────────────────────────────────


class DeviceInfo(BaseModel):
    """Metadata reported by ``GET /api/device-info`` (best effort)."""

    model_config = ConfigDict(extra="allow")

    name: str | None = None
    battery: float | None = None
    firmware: str | None = None
    last_updated: datetime = Field(default_factory=utcnow)


class LinkStatus(BaseModel):
    """Snapshot of a link's connection lifecycle."""

    state: ConnectionState = ConnectionState.DISCONNECTED
    address: str | None = None
    port: int | None = None
    device_name: str | None = None
    consecutive_failures: int = 0
    last_success_at: datetime | None = None
    synthetic: bool = False

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED
