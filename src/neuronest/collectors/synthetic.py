"""Synthetic sensor source for running the pipeline without hardware.

Readings are generated, not measured.  Every event carries
``synthetic=True`` and the fixed device identity from
:class:`~neuronest.config.SyntheticSettings`, so consumers and the history
store can always tell them apart from real data.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any

import structlog

from neuronest.collectors.base import BaseLink
from neuronest.config import SyntheticSettings
from neuronest.models import ConnectionState, LinkStatus, RawReading, utcnow
from neuronest.streaming.events import ConnectionChanged, EventBus, ReadingReceived

logger = structlog.get_logger(__name__)


class SyntheticReadingGenerator:
    """Produce ESP32-shaped payloads: mostly calm, occasionally stressed."""

    def __init__(self, settings: SyntheticSettings | None = None, rng: random.Random | None = None) -> None:
        self.settings = settings or SyntheticSettings()
        self._rng = rng or random.Random(self.settings.seed)

    def next_payload(self) -> dict[str, Any]:
        rng = self._rng
        payload: dict[str, Any] = {
            "heartRate": round(60 + rng.random() * 40, 1),
            "fingerDetected": True,
            "temperature": round(36 + rng.random() * 1.5, 2),
            "eda": round(0.5 + rng.random() * 5, 2),
            "accelX": round(rng.uniform(-0.05, 0.05), 3),
            "accelY": round(rng.uniform(-0.05, 0.05), 3),
            "accelZ": round(1.0 + rng.uniform(-0.05, 0.05), 3),
            "timestamp": utcnow().isoformat(),
        }
        if rng.random() < self.settings.stress_probability:
            payload["heartRate"] = round(100 + rng.random() * 30, 1)
            payload["eda"] = round(5 + rng.random() * 5, 2)
        return payload


class SyntheticLink(BaseLink):
    """Ticks generated readings through the same event bus as a real link."""

    synthetic = True

    def __init__(
        self,
        bus: EventBus,
        settings: SyntheticSettings | None = None,
        *,
        generator: SyntheticReadingGenerator | None = None,
    ) -> None:
        super().__init__(bus)
        self.settings = settings or SyntheticSettings()
        self._generator = generator or SyntheticReadingGenerator(self.settings)
        self._state = ConnectionState.DISCONNECTED
        self._task: asyncio.Task | None = None
        self._last_success_at = None
        self.ticks = 0

    async def start(self, *, run_timer: bool = True) -> LinkStatus:
        if self._state == ConnectionState.CONNECTED:
            return self.status()
        self._state = ConnectionState.CONNECTED
        logger.info("synthetic_link.started", device=self.settings.device_id)
        await self._bus.publish(ConnectionChanged(connected=True, status=self.status()))
        if run_timer:
            self._task = asyncio.create_task(self._run_loop())
        return self.status()

    async def _run_loop(self) -> None:
        interval = self.settings.interval_ms / 1000
        while self._state == ConnectionState.CONNECTED:
            await asyncio.sleep(interval)
            if self._state != ConnectionState.CONNECTED:
                break
            try:
                await self.tick()
            except Exception:
                logger.exception("synthetic_link.tick_error")

    async def tick(self) -> RawReading | None:
        if self._state != ConnectionState.CONNECTED:
            return None
        raw = RawReading.from_payload(self._generator.next_payload())
        self.ticks += 1
        self._last_success_at = utcnow()
        await self._bus.publish(
            ReadingReceived(raw=raw, device_id=self.settings.device_id, synthetic=True)
        )
        return raw

    async def disconnect(self) -> None:
        if self._state == ConnectionState.DISCONNECTED:
            return
        self._state = ConnectionState.DISCONNECTED
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("synthetic_link.stopped", ticks=self.ticks)
        await self._bus.publish(ConnectionChanged(connected=False, status=self.status()))

    def status(self) -> LinkStatus:
        connected = self._state == ConnectionState.CONNECTED
        return LinkStatus(
            state=self._state,
            address=self.settings.device_id if connected else None,
            device_name=self.settings.device_name if connected else None,
            last_success_at=self._last_success_at,
            synthetic=True,
        )
