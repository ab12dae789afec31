"""Orchestrator — owns the pipeline components and exposes the consumer API.

One instance wires together:

    DeviceLinkManager / SyntheticLink ──(EventBus)──▶ SignalConditioner
        ──▶ classifier ──▶ HistoryStore ──▶ PredictionReady

Every reading is conditioned, classified and persisted inside the tick
that produced it, so results reach the store in arrival order.  Nothing
here is a module-level singleton; build one per process (or per test).
"""

from __future__ import annotations

from zoneinfo import ZoneInfo

import httpx
import structlog

from neuronest.affect.conditioning import SignalConditioner
from neuronest.affect.inference import BaseClassifier, RuleClassifier, calm_score
from neuronest.affect.models import (
    ClassificationResult,
    DailyEpisodeCount,
    DaySummary,
    MindState,
)
from neuronest.collectors.base import BaseLink
from neuronest.collectors.http_link import DeviceLinkManager
from neuronest.collectors.synthetic import SyntheticLink
from neuronest.config import Settings, get_settings
from neuronest.errors import DeviceConnectionError, NeuroNestError
from neuronest.models import ConditionedReading, DeviceInfo, LinkStatus
from neuronest.storage.history import HistoryStore
from neuronest.streaming.events import (
    ConnectionChanged,
    EventBus,
    Handler,
    LinkError,
    PredictionReady,
    ReadingReceived,
)

logger = structlog.get_logger(__name__)


class Orchestrator:
    """Pipeline owner and query facade for UIs, the REST API and tests.

    Usage::

        orch = Orchestrator(get_settings())
        await orch.start()
        await orch.connect("192.168.1.100")
        ...
        print(orch.current_prediction)
        await orch.close()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        classifier: BaseClassifier | None = None,
        store: HistoryStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.bus = EventBus()
        self.store = store or HistoryStore(
            self.settings.database_url,
            self.settings.retention,
            timezone=self.settings.history_timezone,
        )
        self.link = DeviceLinkManager(
            self.bus,
            self.settings.link,
            endpoint_store=self.store,
            transport=transport,
        )
        self.conditioner = SignalConditioner(self.settings.conditioner)
        self.classifier = classifier or RuleClassifier(self.settings.classifier)
        self._synthetic: SyntheticLink | None = None

        self.current_reading: ConditionedReading | None = None
        self.current_prediction: ClassificationResult | None = None
        self.connection_error: DeviceConnectionError | None = None
        self.last_error: NeuroNestError | None = None

        self._unsubscribe = [
            self.bus.subscribe(self._on_reading, ReadingReceived),
            self.bus.subscribe(self._on_connection_changed, ConnectionChanged),
            self.bus.subscribe(self._on_link_error, LinkError),
        ]

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        await self.store.init()
        logger.info("orchestrator.started", classifier=self.classifier.backend)

    async def close(self) -> None:
        await self.stop_synthetic_mode()
        await self.link.close()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        await self.store.close()
        logger.info("orchestrator.stopped")

    # ── Event handlers ────────────────────────────────────────

    async def _on_reading(self, event: ReadingReceived) -> None:
        reading = self.conditioner.condition(event.raw)
        self.current_reading = reading
        await self.store.append_reading(reading, device_id=event.device_id, synthetic=event.synthetic)

        result = self.classifier.predict(reading)
        result = result.model_copy(
            update={
                "calm_score": calm_score(result.state, result.confidence),
                "synthetic": event.synthetic,
            }
        )
        # Unknown (no contact, bad input) is shown but not kept.
        if result.state != MindState.UNKNOWN:
            result = await self.store.append_prediction(result)
        self.current_prediction = result

        logger.debug(
            "orchestrator.prediction",
            state=result.state.value,
            confidence=round(result.confidence, 3),
            synthetic=event.synthetic,
        )
        await self.bus.publish(PredictionReady(result=result, reading=reading, device_id=event.device_id))

    def _on_connection_changed(self, event: ConnectionChanged) -> None:
        if event.connected:
            self.connection_error = None
            return
        self.conditioner.reset()
        self.classifier.reset()

    def _on_link_error(self, event: LinkError) -> None:
        self.last_error = event.error
        if event.fatal and isinstance(event.error, DeviceConnectionError):
            self.connection_error = event.error
            logger.warning("orchestrator.connection_lost", message=event.error.user_message)

    # ── Connection ────────────────────────────────────────────

    @property
    def active_link(self) -> BaseLink:
        if self._synthetic is not None and self._synthetic.is_connected:
            return self._synthetic
        return self.link

    @property
    def synthetic_mode(self) -> bool:
        return self.active_link.synthetic

    def status(self) -> LinkStatus:
        return self.active_link.status()

    async def connect(self, address: str | None = None, port: int | None = None) -> LinkStatus:
        """Connect the real link; without ``address`` reuse the last working endpoint.

        Any running synthetic session is stopped first.  A failed attempt is
        kept on :attr:`connection_error` and re-raised.
        """
        await self.stop_synthetic_mode()
        if address is None:
            saved = await self.store.get_endpoint()
            if saved is not None:
                address, port = saved[0], port or saved[1]
            else:
                address = self.settings.link.default_address

        self.connection_error = None
        try:
            return await self.link.connect(address, port)
        except DeviceConnectionError as exc:
            self.connection_error = exc
            raise

    async def disconnect(self) -> LinkStatus:
        await self.stop_synthetic_mode()
        await self.link.disconnect()
        return self.status()

    async def refresh_device_info(self) -> DeviceInfo | None:
        """Latest device metadata; falls back to the last stored copy."""
        if self.synthetic_mode:
            return DeviceInfo(
                name=self.settings.synthetic.device_name,
                firmware="synthetic",
                synthetic=True,
            )
        info = await self.link.read_device_info()
        if info is not None:
            await self.store.save_device_info(info)
            return info
        return await self.store.get_device_info()

    # ── Synthetic mode ────────────────────────────────────────

    async def start_synthetic_mode(self, *, run_timer: bool = True) -> LinkStatus:
        """Feed generated readings through the pipeline instead of the device."""
        await self.link.disconnect()
        if self._synthetic is None or not self._synthetic.is_connected:
            self._synthetic = SyntheticLink(self.bus, self.settings.synthetic)
            await self._synthetic.start(run_timer=run_timer)
            logger.info("orchestrator.synthetic_mode", enabled=True)
        return self._synthetic.status()

    async def stop_synthetic_mode(self) -> None:
        synthetic, self._synthetic = self._synthetic, None
        if synthetic is not None:
            await synthetic.disconnect()
            logger.info("orchestrator.synthetic_mode", enabled=False)

    @property
    def synthetic_link(self) -> SyntheticLink | None:
        return self._synthetic

    # ── History ───────────────────────────────────────────────

    async def get_today_history(self) -> list[ClassificationResult]:
        return await self.store.today_predictions()

    async def get_weekly_summary(self, days: int = 7, *, backfill_synthetic: bool = False) -> list[DaySummary]:
        return await self.store.daily_summaries(days, backfill_synthetic=backfill_synthetic)

    async def get_weekly_episodes(self, days: int = 7) -> list[DailyEpisodeCount]:
        return await self.store.weekly_episode_counts(days)

    # ── Settings & consumers ──────────────────────────────────

    async def apply_settings(self, settings: Settings) -> None:
        """Swap settings at runtime; synthetic changes apply on the next start."""
        self.settings = settings
        self.link.update_settings(settings.link)
        self.conditioner.update_settings(settings.conditioner)
        self.classifier.update_settings(settings.classifier)
        self.store.timezone = ZoneInfo(settings.history_timezone)
        await self.store.update_retention(settings.retention)
        logger.info("orchestrator.settings_applied")

    def subscribe(self, handler: Handler, *event_types: type):
        """Register a consumer on the pipeline's event bus; returns an unsubscribe callable."""
        return self.bus.subscribe(handler, *event_types)
