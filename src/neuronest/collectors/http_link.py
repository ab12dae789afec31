"""WiFi/HTTP link to the ESP32 wearable — probing, polling, failure policy.

The wearable runs a small HTTP server on the local network:

  GET /api/sensors       current sensor readings (polled every tick)
  GET /api/device-info   battery level, name, firmware
  GET /api/health        liveness (some firmware only)
  GET /api/ping          liveness (some firmware only)

Firmware revisions differ in which of these they implement, so a node
counts as reachable on the *first* HTTP response of any status while
probing.  Once connected, every failed poll increments a counter; reaching
``max_consecutive_failures`` forces a disconnect and reports a
:class:`~neuronest.errors.LostConnectionError` once.  There is no
automatic reconnect.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from neuronest.collectors.base import BaseLink, EndpointStore
from neuronest.config import LinkSettings
from neuronest.errors import (
    ConnectionErrorKind,
    DeviceConnectionError,
    InvalidReadingError,
    LostConnectionError,
    PollingFailure,
)
from neuronest.models import ConnectionState, DeviceInfo, LinkStatus, RawReading, utcnow
from neuronest.streaming.events import ConnectionChanged, EventBus, LinkError, ReadingReceived

logger = structlog.get_logger(__name__)


def classify_connection_error(exc: BaseException | None) -> DeviceConnectionError:
    """Turn the last probe failure into a user-facing connection error."""
    detail = str(exc) if exc is not None else ""
    if isinstance(exc, httpx.TimeoutException):
        return DeviceConnectionError(ConnectionErrorKind.TIMEOUT, detail)
    if isinstance(exc, httpx.NetworkError):
        return DeviceConnectionError(ConnectionErrorKind.NETWORK, detail)
    return DeviceConnectionError(ConnectionErrorKind.UNREACHABLE, detail)


class DeviceLinkManager(BaseLink):
    """Polls one sensor endpoint and publishes readings on the event bus.

    Usage::

        bus = EventBus()
        link = DeviceLinkManager(bus)
        await link.connect("192.168.1.100", 80)
        ...
        await link.close()

    State machine::

        Disconnected --connect ok--> Connected
        Connected --failures >= limit--> Disconnected (LostConnectionError)
        Connected --disconnect()--> Disconnected

    ``Connecting`` is only visible while the initial probe runs.
    """

    def __init__(
        self,
        bus: EventBus,
        settings: LinkSettings | None = None,
        *,
        endpoint_store: EndpointStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(bus)
        self.settings = settings or LinkSettings()
        self._endpoint_store = endpoint_store
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        self._state = ConnectionState.DISCONNECTED
        self._address: str | None = None
        self._port: int | None = None
        self._device_name: str | None = None
        self._device_info: DeviceInfo | None = None
        self._failures = 0
        self._last_success_at = None

        self._poll_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._tasks: set[asyncio.Task] = set()

    # ── HTTP plumbing ─────────────────────────────────────────

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=self.settings.request_timeout_ms / 1000,
            )
        return self._client

    def _url(self, path: str) -> str:
        return f"http://{self._address}:{self._port}{path}"

    # ── Connection lifecycle ──────────────────────────────────

    async def connect(self, address: str, port: int | None = None) -> LinkStatus:
        """Probe ``address:port`` and start polling on success.

        Raises :class:`DeviceConnectionError` (state left Disconnected) when
        none of the probe paths answers.
        """
        port = port or self.settings.default_port
        if self._state != ConnectionState.DISCONNECTED:
            await self.disconnect()

        self._state = ConnectionState.CONNECTING
        self._address, self._port = address, port
        logger.info("device_link.connecting", address=address, port=port)

        try:
            info = await self._probe()
        except DeviceConnectionError as exc:
            self._state = ConnectionState.DISCONNECTED
            self._address = self._port = None
            logger.warning(
                "device_link.connect_failed",
                address=address,
                port=port,
                kind=exc.kind.value,
                detail=exc.detail,
            )
            raise

        if self._endpoint_store is not None:
            try:
                await self._endpoint_store.save_endpoint(address, port)
            except Exception as exc:
                logger.warning("device_link.endpoint_save_failed", error=str(exc))

        self._state = ConnectionState.CONNECTED
        self._failures = 0
        self._device_name = info.get("name") or f"ESP32-{address}"
        logger.info("device_link.connected", address=address, port=port, device=self._device_name)

        await self._bus.publish(ConnectionChanged(connected=True, status=self.status()))
        self.start_polling()
        return self.status()

    async def _probe(self) -> dict[str, Any]:
        client = self._http()
        timeout = self.settings.connection_timeout_ms / 1000
        last_error: Exception | None = None

        for path in self.settings.probe_paths:
            try:
                resp = await client.get(self._url(path), timeout=timeout)
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                last_error = exc
                logger.debug("device_link.probe_failed", path=path, error=str(exc))
                continue

            # Any HTTP answer, even 404, proves the node is there.
            logger.info("device_link.reachable", path=path, status=resp.status_code)
            if resp.is_success:
                try:
                    body = resp.json()
                except ValueError:
                    body = None
                if isinstance(body, dict) and body:
                    return body
            return {"name": f"ESP32-{self._address}", "status": "ok"}

        raise classify_connection_error(last_error)

    async def disconnect(self) -> None:
        """Stop polling and forget the endpoint.  Idempotent."""
        self.stop_polling()
        was_active = self._state != ConnectionState.DISCONNECTED
        self._state = ConnectionState.DISCONNECTED
        self._address = self._port = None
        self._device_name = None
        self._device_info = None
        self._failures = 0

        if was_active:
            logger.info("device_link.disconnected")
            await self._bus.publish(ConnectionChanged(connected=False, status=self.status()))

    async def close(self) -> None:
        await self.disconnect()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── Polling ───────────────────────────────────────────────

    def start_polling(self) -> None:
        """Start the fixed-interval poll loop, replacing any running one."""
        self.stop_polling()
        stop = asyncio.Event()
        task = asyncio.create_task(self._poll_loop(stop))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._stop_event, self._poll_task = stop, task
        logger.info("device_link.polling_started", interval_ms=self.settings.polling_interval_ms)

    def stop_polling(self) -> None:
        """Signal the poll loop to exit; does not wait for an in-flight fetch."""
        if self._stop_event is not None and not self._stop_event.is_set():
            self._stop_event.set()
            logger.info("device_link.polling_stopped")
        self._stop_event = None
        self._poll_task = None

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def _poll_loop(self, stop: asyncio.Event) -> None:
        interval = self.settings.polling_interval_ms / 1000
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                break
            try:
                await self._tick(stop)
            except Exception:
                logger.exception("device_link.tick_error")

    async def poll_once(self) -> RawReading | None:
        """Run a single fetch-and-dispatch cycle (what each timer tick does)."""
        return await self._tick(None)

    async def _tick(self, stop: asyncio.Event | None) -> RawReading | None:
        if self._state != ConnectionState.CONNECTED:
            return None

        def stopped() -> bool:
            return stop is not None and stop.is_set()

        try:
            raw = await self._fetch_sensors()
        except InvalidReadingError as exc:
            if stopped():
                return None
            logger.warning("device_link.invalid_reading", error=str(exc))
            await self._bus.publish(LinkError(exc))
            return None
        except httpx.HTTPError as exc:
            if stopped():
                return None
            await self._handle_polling_failure(exc)
            return None

        if stopped() or self._state != ConnectionState.CONNECTED:
            return None

        self._failures = 0
        self._last_success_at = utcnow()
        await self._bus.publish(ReadingReceived(raw=raw, device_id=self._address))
        return raw

    async def _fetch_sensors(self) -> RawReading:
        resp = await self._http().get(self._url(self.settings.sensors_path))
        resp.raise_for_status()
        try:
            payload = resp.json()
        except ValueError as exc:
            raise InvalidReadingError("Sensor response is not valid JSON.") from exc
        return RawReading.from_payload(payload)

    async def _handle_polling_failure(self, exc: Exception) -> None:
        self._failures += 1
        failures = self._failures
        failure = PollingFailure(failures, detail=str(exc) or type(exc).__name__)
        logger.warning("device_link.poll_failed", consecutive=failures, error=failure.detail)
        await self._bus.publish(LinkError(failure))

        if failures >= self.settings.max_consecutive_failures:
            logger.error("device_link.max_failures_reached", failures=failures)
            await self.disconnect()
            await self._bus.publish(LinkError(LostConnectionError(failures), fatal=True))

    def set_polling_interval(self, interval_ms: int) -> None:
        """Change the tick interval, restarting an active poll loop."""
        self.settings = self.settings.model_copy(update={"polling_interval_ms": interval_ms})
        if self.is_polling:
            self.start_polling()

    def update_settings(self, settings: LinkSettings) -> None:
        restart = self.is_polling and settings.polling_interval_ms != self.settings.polling_interval_ms
        self.settings = settings
        if restart:
            self.start_polling()

    # ── One-off requests ──────────────────────────────────────

    async def read_device_info(self) -> DeviceInfo | None:
        """Best-effort fetch of battery / identity; ``None`` on any failure."""
        if self._state != ConnectionState.CONNECTED:
            return None
        try:
            resp = await self._http().get(self._url(self.settings.device_info_path))
            resp.raise_for_status()
            info = DeviceInfo.model_validate(resp.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("device_link.device_info_failed", error=str(exc))
            return None

        self._device_info = info
        if info.name:
            self._device_name = info.name
        return info

    async def refresh(self) -> RawReading:
        """Fetch a reading outside the timer.  Raises when not connected."""
        if self._state != ConnectionState.CONNECTED:
            raise DeviceConnectionError(ConnectionErrorKind.UNREACHABLE, "not connected")
        return await self._fetch_sensors()

    async def ping(self) -> bool:
        if self._address is None:
            return False
        try:
            resp = await self._http().get(self._url(self.settings.ping_path), timeout=2.0)
        except httpx.HTTPError:
            return False
        return resp.is_success

    # ── Introspection ─────────────────────────────────────────

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def device_info(self) -> DeviceInfo | None:
        return self._device_info

    def status(self) -> LinkStatus:
        return LinkStatus(
            state=self._state,
            address=self._address,
            port=self._port,
            device_name=self._device_name,
            consecutive_failures=self._failures,
            last_success_at=self._last_success_at,
        )
