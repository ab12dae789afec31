"""Typed event channel connecting the device link to its consumers.

Producers (the link manager, the synthetic generator) publish link events
and the orchestrator publishes one ``PredictionReady`` per processed reading;
any number of consumers subscribe, optionally filtered by event type.
Delivery is sequential and awaited, so a reading has passed through every
consumer before the producer moves on to the next tick.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Union

import structlog

from neuronest.affect.models import ClassificationResult
from neuronest.errors import NeuroNestError
from neuronest.models import ConditionedReading, LinkStatus, RawReading, utcnow

logger = structlog.get_logger(__name__)


# ── Events ────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ReadingReceived:
    """A raw payload was fetched (or generated) for this tick."""

    raw: RawReading
    device_id: str | None = None
    synthetic: bool = False
    received_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class ConnectionChanged:
    connected: bool
    status: LinkStatus


@dataclass(frozen=True, slots=True)
class LinkError:
    """A per-tick or connection-fatal error; ``fatal`` means the link dropped."""

    error: NeuroNestError
    fatal: bool = False


@dataclass(frozen=True, slots=True)
class PredictionReady:
    """A reading went through the pipeline and produced a result."""

    result: ClassificationResult
    reading: ConditionedReading
    device_id: str | None = None


LinkEvent = Union[ReadingReceived, ConnectionChanged, LinkError]
PipelineEvent = Union[LinkEvent, PredictionReady]
Handler = Callable[[PipelineEvent], Union[Awaitable[None], None]]


# ── Bus ───────────────────────────────────────────────────────


@dataclass(eq=False)
class _Subscription:
    handler: Handler
    event_types: tuple[type, ...]

    def accepts(self, event: PipelineEvent) -> bool:
        return not self.event_types or isinstance(event, self.event_types)


class EventBus:
    """In-process fan-out with per-consumer error isolation."""

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []
        self.published_total = 0

    def subscribe(self, handler: Handler, *event_types: type) -> Callable[[], None]:
        """Register ``handler``; returns a callable that unsubscribes it.

        With no ``event_types`` the handler receives every event.
        Handlers may be plain functions or coroutines.
        """
        sub = _Subscription(handler, event_types)
        self._subscriptions.append(sub)

        def _unsubscribe() -> None:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

        return _unsubscribe

    async def publish(self, event: PipelineEvent) -> None:
        self.published_total += 1
        for sub in list(self._subscriptions):
            if not sub.accepts(event):
                continue
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "event_bus.consumer_error",
                    consumer=getattr(sub.handler, "__qualname__", repr(sub.handler)),
                    event_type=type(event).__name__,
                    error=str(exc),
                )

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
